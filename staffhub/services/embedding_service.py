"""Semantic vectors for documents.

Groq has no embedding endpoint, so the vector is an approximation: the
chat model is asked for a JSON array of floats describing the text. The
array is resized to ``EMBEDDING_DIMENSIONS`` and L2-normalised. When the
model is unavailable or answers with something unusable, a deterministic
pseudo-embedding derived from the text hash is stored instead, so equal
texts always get equal vectors.
"""

import hashlib
import json
import logging
import math
import random
import re
from typing import List, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..exceptions import LLMResponseError, LLMUnavailableError
from ..repositories.document_repository import DocumentRepository
from .llm_service import LLMService

logger = logging.getLogger(__name__)

MAX_INPUT_CHARS = 30000


def preprocess_text(text: str) -> str:
    """Collapse whitespace and cap the length sent to the model."""
    clean = re.sub(r"\s+", " ", text or "").strip()
    if len(clean) > MAX_INPUT_CHARS:
        logger.warning("Embedding input truncated to %d characters", MAX_INPUT_CHARS)
        clean = clean[:MAX_INPUT_CHARS] + "..."
    return clean


def normalize_vector(vector: List[float]) -> List[float]:
    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return list(vector)
    return [v / magnitude for v in vector]


def resize_vector(vector: List[float], dimensions: int) -> List[float]:
    """Truncate, or extend with values drawn around the vector's own mean and spread.

    Padding is seeded from the input length so the same input always
    produces the same output.
    """
    if len(vector) >= dimensions:
        return list(vector[:dimensions])

    rng = random.Random(len(vector))
    extended = list(vector)
    while len(extended) < dimensions:
        mean = sum(extended) / len(extended)
        stddev = math.sqrt(sum((v - mean) ** 2 for v in extended) / len(extended))
        value = mean + (rng.random() - 0.5) * 2 * stddev
        extended.append(max(-1.0, min(1.0, value)))
    return extended


def fallback_embedding(text: str, dimensions: int) -> List[float]:
    """Deterministic unit vector seeded from the SHA-256 of *text*."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = random.Random(seed)
    return normalize_vector([rng.uniform(-1.0, 1.0) for _ in range(dimensions)])


def cosine_similarity(a: List[float], b: List[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"Embedding dimensions differ: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def _parse_vector(raw: str) -> List[float]:
    match = re.search(r"\[[\s\S]*\]", raw)
    if not match:
        raise ValueError("response contains no JSON array")
    values = json.loads(match.group(0))
    if not isinstance(values, list) or not values:
        raise ValueError("response is not a non-empty array")
    for v in values:
        if not isinstance(v, (int, float)) or isinstance(v, bool) or not -1 <= v <= 1:
            raise ValueError("array holds values outside [-1, 1]")
    return [float(v) for v in values]


class EmbeddingService:
    """Generates, stores and compares document vectors."""

    def __init__(self, db: Optional[Session] = None, llm: Optional[LLMService] = None):
        self.db = db
        self.llm = llm or LLMService(db)

    @staticmethod
    def dimensions() -> int:
        return settings.embedding_dimensions

    def generate_embedding(self, text: str) -> List[float]:
        """Never raises; falls back to the hash-seeded vector."""
        clean = preprocess_text(text)
        dims = self.dimensions()
        if not clean:
            return fallback_embedding("", dims)

        if self.llm.is_configured():
            prompt = (
                "Analyse the following text and produce a semantic embedding vector.\n\n"
                f'Text: "{clean}"\n\n'
                f"Return an array of {dims} decimal numbers between -1 and 1 that represent "
                "the meaning of the text. Reply with the JSON array only, no other text.\n\n"
                "Example format: [0.1, -0.3, 0.7, ..., -0.2]"
            )
            try:
                raw = self.llm.generate_completion([{"role": "user", "content": prompt}])
                return normalize_vector(resize_vector(_parse_vector(raw), dims))
            except (LLMResponseError, LLMUnavailableError) as e:
                logger.warning("Embedding request failed, using fallback: %s", e.message)
            except ValueError as e:
                logger.warning("Embedding response unusable, using fallback: %s", e)

        return fallback_embedding(clean, dims)

    def find_similar_documents(self, text: str, company_id: Optional[str], limit: int = 5) -> List[dict]:
        """Stored documents of *company_id* ranked by similarity to *text*."""
        if self.db is None:
            return []
        query_vector = self.generate_embedding(text)
        results = []
        for doc in DocumentRepository(self.db).with_embeddings(company_id):
            try:
                score = cosine_similarity(query_vector, doc.embedding)
            except (ValueError, TypeError):
                logger.debug("Skipping document %s with incompatible embedding", doc.id)
                continue
            results.append({
                "id": doc.id,
                "name": doc.name,
                "folder_id": doc.folder_id,
                "similarity": round(score, 4),
                "content": (doc.content_text or "")[:3000],
            })
        results.sort(key=lambda r: r["similarity"], reverse=True)
        return results[:limit]
