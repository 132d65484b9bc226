"""Circuit breakers for the services StaffHub calls out to.

One breaker per upstream (``groq``, ``drive``, ``whatsapp``). After
``upstream_failure_threshold`` consecutive failures the breaker opens and
calls fail fast for ``upstream_cooldown_seconds``; then a single trial call is
let through. A successful trial closes the breaker, a failed one reopens it.

Only outages count as failures: network errors, timeouts and 5xx answers.
A 4xx answer is the caller's problem and leaves the breaker alone.
"""

import logging
import threading
import time
from contextlib import contextmanager
from enum import Enum
from typing import Callable, Dict, Iterator, Optional, Tuple, Type

from .config import settings

logger = logging.getLogger(__name__)

GROQ = "groq"
DRIVE = "drive"
WHATSAPP = "whatsapp"


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpen(Exception):
    def __init__(self, upstream: str, retry_after: float):
        self.upstream = upstream
        self.retry_after = retry_after
        super().__init__(f"{upstream} is unavailable, retry in {retry_after:.0f}s")


class UpstreamFailure(Exception):
    """Raise inside ``guard()`` to count a non-exception outage (a 5xx answer)."""


class CircuitBreaker:
    def __init__(
        self,
        upstream: str,
        failure_threshold: Optional[int] = None,
        cooldown_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.upstream = upstream
        self.failure_threshold = failure_threshold or settings.upstream_failure_threshold
        self.cooldown_seconds = (
            settings.upstream_cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CircuitState.CLOSED
        self._failures = 0
        self._opened_at = 0.0
        self._probing = False

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def allow(self) -> None:
        """Raise CircuitBreakerOpen unless a call may go out now."""
        with self._lock:
            if self._state is CircuitState.CLOSED:
                return
            remaining = self._opened_at + self.cooldown_seconds - self._clock()
            if self._state is CircuitState.OPEN and remaining <= 0:
                self._state = CircuitState.HALF_OPEN
                logger.info("Upstream %s: probing after cooldown", self.upstream)
            if self._state is CircuitState.HALF_OPEN and not self._probing:
                self._probing = True
                return
            raise CircuitBreakerOpen(self.upstream, max(remaining, 0.0))

    def succeeded(self) -> None:
        with self._lock:
            if self._state is not CircuitState.CLOSED:
                logger.info("Upstream %s recovered", self.upstream)
            self._state = CircuitState.CLOSED
            self._failures = 0
            self._probing = False

    def failed(self) -> None:
        with self._lock:
            self._failures += 1
            self._probing = False
            if self._state is CircuitState.HALF_OPEN or self._failures >= self.failure_threshold:
                if self._state is not CircuitState.OPEN:
                    logger.warning(
                        "Upstream %s marked down after %d failures", self.upstream, self._failures
                    )
                self._state = CircuitState.OPEN
                self._opened_at = self._clock()

    @contextmanager
    def guard(self, failures: Tuple[Type[BaseException], ...] = (Exception,)) -> Iterator[None]:
        """Run the block as one call to the upstream.

        Exceptions of the *failures* types (and ``UpstreamFailure``) count
        against the upstream and propagate. Other exceptions propagate
        without touching the breaker.
        """
        self.allow()
        try:
            yield
        except (UpstreamFailure, *failures):
            self.failed()
            raise
        except BaseException:
            with self._lock:
                self._probing = False
            raise
        self.succeeded()

    def snapshot(self) -> dict:
        with self._lock:
            retry_after = 0.0
            if self._state is CircuitState.OPEN:
                retry_after = max(self._opened_at + self.cooldown_seconds - self._clock(), 0.0)
            return {"state": self._state.value, "failures": self._failures, "retry_after": round(retry_after, 1)}


_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_breaker(upstream: str) -> CircuitBreaker:
    with _registry_lock:
        breaker = _breakers.get(upstream)
        if breaker is None:
            breaker = _breakers[upstream] = CircuitBreaker(upstream)
        return breaker


def breaker_states() -> Dict[str, dict]:
    """Snapshot of the breakers used so far, for /health."""
    with _registry_lock:
        breakers = list(_breakers.values())
    return {b.upstream: b.snapshot() for b in breakers}


def reset_all() -> None:
    with _registry_lock:
        _breakers.clear()
