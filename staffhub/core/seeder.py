"""Seed the plan and extension catalogue on first startup.

Idempotent: rows whose id already exists are left untouched, so prices
edited in the database survive restarts.
"""

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

GB = 1024 ** 3

PLANS = [
    {
        "id": "basic",
        "code": "basic",
        "name": "Basic",
        "price": 29990,
        "duration_days": 30,
        "storage_limit_bytes": 1 * GB,
        "max_folders": 10,
        "max_files": 100,
        "token_limit": 50000,
    },
    {
        "id": "pro",
        "code": "pro",
        "name": "Pro",
        "price": 59990,
        "duration_days": 30,
        "storage_limit_bytes": 5 * GB,
        "max_folders": 50,
        "max_files": 1000,
        "token_limit": 200000,
    },
    {
        "id": "premium",
        "code": "premium",
        "name": "Premium",
        "price": 119990,
        "duration_days": 30,
        "storage_limit_bytes": 20 * GB,
        "max_folders": None,
        "max_files": None,
        "token_limit": 1000000,
    },
]

EXTENSIONS = [
    {
        "id": "ext_abogados",
        "name": "Abogados",
        "description": "Legal workspace with a dedicated Drive folder for contracts and cases",
        "price": 15000,
        "folder_type": "abogados",
    },
    {
        "id": "ext_entrenador",
        "name": "Entrenador",
        "description": "Coaching workspace with a dedicated Drive folder for training material",
        "price": 12000,
        "folder_type": "entrenador",
    },
    {
        "id": "ext_analytics",
        "name": "Analytics",
        "description": "Advanced AI insights and trend predictions on the dashboard",
        "price": 9990,
        "folder_type": None,
    },
]


def seed_catalogue(db: Session) -> int:
    """Insert missing plans and extensions.

    Returns:
        Number of rows inserted (0 if the catalogue was complete).
    """
    from ..models.billing import Plan, Extension

    inserted = 0
    try:
        existing_plans = {row.id for row in db.query(Plan.id).all()}
        for data in PLANS:
            if data["id"] not in existing_plans:
                db.add(Plan(**data))
                inserted += 1

        existing_exts = {row.id for row in db.query(Extension.id).all()}
        for data in EXTENSIONS:
            if data["id"] not in existing_exts:
                db.add(Extension(**data))
                inserted += 1

        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    if inserted:
        logger.info("Seeded %d catalogue rows", inserted)
    return inserted
