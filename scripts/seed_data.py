"""Seed the default credit package catalog. Safe to run repeatedly."""
import logging

from sqlalchemy.orm import Session
from fusion_ledger.db import SessionLocal
from fusion_ledger.logging_config import configure_logging
from fusion_ledger.models import CreditPackage

logger = logging.getLogger(__name__)

DEFAULT_PACKAGES = [
    {"id": "starter", "name": "Starter", "credits": 5, "price_cents": 150, "sort_order": 1},
    {"id": "standard", "name": "Standard", "credits": 20, "price_cents": 500, "sort_order": 2},
    {"id": "value", "name": "Value", "credits": 50, "price_cents": 1000, "sort_order": 3},
]


def seed_packages(db: Session) -> int:
    created = 0
    for package in DEFAULT_PACKAGES:
        if db.get(CreditPackage, package["id"]) is not None:
            continue
        db.add(CreditPackage(currency="eur", is_active=True, **package))
        created += 1
    db.commit()
    return created


def main():
    configure_logging()
    db: Session = SessionLocal()
    try:
        created = seed_packages(db)
    finally:
        db.close()
    logger.info(f"Seeded {created} credit packages ({len(DEFAULT_PACKAGES) - created} already present)")


if __name__ == "__main__":
    main()
