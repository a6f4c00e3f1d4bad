#!/usr/bin/env python3
"""
Production startup script.
Fails fast if configuration is invalid or the database is unreachable, then
serves the API with uvicorn.
"""
import sys
import logging

from sqlalchemy import text

from fusion_ledger.config import settings
from fusion_ledger.logging_config import configure_logging

logger = logging.getLogger("startup")


def check_database() -> bool:
    from fusion_ledger.db import engine
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
    logger.info("Database connection validated")
    return True


def main() -> int:
    configure_logging()
    logger.info(f"Starting {settings.app_name} ({settings.environment}, debug={settings.debug})")

    if not check_database():
        print("\nDatabase is not reachable. Server startup aborted.")
        return 1

    import uvicorn
    # Importing the app runs check_production_settings() and creates missing tables
    from fusion_ledger.main import app

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=settings.environment != "production",
    )
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\nShutdown requested by user")
        sys.exit(0)
