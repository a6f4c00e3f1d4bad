#!/usr/bin/env python3
"""
Validate environment configuration before deployment.
Checks required variables, database connectivity and the balance triggers,
and Stripe credentials.
Exit code 0 = OK, 1 = problems detected.
"""
import os
import sys
import logging
from typing import List
from urllib.parse import urlparse

from fusion_ledger.logging_config import configure_logging

logger = logging.getLogger(__name__)

BALANCE_TRIGGERS = {
    "postgresql": ["refresh_credits_balance", "protect_credits_balance"],
    "sqlite": [
        "refresh_credits_balance_insert",
        "refresh_credits_balance_update",
        "refresh_credits_balance_delete",
        "protect_credits_balance",
    ],
}


class EnvironmentValidator:
    """Validates environment configuration for production deployment."""

    def __init__(self):
        self.errors: List[str] = []
        self.warnings: List[str] = []
        self.info: List[str] = []

    def validate_all(self) -> bool:
        """Run all validation checks."""
        logger.info("Starting environment validation...")

        self.validate_required_variables()
        self.validate_secrets()
        self.validate_database()
        self.validate_stripe()

        self.print_results()
        return len(self.errors) == 0

    def validate_required_variables(self):
        """Check all required environment variables."""
        required_vars = [
            ("DATABASE_URL", "Database connection string"),
            ("JWT_SECRET", "Identity provider token secret"),
            ("ADMIN_API_KEY", "Key for reconciliation and adjustment endpoints"),
            ("STRIPE_SECRET_KEY", "Stripe API secret key"),
            ("STRIPE_WEBHOOK_SECRET", "Stripe webhook signing secret"),
        ]
        for var, description in required_vars:
            if not os.getenv(var):
                self.errors.append(f"Missing required variable {var}: {description}")

    def validate_secrets(self):
        jwt_secret = os.getenv("JWT_SECRET", "")
        if jwt_secret and len(jwt_secret) < 32:
            self.errors.append("JWT_SECRET must be at least 32 characters for HS256")
        admin_key = os.getenv("ADMIN_API_KEY", "")
        if admin_key.startswith("change-me"):
            self.errors.append("ADMIN_API_KEY is still the default value")
        webhook_secret = os.getenv("STRIPE_WEBHOOK_SECRET", "")
        if webhook_secret and not webhook_secret.startswith("whsec_"):
            self.warnings.append("STRIPE_WEBHOOK_SECRET does not look like a Stripe signing secret (whsec_...)")
        if os.getenv("DEBUG", "false").lower() in ("1", "true", "yes"):
            self.warnings.append("DEBUG is enabled; disable in production")

    def validate_database(self):
        """Test database connectivity and that the balance triggers are installed."""
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            return  # Already caught
        scheme = urlparse(database_url).scheme.split('+')[0]
        if scheme not in ("postgresql", "postgres"):
            self.warnings.append(f"Database scheme '{scheme}' - expected postgresql in production")

        from sqlalchemy import create_engine, text
        try:
            engine = create_engine(database_url, pool_pre_ping=True)
            with engine.connect() as conn:
                dialect = conn.dialect.name
                if dialect == "postgresql":
                    installed = set(conn.execute(text(
                        "SELECT tgname FROM pg_trigger WHERE NOT tgisinternal"
                    )).scalars())
                else:
                    installed = set(conn.execute(text(
                        "SELECT name FROM sqlite_master WHERE type = 'trigger'"
                    )).scalars())
            engine.dispose()
        except Exception as e:
            self.errors.append(f"Database connection failed: {str(e)}")
            return

        self.info.append(f"Database connection successful ({dialect})")
        missing = [name for name in BALANCE_TRIGGERS.get(dialect, []) if name not in installed]
        if missing:
            self.errors.append(f"Balance triggers missing: {', '.join(missing)} (run alembic upgrade head)")
        else:
            self.info.append("Balance projection triggers installed")

    def validate_stripe(self):
        key = os.getenv("STRIPE_SECRET_KEY")
        if not key:
            return
        if os.getenv("ENVIRONMENT") == "production" and key.startswith("sk_test_"):
            self.errors.append("STRIPE_SECRET_KEY is a test key in production")
        import stripe
        try:
            stripe.api_key = key
            account = stripe.Account.retrieve()
            self.info.append(f"Stripe connectivity verified (account {account.id})")
        except stripe.StripeError as e:
            self.errors.append(f"Stripe API test error: {str(e)}")

    def print_results(self):
        print("\n===== Environment Validation Report =====\n")
        for title, messages in (("Info", self.info), ("Warnings", self.warnings), ("Errors", self.errors)):
            if messages:
                print(f"{title}:")
                for msg in messages:
                    print(f"  - {msg}")
                print("")
        overall = "PASS" if not self.errors else "FAIL"
        print(f"Overall: {overall}")
        print("")


def main() -> int:
    configure_logging()
    validator = EnvironmentValidator()
    ok = validator.validate_all()
    return 0 if ok else 1


if __name__ == "__main__":
    sys.exit(main())
