"""
Central configuration module for the billing reconciler
Reads and validates environment variables with strict checks for production
"""
import os
import sys
from decimal import Decimal
from typing import Optional, List

from dotenv import load_dotenv

from .policies import RetryPolicy, DisputePolicy

# Only load .env in development
if os.getenv("ENV", "dev").lower() == "dev":
    load_dotenv()


def _get_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _get_list(name: str) -> List[str]:
    return [item.strip() for item in os.getenv(name, "").split(",") if item.strip()]


class Config:
    """Central configuration class with environment variable validation"""

    # Environment
    ENV: str = os.getenv("ENV", "dev").lower()
    PORT: int = int(os.getenv("PORT", "8000"))

    # Database - PostgreSQL in staging/prod, SQLite allowed for dev/test
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./billing_reconciler.db")
    DB_POOL_SIZE: int = int(os.getenv("DB_POOL_SIZE", "10"))
    DB_MAX_OVERFLOW: int = int(os.getenv("DB_MAX_OVERFLOW", "5"))
    DB_POOL_RECYCLE: int = int(os.getenv("DB_POOL_RECYCLE", "900"))

    # Inbound webhooks
    WEBHOOK_SECRET: str = os.getenv("WEBHOOK_SECRET", "")
    WEBHOOK_TOLERANCE_SECONDS: int = int(os.getenv("WEBHOOK_TOLERANCE_SECONDS", "300"))
    WEBHOOK_SIGNATURE_HEADER: str = os.getenv("WEBHOOK_SIGNATURE_HEADER", "Stripe-Signature")

    # Processor control API
    STRIPE_SECRET_KEY: Optional[str] = os.getenv("STRIPE_SECRET_KEY")

    # Admin endpoints
    ADMIN_API_KEY: Optional[str] = os.getenv("ADMIN_API_KEY")

    # Retry & grace-period policy
    MAX_RETRY_ATTEMPTS: int = int(os.getenv("MAX_RETRY_ATTEMPTS", "3"))
    RETRY_BACKOFF_MULTIPLIER: int = int(os.getenv("RETRY_BACKOFF_MULTIPLIER", "2"))
    RETRY_BASE_DELAY_HOURS: int = int(os.getenv("RETRY_BASE_DELAY_HOURS", "24"))
    GRACE_PERIOD_HOURS: int = int(os.getenv("GRACE_PERIOD_HOURS", "72"))

    # Dispute policy
    DISPUTE_AUTO_RESPONSE_ENABLED: bool = _get_bool("DISPUTE_AUTO_RESPONSE_ENABLED", True)
    DISPUTE_DOCUMENT_COLLECTION_ENABLED: bool = _get_bool("DISPUTE_DOCUMENT_COLLECTION_ENABLED", True)
    DISPUTE_ESCALATION_THRESHOLD: Decimal = Decimal(os.getenv("DISPUTE_ESCALATION_THRESHOLD", "500"))
    DISPUTE_EVIDENCE_DAYS: int = int(os.getenv("DISPUTE_EVIDENCE_DAYS", "7"))
    ADMIN_USER_IDS: List[str] = _get_list("ADMIN_USER_IDS")
    SENIOR_ADMIN_USER_IDS: List[str] = _get_list("SENIOR_ADMIN_USER_IDS")

    # Scheduler
    ENABLE_SCHEDULER: bool = _get_bool("ENABLE_SCHEDULER", False)
    GRACE_SWEEP_INTERVAL_MINUTES: int = int(os.getenv("GRACE_SWEEP_INTERVAL_MINUTES", "15"))

    # Logging
    LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO").upper()

    def __init__(self):
        """Initialize configuration and validate required variables"""
        self._validate()

    def _validate(self):
        """Validate required configuration based on environment"""
        errors = []

        if self.ENV not in ["dev", "test", "staging", "prod"]:
            errors.append(f"Invalid ENV value: {self.ENV}. Must be 'dev', 'test', 'staging', or 'prod'")

        if not self.WEBHOOK_SECRET:
            errors.append("WEBHOOK_SECRET is required but not set")

        if self.ENV in ["staging", "prod"]:
            if not self.DATABASE_URL.startswith("postgresql"):
                errors.append(f"DATABASE_URL must be a PostgreSQL connection string in {self.ENV} (got: {self.DATABASE_URL[:30]}...)")
            if not self.STRIPE_SECRET_KEY:
                errors.append(f"STRIPE_SECRET_KEY is required in {self.ENV}")

        if not self.ADMIN_USER_IDS:
            errors.append("ADMIN_USER_IDS is empty: dispute alerts have no recipients")
        if not self.SENIOR_ADMIN_USER_IDS:
            errors.append("SENIOR_ADMIN_USER_IDS is empty: dispute escalations have no recipients")

        if self.MAX_RETRY_ATTEMPTS < 1:
            errors.append("MAX_RETRY_ATTEMPTS must be at least 1")
        if self.RETRY_BACKOFF_MULTIPLIER < 1:
            errors.append("RETRY_BACKOFF_MULTIPLIER must be at least 1")
        if self.GRACE_PERIOD_HOURS < 0:
            errors.append("GRACE_PERIOD_HOURS must not be negative")
        if self.DISPUTE_ESCALATION_THRESHOLD < 0:
            errors.append("DISPUTE_ESCALATION_THRESHOLD must not be negative")

        # Fail fast in staging/prod
        if errors and self.ENV in ["staging", "prod"]:
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION VALIDATION FAILED", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            sys.exit(1)

        # Warn in dev
        if errors and self.ENV == "dev":
            print("=" * 60, file=sys.stderr)
            print("CONFIGURATION WARNINGS (dev mode - continuing)", file=sys.stderr)
            print("=" * 60, file=sys.stderr)
            for error in errors:
                print(f"  - {error}", file=sys.stderr)
            print("=" * 60, file=sys.stderr)

    @property
    def is_dev(self) -> bool:
        """Check if running in development mode"""
        return self.ENV == "dev"

    def retry_policy(self) -> RetryPolicy:
        """Build the retry & grace-period policy from configuration"""
        return RetryPolicy(
            max_retry_attempts=self.MAX_RETRY_ATTEMPTS,
            backoff_multiplier=self.RETRY_BACKOFF_MULTIPLIER,
            base_delay_hours=self.RETRY_BASE_DELAY_HOURS,
            grace_period_hours=self.GRACE_PERIOD_HOURS,
        )

    def dispute_policy(self) -> DisputePolicy:
        """Build the dispute workflow policy from configuration"""
        return DisputePolicy(
            auto_response_enabled=self.DISPUTE_AUTO_RESPONSE_ENABLED,
            document_collection_enabled=self.DISPUTE_DOCUMENT_COLLECTION_ENABLED,
            escalation_threshold_amount=self.DISPUTE_ESCALATION_THRESHOLD,
            evidence_collection_days=self.DISPUTE_EVIDENCE_DAYS,
            admin_user_ids=list(self.ADMIN_USER_IDS),
            senior_admin_user_ids=list(self.SENIOR_ADMIN_USER_IDS),
        )


# Create global config instance
config = Config()
