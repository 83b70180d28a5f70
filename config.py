"""Configuration management for the SkillSwap booking and escrow backend"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./skillswap.db")
    SQL_ECHO = os.getenv("SQL_ECHO", "false").lower() == "true"

    # Money
    DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY", "INR")
    PLATFORM_FEE_PERCENTAGE = Decimal(os.getenv("PLATFORM_FEE_PERCENTAGE", "0"))

    # Booking rules
    BOOKING_COOLDOWN_SECONDS = int(os.getenv("BOOKING_COOLDOWN_SECONDS", "60"))

    # rollback | keep_confirmed
    ESCROW_FAILURE_POLICY = os.getenv("ESCROW_FAILURE_POLICY", "rollback").lower().strip()

    # Skill request lifecycle
    SKILL_REQUEST_TTL_HOURS = int(os.getenv("SKILL_REQUEST_TTL_HOURS", "48"))
    SKILL_REQUEST_EXPIRY_INTERVAL_MINUTES = int(
        os.getenv("SKILL_REQUEST_EXPIRY_INTERVAL_MINUTES", "60")
    )
    SKILL_REQUEST_EXPIRY_BATCH_SIZE = int(os.getenv("SKILL_REQUEST_EXPIRY_BATCH_SIZE", "200"))

    # Optimistic concurrency retry for ledger writes
    LEDGER_MAX_ATTEMPTS = int(os.getenv("LEDGER_MAX_ATTEMPTS", "3"))
    LEDGER_RETRY_DELAY_SECONDS = float(os.getenv("LEDGER_RETRY_DELAY_SECONDS", "0.05"))

    # Email notifications (Brevo)
    EMAIL_NOTIFICATIONS_ENABLED = (
        os.getenv("EMAIL_NOTIFICATIONS_ENABLED", "true").lower() == "true"
    )
    BREVO_API_KEY = os.getenv("BREVO_API_KEY")
    FROM_EMAIL = os.getenv("FROM_EMAIL", "noreply@skillswap.app")
    FROM_NAME = os.getenv("FROM_NAME", "SkillSwap")
    NOTIFICATION_WORKERS = int(os.getenv("NOTIFICATION_WORKERS", "4"))

    # Background jobs
    SCHEDULER_ENABLED = os.getenv("SCHEDULER_ENABLED", "true").lower() == "true"

    VALID_ESCROW_FAILURE_POLICIES = ("rollback", "keep_confirmed")

    @classmethod
    def validate(cls) -> bool:
        """Log configuration problems without aborting start-up"""
        valid = True

        if cls.ESCROW_FAILURE_POLICY not in cls.VALID_ESCROW_FAILURE_POLICIES:
            logger.error(
                f"❌ CONFIG: Unknown ESCROW_FAILURE_POLICY '{cls.ESCROW_FAILURE_POLICY}', "
                f"expected one of {cls.VALID_ESCROW_FAILURE_POLICIES}"
            )
            valid = False

        if cls.PLATFORM_FEE_PERCENTAGE < 0 or cls.PLATFORM_FEE_PERCENTAGE >= 100:
            logger.error(
                f"❌ CONFIG: PLATFORM_FEE_PERCENTAGE must be in [0, 100), got {cls.PLATFORM_FEE_PERCENTAGE}"
            )
            valid = False

        if cls.EMAIL_NOTIFICATIONS_ENABLED and not cls.BREVO_API_KEY:
            logger.warning("⚠️ CONFIG: BREVO_API_KEY not set - booking emails will be skipped")

        if cls.LEDGER_MAX_ATTEMPTS < 1:
            logger.error("❌ CONFIG: LEDGER_MAX_ATTEMPTS must be at least 1")
            valid = False

        return valid

    @classmethod
    def log_environment_config(cls):
        """Log current environment configuration for debugging"""
        logger.info("🔧 SkillSwap Environment Configuration:")
        logger.info(f"   Environment: {cls.ENVIRONMENT.upper()}")
        logger.info(f"   Currency: {cls.DEFAULT_CURRENCY}")
        logger.info(f"   Escrow failure policy: {cls.ESCROW_FAILURE_POLICY}")
        logger.info(f"   Booking cooldown: {cls.BOOKING_COOLDOWN_SECONDS}s")
        logger.info(
            f"   Ledger retry: {cls.LEDGER_MAX_ATTEMPTS} attempts, {cls.LEDGER_RETRY_DELAY_SECONDS}s backoff"
        )
        logger.info(f"   Email notifications: {'ON' if cls.EMAIL_NOTIFICATIONS_ENABLED else 'OFF'}")
