"""Configuration management for the Bounty Escrow Engine"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("1", "true", "yes", "on")


class Config:
    """Application configuration"""

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Persistent store
    # postgresql:// URLs are rewritten for the asyncpg driver in database.py
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///bounty_engine.db")
    DATABASE_ECHO = _env_bool("DATABASE_ECHO")
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "7"))
    DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "15"))
    DB_POOL_TIMEOUT = int(os.getenv("DB_POOL_TIMEOUT", "30"))
    SQLITE_BUSY_TIMEOUT = float(os.getenv("SQLITE_BUSY_TIMEOUT", "30"))

    # Serialization failures / lock timeouts re-run the whole store transaction
    STORE_TRANSACTION_MAX_RETRIES = int(os.getenv("STORE_TRANSACTION_MAX_RETRIES", "3"))
    STORE_TRANSACTION_RETRY_DELAY = float(os.getenv("STORE_TRANSACTION_RETRY_DELAY", "0.05"))

    # Payment capability retry policy (bounded exponential backoff)
    PAYMENT_RETRY_MAX_ATTEMPTS = int(os.getenv("PAYMENT_RETRY_MAX_ATTEMPTS", "3"))
    PAYMENT_RETRY_INITIAL_DELAY = float(os.getenv("PAYMENT_RETRY_INITIAL_DELAY", "0.5"))
    PAYMENT_RETRY_MAX_DELAY = float(os.getenv("PAYMENT_RETRY_MAX_DELAY", "8.0"))
    PAYMENT_RETRY_EXPONENTIAL_BASE = float(os.getenv("PAYMENT_RETRY_EXPONENTIAL_BASE", "2.0"))

    # Bounty rules
    BOUNTY_CURRENCY = os.getenv("BOUNTY_CURRENCY", "USD").upper()
    BOUNTY_MIN_STAKE = Decimal(os.getenv("BOUNTY_MIN_STAKE", "1.00"))
    BOUNTY_MAX_PARTICIPANTS_LIMIT = int(os.getenv("BOUNTY_MAX_PARTICIPANTS_LIMIT", "100"))
    BOUNTY_FEED_PAGE_SIZE = int(os.getenv("BOUNTY_FEED_PAGE_SIZE", "100"))

    # Background jobs
    BOUNTY_EXPIRY_CHECK_INTERVAL_MINUTES = int(os.getenv("BOUNTY_EXPIRY_CHECK_INTERVAL_MINUTES", "5"))
    LEDGER_AUDIT_INTERVAL_MINUTES = int(os.getenv("LEDGER_AUDIT_INTERVAL_MINUTES", "60"))

    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

    @staticmethod
    def log_environment_config():
        """Log current environment configuration for debugging"""
        logger.info("🔧 Bounty Engine Configuration:")
        logger.info(f"   Environment: {Config.ENVIRONMENT.upper()}")
        logger.info(f"   Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"   Currency: {Config.BOUNTY_CURRENCY}")
        logger.info(
            f"   Payment retries: {Config.PAYMENT_RETRY_MAX_ATTEMPTS} attempts, "
            f"{Config.PAYMENT_RETRY_INITIAL_DELAY}s -> {Config.PAYMENT_RETRY_MAX_DELAY}s"
        )
        if Config.IS_PRODUCTION and Config.DATABASE_URL.startswith("sqlite"):
            logger.warning("⚠️ Production environment running on SQLite - use PostgreSQL for serializable isolation")
