"""Configuration management for the storefront fulfillment engine"""

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
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./storefront.db")
    DATABASE_ECHO = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Telegram delivery channel
    BOT_TOKEN = os.getenv("BOT_TOKEN", os.getenv("TELEGRAM_BOT_TOKEN"))
    WEBAPP_URL = os.getenv("WEBAPP_URL", "")
    TELEGRAM_MESSAGE_LIMIT = int(os.getenv("TELEGRAM_MESSAGE_LIMIT", "4096"))

    # Admin surface
    ADMIN_API_TOKEN = os.getenv("ADMIN_API_TOKEN")

    # External payment processor (CryptoBot)
    CRYPTOBOT_API_TOKEN = os.getenv("CRYPTOBOT_API_TOKEN")

    # Proxy reseller (px6)
    PX6_API_KEY = os.getenv("PX6_API_KEY")
    PX6_BASE_URL = os.getenv("PX6_BASE_URL", "https://px6.link/api")
    PX6_DEFAULT_VERSION = int(os.getenv("PX6_DEFAULT_VERSION", "3"))
    PX6_DEFAULT_PERIOD_DAYS = int(os.getenv("PX6_DEFAULT_PERIOD_DAYS", "30"))

    # SMS activation reseller (Tiger SMS)
    TIGER_SMS_API_KEY = os.getenv("TIGER_SMS_API_KEY")
    TIGER_SMS_BASE_URL = os.getenv(
        "TIGER_SMS_BASE_URL", "https://api.tiger-sms.com/stubs/handler_api.php"
    )

    # Social engagement reseller (profi-like)
    PROFI_LIKE_API_KEY = os.getenv("PROFI_LIKE_API_KEY")
    PROFI_LIKE_BASE_URL = os.getenv("PROFI_LIKE_BASE_URL", "https://api.profi-like.ru/v1")
    PROFI_LIKE_CURRENCY = os.getenv("PROFI_LIKE_CURRENCY", "RUB")
    PROFI_LIKE_EXCLUDED_CATEGORIES = [
        c.strip()
        for c in os.getenv("PROFI_LIKE_EXCLUDED_CATEGORIES", "Другие,Trovo,Quora,Bluesky").split(",")
        if c.strip()
    ]

    # Outbound call policy: short timeout, no retry
    PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "10"))

    # Resource lifecycle monitor
    LEASE_POLL_INTERVAL_SECONDS = int(os.getenv("LEASE_POLL_INTERVAL_SECONDS", "5"))
    BOOST_POLL_INTERVAL_SECONDS = int(os.getenv("BOOST_POLL_INTERVAL_SECONDS", "60"))
    LEASE_CANCEL_WINDOW_SECONDS = int(os.getenv("LEASE_CANCEL_WINDOW_SECONDS", "120"))
    # Activations still holding a received code after this long are confirmed automatically
    SMS_ACTIVATION_TTL_SECONDS = int(os.getenv("SMS_ACTIVATION_TTL_SECONDS", "1200"))
    ENABLE_LEASE_MONITOR = os.getenv("ENABLE_LEASE_MONITOR", "true").lower() == "true"

    # Money
    CURRENCY_SYMBOL = "₽"
    MAX_BALANCE = Decimal(os.getenv("MAX_BALANCE", "9999999999.99"))
    PRICE_TOLERANCE = Decimal(os.getenv("PRICE_TOLERANCE", "1"))

    # Fulfillment
    CLAIM_MAX_ATTEMPTS = int(os.getenv("CLAIM_MAX_ATTEMPTS", "5"))
    DELIVERY_SEPARATOR = "\n\n---\n\n"
    ADMIN_DELIVERY_SEPARATOR = "\n---\n"

    # Promo codes
    WELCOME_PROMO_CODE = os.getenv("WELCOME_PROMO_CODE", "WELCOME10")
    WELCOME_PROMO_DISCOUNT_PERCENT = int(os.getenv("WELCOME_PROMO_DISCOUNT_PERCENT", "10"))

    @classmethod
    def validate(cls) -> list:
        """Return the names of missing provider settings, logging each one"""
        missing = []
        for key in (
            "BOT_TOKEN",
            "PX6_API_KEY",
            "TIGER_SMS_API_KEY",
            "PROFI_LIKE_API_KEY",
            "CRYPTOBOT_API_TOKEN",
            "ADMIN_API_TOKEN",
        ):
            if not getattr(cls, key):
                missing.append(key)
                logger.warning(f"⚠️ CONFIG: {key} not configured - dependent features disabled")
        return missing

    @staticmethod
    def log_environment_config():
        """Log a summary of the active configuration (no secrets)"""
        db_kind = Config.DATABASE_URL.split(":", 1)[0]
        logger.info(f"🔧 CONFIG: environment={Config.ENVIRONMENT} database={db_kind}")
        logger.info(
            f"🔧 CONFIG: lease poll every {Config.LEASE_POLL_INTERVAL_SECONDS}s, "
            f"boost poll every {Config.BOOST_POLL_INTERVAL_SECONDS}s, "
            f"provider timeout {Config.PROVIDER_TIMEOUT_SECONDS}s"
        )
