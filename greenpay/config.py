"""Configuration for the GreenPay wallet service"""

import os
import logging
from decimal import Decimal

from dotenv import load_dotenv

# .env file se settings uthayega
load_dotenv()

logger = logging.getLogger(__name__)


class Config:
    """Application configuration"""

    # Database
    DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./greenpay.db")
    DB_ECHO = os.getenv("DB_ECHO", "false").lower() == "true"
    DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", 5))

    # Redis (per-account locks)
    REDIS_HOST = os.getenv("REDIS_HOST", "localhost")
    REDIS_PORT = int(os.getenv("REDIS_PORT", 6379))
    REDIS_DB = int(os.getenv("REDIS_DB", 0))
    REDIS_PASSWORD = os.getenv("REDIS_PASSWORD") or None
    ACCOUNT_LOCK_TIMEOUT = float(os.getenv("ACCOUNT_LOCK_TIMEOUT", 10))   # seconds a lock may be held
    ACCOUNT_LOCK_WAIT = float(os.getenv("ACCOUNT_LOCK_WAIT", 5))          # seconds to wait for a lock

    # --- FEES ---
    EXCHANGE_FEE_RATE = Decimal(os.getenv("EXCHANGE_FEE_RATE", "0.015"))  # 1.5% of source amount
    CARD_PRICE_USD = Decimal(os.getenv("CARD_PRICE_USD", "60.00"))

    # Exchange rates
    EXCHANGERATE_API_KEY = os.getenv("EXCHANGERATE_API_KEY")

    # PayHero (M-Pesa STK push)
    PAYHERO_USERNAME = os.getenv("PAYHERO_USERNAME")
    PAYHERO_PASSWORD = os.getenv("PAYHERO_PASSWORD")
    PAYHERO_CHANNEL_ID = int(os.getenv("PAYHERO_CHANNEL_ID", 3407))
    PAYHERO_CALLBACK_URL = os.getenv("PAYHERO_CALLBACK_URL")

    # Paystack (KES key preferred over the general key)
    PAYSTACK_SECRET_KEY = os.getenv("PAYSTACK_SECRET_KEY_KES") or os.getenv("PAYSTACK_SECRET_KEY")
    PAYSTACK_CALLBACK_URL = os.getenv("PAYSTACK_CALLBACK_URL")

    GATEWAY_TIMEOUT_SECONDS = int(os.getenv("GATEWAY_TIMEOUT_SECONDS", 20))

    # Admin back-office
    ADMIN_API_KEY = os.getenv("ADMIN_API_KEY")

    @staticmethod
    def log_configuration():
        """Log which integrations are configured, never the secrets themselves."""
        logger.info(f"Database: {Config.DATABASE_URL.split('://')[0]}")
        logger.info(f"Redis: {Config.REDIS_HOST}:{Config.REDIS_PORT}")
        if not Config.EXCHANGERATE_API_KEY:
            logger.warning("Exchange rate API key not configured - using fallback rates")
        if not (Config.PAYHERO_USERNAME and Config.PAYHERO_PASSWORD):
            logger.warning("PayHero credentials not configured - card payments unavailable")
        if not Config.PAYSTACK_SECRET_KEY:
            logger.warning("Paystack secret key not provided - deposits unavailable")
        if not Config.ADMIN_API_KEY:
            logger.warning("ADMIN_API_KEY not set - admin endpoints will reject all requests")
