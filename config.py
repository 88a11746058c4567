"""Configuration management for the gift escrow settlement core"""

import os
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from utils.exceptions import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)


def _decimal_env(name: str, default: str) -> Decimal:
    """Read a Decimal from the environment, falling back to default on bad input"""
    raw = os.getenv(name, default)
    try:
        return Decimal(raw)
    except Exception:
        logger.warning(f"⚠️ CONFIG_INVALID_DECIMAL: {name}={raw!r}, using default {default}")
        return Decimal(default)


class Config:
    """
    Application configuration

    Class attributes hold environment-derived defaults. Components never read the
    class directly: an instance is built once at startup (optionally with overrides)
    and passed to each service.
    """

    ENVIRONMENT = os.getenv("ENVIRONMENT", "development").lower().strip()
    IS_PRODUCTION = ENVIRONMENT == "production"

    # Storage
    DATABASE_URL = os.getenv("DATABASE_URL")

    # Escrow secret encryption (AES-256, scrypt-derived key)
    ESCROW_ENCRYPTION_KEY = os.getenv("ESCROW_ENCRYPTION_KEY")

    # Ledger and market data endpoints
    SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
    JUPITER_API_URL = os.getenv("JUPITER_API_URL", "https://lite-api.jup.ag/swap/v1")
    JUPITER_PRICE_URL = os.getenv("JUPITER_PRICE_URL", "https://lite-api.jup.ag/price/v3")
    HTTP_TIMEOUT_SECONDS = int(os.getenv("HTTP_TIMEOUT_SECONDS", "30"))
    PRICE_CACHE_TTL_SECONDS = int(os.getenv("PRICE_CACHE_TTL_SECONDS", "300"))

    # Gift lifecycle
    GIFT_EXPIRY_HOURS = int(os.getenv("GIFT_EXPIRY_HOURS", "24"))
    BUNDLE_GIFT_EXPIRY_HOURS = int(os.getenv("BUNDLE_GIFT_EXPIRY_HOURS", "48"))
    CLAIM_MAX_FAILED_ATTEMPTS = int(os.getenv("CLAIM_MAX_FAILED_ATTEMPTS", "3"))
    CLAIM_LOCK_MINUTES = int(os.getenv("CLAIM_LOCK_MINUTES", "60"))

    # Refund sweep
    REFUND_MAX_ATTEMPTS = int(os.getenv("REFUND_MAX_ATTEMPTS", "3"))
    REFUND_BATCH_SIZE = int(os.getenv("REFUND_BATCH_SIZE", "50"))
    REFUND_ITEM_DELAY_SECONDS = float(os.getenv("REFUND_ITEM_DELAY_SECONDS", "2"))
    REFUND_SWEEP_INTERVAL_HOURS = int(os.getenv("REFUND_SWEEP_INTERVAL_HOURS", "12"))
    REFUND_STARTUP_DELAY_SECONDS = int(os.getenv("REFUND_STARTUP_DELAY_SECONDS", "30"))

    # Swaps
    SWAP_SLIPPAGE_BPS = int(os.getenv("SWAP_SLIPPAGE_BPS", "300"))
    SWAP_FEE_BUFFER_NATIVE = _decimal_env("SWAP_FEE_BUFFER_NATIVE", "0.01")
    BALANCE_POLL_INTERVAL_SECONDS = float(os.getenv("BALANCE_POLL_INTERVAL_SECONDS", "30"))
    BALANCE_POLL_MAX_ATTEMPTS = int(os.getenv("BALANCE_POLL_MAX_ATTEMPTS", "20"))
    BALANCE_POLL_THRESHOLD = _decimal_env("BALANCE_POLL_THRESHOLD", "0.95")

    # Fees (USD unless noted)
    ONRAMP_FEE_RATE = _decimal_env("ONRAMP_FEE_RATE", "0.055")
    SWAP_SERVICE_FEE_RATE = _decimal_env("SWAP_SERVICE_FEE_RATE", "0.003")
    SERVICE_FEE_USD = _decimal_env("SERVICE_FEE_USD", "1.00")
    CARD_ADD_ON_FEE_USD = _decimal_env("CARD_ADD_ON_FEE_USD", "1.00")

    # Onramp credits
    CREDIT_AMOUNT_USD = _decimal_env("CREDIT_AMOUNT_USD", "5.0")
    CREDIT_FREE_SENDS = int(os.getenv("CREDIT_FREE_SENDS", "5"))
    CREDIT_FREE_FEE_WAIVERS = int(os.getenv("CREDIT_FREE_FEE_WAIVERS", "5"))
    CREDIT_TTL_DAYS = int(os.getenv("CREDIT_TTL_DAYS", "30"))

    MIN_ENCRYPTION_KEY_LENGTH = 32

    def __init__(self, **overrides: Any):
        for name, value in overrides.items():
            if not name.isupper() or not hasattr(type(self), name):
                raise ConfigurationError(f"Unknown configuration option: {name}")
            setattr(self, name, value)

    def as_dict(self) -> Dict[str, Any]:
        """Non-secret settings for startup logging"""
        hidden = {"DATABASE_URL", "ESCROW_ENCRYPTION_KEY"}
        return {
            name: getattr(self, name)
            for name in dir(self)
            if name.isupper() and name not in hidden
        }

    def validate(self) -> "Config":
        """Fail fast on settings without which the core cannot run"""
        missing = []
        if not self.DATABASE_URL:
            missing.append("DATABASE_URL")
        if not self.SOLANA_RPC_URL:
            missing.append("SOLANA_RPC_URL")
        if missing:
            logger.critical(f"🚨 CONFIG_MISSING: {', '.join(missing)}")
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")

        self.validate_encryption_key(self.ESCROW_ENCRYPTION_KEY)

        if self.REFUND_MAX_ATTEMPTS < 1:
            raise ConfigurationError("REFUND_MAX_ATTEMPTS must be at least 1")
        if not (Decimal("0") < self.BALANCE_POLL_THRESHOLD <= Decimal("1")):
            raise ConfigurationError("BALANCE_POLL_THRESHOLD must be within (0, 1]")

        logger.info(f"✅ CONFIG_VALIDATED: environment={self.ENVIRONMENT}")
        return self

    @classmethod
    def validate_encryption_key(cls, key: Optional[str]) -> str:
        """Escrow secrets are unrecoverable without this key, so refuse weak ones"""
        if not key:
            logger.critical("🚨 CONFIG_MISSING: ESCROW_ENCRYPTION_KEY")
            raise ConfigurationError("ESCROW_ENCRYPTION_KEY is required")
        if len(key) < cls.MIN_ENCRYPTION_KEY_LENGTH:
            logger.critical("🚨 CONFIG_WEAK_KEY: ESCROW_ENCRYPTION_KEY is too short")
            raise ConfigurationError(
                f"ESCROW_ENCRYPTION_KEY must be at least {cls.MIN_ENCRYPTION_KEY_LENGTH} characters"
            )
        return key
