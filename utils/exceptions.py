"""
Exception taxonomy for the gift escrow core
Every error carries a stable code that callers can surface to users
"""

from typing import Any, Dict, Optional


class GiftEscrowError(Exception):
    """Base error with a stable, user-visible code"""

    code = "GIFT_ESCROW_ERROR"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "code": self.code, "error": self.message}


class ConfigurationError(GiftEscrowError):
    """Missing or invalid secret or endpoint; fatal at startup"""

    code = "CONFIGURATION_ERROR"


class DecryptionError(GiftEscrowError):
    """Escrow secret cannot be decrypted; fatal for that escrow"""

    code = "DECRYPTION_ERROR"


class NotFoundError(GiftEscrowError):
    """Unknown bundle, gift, swap or asset"""

    code = "NOT_FOUND"


class ValidationError(GiftEscrowError):
    """Caller supplied an invalid request"""

    code = "VALIDATION_ERROR"


class InsufficientFundsError(GiftEscrowError):
    """Escrow is empty or below the fee reserve at refund time"""

    code = "INSUFFICIENT_FUNDS"

    def __init__(self, message: str, terminal_status: str, details: Optional[Dict[str, Any]] = None):
        self.terminal_status = terminal_status
        super().__init__(message, details)


class ExternalServiceError(GiftEscrowError):
    """Aggregator, ledger or oracle failure"""

    code = "EXTERNAL_SERVICE_ERROR"
    retryable = True

    def __init__(self, message: str, service: str = "unknown", details: Optional[Dict[str, Any]] = None):
        self.service = service
        super().__init__(message, details)


class PriceUnavailableError(ExternalServiceError):
    """Price oracle returned no usable USD price"""

    code = "PRICE_UNAVAILABLE"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, service="price_oracle", details=details)


class IdempotencyConflict(GiftEscrowError):
    """Operation already applied under the same idempotency key"""

    code = "IDEMPOTENCY_CONFLICT"


class InvalidStateTransition(GiftEscrowError):
    """Status change refused because the record is no longer in the expected state"""

    code = "INVALID_STATE_TRANSITION"


class GiftLockedError(GiftEscrowError):
    """Gift is temporarily locked after repeated failed claim attempts"""

    code = "GIFT_LOCKED"
