"""Domain errors raised by the ledger, withdrawal and batch services.

Every error carries a human-readable message plus an optional details dict.
The API layer maps each class to an HTTP status in ``main.py``.
"""
from typing import Any, Dict, Optional


class PayoutEngineError(Exception):
    """Base class for all engine errors."""

    status_code: int = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(PayoutEngineError):
    """Bad input. Rejected synchronously with no partial mutation."""

    status_code = 400


class NotFoundError(PayoutEngineError):
    """Referenced commission, withdrawal, batch or affiliate does not exist."""

    status_code = 404


class StateConflictError(PayoutEngineError):
    """Requested transition is not allowed from the entity's current status."""

    status_code = 409


class InsufficientBalanceError(PayoutEngineError):
    """Requested amount exceeds the affiliate's available balance."""

    status_code = 422

    def __init__(self, requested, available, details: Optional[Dict[str, Any]] = None):
        self.requested = requested
        self.available = available
        merged = {"requested_usd": str(requested), "available_usd": str(available)}
        merged.update(details or {})
        super().__init__(
            f"Insufficient balance. Requested ${requested} but only ${available} is available.",
            merged,
        )


class ProviderError(PayoutEngineError):
    """A payout provider rejected or failed a transfer.

    Adapters may raise this. The batch orchestrator records it on the
    batch item as FAILED and never lets it abort the batch.
    """

    status_code = 502

    def __init__(self, message: str, retryable: bool = True, details: Optional[Dict[str, Any]] = None):
        self.retryable = retryable
        super().__init__(message, details)
