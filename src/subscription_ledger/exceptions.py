from typing import Any


class LedgerError(Exception):
    """Base class for every error raised by the ledger."""

    code = "LEDGER_ERROR"

    def __init__(self, message: str = "", details: dict[str, Any] | None = None):
        self.message = message or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "message": self.message, "details": self.details}


class DatabaseError(LedgerError):
    code = "DATABASE_ERROR"


class NotFoundError(LedgerError):
    code = "NOT_FOUND"


class UnknownProviderError(NotFoundError):
    code = "UNKNOWN_PROVIDER"


class ConflictError(LedgerError):
    code = "CONFLICT"


class AlreadyCancelledError(ConflictError):
    """Cancel of a subscription that is already cancelled. Carries the subscription as stored."""

    code = "ALREADY_CANCELLED"

    def __init__(self, subscription):
        super().__init__(
            f"Subscription {subscription.id} is already cancelled",
            {"subscription_id": str(subscription.id)},
        )
        self.subscription = subscription


class InvalidTransitionError(LedgerError):
    code = "INVALID_TRANSITION"


class InvalidSignatureError(LedgerError):
    code = "INVALID_SIGNATURE"


class TransientProviderError(LedgerError):
    code = "PROVIDER_UNAVAILABLE"


class InvariantViolationError(LedgerError):
    code = "INVARIANT_VIOLATION"


class ProviderError(LedgerError):
    """The provider rejected a request (bad parameters, auth). Not retried."""

    code = "PROVIDER_ERROR"


class InvalidPayloadError(LedgerError):
    """Signed webhook body that cannot be parsed into an event."""

    code = "INVALID_PAYLOAD"
