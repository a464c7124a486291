"""Billing error taxonomy.

Every error carries a stable ``kind`` (returned to API callers) and the HTTP
status the API layer renders it with. ``retryable`` tells the webhook pipeline
and the reconciliation fetcher whether another attempt could succeed.
"""

from fastapi import status


class BillingError(Exception):
    """Base class for all billing engine errors."""

    kind: str = "billing_error"
    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "message": self.message}


class ValidationError(BillingError):
    """Bad input. Never retried."""

    kind = "validation_error"
    http_status = status.HTTP_400_BAD_REQUEST


class NotFoundError(BillingError):
    """A referenced local or external entity does not exist."""

    kind = "not_found"
    http_status = status.HTTP_404_NOT_FOUND


class ConflictError(BillingError):
    """Optimistic-concurrency loss. The caller re-reads and retries."""

    kind = "conflict"
    http_status = status.HTTP_409_CONFLICT
    retryable = True


class TransientUpstreamError(BillingError):
    """Network failure or timeout talking to the processor or the database."""

    kind = "transient_upstream_error"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True


class UpstreamUnavailable(BillingError):
    """Retries against an upstream were exhausted."""

    kind = "upstream_unavailable"
    http_status = status.HTTP_503_SERVICE_UNAVAILABLE


class InvalidTransitionError(BillingError):
    """The lifecycle state machine rejected a status change."""

    kind = "invalid_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, from_status: str, to_status: str, message: str | None = None) -> None:
        super().__init__(message or f"Cannot transition subscription from {from_status} to {to_status}")
        self.from_status = from_status
        self.to_status = to_status


class SignatureVerificationError(BillingError):
    """Inbound webhook failed authenticity checks."""

    kind = "invalid_signature"
    http_status = status.HTTP_400_BAD_REQUEST


class GatewayError(BillingError):
    """The processor rejected a request for a reason retrying will not fix."""

    kind = "gateway_error"
    http_status = status.HTTP_502_BAD_GATEWAY


# Ledger exhaustion is a normal business outcome, returned rather than raised.
INSUFFICIENT_PRIVILEGE = "insufficient_privilege"
