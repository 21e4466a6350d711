from __future__ import annotations


class PortalError(Exception):
    """Base class for every error surfaced by the coordination engine.

    ``code`` is the stable, machine-readable kind; the message is for logs.
    """

    code = "portal_error"


class ValidationError(PortalError):
    code = "invalid_request"


class NotFoundError(ValidationError):
    code = "not_found"


class ConflictError(PortalError):
    code = "conflict"


class InvalidTransitionError(PortalError):
    code = "invalid_transition"

    def __init__(self, from_status: str, to_status: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"no transition from {from_status!r} to {to_status!r}")


class ForbiddenError(PortalError):
    code = "forbidden"


class FetchError(PortalError):
    code = "fetch_failed"


class SubscriptionError(FetchError):
    code = "subscription_failed"

    def __init__(self, message: str, *, attempts: int) -> None:
        self.attempts = attempts
        super().__init__(message)


class PartialEnrichmentFailure(PortalError):
    """Recorded (never raised) when one contact's preview could not be loaded."""

    code = "partial_enrichment"

    def __init__(self, contact_id: str, cause: BaseException) -> None:
        self.contact_id = contact_id
        self.cause = cause
        super().__init__(f"preview for {contact_id} unavailable: {cause}")


class TransportError(Exception):
    """Raised by persistence implementations when the store cannot be reached."""


class WriteRejected(Exception):
    """Raised by persistence implementations when the store refuses a write."""
