"""Error taxonomy shared by the gating engine, orchestrator and HTTP layer.

Every error carries a stable `code`, the HTTP status it maps to and whether the
caller may retry. `PreconditionFailed` and `Forbidden` additionally carry the
gating sub-reason (and the unmet conditions, where there are several).
"""

from typing import Any


class LifecycleError(Exception):
    """Base class for errors surfaced to callers."""

    code = "internal_error"
    http_status = 500
    retryable = False

    def __init__(self, message: str = "", *, reason: str | None = None, unmet: tuple[str, ...] = ()) -> None:
        super().__init__(message or self.code)
        self.message = message or self.code
        self.reason = reason
        self.unmet = tuple(unmet)

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.reason:
            body["reason"] = self.reason
        if self.unmet:
            body["unmet"] = list(self.unmet)
        return body


class Unauthenticated(LifecycleError):
    code = "unauthenticated"
    http_status = 401


class Forbidden(LifecycleError):
    code = "forbidden"
    http_status = 403


class NotFound(LifecycleError):
    code = "not_found"
    http_status = 404


class InvalidInput(LifecycleError):
    code = "invalid_input"
    http_status = 422


class InvalidAmount(InvalidInput):
    """Amount below the provider's minimum chargeable unit."""

    def __init__(self, message: str = "amount below minimum chargeable unit") -> None:
        super().__init__(message, reason="InvalidAmount")


class PreconditionFailed(LifecycleError):
    code = "precondition_failed"
    http_status = 412


class Conflict(LifecycleError):
    """Lost a concurrent race; re-fetch and retry."""

    code = "conflict"
    http_status = 409
    retryable = True


class PaymentProviderError(LifecycleError):
    """Transient provider failure or timeout; resource state is unchanged."""

    code = "payment_provider_error"
    http_status = 503
    retryable = True


class CollaboratorUnavailable(LifecycleError):
    """Photo store or another dependency timed out; nothing was written."""

    code = "collaborator_unavailable"
    http_status = 503
    retryable = True


class PaymentInvariantViolation(LifecycleError):
    """Payment data-integrity error. Never expected; alerts out of band."""

    code = "internal_error"
    http_status = 500

    def to_body(self) -> dict[str, Any]:
        return {"error": self.code, "retryable": False}


class NoAuthorization(PaymentInvariantViolation):
    """Capture requested on a resource that holds no authorization."""

    def __init__(self, message: str = "capture requires an authorized payment") -> None:
        super().__init__(message, reason="NoAuthorization")
