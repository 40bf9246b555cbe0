"""
Error taxonomy for the shipment lifecycle engine.

Every error carries:
- error_code (stable, for clients and admin triage)
- user_message (safe to show to customers)
- http_status (for API responses)

Expected outcomes (VersionConflict, InsufficientFunds) are logged at info
level by callers, never as errors.
"""
from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base exception for all lifecycle engine errors."""

    error_code = "lifecycle_error"
    http_status = 500
    default_user_message = "Something went wrong. Please try again."
    # Customers see the specific reason only for user-actionable errors.
    customer_visible = False

    def __init__(
        self,
        message: str,
        user_message: Optional[str] = None,
        **context: Any,
    ):
        super().__init__(message)
        self.message = message
        self.user_message = user_message or self.default_user_message
        self.context = context

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        """
        Convert to an API error envelope.

        Args:
            detailed: Include the taxonomy code and internal message (staff callers)
        """
        body: Dict[str, Any] = {
            "success": False,
            "error": self.user_message if not self.customer_visible else self.message,
        }
        if detailed or self.customer_visible:
            body["code"] = self.error_code
        if detailed:
            body["detail"] = self.message
        return body


class NotFound(LifecycleError):
    error_code = "not_found"
    http_status = 404
    default_user_message = "Not found."
    customer_visible = True


class VersionConflict(LifecycleError):
    """The record changed since the caller read it. Reload and retry."""

    error_code = "version_conflict"
    http_status = 409
    default_user_message = "This shipment was updated by someone else. Refresh and try again."
    customer_visible = True

    def __init__(self, shipment_id: Any, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Shipment {shipment_id} is not at version {expected_version}"
            + (f" (found {actual_version})" if actual_version is not None else ""),
            shipment_id=str(shipment_id),
            expected_version=expected_version,
            actual_version=actual_version,
        )
        self.shipment_id = shipment_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InvalidTransition(LifecycleError):
    """Edge not present in the transition graph. Not retryable."""

    error_code = "invalid_transition"
    http_status = 400
    default_user_message = "This action is not allowed for the shipment's current status."
    customer_visible = True

    def __init__(self, from_status: str, to_status: str):
        super().__init__(
            f"Transition {from_status} -> {to_status} is not allowed",
            from_status=from_status,
            to_status=to_status,
        )
        self.from_status = from_status
        self.to_status = to_status


class Unauthorized(LifecycleError):
    error_code = "unauthorized"
    http_status = 401
    default_user_message = "Unauthorized"

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        return {"success": False, "error": self.default_user_message}


class Forbidden(LifecycleError):
    error_code = "forbidden"
    http_status = 403
    default_user_message = "Forbidden"

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message)

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        # Never say which role was missing.
        return {"success": False, "error": self.default_user_message}


class InsufficientFunds(LifecycleError):
    error_code = "insufficient_funds"
    http_status = 402
    customer_visible = True

    def __init__(self, required: Any, available: Any):
        super().__init__(
            f"Insufficient wallet balance: required {required}, available {available}",
            required=str(required),
            available=str(available),
        )
        self.required = required
        self.available = available


class ValidationError(LifecycleError):
    error_code = "validation_error"
    http_status = 422
    default_user_message = "Invalid request."
    customer_visible = True


class UpstreamFailure(LifecycleError):
    """A storage, notification, payment or carrier collaborator failed."""

    error_code = "upstream_failure"
    http_status = 502
    default_user_message = "Booking failed, please retry."

    def __init__(self, service: str, message: str, **context: Any):
        super().__init__(f"{service}: {message}", service=service, **context)
        self.service = service


class RateLimited(LifecycleError):
    error_code = "rate_limited"
    http_status = 429
    default_user_message = "Too many requests. Please wait before trying again."
    customer_visible = True

    def __init__(self, action: str, retry_after_seconds: int):
        super().__init__(
            f"Rate limit exceeded for {action}",
            user_message=self.default_user_message,
            action=action,
            retry_after_seconds=retry_after_seconds,
        )
        self.action = action
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self, detailed: bool = False) -> Dict[str, Any]:
        body = super().to_dict(detailed)
        body["error"] = self.user_message
        body["retry_after"] = self.retry_after_seconds
        return body
