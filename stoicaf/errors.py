from __future__ import annotations
from typing import Any, Dict, List, Optional


class ServiceError(Exception):
    """Base for every error a handler reports to its caller.

    ``status`` is the HTTP status, ``code`` a stable machine-readable
    identifier the client can branch on, and ``message`` the text shown
    to the user.
    """
    status: int = 400
    code: str = "bad_request"
    default_message: str = "Bad request"

    def __init__(self, message: Optional[str] = None, *,
                 details: Optional[List[Dict[str, Any]]] = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "success": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            body["details"] = self.details
        return body


# ---- validation
class ValidationFailed(ServiceError):
    status = 400
    code = "validation_error"
    default_message = "Invalid request"


class InvalidTrack(ValidationFailed):
    code = "invalid_track"
    default_message = "Invalid track name"


# ---- auth
class Unauthorized(ServiceError):
    status = 401
    code = "unauthorized"
    default_message = "Authentication required"


class Forbidden(ServiceError):
    status = 403
    code = "forbidden"
    default_message = "Access denied"


class AdminRequired(Forbidden):
    code = "admin_required"
    default_message = "Admin access required"


class NotFound(ServiceError):
    status = 404
    code = "not_found"
    default_message = "Not found"


class EmailExists(ServiceError):
    status = 422
    code = "email_exists"
    default_message = (
        "Account already exists with this email address. "
        "Please try logging in instead."
    )


# ---- state conflicts
class StateConflict(ServiceError):
    status = 400
    code = "state_conflict"


class TrackNotPurchased(StateConflict):
    code = "track_not_purchased"
    default_message = "Track not purchased"


class TrackAlreadyPurchased(StateConflict):
    code = "track_already_purchased"
    default_message = "Track already purchased"


class TrackInProgress(StateConflict):
    code = "track_in_progress"
    default_message = "Track already in progress"


class NoActiveTrack(StateConflict):
    code = "no_active_track"
    default_message = "No active track"


class NotCurrentTrack(StateConflict):
    code = "not_current_track"
    default_message = "Not the current active track"


class DayMismatch(StateConflict):
    code = "day_mismatch"
    default_message = "Not the current day"


class DayAhead(StateConflict):
    code = "day_ahead"
    default_message = "Cannot write ahead of the current day"


class CodeNotFound(StateConflict):
    code = "code_not_found"
    default_message = "Invalid access code"


class CodeInactive(StateConflict):
    code = "code_inactive"
    default_message = "Access code has been deactivated"


class CodeExpired(StateConflict):
    code = "code_expired"
    default_message = "Access code has expired"


class CodeExhausted(StateConflict):
    code = "code_exhausted"
    default_message = "Access code usage limit reached"


class PaymentNotCompleted(StateConflict):
    code = "payment_not_completed"
    default_message = "Payment not completed"


class PaymentMismatch(StateConflict):
    code = "payment_mismatch"
    default_message = "Payment metadata mismatch"


class WriteConflict(ServiceError):
    status = 409
    code = "write_conflict"
    default_message = "Record was modified concurrently, please retry"


# ---- upstream
class ProviderError(ServiceError):
    status = 502
    code = "provider_error"
    default_message = "Upstream provider error"


class StorageError(ServiceError):
    status = 500
    code = "storage_error"
    default_message = "Storage operation failed"


class NotConfigured(ServiceError):
    status = 503
    code = "not_configured"
    default_message = "Service not configured"
