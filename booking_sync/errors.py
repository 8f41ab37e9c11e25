"""
Scheduling error taxonomy

Every failure the booking layer surfaces to a caller is one of these classes.
Each carries a stable ``code``, the HTTP status the API answers with, and a
``retryable`` flag so clients can tell "try again" from "this booking cannot
proceed".
"""

from typing import Optional


class SchedulingError(Exception):
    """Base class for all booking/scheduling failures"""

    code = "scheduling_error"
    status_code = 400
    retryable = False

    def __init__(self, message: Optional[str] = None, **details):
        self.message = message or self.__class__.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        body = {"code": self.code, "message": self.message, "retryable": self.retryable}
        if self.details:
            body["details"] = self.details
        return body


class ProviderUnavailable(SchedulingError):
    """Scheduling provider is temporarily unavailable"""

    code = "provider_unavailable"
    status_code = 503
    retryable = True


class ProviderAuthError(SchedulingError):
    """Scheduling provider rejected our credentials"""

    code = "provider_auth_error"
    status_code = 502


class ProviderRequestRejected(SchedulingError):
    """Scheduling provider rejected the request"""

    code = "provider_request_rejected"
    status_code = 502


class InvalidDateRange(SchedulingError):
    """Requested date range is not valid"""

    code = "invalid_date_range"


class MappingNotFound(SchedulingError):
    """Session type is not linked to a provider event type"""

    code = "mapping_not_found"
    status_code = 409


class SessionTypeNotFound(SchedulingError):
    """Session type not found"""

    code = "session_type_not_found"
    status_code = 404


class SessionTypeInactive(SchedulingError):
    """Session type is not currently bookable"""

    code = "session_type_inactive"
    status_code = 409


class AuthenticationRequired(SchedulingError):
    """Authentication required for this session"""

    code = "authentication_required"
    status_code = 401


class SlotNoLongerAvailable(SchedulingError):
    """Selected time slot is no longer available"""

    code = "slot_no_longer_available"
    status_code = 409
    retryable = True


class SlotConflict(SchedulingError):
    """Selected time slot was just booked by someone else"""

    code = "slot_conflict"
    status_code = 409
    retryable = True


class PaymentInitiationFailed(SchedulingError):
    """Payment could not be started; the booking was canceled"""

    code = "payment_initiation_failed"
    status_code = 402


class SignatureInvalid(SchedulingError):
    """Webhook signature verification failed"""

    code = "signature_invalid"
    status_code = 401


class InvalidWebhookPayload(SchedulingError):
    """Webhook payload could not be parsed"""

    code = "invalid_webhook_payload"


class InvalidTransition(SchedulingError):
    """Booking cannot move to the requested state"""

    code = "invalid_transition"
    status_code = 409


class BookingNotFound(SchedulingError):
    """Booking not found"""

    code = "booking_not_found"
    status_code = 404


class CallbackNotConfigured(SchedulingError):
    """No webhook callback URL is configured"""

    code = "callback_not_configured"
    status_code = 409
