"""
Error taxonomy of the booking core.

Every core operation either returns its value or raises one of these. The
HTTP layer maps them to `{"code", "message"}` responses using `status_code`.
"""


class BookingCoreError(Exception):
    status_code = 500
    code = "BOOKING_CORE_ERROR"
    retryable = False

    def __init__(self, message: str | None = None, *, code: str | None = None):
        self.message = message or self.__class__.__doc__ or self.code
        if code:
            self.code = code
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"code": self.code, "message": self.message}


# -------- validation --------

class ValidationError(BookingCoreError):
    """Invalid input."""
    status_code = 400
    code = "VALIDATION_ERROR"


class InvalidAmount(ValidationError):
    """Amount is out of range."""
    code = "INVALID_AMOUNT"


class InvalidReason(ValidationError):
    """Reason is missing or too long."""
    code = "INVALID_REASON"


# -------- not found --------

class NotFoundError(BookingCoreError):
    status_code = 404
    code = "NOT_FOUND"


class SlotNotFound(NotFoundError):
    """Time slot not found."""
    code = "SLOT_NOT_FOUND"


class BookingNotFound(NotFoundError):
    """Booking not found."""
    code = "BOOKING_NOT_FOUND"


class PaymentNotFound(NotFoundError):
    """Payment not found."""
    code = "PAYMENT_NOT_FOUND"


class RefundNotFound(NotFoundError):
    """Refund not found."""
    code = "REFUND_NOT_FOUND"


# -------- business rule conflicts --------

class ConflictError(BookingCoreError):
    status_code = 409
    code = "CONFLICT"


class SlotFull(ConflictError):
    """Time slot is fully booked or unavailable."""
    code = "SLOT_FULL"


class BookingClosed(ConflictError):
    """Time slot no longer accepts bookings."""
    code = "BOOKING_CLOSED"


class CapacityBelowBookings(ConflictError):
    """Capacity cannot drop below the current number of bookings."""
    code = "CAPACITY_BELOW_BOOKINGS"


class SlotInUse(ConflictError):
    """Time slot still has active bookings."""
    code = "SLOT_IN_USE"


class NotCancellable(ConflictError):
    """Booking is not active and cannot be cancelled."""
    code = "NOT_CANCELLABLE"


class InvalidStatusTransition(ConflictError):
    """Booking status change is not allowed."""
    code = "INVALID_STATUS_TRANSITION"


class NotFailed(ConflictError):
    """Only failed payments can be retried."""
    code = "RETRY_NOT_ALLOWED"


class PaymentNotCancellable(ConflictError):
    """Only pending payments can be cancelled."""
    code = "CANCEL_NOT_ALLOWED"


class PaymentAlreadyExists(ConflictError):
    """Booking already has a live payment under another id."""
    code = "PAYMENT_ALREADY_EXISTS"


class NotRefundable(ConflictError):
    """Payment cannot be refunded."""
    code = "REFUND_NOT_ALLOWED"


class AmountExceeded(ConflictError):
    """Refund total would exceed the payment amount."""
    code = "REFUND_AMOUNT_EXCEEDED"


# -------- transient --------

class TransientError(BookingCoreError):
    status_code = 503
    code = "TRANSIENT_ERROR"
    retryable = True


class TransactionConflict(TransientError):
    """Store transaction kept conflicting; try again."""
    code = "TRANSACTION_CONFLICT"


class GatewayUnavailable(TransientError):
    """Payment gateway is unreachable."""
    code = "GATEWAY_UNAVAILABLE"


class PaymentTimeout(TransientError):
    """Payment gateway timed out; the outcome is unknown."""
    status_code = 504
    code = "PAYMENT_TIMEOUT"


# -------- gateway --------

class GatewayError(BookingCoreError):
    """Payment gateway rejected the request."""
    status_code = 502
    code = "GATEWAY_ERROR"

    def __init__(self, message: str | None = None, *, code: str | None = None, http_status: int | None = None):
        super().__init__(message, code=code)
        self.http_status = http_status
