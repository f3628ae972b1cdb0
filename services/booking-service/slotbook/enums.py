from enum import Enum


class SlotType(str, Enum):
    WORKSHOP = "workshop"
    SPACE = "space"


class BookingStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    NO_SHOW = "noShow"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)

# cancellation is not listed here: it only happens through cancel_booking
BOOKING_TRANSITIONS = {
    BookingStatus.PENDING: {BookingStatus.CONFIRMED},
    BookingStatus.CONFIRMED: {BookingStatus.PENDING, BookingStatus.COMPLETED, BookingStatus.NO_SHOW},
    BookingStatus.CANCELLED: {BookingStatus.REFUNDED},
    BookingStatus.COMPLETED: set(),
    BookingStatus.REFUNDED: set(),
    BookingStatus.NO_SHOW: set(),
}


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    BANK_TRANSFER = "bank_transfer"
    KAKAO_PAY = "kakao_pay"
    NAVER_PAY = "naver_pay"
    PAYPAL = "paypal"
    UNKNOWN = "unknown"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partiallyRefunded"


REFUNDABLE_PAYMENT_STATUSES = (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED)


class RefundStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
