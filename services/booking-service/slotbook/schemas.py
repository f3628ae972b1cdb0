import datetime as dt
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    RefundStatus,
    REFUNDABLE_PAYMENT_STATUSES,
    SlotType,
)

MIN_SLOT_MINUTES = 30
MAX_SLOT_MINUTES = 8 * 60
MAX_DAYS_AHEAD = 180
MAX_BULK_DAYS = 90


def _today() -> dt.date:
    return datetime.now(timezone.utc).date()


def _minutes(t: dt.time) -> int:
    return t.hour * 60 + t.minute


def check_time_range(start_time: dt.time, end_time: dt.time):
    if _minutes(end_time) <= _minutes(start_time):
        raise ValueError("end_time must be after start_time")
    duration = _minutes(end_time) - _minutes(start_time)
    if duration < MIN_SLOT_MINUTES:
        raise ValueError(f"slot must be at least {MIN_SLOT_MINUTES} minutes")
    if duration > MAX_SLOT_MINUTES:
        raise ValueError(f"slot must be at most {MAX_SLOT_MINUTES // 60} hours")


def check_slot_date(d: dt.date):
    today = _today()
    if d < today:
        raise ValueError("date must not be in the past")
    if d > today + timedelta(days=MAX_DAYS_AHEAD):
        raise ValueError(f"date must be within {MAX_DAYS_AHEAD} days")


# -------- time slots --------

class TimeSlotCreate(BaseModel):
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    slot_type: SlotType
    item_id: Optional[str] = None
    max_capacity: int = Field(ge=1, le=100)
    is_available: bool = True
    price: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _validate(self):
        check_slot_date(self.date)
        check_time_range(self.start_time, self.end_time)
        if self.item_id is not None and not self.item_id.strip():
            raise ValueError("item_id must not be blank")
        return self


class BulkTimeSlotCreate(BaseModel):
    start_date: dt.date
    end_date: dt.date
    start_time: dt.time
    end_time: dt.time
    slot_duration_minutes: int = Field(ge=MIN_SLOT_MINUTES, le=MAX_SLOT_MINUTES)
    max_capacity: int = Field(ge=1, le=100)
    slot_type: SlotType
    item_id: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    exclude_weekdays: List[int] = Field(default_factory=list)  # 0 = Sunday

    @model_validator(mode="after")
    def _validate(self):
        if self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        if self.start_date < _today():
            raise ValueError("start_date must not be in the past")
        if (self.end_date - self.start_date).days > MAX_BULK_DAYS:
            raise ValueError(f"bulk creation covers at most {MAX_BULK_DAYS} days")
        if any(d < 0 or d > 6 for d in self.exclude_weekdays):
            raise ValueError("exclude_weekdays must be in 0..6")
        check_time_range(self.start_time, self.end_time)
        return self


class TimeSlotUpdate(BaseModel):
    date: Optional[dt.date] = None
    start_time: Optional[dt.time] = None
    end_time: Optional[dt.time] = None
    item_id: Optional[str] = None
    max_capacity: Optional[int] = Field(default=None, ge=1, le=100)
    is_available: Optional[bool] = None
    price: Optional[Decimal] = Field(default=None, ge=0)


class TimeSlotOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    slot_id: str
    date: dt.date
    start_time: dt.time
    end_time: dt.time
    slot_type: SlotType
    item_id: Optional[str] = None
    max_capacity: int
    current_bookings: int
    is_available: bool
    price: Optional[Decimal] = None
    created_at: datetime

    @property
    def remaining_capacity(self) -> int:
        return self.max_capacity - self.current_bookings

    @property
    def has_available_capacity(self) -> bool:
        return self.is_available and self.current_bookings < self.max_capacity


class WithdrawRequest(BaseModel):
    reason: str


# -------- payments and refunds --------

class RefundInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    refund_id: str
    payment_id: Optional[str] = None
    refund_amount: Decimal
    reason: str
    status: RefundStatus = RefundStatus.COMPLETED
    refunded_at: Optional[datetime] = None
    refund_transaction_id: Optional[str] = None


class PaymentInfo(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payment_id: str
    booking_id: Optional[str] = None
    method: PaymentMethod
    status: PaymentStatus
    amount: Decimal
    currency: str
    refunded_amount: Decimal = Decimal("0")
    paid_at: Optional[datetime] = None
    transaction_id: Optional[str] = None
    failure_reason: Optional[str] = None
    receipt_url: Optional[str] = None
    refunds: List[RefundInfo] = Field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_successful(self) -> bool:
        return self.status == PaymentStatus.COMPLETED

    @property
    def can_refund(self) -> bool:
        return self.status in REFUNDABLE_PAYMENT_STATUSES and self.refunded_amount < self.amount


class ProcessPaymentRequest(BaseModel):
    booking_id: str
    amount: Decimal
    method: PaymentMethod
    currency: Optional[str] = None
    metadata: Optional[dict] = None
    payment_id: Optional[str] = None


class RefundRequest(BaseModel):
    payment_id: str
    refund_amount: Decimal
    reason: str
    refund_id: Optional[str] = None


class AutomaticRefundRequest(BaseModel):
    booking_id: str
    cancellation_reason: str
    slot_start_time: Optional[datetime] = None


class BatchRefundRequest(BaseModel):
    booking_ids: List[str]
    reason: str
    is_full_refund: bool = True


class BatchRefundFailure(BaseModel):
    booking_id: str
    error_code: str
    message: str


class BatchRefundResult(BaseModel):
    succeeded: List[RefundInfo] = Field(default_factory=list)
    failed: List[BatchRefundFailure] = Field(default_factory=list)

    @property
    def failed_booking_ids(self) -> List[str]:
        return [f.booking_id for f in self.failed]


class RefundOutcome(BaseModel):
    booking_id: str
    refund: Optional[RefundInfo] = None
    refund_amount: Decimal = Decimal("0")
    policy_text: Optional[str] = None
    detail: str


class RefundQuote(BaseModel):
    booking_id: str
    slot_start_time: datetime
    hours_until_start: int
    refund_rate: Decimal
    refund_amount: Decimal
    policy_text: str
    eligible: bool


class PaymentStatistics(BaseModel):
    start: datetime
    end: datetime
    total_revenue: Decimal = Decimal("0")
    total_transactions: int = 0
    successful_transactions: int = 0
    failed_transactions: int = 0
    refunded_transactions: int = 0
    total_refunds: Decimal = Decimal("0")
    by_method: dict = Field(default_factory=dict)
    daily_revenue: dict = Field(default_factory=dict)


# -------- bookings --------

class CreateBookingRequest(BaseModel):
    user_id: str = Field(min_length=1)
    time_slot_id: str = Field(min_length=1)
    total_amount: Decimal = Field(ge=0, decimal_places=2)
    booking_type: Optional[SlotType] = None
    status: Literal["pending", "confirmed"] = "pending"
    notes: Optional[str] = Field(default=None, max_length=500)


class BookingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    booking_id: str
    user_id: str
    slot_id: str
    item_id: Optional[str] = None
    booking_type: SlotType
    status: BookingStatus
    total_amount: Decimal
    payment_id: Optional[str] = None
    payment_info: Optional[PaymentInfo] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None

    @property
    def title(self) -> str:
        return f"Booking #{self.booking_id}"


class CancelBookingRequest(BaseModel):
    reason: str


class BookingStatusUpdate(BaseModel):
    status: BookingStatus


class CancellationResult(BaseModel):
    booking: BookingOut
    refund: Optional[RefundOutcome] = None
    refund_error: Optional[dict] = None
