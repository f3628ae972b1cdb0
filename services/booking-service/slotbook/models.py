from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Time,
)

from shared.database import Base

from .enums import BookingStatus, PaymentStatus, RefundStatus

MONEY = Numeric(12, 2)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimeSlot(Base):
    __tablename__ = "time_slots"

    id = Column(Integer, primary_key=True)
    slot_id = Column(String, unique=True, nullable=False, index=True)

    date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    slot_type = Column(String, nullable=False)  # workshop/space
    item_id = Column(String, nullable=True, index=True)

    max_capacity = Column(Integer, nullable=False)
    current_bookings = Column(Integer, nullable=False, default=0)
    is_available = Column(Boolean, nullable=False, default=True)
    price = Column(MONEY, nullable=True)  # overrides the item price when set

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("max_capacity > 0", name="ck_time_slots_capacity_positive"),
        CheckConstraint(
            "current_bookings >= 0 AND current_bookings <= max_capacity",
            name="ck_time_slots_bookings_within_capacity",
        ),
    )


class Booking(Base):
    __tablename__ = "bookings"

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    user_id = Column(String, nullable=False, index=True)
    slot_id = Column(String, ForeignKey("time_slots.slot_id"), nullable=False, index=True)
    item_id = Column(String, nullable=True)
    booking_type = Column(String, nullable=False)

    status = Column(String, nullable=False, index=True, default=BookingStatus.PENDING.value)
    total_amount = Column(MONEY, nullable=False)
    # current live payment; older attempts stay in the payments table
    payment_id = Column(String, nullable=True, index=True)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancellation_reason = Column(String, nullable=True)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True)
    payment_id = Column(String, unique=True, nullable=False, index=True)  # idempotency key
    booking_id = Column(String, ForeignKey("bookings.booking_id"), nullable=False, index=True)

    method = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True, default=PaymentStatus.PENDING.value)
    amount = Column(MONEY, nullable=False)
    currency = Column(String, nullable=False)

    # completed refunds plus in-flight holds
    refunded_amount = Column(MONEY, nullable=False, default=0)

    paid_at = Column(DateTime(timezone=True), nullable=True)
    transaction_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    receipt_url = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "refunded_amount >= 0 AND refunded_amount <= amount",
            name="ck_payments_refunds_within_amount",
        ),
    )


class Refund(Base):
    __tablename__ = "refunds"

    id = Column(Integer, primary_key=True)
    refund_id = Column(String, unique=True, nullable=False, index=True)  # idempotency key
    payment_id = Column(String, ForeignKey("payments.payment_id"), nullable=False, index=True)

    refund_amount = Column(MONEY, nullable=False)
    reason = Column(String, nullable=False)
    status = Column(String, nullable=False, index=True, default=RefundStatus.PENDING.value)

    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_transaction_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
