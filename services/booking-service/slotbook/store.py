"""
Transactional access to time slots.

The capacity counter is only ever changed by a conditional UPDATE whose WHERE
clause carries the capacity check, so two writers racing for the last seat
are serialized by the row itself: one UPDATE matches, the other matches zero
rows. Callers always run these helpers as the first write of a transaction.
"""
import logging
from datetime import datetime
from zoneinfo import ZoneInfo

from sqlalchemy import case, select, update

from shared.database import TransactionConflict as StoreConflict
from shared.database import run_in_transaction

from . import config, errors
from .models import Booking, Payment, Refund, TimeSlot
from .schemas import BookingOut, PaymentInfo, RefundInfo

logger = logging.getLogger(__name__)


class SlotStore:
    def __init__(self, session_factory, max_attempts: int = config.TX_MAX_ATTEMPTS):
        self.session_factory = session_factory
        self.max_attempts = max_attempts

    async def transaction(self, fn):
        """
        Run `fn(session)` as one all-or-nothing unit of work.

        Write conflicts re-run `fn` from scratch; once the attempts are used
        up the caller gets errors.TransactionConflict.
        """
        try:
            return await run_in_transaction(self.session_factory, fn, max_attempts=self.max_attempts)
        except StoreConflict as e:
            logger.warning("store transaction abandoned: %s", e)
            raise errors.TransactionConflict() from e

    async def read(self, fn):
        async with self.session_factory() as session:
            return await fn(session)


async def get_slot(session, slot_id: str) -> TimeSlot:
    res = await session.execute(select(TimeSlot).where(TimeSlot.slot_id == slot_id))
    slot = res.scalar_one_or_none()
    if not slot:
        raise errors.SlotNotFound(f"Time slot not found: {slot_id}")
    return slot


async def reserve_seat(session, slot_id: str) -> TimeSlot:
    """Take one seat on the slot or raise SlotNotFound / SlotFull."""
    res = await session.execute(
        update(TimeSlot)
        .where(
            TimeSlot.slot_id == slot_id,
            TimeSlot.is_available.is_(True),
            TimeSlot.current_bookings < TimeSlot.max_capacity,
        )
        .values(current_bookings=TimeSlot.current_bookings + 1)
        .execution_options(synchronize_session=False)
    )
    slot = await get_slot(session, slot_id)
    if res.rowcount == 0:
        if not slot.is_available:
            raise errors.SlotFull(f"Time slot is not available: {slot_id}")
        raise errors.SlotFull(f"Time slot is fully booked: {slot_id}")
    await session.refresh(slot)
    return slot


async def release_seat(session, slot_id: str) -> TimeSlot | None:
    """Give back one seat, clamped to [0, max_capacity]. Missing slots are ignored."""
    cb = TimeSlot.current_bookings
    await session.execute(
        update(TimeSlot)
        .where(TimeSlot.slot_id == slot_id)
        .values(
            current_bookings=case(
                (cb - 1 > TimeSlot.max_capacity, TimeSlot.max_capacity),
                (cb > 0, cb - 1),
                else_=0,
            )
        )
        .execution_options(synchronize_session=False)
    )
    res = await session.execute(select(TimeSlot).where(TimeSlot.slot_id == slot_id))
    slot = res.scalar_one_or_none()
    if slot is None:
        logger.warning("release for missing time slot %s", slot_id)
        return None
    await session.refresh(slot)
    return slot


def slot_starts_at(slot: TimeSlot) -> datetime:
    return datetime.combine(slot.date, slot.start_time, tzinfo=ZoneInfo(config.SLOT_TIMEZONE))


async def payment_info(session, payment: Payment) -> PaymentInfo:
    res = await session.execute(
        select(Refund).where(Refund.payment_id == payment.payment_id).order_by(Refund.id)
    )
    info = PaymentInfo.model_validate(payment)
    info.refunds = [RefundInfo.model_validate(r) for r in res.scalars().all()]
    return info


async def booking_out(session, booking: Booking) -> BookingOut:
    out = BookingOut.model_validate(booking)
    if booking.payment_id:
        res = await session.execute(select(Payment).where(Payment.payment_id == booking.payment_id))
        payment = res.scalar_one_or_none()
        if payment is not None:
            out.payment_info = await payment_info(session, payment)
    return out
