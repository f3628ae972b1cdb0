"""
Booking Transaction Manager.

Creates and cancels bookings together with the slot capacity counter in one
store transaction, and owns time slot administration. Every write that
touches `current_bookings` goes through `store.reserve_seat` /
`store.release_seat`.
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import delete, exists, select, update

from . import config, errors, store
from .enums import ACTIVE_BOOKING_STATUSES, BOOKING_TRANSITIONS, BookingStatus
from .models import Booking, TimeSlot
from .schemas import (
    BookingOut,
    BulkTimeSlotCreate,
    CreateBookingRequest,
    TimeSlotCreate,
    TimeSlotOut,
    TimeSlotUpdate,
    check_slot_date,
    check_time_range,
)

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
ACTIVE = [s.value for s in ACTIVE_BOOKING_STATUSES]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def check_reason(reason: Optional[str]) -> str:
    if not reason or not reason.strip():
        raise errors.InvalidReason("Cancellation reason is required")
    if len(reason) > MAX_REASON_LENGTH:
        raise errors.InvalidReason(f"Reason must be at most {MAX_REASON_LENGTH} characters")
    return reason.strip()


def _weekday_sunday_first(d) -> int:
    # date.weekday() is Monday=0; slots use Sunday=0
    return (d.weekday() + 1) % 7


class BookingTransactionManager:
    def __init__(self, store: store.SlotStore, clock=_utcnow):
        self.store = store
        self.clock = clock

    # -------- bookings --------

    async def create_booking(self, data: CreateBookingRequest) -> BookingOut:
        if data.total_amount > config.MAX_PAYMENT_AMOUNT:
            raise errors.InvalidAmount(f"Booking amount must be at most {config.MAX_PAYMENT_AMOUNT}")

        booking_id = str(uuid.uuid4())

        async def unit(session):
            slot = await store.reserve_seat(session, data.time_slot_id)
            cutoff = store.slot_starts_at(slot) - timedelta(hours=config.BOOKING_CUTOFF_HOURS)
            if self.clock() >= cutoff:
                # raising rolls the seat back with the rest of the unit
                raise errors.BookingClosed(f"Time slot {slot.slot_id} no longer accepts bookings")

            now = self.clock()
            booking = Booking(
                booking_id=booking_id,
                user_id=data.user_id,
                slot_id=slot.slot_id,
                item_id=slot.item_id,
                booking_type=data.booking_type.value if data.booking_type else slot.slot_type,
                status=data.status,
                total_amount=data.total_amount,
                notes=data.notes,
                created_at=now,
                updated_at=now,
            )
            session.add(booking)
            await session.flush()
            return BookingOut.model_validate(booking)

        out = await self.store.transaction(unit)
        logger.info("booking %s created for slot %s", out.booking_id, out.slot_id)
        return out

    async def cancel_booking(self, booking_id: str, reason: str) -> BookingOut:
        reason = check_reason(reason)

        async def unit(session):
            now = self.clock()
            res = await session.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.status.in_(ACTIVE))
                .values(
                    status=BookingStatus.CANCELLED.value,
                    cancelled_at=now,
                    cancellation_reason=reason,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            booking = await self._get(session, booking_id)
            if res.rowcount == 0:
                raise errors.NotCancellable(f"Booking {booking_id} is {booking.status} and cannot be cancelled")
            await session.refresh(booking)
            await store.release_seat(session, booking.slot_id)
            return await store.booking_out(session, booking)

        out = await self.store.transaction(unit)
        logger.info("booking %s cancelled: %s", booking_id, reason)
        return out

    async def get_booking(self, booking_id: str) -> BookingOut:
        async def read(session):
            return await store.booking_out(session, await self._get(session, booking_id))

        return await self.store.read(read)

    async def list_bookings(self, user_id: Optional[str] = None, slot_id: Optional[str] = None) -> List[BookingOut]:
        async def read(session):
            stmt = select(Booking).order_by(Booking.created_at.desc(), Booking.id.desc())
            if user_id:
                stmt = stmt.where(Booking.user_id == user_id)
            if slot_id:
                stmt = stmt.where(Booking.slot_id == slot_id)
            res = await session.execute(stmt)
            return [await store.booking_out(session, b) for b in res.scalars().all()]

        return await self.store.read(read)

    async def update_booking_status(self, booking_id: str, status: BookingStatus) -> BookingOut:
        status = BookingStatus(status)
        if status == BookingStatus.CANCELLED:
            raise errors.InvalidStatusTransition("Use cancel_booking to cancel a booking")

        sources = [s.value for s, targets in BOOKING_TRANSITIONS.items() if status in targets]

        async def unit(session):
            res = await session.execute(
                update(Booking)
                .where(Booking.booking_id == booking_id, Booking.status.in_(sources))
                .values(status=status.value, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            booking = await self._get(session, booking_id)
            if res.rowcount == 0:
                raise errors.InvalidStatusTransition(
                    f"Booking {booking_id} cannot move from {booking.status} to {status.value}"
                )
            await session.refresh(booking)
            return await store.booking_out(session, booking)

        return await self.store.transaction(unit)

    async def cancel_active_bookings(
        self,
        reason: str,
        *,
        item_id: Optional[str] = None,
        slot_id: Optional[str] = None,
    ) -> List[BookingOut]:
        """
        Withdraw a slot (or every slot of an item) and cancel its active bookings.

        Each booking is cancelled in its own transaction; a booking that fails
        to cancel is logged and skipped.
        """
        reason = check_reason(reason)
        if not item_id and not slot_id:
            raise errors.ValidationError("item_id or slot_id is required")

        def scope(stmt, model):
            if slot_id:
                return stmt.where(model.slot_id == slot_id)
            return stmt.where(model.item_id == item_id)

        async def withdraw(session):
            await session.execute(
                scope(update(TimeSlot), TimeSlot)
                .values(is_available=False)
                .execution_options(synchronize_session=False)
            )
            stmt = scope(select(Booking.booking_id), Booking).where(Booking.status.in_(ACTIVE))
            res = await session.execute(stmt)
            return list(res.scalars().all())

        booking_ids = await self.store.transaction(withdraw)

        cancelled = []
        for booking_id in booking_ids:
            try:
                cancelled.append(await self.cancel_booking(booking_id, reason))
            except errors.BookingCoreError as e:
                logger.warning("could not cancel booking %s: %s", booking_id, e.message)
        logger.info(
            "withdrew %s: cancelled %s of %s active bookings",
            slot_id or item_id, len(cancelled), len(booking_ids),
        )
        return cancelled

    async def _get(self, session, booking_id: str) -> Booking:
        res = await session.execute(select(Booking).where(Booking.booking_id == booking_id))
        booking = res.scalar_one_or_none()
        if not booking:
            raise errors.BookingNotFound(f"Booking not found: {booking_id}")
        return booking

    # -------- time slots --------

    async def create_time_slot(self, data: TimeSlotCreate) -> TimeSlotOut:
        async def unit(session):
            slot = TimeSlot(
                slot_id=str(uuid.uuid4()),
                date=data.date,
                start_time=data.start_time,
                end_time=data.end_time,
                slot_type=data.slot_type.value,
                item_id=data.item_id,
                max_capacity=data.max_capacity,
                current_bookings=0,
                is_available=data.is_available,
                price=data.price,
                created_at=self.clock(),
            )
            session.add(slot)
            await session.flush()
            return TimeSlotOut.model_validate(slot)

        return await self.store.transaction(unit)

    async def create_bulk_time_slots(self, data: BulkTimeSlotCreate) -> List[TimeSlotOut]:
        window_start = datetime.combine(data.start_date, data.start_time)
        window_end = datetime.combine(data.start_date, data.end_time)
        step = timedelta(minutes=data.slot_duration_minutes)

        times = []
        t = window_start
        while t + step <= window_end:
            times.append((t.time(), (t + step).time()))
            t += step
        if not times:
            raise errors.ValidationError("Slot duration does not fit in the daily window")

        dates = []
        d = data.start_date
        while d <= data.end_date:
            if _weekday_sunday_first(d) not in data.exclude_weekdays:
                dates.append(d)
            d += timedelta(days=1)

        async def unit(session):
            now = self.clock()
            slots = [
                TimeSlot(
                    slot_id=str(uuid.uuid4()),
                    date=day,
                    start_time=start,
                    end_time=end,
                    slot_type=data.slot_type.value,
                    item_id=data.item_id,
                    max_capacity=data.max_capacity,
                    current_bookings=0,
                    is_available=True,
                    price=data.price,
                    created_at=now,
                )
                for day in dates
                for start, end in times
            ]
            session.add_all(slots)
            await session.flush()
            return [TimeSlotOut.model_validate(s) for s in slots]

        out = await self.store.transaction(unit)
        logger.info("created %s time slots over %s days", len(out), len(dates))
        return out

    async def update_time_slot(self, slot_id: str, data: TimeSlotUpdate) -> TimeSlotOut:
        # only item_id and price may be cleared
        values = {
            k: v for k, v in data.model_dump(exclude_unset=True).items()
            if v is not None or k in ("item_id", "price")
        }
        if "date" in values:
            try:
                check_slot_date(values["date"])
            except ValueError as e:
                raise errors.ValidationError(str(e)) from e

        async def unit(session):
            stmt = update(TimeSlot).where(TimeSlot.slot_id == slot_id)
            if "max_capacity" in values:
                stmt = stmt.where(TimeSlot.current_bookings <= values["max_capacity"])
            res = await session.execute(
                stmt.values(**values).execution_options(synchronize_session=False)
            )
            slot = await store.get_slot(session, slot_id)
            if res.rowcount == 0 and values:
                raise errors.CapacityBelowBookings(
                    f"Time slot {slot_id} already has {slot.current_bookings} bookings"
                )
            await session.refresh(slot)
            try:
                check_time_range(slot.start_time, slot.end_time)
            except ValueError as e:
                raise errors.ValidationError(str(e)) from e
            return TimeSlotOut.model_validate(slot)

        if not values:
            return await self.get_time_slot(slot_id)
        return await self.store.transaction(unit)

    async def delete_time_slot(self, slot_id: str) -> None:
        async def unit(session):
            res = await session.execute(
                delete(TimeSlot)
                .where(
                    TimeSlot.slot_id == slot_id,
                    ~exists().where(Booking.slot_id == slot_id),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount:
                return
            await store.get_slot(session, slot_id)
            active = await session.scalar(
                select(exists().where(Booking.slot_id == slot_id, Booking.status.in_(ACTIVE)))
            )
            if active:
                raise errors.SlotInUse(f"Time slot {slot_id} still has active bookings")
            raise errors.SlotInUse(
                f"Time slot {slot_id} has booking history; mark it unavailable instead"
            )

        await self.store.transaction(unit)
        logger.info("time slot %s deleted", slot_id)

    async def get_time_slot(self, slot_id: str) -> TimeSlotOut:
        async def read(session):
            return TimeSlotOut.model_validate(await store.get_slot(session, slot_id))

        return await self.store.read(read)

    async def list_available_time_slots(
        self,
        item_id: Optional[str] = None,
        start_date=None,
        end_date=None,
    ) -> List[TimeSlotOut]:
        async def read(session):
            stmt = (
                select(TimeSlot)
                .where(
                    TimeSlot.is_available.is_(True),
                    TimeSlot.current_bookings < TimeSlot.max_capacity,
                )
                .order_by(TimeSlot.date, TimeSlot.start_time)
            )
            if item_id:
                stmt = stmt.where(TimeSlot.item_id == item_id)
            if start_date:
                stmt = stmt.where(TimeSlot.date >= start_date)
            if end_date:
                stmt = stmt.where(TimeSlot.date <= end_date)
            res = await session.execute(stmt)
            return list(res.scalars().all())

        cutoff = self.clock() + timedelta(hours=config.BOOKING_CUTOFF_HOURS)
        return [
            TimeSlotOut.model_validate(s)
            for s in await self.store.read(read)
            if store.slot_starts_at(s) > cutoff
        ]
