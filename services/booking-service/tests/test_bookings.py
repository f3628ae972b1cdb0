import asyncio
from datetime import datetime, time, timedelta, timezone
from decimal import Decimal

import pydantic
import pytest

from slotbook import errors
from slotbook.enums import BookingStatus
from slotbook.models import Booking
from slotbook.schemas import BulkTimeSlotCreate, CreateBookingRequest, TimeSlotCreate, TimeSlotUpdate

from conftest import NOW, add_slot


def _request(slot_id, user_id="user-1", amount="30000", **kw):
    return CreateBookingRequest(user_id=user_id, time_slot_id=slot_id, total_amount=Decimal(amount), **kw)


async def _bookings_on(container, slot_id):
    return (await container.bookings.get_time_slot(slot_id)).current_bookings


@pytest.mark.asyncio
async def test_create_booking_takes_a_seat(container):
    slot_id = await add_slot(container, capacity=2)

    booking = await container.bookings.create_booking(_request(slot_id, notes="window seat"))

    assert booking.status == BookingStatus.PENDING
    assert booking.slot_id == slot_id
    assert booking.item_id == "workshop-1"
    assert booking.booking_type.value == "workshop"
    assert booking.title == f"Booking #{booking.booking_id}"
    assert await _bookings_on(container, slot_id) == 1


@pytest.mark.asyncio
async def test_last_seat_goes_to_exactly_one_of_two_concurrent_bookings(container):
    slot_id = await add_slot(container, capacity=1)

    results = await asyncio.gather(
        container.bookings.create_booking(_request(slot_id, user_id="a")),
        container.bookings.create_booking(_request(slot_id, user_id="b")),
        return_exceptions=True,
    )

    won = [r for r in results if not isinstance(r, Exception)]
    lost = [r for r in results if isinstance(r, Exception)]
    assert len(won) == 1
    assert len(lost) == 1 and isinstance(lost[0], errors.SlotFull)
    assert await _bookings_on(container, slot_id) == 1


@pytest.mark.asyncio
async def test_concurrent_bookings_never_exceed_capacity(container):
    slot_id = await add_slot(container, capacity=3)

    results = await asyncio.gather(
        *[container.bookings.create_booking(_request(slot_id, user_id=f"u{i}")) for i in range(8)],
        return_exceptions=True,
    )

    assert sum(1 for r in results if not isinstance(r, Exception)) == 3
    assert all(isinstance(r, errors.SlotFull) for r in results if isinstance(r, Exception))
    assert await _bookings_on(container, slot_id) == 3
    assert len(await container.bookings.list_bookings(slot_id=slot_id)) == 3


@pytest.mark.asyncio
async def test_create_booking_errors(container):
    with pytest.raises(errors.SlotNotFound):
        await container.bookings.create_booking(_request("missing"))

    closed = await add_slot(container, is_available=False)
    with pytest.raises(errors.SlotFull):
        await container.bookings.create_booking(_request(closed))

    with pytest.raises(errors.InvalidAmount):
        await container.bookings.create_booking(_request(closed, amount="10000001"))


@pytest.mark.asyncio
async def test_booking_closes_an_hour_before_start(container):
    slot_id = await add_slot(container, hours_ahead=0.5)

    with pytest.raises(errors.BookingClosed):
        await container.bookings.create_booking(_request(slot_id))

    # the seat taken inside the failed unit was rolled back
    assert await _bookings_on(container, slot_id) == 0


@pytest.mark.asyncio
async def test_cancel_booking_frees_the_seat(container):
    slot_id = await add_slot(container, capacity=1)
    booking = await container.bookings.create_booking(_request(slot_id))

    cancelled = await container.bookings.cancel_booking(booking.booking_id, "  schedule clash  ")

    assert cancelled.status == BookingStatus.CANCELLED
    assert cancelled.cancellation_reason == "schedule clash"
    assert cancelled.cancelled_at is not None
    assert await _bookings_on(container, slot_id) == 0

    # the freed seat can be booked again
    await container.bookings.create_booking(_request(slot_id, user_id="user-2"))
    assert await _bookings_on(container, slot_id) == 1


@pytest.mark.asyncio
async def test_cancel_booking_errors(container):
    slot_id = await add_slot(container)
    booking = await container.bookings.create_booking(_request(slot_id))

    with pytest.raises(errors.InvalidReason):
        await container.bookings.cancel_booking(booking.booking_id, "   ")
    with pytest.raises(errors.InvalidReason):
        await container.bookings.cancel_booking(booking.booking_id, "x" * 501)
    with pytest.raises(errors.BookingNotFound):
        await container.bookings.cancel_booking("missing", "reason")

    await container.bookings.cancel_booking(booking.booking_id, "reason")
    with pytest.raises(errors.NotCancellable):
        await container.bookings.cancel_booking(booking.booking_id, "again")
    assert await _bookings_on(container, slot_id) == 0


@pytest.mark.asyncio
async def test_cancel_clamps_counter_at_zero(container):
    slot_id = await add_slot(container, capacity=2, current_bookings=0)

    async def unit(session):
        session.add(Booking(
            booking_id="orphan",
            user_id="user-1",
            slot_id=slot_id,
            booking_type="workshop",
            status=BookingStatus.CONFIRMED.value,
            total_amount=Decimal("1000"),
            created_at=NOW,
        ))

    await container.store.transaction(unit)

    await container.bookings.cancel_booking("orphan", "counter drifted")
    assert await _bookings_on(container, slot_id) == 0


@pytest.mark.asyncio
async def test_concurrent_create_and_cancel_keep_counter_in_range(container):
    slot_id = await add_slot(container, capacity=2)
    first = await container.bookings.create_booking(_request(slot_id, user_id="a"))
    second = await container.bookings.create_booking(_request(slot_id, user_id="b"))

    results = await asyncio.gather(
        container.bookings.cancel_booking(first.booking_id, "r"),
        container.bookings.cancel_booking(second.booking_id, "r"),
        container.bookings.cancel_booking(first.booking_id, "r"),
        container.bookings.create_booking(_request(slot_id, user_id="c")),
        return_exceptions=True,
    )

    count = await _bookings_on(container, slot_id)
    active = [
        b for b in await container.bookings.list_bookings(slot_id=slot_id)
        if b.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED)
    ]
    assert 0 <= count <= 2
    assert count == len(active)
    assert sum(1 for r in results if isinstance(r, errors.NotCancellable)) == 1


@pytest.mark.asyncio
async def test_status_transitions(container):
    slot_id = await add_slot(container)
    booking = await container.bookings.create_booking(_request(slot_id))
    bid = booking.booking_id

    assert (await container.bookings.update_booking_status(bid, BookingStatus.CONFIRMED)).status == BookingStatus.CONFIRMED
    assert (await container.bookings.update_booking_status(bid, BookingStatus.PENDING)).status == BookingStatus.PENDING
    await container.bookings.update_booking_status(bid, BookingStatus.CONFIRMED)
    assert (await container.bookings.update_booking_status(bid, BookingStatus.COMPLETED)).status == BookingStatus.COMPLETED

    with pytest.raises(errors.InvalidStatusTransition):
        await container.bookings.update_booking_status(bid, BookingStatus.CONFIRMED)
    with pytest.raises(errors.InvalidStatusTransition):
        await container.bookings.update_booking_status(bid, BookingStatus.CANCELLED)
    with pytest.raises(errors.BookingNotFound):
        await container.bookings.update_booking_status("missing", BookingStatus.CONFIRMED)


@pytest.mark.asyncio
async def test_list_bookings_by_user(container):
    slot_id = await add_slot(container)
    await container.bookings.create_booking(_request(slot_id, user_id="alice"))
    await container.bookings.create_booking(_request(slot_id, user_id="alice"))
    await container.bookings.create_booking(_request(slot_id, user_id="bob"))

    assert len(await container.bookings.list_bookings(user_id="alice")) == 2
    assert len(await container.bookings.list_bookings(user_id="bob")) == 1


@pytest.mark.asyncio
async def test_cancel_active_bookings_withdraws_every_slot_of_an_item(container):
    morning = await add_slot(container, hours_ahead=100, item_id="ws-9")
    evening = await add_slot(container, hours_ahead=108, item_id="ws-9")
    other = await add_slot(container, hours_ahead=100, item_id="ws-10")
    for slot_id in (morning, morning, evening, other):
        await container.bookings.create_booking(_request(slot_id))

    cancelled = await container.bookings.cancel_active_bookings("workshop cancelled", item_id="ws-9")

    assert len(cancelled) == 3
    assert all(b.status == BookingStatus.CANCELLED for b in cancelled)
    assert not (await container.bookings.get_time_slot(morning)).is_available
    assert await _bookings_on(container, morning) == 0
    assert await _bookings_on(container, other) == 1

    with pytest.raises(errors.ValidationError):
        await container.bookings.cancel_active_bookings("reason")


# -------- time slot administration --------

def _future_day(days=3):
    return (datetime.now(timezone.utc) + timedelta(days=days)).date()


@pytest.mark.asyncio
async def test_create_and_list_available_time_slots(container):
    slot = await container.bookings.create_time_slot(TimeSlotCreate(
        date=_future_day(),
        start_time=time(10, 0),
        end_time=time(12, 0),
        slot_type="space",
        item_id="room-1",
        max_capacity=4,
        price=Decimal("25000"),
    ))
    full = await add_slot(container, capacity=1, current_bookings=1, item_id="room-1")
    await add_slot(container, is_available=False, item_id="room-1")
    await add_slot(container, hours_ahead=0.5, item_id="room-1")

    available = await container.bookings.list_available_time_slots(item_id="room-1")

    assert [s.slot_id for s in available] == [slot.slot_id]
    assert available[0].remaining_capacity == 4
    assert full not in [s.slot_id for s in available]


def test_time_slot_validation():
    with pytest.raises(pydantic.ValidationError):
        TimeSlotCreate(date=_future_day(), start_time=time(10), end_time=time(10, 20), slot_type="workshop", max_capacity=1)
    with pytest.raises(pydantic.ValidationError):
        TimeSlotCreate(date=_future_day(), start_time=time(8), end_time=time(17), slot_type="workshop", max_capacity=1)
    with pytest.raises(pydantic.ValidationError):
        TimeSlotCreate(date=_future_day(-2), start_time=time(10), end_time=time(11), slot_type="workshop", max_capacity=1)
    with pytest.raises(pydantic.ValidationError):
        TimeSlotCreate(date=_future_day(200), start_time=time(10), end_time=time(11), slot_type="workshop", max_capacity=1)
    with pytest.raises(pydantic.ValidationError):
        TimeSlotCreate(date=_future_day(), start_time=time(10), end_time=time(11), slot_type="workshop", max_capacity=0)


@pytest.mark.asyncio
async def test_bulk_creation_skips_excluded_weekdays(container):
    start = _future_day(1)
    end = start + timedelta(days=13)

    slots = await container.bookings.create_bulk_time_slots(BulkTimeSlotCreate(
        start_date=start,
        end_date=end,
        start_time=time(9, 0),
        end_time=time(12, 30),
        slot_duration_minutes=60,
        max_capacity=6,
        slot_type="workshop",
        item_id="ws-1",
        exclude_weekdays=[0, 6],  # Sunday, Saturday
    ))

    weekdays = sum(1 for i in range(14) if (start + timedelta(days=i)).weekday() < 5)
    assert len(slots) == weekdays * 3
    assert all(s.date.weekday() < 5 for s in slots)
    assert {(s.start_time, s.end_time) for s in slots} == {
        (time(9), time(10)), (time(10), time(11)), (time(11), time(12)),
    }


def test_bulk_creation_range_is_limited():
    with pytest.raises(pydantic.ValidationError):
        BulkTimeSlotCreate(
            start_date=_future_day(1),
            end_date=_future_day(100),
            start_time=time(9),
            end_time=time(12),
            slot_duration_minutes=60,
            max_capacity=1,
            slot_type="workshop",
        )


@pytest.mark.asyncio
async def test_update_time_slot_capacity_guard(container):
    slot_id = await add_slot(container, capacity=3)
    await container.bookings.create_booking(_request(slot_id))
    await container.bookings.create_booking(_request(slot_id))

    with pytest.raises(errors.CapacityBelowBookings):
        await container.bookings.update_time_slot(slot_id, TimeSlotUpdate(max_capacity=1))

    updated = await container.bookings.update_time_slot(slot_id, TimeSlotUpdate(max_capacity=2, price=Decimal("9000")))
    assert updated.max_capacity == 2
    assert updated.price == Decimal("9000")
    assert not updated.has_available_capacity

    with pytest.raises(errors.SlotNotFound):
        await container.bookings.update_time_slot("missing", TimeSlotUpdate(is_available=False))


@pytest.mark.asyncio
async def test_delete_time_slot(container):
    empty = await add_slot(container)
    busy = await add_slot(container)
    await container.bookings.create_booking(_request(busy))

    with pytest.raises(errors.SlotInUse):
        await container.bookings.delete_time_slot(busy)

    await container.bookings.delete_time_slot(empty)
    with pytest.raises(errors.SlotNotFound):
        await container.bookings.get_time_slot(empty)
