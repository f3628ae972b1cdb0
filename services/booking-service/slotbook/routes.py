from datetime import date, datetime
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request

from .schemas import (
    AutomaticRefundRequest,
    BatchRefundRequest,
    BatchRefundResult,
    BookingOut,
    BookingStatusUpdate,
    BulkTimeSlotCreate,
    CancelBookingRequest,
    CancellationResult,
    CreateBookingRequest,
    PaymentInfo,
    PaymentStatistics,
    ProcessPaymentRequest,
    RefundInfo,
    RefundOutcome,
    RefundQuote,
    RefundRequest,
    TimeSlotCreate,
    TimeSlotOut,
    TimeSlotUpdate,
    WithdrawRequest,
)

router = APIRouter()


def _container(request: Request):
    return request.app.state.container


# -------- system --------

@router.get("/system/breakers")
async def breakers(request: Request):
    breaker = _container(request).breaker
    if breaker is None:
        return []
    return [await breaker.status()]


# -------- time slots --------

@router.post("/time-slots", response_model=TimeSlotOut)
async def create_time_slot(data: TimeSlotCreate, request: Request):
    return await _container(request).bookings.create_time_slot(data)


@router.post("/time-slots/bulk", response_model=List[TimeSlotOut])
async def create_bulk_time_slots(data: BulkTimeSlotCreate, request: Request):
    return await _container(request).bookings.create_bulk_time_slots(data)


@router.get("/time-slots", response_model=List[TimeSlotOut])
async def list_available_time_slots(
    request: Request,
    item_id: Optional[str] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
):
    return await _container(request).bookings.list_available_time_slots(item_id, start_date, end_date)


@router.get("/time-slots/{slot_id}", response_model=TimeSlotOut)
async def get_time_slot(slot_id: str, request: Request):
    return await _container(request).bookings.get_time_slot(slot_id)


@router.put("/time-slots/{slot_id}", response_model=TimeSlotOut)
async def update_time_slot(slot_id: str, data: TimeSlotUpdate, request: Request):
    return await _container(request).bookings.update_time_slot(slot_id, data)


@router.delete("/time-slots/{slot_id}")
async def delete_time_slot(slot_id: str, request: Request):
    await _container(request).bookings.delete_time_slot(slot_id)
    return {"slot_id": slot_id, "deleted": True}


@router.post("/time-slots/{slot_id}/withdraw")
async def withdraw_time_slot(slot_id: str, data: WithdrawRequest, request: Request):
    c = _container(request)
    cancelled = await c.bookings.cancel_active_bookings(data.reason, slot_id=slot_id)
    refunds = await c.refunds.process_batch_refunds([b.booking_id for b in cancelled], data.reason)
    return {"slot_id": slot_id, "cancelled": cancelled, "refunds": refunds}


# -------- bookings --------

@router.post("/bookings", response_model=BookingOut)
async def create_booking(data: CreateBookingRequest, request: Request):
    return await _container(request).bookings.create_booking(data)


@router.get("/bookings", response_model=List[BookingOut])
async def list_bookings(request: Request, user_id: Optional[str] = None, slot_id: Optional[str] = None):
    if not user_id and not slot_id:
        raise HTTPException(status_code=400, detail="user_id or slot_id is required")
    return await _container(request).bookings.list_bookings(user_id=user_id, slot_id=slot_id)


@router.get("/bookings/{booking_id}", response_model=BookingOut)
async def get_booking(booking_id: str, request: Request):
    return await _container(request).bookings.get_booking(booking_id)


@router.patch("/bookings/{booking_id}/status", response_model=BookingOut)
async def update_booking_status(booking_id: str, data: BookingStatusUpdate, request: Request):
    return await _container(request).bookings.update_booking_status(booking_id, data.status)


@router.post("/bookings/{booking_id}/cancel", response_model=CancellationResult)
async def cancel_booking(booking_id: str, data: CancelBookingRequest, request: Request):
    return await _container(request).refunds.cancel_with_refund(booking_id, data.reason)


@router.get("/bookings/{booking_id}/refund-quote", response_model=RefundQuote)
async def refund_quote(booking_id: str, request: Request):
    return await _container(request).refunds.quote_refund(booking_id)


@router.get("/bookings/{booking_id}/refund-eligibility")
async def refund_eligibility(booking_id: str, request: Request):
    eligible = await _container(request).refunds.validate_refund_eligibility(booking_id)
    return {"booking_id": booking_id, "eligible": eligible}


# -------- payments --------

@router.post("/payments", response_model=PaymentInfo)
async def process_payment(data: ProcessPaymentRequest, request: Request):
    return await _container(request).payments.process_payment(
        data.booking_id,
        data.amount,
        data.method,
        currency=data.currency,
        metadata=data.metadata,
        payment_id=data.payment_id,
    )


@router.get("/payments", response_model=List[PaymentInfo])
async def list_payments(request: Request, booking_id: Optional[str] = None, user_id: Optional[str] = None):
    if not booking_id and not user_id:
        raise HTTPException(status_code=400, detail="booking_id or user_id is required")
    return await _container(request).payments.list_payments(booking_id=booking_id, user_id=user_id)


@router.get("/payments/statistics", response_model=PaymentStatistics)
async def payment_statistics(start: datetime, end: datetime, request: Request):
    if end < start:
        raise HTTPException(status_code=400, detail="end must not be before start")
    return await _container(request).payments.payment_statistics(start, end)


@router.get("/payments/{payment_id}", response_model=PaymentInfo)
async def get_payment(payment_id: str, request: Request):
    return await _container(request).payments.get_payment(payment_id)


@router.delete("/payments/{payment_id}")
async def cancel_payment(payment_id: str, request: Request):
    await _container(request).payments.cancel_payment(payment_id)
    return {"payment_id": payment_id, "status": "cancelled"}


@router.post("/payments/{payment_id}/retry", response_model=PaymentInfo)
async def retry_payment(payment_id: str, request: Request):
    return await _container(request).payments.retry_payment(payment_id)


@router.post("/payments/{payment_id}/sync", response_model=PaymentInfo)
async def sync_payment(payment_id: str, request: Request):
    return await _container(request).payments.sync_payment_status(payment_id)


# -------- refunds --------

@router.post("/refunds", response_model=RefundInfo)
async def refund_payment(data: RefundRequest, request: Request):
    return await _container(request).refunds.refund_payment(
        data.payment_id, data.refund_amount, data.reason, refund_id=data.refund_id
    )


@router.get("/refunds", response_model=List[RefundInfo])
async def list_refunds(request: Request, payment_id: Optional[str] = None, user_id: Optional[str] = None):
    if not payment_id and not user_id:
        raise HTTPException(status_code=400, detail="payment_id or user_id is required")
    return await _container(request).payments.list_refunds(payment_id=payment_id, user_id=user_id)


@router.post("/refunds/automatic", response_model=RefundOutcome)
async def automatic_refund(data: AutomaticRefundRequest, request: Request):
    return await _container(request).refunds.process_automatic_refund(
        data.booking_id, data.cancellation_reason, data.slot_start_time
    )


@router.post("/refunds/batch", response_model=BatchRefundResult)
async def batch_refunds(data: BatchRefundRequest, request: Request):
    return await _container(request).refunds.process_batch_refunds(
        data.booking_ids, data.reason, data.is_full_refund
    )


@router.post("/refunds/{refund_id}/resume", response_model=RefundInfo)
async def resume_refund(refund_id: str, request: Request):
    return await _container(request).payments.resume_refund(refund_id)
