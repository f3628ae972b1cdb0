"""
Automated Refund Service.

Turns cancellations into refunds: looks the booking up, prices the refund
with the time-based policy, executes it through the payment orchestrator and
emits notifications. A cancellation is never undone because its refund
failed; the failure is reported instead.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_DOWN
from typing import List, Optional

from . import config, errors, refund_policy, store
from .bookings import BookingTransactionManager
from .enums import PaymentStatus, RefundStatus
from .notifier import Notifier
from .payments import PaymentOrchestrator
from .schemas import (
    BatchRefundFailure,
    BatchRefundResult,
    BookingOut,
    CancellationResult,
    PaymentInfo,
    RefundInfo,
    RefundOutcome,
    RefundQuote,
)

logger = logging.getLogger(__name__)


def _pending_refund(payment: Optional[PaymentInfo]) -> Optional[RefundInfo]:
    if payment is None:
        return None
    return next((r for r in payment.refunds if r.status == RefundStatus.PENDING), None)


class AutomatedRefundService:
    def __init__(
        self,
        bookings: BookingTransactionManager,
        payments: PaymentOrchestrator,
        notifier: Notifier,
    ):
        self.bookings = bookings
        self.payments = payments
        self.notifier = notifier

    @property
    def clock(self):
        return self.payments.clock

    async def process_automatic_refund(
        self,
        booking_id: str,
        cancellation_reason: str,
        slot_start_time: Optional[datetime] = None,
    ) -> RefundOutcome:
        booking = await self.bookings.get_booking(booking_id)
        payment = booking.payment_info
        pending = _pending_refund(payment)
        text = None
        amount = None
        if pending is not None:
            # an earlier attempt never heard back from the gateway; finish that one
            logger.info("booking %s: resuming pending refund %s", booking_id, pending.refund_id)
        elif payment is None or not payment.is_successful:
            return RefundOutcome(booking_id=booking_id, detail="No refund due: booking has no completed payment")
        else:
            start = slot_start_time or await self._slot_start(booking)
            amount = self.payments.calculate_refund_amount(payment.amount, start)
            text = refund_policy.policy_text(refund_policy.hours_until_start(start, self.clock()))
            if amount <= 0:
                return RefundOutcome(
                    booking_id=booking_id, policy_text=text, detail="No refund due under the cancellation policy"
                )

        refund = await self._execute(booking, payment, amount, cancellation_reason, pending)

        await self._notify(
            self.notifier.notify_automatic_refund, booking.user_id, refund, booking.title, cancellation_reason
        )
        return RefundOutcome(
            booking_id=booking_id,
            refund=refund,
            refund_amount=refund.refund_amount,
            policy_text=text,
            detail="Refund processed",
        )

    async def process_batch_refunds(
        self,
        booking_ids: List[str],
        reason: str,
        is_full_refund: bool = True,
    ) -> BatchRefundResult:
        """
        Refund many bookings independently.

        A booking that cannot be refunded is recorded in `failed` and the batch
        moves on; nothing already refunded is undone.
        """
        result = BatchRefundResult()
        for booking_id in booking_ids:
            try:
                result.succeeded.append(await self._batch_refund_one(booking_id, reason, is_full_refund))
            except errors.BookingCoreError as e:
                logger.warning("batch refund skipped booking %s: %s", booking_id, e.message)
                result.failed.append(BatchRefundFailure(booking_id=booking_id, error_code=e.code, message=e.message))
            except Exception as e:
                logger.exception("batch refund crashed on booking %s", booking_id)
                result.failed.append(BatchRefundFailure(booking_id=booking_id, error_code="UNEXPECTED_ERROR", message=str(e)))

        logger.info(
            "batch refund finished: %s succeeded, %s failed", len(result.succeeded), len(result.failed)
        )
        return result

    async def _batch_refund_one(self, booking_id: str, reason: str, is_full_refund: bool) -> RefundInfo:
        booking = await self.bookings.get_booking(booking_id)
        payment = booking.payment_info
        pending = _pending_refund(payment)
        amount = None
        if pending is None:
            if payment is None or not payment.is_successful or not payment.can_refund:
                raise errors.NotRefundable(f"Booking {booking_id} has no refundable payment")
            amount = payment.amount
            if not is_full_refund:
                amount = (payment.amount * config.BATCH_PARTIAL_REFUND_RATE).quantize(
                    refund_policy.CENT, rounding=ROUND_DOWN
                )

        refund = await self._execute(booking, payment, amount, reason, pending)
        await self._notify(self.notifier.notify_automatic_refund, booking.user_id, refund, booking.title, reason)
        return refund

    async def validate_refund_eligibility(self, booking_id: str, slot_start_time: Optional[datetime] = None) -> bool:
        """Coarse UI gate: a refundable completed payment and at least an hour to go."""
        try:
            booking = await self.bookings.get_booking(booking_id)
            payment = booking.payment_info
            if payment is None or not payment.is_successful or not payment.can_refund:
                return False
            start = slot_start_time or await self._slot_start(booking)
        except errors.NotFoundError as e:
            logger.info("refund eligibility for %s: %s", booking_id, e.message)
            return False
        return refund_policy.hours_until_start(start, self.clock()) >= config.REFUND_ELIGIBILITY_MIN_HOURS

    async def quote_refund(self, booking_id: str) -> RefundQuote:
        booking = await self.bookings.get_booking(booking_id)
        start = await self._slot_start(booking)
        hours = refund_policy.hours_until_start(start, self.clock())
        payment = booking.payment_info
        base = payment.amount if payment and payment.is_successful else Decimal("0")
        return RefundQuote(
            booking_id=booking_id,
            slot_start_time=start,
            hours_until_start=hours,
            refund_rate=refund_policy.refund_rate(hours),
            refund_amount=self.payments.calculate_refund_amount(base, start),
            policy_text=refund_policy.policy_text(hours),
            eligible=await self.validate_refund_eligibility(booking_id, start),
        )

    async def refund_payment(
        self, payment_id: str, refund_amount, reason: str, refund_id: Optional[str] = None
    ) -> RefundInfo:
        """Manual refund of part or all of a payment, with notifications."""
        payment = await self.payments.get_payment(payment_id)
        booking = await self.bookings.get_booking(payment.booking_id)
        try:
            refund = await self.payments.process_refund(payment_id, refund_amount, reason, refund_id=refund_id)
        except errors.BookingCoreError as e:
            await self._notify_failed(booking, e.message)
            raise

        updated = await self.payments.get_payment(payment_id)
        if updated.status == PaymentStatus.REFUNDED:
            await self._notify(self.notifier.notify_refund_completed, booking.user_id, refund, booking.title)
        else:
            await self._notify(
                self.notifier.notify_partial_refund, booking.user_id, refund, booking.title, payment.amount
            )
        return refund

    async def cancel_with_refund(self, booking_id: str, reason: str) -> CancellationResult:
        """Cancel a booking, then refund it per policy; refund errors do not undo the cancellation."""
        booking = await self.bookings.cancel_booking(booking_id, reason)
        outcome = None
        refund_error = None
        try:
            outcome = await self.process_automatic_refund(booking_id, reason)
        except errors.BookingCoreError as e:
            logger.warning("booking %s cancelled but refund failed: %s", booking_id, e.message)
            refund_error = e.to_payload()
        else:
            booking = await self.bookings.get_booking(booking_id)
        return CancellationResult(booking=booking, refund=outcome, refund_error=refund_error)

    # -------- helpers --------

    async def _execute(
        self, booking: BookingOut, payment: PaymentInfo, amount, reason: str, pending: Optional[RefundInfo]
    ) -> RefundInfo:
        try:
            if pending is not None:
                return await self.payments.resume_refund(pending.refund_id)
            return await self.payments.process_refund(payment.payment_id, amount, reason)
        except errors.BookingCoreError as e:
            await self._notify_failed(booking, e.message)
            raise

    async def _slot_start(self, booking: BookingOut) -> datetime:
        return store.slot_starts_at(await self.bookings.get_time_slot(booking.slot_id))

    async def _notify_failed(self, booking: BookingOut, reason: str):
        await self._notify(self.notifier.notify_refund_failed, booking.user_id, booking.title, reason)

    async def _notify(self, fn, *args):
        try:
            await fn(*args)
        except Exception:
            logger.exception("refund notification %s failed", getattr(fn, "__name__", fn))
