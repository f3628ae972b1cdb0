"""
Payment Orchestrator.

Validates payment and refund requests, persists every attempt before the
gateway sees it, and records the gateway's answer afterwards.

Refunds are held against `payments.refunded_amount` by one conditional
UPDATE before the gateway call; that row is where concurrent refunds of the
same payment linearize, so the sum of refunds never passes the amount paid.
A rejected refund releases its hold. A refund whose outcome is unknown
(timeout, unreachable gateway) keeps the hold and stays `pending` until
`resume_refund` re-sends it under the same idempotency key.
"""
import logging
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from . import config, errors, refund_policy, store
from .enums import (
    BookingStatus,
    PaymentMethod,
    PaymentStatus,
    REFUNDABLE_PAYMENT_STATUSES,
    RefundStatus,
)
from .models import Booking, Payment, Refund
from .schemas import PaymentInfo, PaymentStatistics, RefundInfo

logger = logging.getLogger(__name__)

MAX_REASON_LENGTH = 500
REFUNDABLE = [s.value for s in REFUNDABLE_PAYMENT_STATUSES]
# a booking may take a new payment only once its last one is one of these
REPLACEABLE = [PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value]
# statuses a gateway status query may overwrite
SYNCABLE = [PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value, PaymentStatus.FAILED.value]
REVENUE_STATUSES = {
    PaymentStatus.COMPLETED.value,
    PaymentStatus.PARTIALLY_REFUNDED.value,
    PaymentStatus.REFUNDED.value,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _check_amount(amount) -> Decimal:
    try:
        amount = Decimal(str(amount))
    except ArithmeticError as e:
        raise errors.InvalidAmount(f"Invalid amount: {amount}") from e
    if not amount.is_finite() or amount <= 0:
        raise errors.InvalidAmount("Amount must be greater than zero")
    # money is stored to the cent
    if amount != amount.quantize(refund_policy.CENT):
        raise errors.InvalidAmount(f"Amount has more than two decimal places: {amount}")
    return amount.quantize(refund_policy.CENT)


class PaymentOrchestrator:
    def __init__(self, store: store.SlotStore, gateway, clock=_utcnow):
        self.store = store
        self.gateway = gateway
        self.clock = clock

    # -------- payments --------

    async def process_payment(
        self,
        booking_id: str,
        amount,
        method: PaymentMethod,
        currency: Optional[str] = None,
        metadata: Optional[dict] = None,
        payment_id: Optional[str] = None,
    ) -> PaymentInfo:
        """
        Charge a booking.

        `payment_id` is the idempotency key of the charge. Calling again with
        the id of a settled payment returns it without touching the gateway;
        a payment still waiting for a gateway answer is re-sent under the
        same key.
        """
        if not booking_id or not booking_id.strip():
            raise errors.ValidationError("Booking id is required")
        amount = _check_amount(amount)
        if amount > config.MAX_PAYMENT_AMOUNT:
            raise errors.InvalidAmount(f"Amount must be at most {config.MAX_PAYMENT_AMOUNT}")
        method = PaymentMethod(method)
        currency = currency or config.DEFAULT_CURRENCY
        payment_id = payment_id or str(uuid.uuid4())

        async def create(session):
            existing = await self._find(session, payment_id)
            if existing is not None:
                return existing.status, await store.payment_info(session, existing)

            now = self.clock()
            # a booking has one live payment; only a failed or cancelled one may be replaced
            res = await session.execute(
                update(Booking)
                .where(
                    Booking.booking_id == booking_id,
                    or_(
                        Booking.payment_id.is_(None),
                        Booking.payment_id == payment_id,
                        Booking.payment_id.in_(
                            select(Payment.payment_id).where(Payment.status.in_(REPLACEABLE))
                        ),
                    ),
                )
                .values(payment_id=payment_id, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                booking = await session.scalar(select(Booking).where(Booking.booking_id == booking_id))
                if booking is None:
                    raise errors.BookingNotFound(f"Booking not found: {booking_id}")
                raise errors.PaymentAlreadyExists(
                    f"Booking {booking_id} already has payment {booking.payment_id}"
                )

            payment = Payment(
                payment_id=payment_id,
                booking_id=booking_id,
                method=method.value,
                status=PaymentStatus.PENDING.value,
                amount=amount,
                currency=currency,
                refunded_amount=Decimal("0"),
                created_at=now,
                updated_at=now,
            )
            session.add(payment)
            await session.flush()
            return None, await store.payment_info(session, payment)

        try:
            prior_status, info = await self.store.transaction(create)
        except IntegrityError:
            # a concurrent call inserted the same payment id first
            prior_status, info = PaymentStatus.PENDING.value, await self.get_payment(payment_id)

        if prior_status not in (None, PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value):
            logger.info("payment %s already exists (%s), not charging again", payment_id, prior_status)
            return info

        try:
            result = await self.gateway.pay(
                payment_id, info.booking_id or booking_id, info.amount, info.currency, info.method, metadata
            )
        except errors.GatewayError as e:
            await self._set_status(payment_id, PaymentStatus.FAILED, failure_reason=e.message)
            raise
        except errors.PaymentTimeout:
            await self._set_status(payment_id, PaymentStatus.PROCESSING)
            raise

        logger.info("payment %s for booking %s: %s", payment_id, booking_id, result.status.value)
        return await self._apply_result(payment_id, result)

    async def retry_payment(self, payment_id: str) -> PaymentInfo:
        async def claim(session):
            res = await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status == PaymentStatus.FAILED.value)
                .values(status=PaymentStatus.PROCESSING.value, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            payment = await self._get(session, payment_id)
            if res.rowcount == 0:
                raise errors.NotFailed(f"Payment {payment_id} is {payment.status}; only failed payments can be retried")

        await self.store.transaction(claim)

        try:
            result = await self.gateway.retry(payment_id, str(uuid.uuid4()))
        except (errors.GatewayError, errors.GatewayUnavailable) as e:
            await self._set_status(payment_id, PaymentStatus.FAILED, failure_reason=e.message)
            raise

        logger.info("payment %s retried: %s", payment_id, result.status.value)
        return await self._apply_result(payment_id, result)

    async def cancel_payment(self, payment_id: str) -> None:
        payment = await self.get_payment(payment_id)
        if payment.status != PaymentStatus.PENDING:
            raise errors.PaymentNotCancellable(
                f"Payment {payment_id} is {payment.status.value}; only pending payments can be cancelled"
            )

        await self.gateway.cancel(payment_id, str(uuid.uuid4()))

        async def unit(session):
            res = await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status == PaymentStatus.PENDING.value)
                .values(status=PaymentStatus.CANCELLED.value, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                logger.warning("payment %s changed status while being cancelled", payment_id)

        await self.store.transaction(unit)
        logger.info("payment %s cancelled", payment_id)

    async def sync_payment_status(self, payment_id: str) -> PaymentInfo:
        """Ask the gateway for the payment's state and record it locally."""
        await self.get_payment(payment_id)
        result = await self.gateway.status(payment_id)
        return await self._apply_result(payment_id, result)

    async def get_payment(self, payment_id: str) -> PaymentInfo:
        async def read(session):
            return await store.payment_info(session, await self._get(session, payment_id))

        return await self.store.read(read)

    async def list_payments(self, booking_id: Optional[str] = None, user_id: Optional[str] = None) -> List[PaymentInfo]:
        async def read(session):
            stmt = select(Payment).order_by(Payment.created_at.desc(), Payment.id.desc())
            if booking_id:
                stmt = stmt.where(Payment.booking_id == booking_id)
            if user_id:
                stmt = stmt.join(Booking, Booking.booking_id == Payment.booking_id).where(Booking.user_id == user_id)
            res = await session.execute(stmt)
            return [await store.payment_info(session, p) for p in res.scalars().all()]

        return await self.store.read(read)

    async def payment_statistics(self, start: datetime, end: datetime) -> PaymentStatistics:
        async def read(session):
            res = await session.execute(
                select(Payment).where(Payment.created_at >= start, Payment.created_at <= end)
            )
            payments = list(res.scalars().all())
            ids = [p.payment_id for p in payments]
            refunded = Decimal("0")
            if ids:
                refunded = await session.scalar(
                    select(func.coalesce(func.sum(Refund.refund_amount), 0)).where(
                        Refund.payment_id.in_(ids),
                        Refund.status == RefundStatus.COMPLETED.value,
                    )
                )
            return payments, refunded

        payments, refunded = await self.store.read(read)

        stats = PaymentStatistics(start=start, end=end, total_refunds=Decimal(str(refunded or 0)))
        by_method = defaultdict(lambda: {"count": 0, "amount": Decimal("0")})
        daily = defaultdict(lambda: Decimal("0"))
        for p in payments:
            stats.total_transactions += 1
            if p.status in REVENUE_STATUSES:
                amount = Decimal(str(p.amount))
                stats.successful_transactions += 1
                stats.total_revenue += amount
                by_method[p.method]["count"] += 1
                by_method[p.method]["amount"] += amount
                daily[p.created_at.date().isoformat()] += amount
            if p.status == PaymentStatus.FAILED.value:
                stats.failed_transactions += 1
            if p.status in (PaymentStatus.REFUNDED.value, PaymentStatus.PARTIALLY_REFUNDED.value):
                stats.refunded_transactions += 1
        stats.by_method = dict(by_method)
        stats.daily_revenue = dict(sorted(daily.items()))
        return stats

    # -------- refunds --------

    def calculate_refund_amount(self, payment_amount, slot_start_time: datetime) -> Decimal:
        return refund_policy.refund_amount(Decimal(str(payment_amount)), slot_start_time, self.clock())

    async def process_refund(
        self,
        payment_id: str,
        refund_amount,
        reason: str,
        refund_id: Optional[str] = None,
    ) -> RefundInfo:
        refund_amount = _check_amount(refund_amount)
        if not reason or not reason.strip():
            raise errors.InvalidReason("Refund reason is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise errors.InvalidReason(f"Reason must be at most {MAX_REASON_LENGTH} characters")
        refund_id = refund_id or str(uuid.uuid4())

        async def hold(session):
            existing = await session.scalar(select(Refund).where(Refund.refund_id == refund_id))
            if existing is not None:
                return existing.status

            res = await session.execute(
                update(Payment)
                .where(
                    Payment.payment_id == payment_id,
                    Payment.status.in_(REFUNDABLE),
                    Payment.refunded_amount + refund_amount <= Payment.amount,
                )
                .values(
                    refunded_amount=Payment.refunded_amount + refund_amount,
                    updated_at=self.clock(),
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                payment = await self._get(session, payment_id)
                if payment.status not in REFUNDABLE:
                    raise errors.NotRefundable(f"Payment {payment_id} is {payment.status} and cannot be refunded")
                remaining = Decimal(str(payment.amount)) - Decimal(str(payment.refunded_amount))
                raise errors.AmountExceeded(
                    f"Refund of {refund_amount} exceeds the refundable balance {remaining} of payment {payment_id}"
                )

            session.add(
                Refund(
                    refund_id=refund_id,
                    payment_id=payment_id,
                    refund_amount=refund_amount,
                    reason=reason.strip(),
                    status=RefundStatus.PENDING.value,
                    created_at=self.clock(),
                )
            )
            return None

        prior_status = await self.store.transaction(hold)
        if prior_status is None:
            return await self._send_refund(refund_id)
        if prior_status == RefundStatus.PENDING.value:
            return await self.resume_refund(refund_id)
        return await self.get_refund(refund_id)

    async def resume_refund(self, refund_id: str) -> RefundInfo:
        """Re-send a refund whose gateway outcome was never recorded."""
        refund = await self.get_refund(refund_id)
        if refund.status == RefundStatus.FAILED:
            raise errors.NotRefundable(f"Refund {refund_id} failed and cannot be resumed")
        if refund.status == RefundStatus.COMPLETED:
            return refund
        return await self._send_refund(refund_id)

    async def get_refund(self, refund_id: str) -> RefundInfo:
        async def read(session):
            refund = await session.scalar(select(Refund).where(Refund.refund_id == refund_id))
            if refund is None:
                raise errors.RefundNotFound(f"Refund not found: {refund_id}")
            return RefundInfo.model_validate(refund)

        return await self.store.read(read)

    async def list_refunds(self, payment_id: Optional[str] = None, user_id: Optional[str] = None) -> List[RefundInfo]:
        async def read(session):
            stmt = select(Refund).order_by(Refund.created_at.desc(), Refund.id.desc())
            if payment_id:
                stmt = stmt.where(Refund.payment_id == payment_id)
            if user_id:
                stmt = (
                    stmt.join(Payment, Payment.payment_id == Refund.payment_id)
                    .join(Booking, Booking.booking_id == Payment.booking_id)
                    .where(Booking.user_id == user_id)
                )
            res = await session.execute(stmt)
            return [RefundInfo.model_validate(r) for r in res.scalars().all()]

        return await self.store.read(read)

    async def _send_refund(self, refund_id: str) -> RefundInfo:
        refund = await self.get_refund(refund_id)
        try:
            result = await self.gateway.refund(refund.payment_id, refund_id, refund.refund_amount, refund.reason)
        except errors.GatewayError as e:
            await self._release_refund(refund.payment_id, refund_id, e.message)
            raise
        except (errors.PaymentTimeout, errors.GatewayUnavailable):
            logger.warning("refund %s outcome unknown; hold kept until it is resumed", refund_id)
            raise

        info = await self._complete_refund(refund.payment_id, refund_id, result)
        logger.info("refund %s of %s on payment %s completed", refund_id, info.refund_amount, info.payment_id)
        return info

    async def _complete_refund(self, payment_id: str, refund_id: str, result: RefundInfo) -> RefundInfo:
        async def unit(session):
            now = self.clock()
            # lock the payment row first so concurrent completions sum in order
            await self._touch(session, payment_id, now)
            await session.execute(
                update(Refund)
                .where(Refund.refund_id == refund_id, Refund.status == RefundStatus.PENDING.value)
                .values(
                    status=RefundStatus.COMPLETED.value,
                    refunded_at=result.refunded_at or now,
                    refund_transaction_id=result.refund_transaction_id,
                )
                .execution_options(synchronize_session=False)
            )
            payment = await self._get(session, payment_id)
            await session.refresh(payment)
            completed = await session.scalar(
                select(func.coalesce(func.sum(Refund.refund_amount), 0)).where(
                    Refund.payment_id == payment_id,
                    Refund.status == RefundStatus.COMPLETED.value,
                )
            )
            full = Decimal(str(completed)) >= Decimal(str(payment.amount))
            payment.status = (PaymentStatus.REFUNDED if full else PaymentStatus.PARTIALLY_REFUNDED).value
            payment.updated_at = now
            if full:
                await session.execute(
                    update(Booking)
                    .where(
                        Booking.booking_id == payment.booking_id,
                        Booking.status == BookingStatus.CANCELLED.value,
                    )
                    .values(status=BookingStatus.REFUNDED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            refund = await session.scalar(select(Refund).where(Refund.refund_id == refund_id))
            return RefundInfo.model_validate(refund)

        return await self.store.transaction(unit)

    async def _release_refund(self, payment_id: str, refund_id: str, failure_reason: str) -> None:
        async def unit(session):
            now = self.clock()
            await self._touch(session, payment_id, now)
            res = await session.execute(
                update(Refund)
                .where(Refund.refund_id == refund_id, Refund.status == RefundStatus.PENDING.value)
                .values(status=RefundStatus.FAILED.value, failure_reason=failure_reason)
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 0:
                return
            amount = await session.scalar(select(Refund.refund_amount).where(Refund.refund_id == refund_id))
            await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id)
                .values(refunded_amount=Payment.refunded_amount - amount)
                .execution_options(synchronize_session=False)
            )

        await self.store.transaction(unit)
        logger.info("refund %s on payment %s rejected: %s", refund_id, payment_id, failure_reason)

    # -------- helpers --------

    async def _find(self, session, payment_id: str) -> Optional[Payment]:
        res = await session.execute(select(Payment).where(Payment.payment_id == payment_id))
        return res.scalar_one_or_none()

    async def _get(self, session, payment_id: str) -> Payment:
        payment = await self._find(session, payment_id)
        if not payment:
            raise errors.PaymentNotFound(f"Payment not found: {payment_id}")
        return payment

    async def _touch(self, session, payment_id: str, now: datetime) -> None:
        res = await session.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id)
            .values(updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise errors.PaymentNotFound(f"Payment not found: {payment_id}")

    async def _set_status(self, payment_id: str, status: PaymentStatus, failure_reason: Optional[str] = None):
        async def unit(session):
            await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id)
                .values(status=status.value, failure_reason=failure_reason, updated_at=self.clock())
                .execution_options(synchronize_session=False)
            )

        await self.store.transaction(unit)

    async def _apply_result(self, payment_id: str, result: PaymentInfo) -> PaymentInfo:
        """Record the gateway's view of a payment; a completed payment confirms its booking."""
        async def unit(session):
            now = self.clock()
            values = {
                "transaction_id": result.transaction_id,
                "receipt_url": result.receipt_url,
                "failure_reason": result.failure_reason,
                "updated_at": now,
            }
            if result.status in (PaymentStatus.COMPLETED, PaymentStatus.PARTIALLY_REFUNDED, PaymentStatus.REFUNDED):
                values["paid_at"] = result.paid_at or now
            await session.execute(
                update(Payment)
                .where(Payment.payment_id == payment_id, Payment.status.in_(SYNCABLE))
                .values(status=result.status.value, **values)
                .execution_options(synchronize_session=False)
            )
            payment = await self._get(session, payment_id)
            await session.refresh(payment)
            if payment.status == PaymentStatus.COMPLETED.value:
                await session.execute(
                    update(Booking)
                    .where(
                        Booking.booking_id == payment.booking_id,
                        Booking.status == BookingStatus.PENDING.value,
                    )
                    .values(status=BookingStatus.CONFIRMED.value, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
            return await store.payment_info(session, payment)

        return await self.store.transaction(unit)
