"""
Refund notifications.

Delivery (push, e-mail) belongs to another service; this side only emits
domain events on the `domain_events` exchange.
"""
from decimal import Decimal
from typing import Protocol

from shared.events import build_event, to_json
from shared.rabbitmq import RabbitPublisher

from .schemas import RefundInfo

REFUND_COMPLETED = "refund.completed"
REFUND_FAILED = "refund.failed"
REFUND_AUTOMATIC = "refund.automatic"
REFUND_PARTIAL = "refund.partial"

SOURCE = "booking-service"


class Notifier(Protocol):
    async def notify_refund_completed(self, user_id: str, refund: RefundInfo, booking_title: str) -> None: ...

    async def notify_refund_failed(self, user_id: str, booking_title: str, reason: str) -> None: ...

    async def notify_automatic_refund(
        self, user_id: str, refund: RefundInfo, booking_title: str, cancellation_reason: str
    ) -> None: ...

    async def notify_partial_refund(
        self, user_id: str, refund: RefundInfo, booking_title: str, original_amount: Decimal
    ) -> None: ...


def _refund_data(refund: RefundInfo) -> dict:
    return refund.model_dump(include={"refund_id", "payment_id", "refund_amount", "reason", "refunded_at"})


class EventNotifier:
    def __init__(self, publisher: RabbitPublisher):
        self.publisher = publisher

    async def _emit(self, event_type: str, data: dict):
        await self.publisher.publish(event_type, to_json(build_event(event_type, data, source=SOURCE)))

    async def notify_refund_completed(self, user_id, refund, booking_title):
        await self._emit(REFUND_COMPLETED, {
            "user_id": user_id,
            "booking_title": booking_title,
            **_refund_data(refund),
        })

    async def notify_refund_failed(self, user_id, booking_title, reason):
        await self._emit(REFUND_FAILED, {
            "user_id": user_id,
            "booking_title": booking_title,
            "reason": reason,
        })

    async def notify_automatic_refund(self, user_id, refund, booking_title, cancellation_reason):
        await self._emit(REFUND_AUTOMATIC, {
            "user_id": user_id,
            "booking_title": booking_title,
            "cancellation_reason": cancellation_reason,
            **_refund_data(refund),
        })

    async def notify_partial_refund(self, user_id, refund, booking_title, original_amount):
        await self._emit(REFUND_PARTIAL, {
            "user_id": user_id,
            "booking_title": booking_title,
            "original_amount": original_amount,
            **_refund_data(refund),
        })
