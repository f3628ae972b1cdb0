import json
import logging

import aio_pika

from shared.idempotency import mark_processed, processed_key
from shared.rabbitmq import open_exchange

from . import errors

logger = logging.getLogger(__name__)

QUEUE_NAME = "booking_service_domain_events"

WORKSHOP_CANCELLED = "workshop.cancelled"
TIME_SLOT_WITHDRAWN = "time_slot.withdrawn"
ROUTING_KEYS = [WORKSHOP_CANCELLED, TIME_SLOT_WITHDRAWN]

DEFAULT_REASON = "Cancelled by the organizer"


async def handle_event(container, payload: dict) -> bool:
    """
    Cancel and refund every active booking hit by a withdrawn workshop or slot.

    Returns False when the event was ignored (malformed, unknown type, a
    redelivery or a booking error that retrying cannot fix). Transient errors
    propagate so the broker can redeliver the message.
    """
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}

    if not event_id or event_type not in ROUTING_KEYS:
        return False

    if event_type == WORKSHOP_CANCELLED:
        scope = {"item_id": data.get("workshop_id") or data.get("item_id")}
    else:
        scope = {"slot_id": data.get("slot_id")}
    if not any(scope.values()):
        logger.warning("%s event %s has no target id", event_type, event_id)
        return False

    if container.redis is not None and not await mark_processed(container.redis, event_id):
        logger.info("event %s already processed", event_id)
        return False

    reason = data.get("reason") or DEFAULT_REASON
    try:
        cancelled = await container.bookings.cancel_active_bookings(reason, **scope)
        result = await container.refunds.process_batch_refunds(
            [b.booking_id for b in cancelled], reason, is_full_refund=True
        )
    except errors.BookingCoreError as e:
        logger.error("handling %s %s failed: %s", event_type, event_id, e.message)
        await _release(container, event_id)
        if e.retryable:
            raise
        return False
    except Exception:
        await _release(container, event_id)
        raise

    logger.info(
        "%s %s: cancelled %s bookings, refunded %s, %s refunds failed",
        event_type, event_id, len(cancelled), len(result.succeeded), len(result.failed),
    )
    return True


async def _release(container, event_id: str):
    # a redelivery must be able to claim the event again
    if container.redis is not None:
        await container.redis.delete(processed_key(event_id))


def make_handler(container):
    async def handle_message(message: aio_pika.abc.AbstractIncomingMessage):
        async with message.process(requeue=False, ignore_processed=True):
            try:
                payload = json.loads(message.body.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError):
                logger.warning("dropping malformed message %s", message.message_id)
                return
            try:
                await handle_event(container, payload)
            except errors.TransientError as e:
                logger.warning("requeueing message %s: %s", message.message_id, e.message)
                await message.nack(requeue=True)

    return handle_message


async def start_consumer(container, url: str):
    conn, channel, exchange = await open_exchange(url, prefetch_count=50)

    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(make_handler(container))
    logger.info("consumer started on %s", QUEUE_NAME)
    return conn
