"""
Service graph of the booking service, built once at startup.
"""
import logging
from dataclasses import dataclass
from typing import Any, Optional

import redis.asyncio as redis

from shared.database import get_engine, get_session
from shared.rabbitmq import RabbitPublisher

from . import config
from .bookings import BookingTransactionManager
from .breaker import CircuitBreaker
from .gateway import PaymentGatewayClient
from .notifier import EventNotifier, Notifier
from .payments import PaymentOrchestrator
from .refunds import AutomatedRefundService
from .store import SlotStore

logger = logging.getLogger(__name__)


@dataclass
class Container:
    engine: Any
    store: SlotStore
    gateway: PaymentGatewayClient
    bookings: BookingTransactionManager
    payments: PaymentOrchestrator
    refunds: AutomatedRefundService
    notifier: Notifier
    publisher: Optional[RabbitPublisher] = None
    redis: Any = None
    breaker: Optional[CircuitBreaker] = None

    async def close(self):
        if self.publisher:
            await self.publisher.close()
        if self.redis is not None:
            await self.redis.aclose()
        await self.engine.dispose()


def wire(engine, gateway, notifier, *, clock=None, **extra) -> Container:
    """Assemble the managers around already-built infrastructure."""
    store = SlotStore(get_session(engine), max_attempts=config.TX_MAX_ATTEMPTS)
    kw = {"clock": clock} if clock else {}
    bookings = BookingTransactionManager(store, **kw)
    payments = PaymentOrchestrator(store, gateway, **kw)
    refunds = AutomatedRefundService(bookings, payments, notifier)
    return Container(
        engine=engine,
        store=store,
        gateway=gateway,
        bookings=bookings,
        payments=payments,
        refunds=refunds,
        notifier=notifier,
        **extra,
    )


def build_container() -> Container:
    if not config.BOOKING_DB:
        raise RuntimeError("BOOKING_DB environment variable is not set")
    if not config.PAYMENT_GATEWAY_API_KEY:
        raise RuntimeError("PAYMENT_GATEWAY_API_KEY environment variable is not set")

    engine = get_engine(config.BOOKING_DB)

    redis_client = None
    breaker = None
    if config.REDIS_URL:
        redis_client = redis.from_url(config.REDIS_URL, decode_responses=True)
        breaker = CircuitBreaker(
            redis_client,
            "payment-gateway",
            failure_threshold=config.BREAKER_FAILURE_THRESHOLD,
            reset_timeout_seconds=config.BREAKER_RESET_SECONDS,
        )
    else:
        logger.warning("REDIS_URL not set: gateway circuit breaker disabled")

    gateway = PaymentGatewayClient(config.PAYMENT_GATEWAY_URL, config.PAYMENT_GATEWAY_API_KEY, breaker)
    publisher = RabbitPublisher(config.RABBIT_URL)
    return wire(
        engine,
        gateway,
        EventNotifier(publisher),
        publisher=publisher,
        redis=redis_client,
        breaker=breaker,
    )
