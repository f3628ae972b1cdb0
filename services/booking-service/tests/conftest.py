import contextlib
import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest
import respx
from sqlalchemy import select

from shared.database import Base, get_engine

from slotbook.container import wire
from slotbook.enums import BookingStatus, PaymentStatus
from slotbook.gateway import PaymentGatewayClient
from slotbook.models import Booking, Payment, TimeSlot

GATEWAY_URL = "https://gateway.test"

# everything runs against a frozen "now" on the hour
NOW = datetime.now(timezone.utc).replace(minute=0, second=0, microsecond=0)

APPLY_THEN_TIMEOUT = object()


def clock():
    return NOW


class FakeGatewayApi:
    """
    In-memory payment processor behind respx.

    Creation is create-if-absent on the id in the body, the way a processor
    honouring idempotency keys behaves. Queue a response, an exception or
    APPLY_THEN_TIMEOUT per operation to script failures.
    """

    def __init__(self, router: respx.MockRouter):
        self.payments = {}
        self.refunds = {}
        self.created = 0
        self.queued = {"pay": [], "retry": [], "cancel": [], "refund": [], "status": []}
        self.pay_status = "completed"

        self.pay_route = router.post(path="/payments").mock(side_effect=self._pay)
        self.retry_route = router.post(path__regex=r"^/payments/(?P<payment_id>[^/]+)/retry$").mock(
            side_effect=self._retry
        )
        self.cancel_route = router.delete(path__regex=r"^/payments/(?P<payment_id>[^/]+)$").mock(
            side_effect=self._cancel
        )
        self.status_route = router.get(path__regex=r"^/payments/(?P<payment_id>[^/]+)$").mock(
            side_effect=self._status
        )
        self.refund_route = router.post(path="/refunds").mock(side_effect=self._refund)

    def fail_next(self, op: str, status: int = 400, message: str = "declined"):
        self.queued[op].append(httpx.Response(status, json={"message": message}))

    def queue(self, op: str, item):
        self.queued[op].append(item)

    def _scripted(self, op: str):
        if not self.queued[op]:
            return None
        item = self.queued[op].pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def _pay(self, request):
        body = json.loads(request.content)
        scripted = self._scripted("pay")
        if isinstance(scripted, httpx.Response):
            return scripted
        payment_id = body["payment_id"]
        if payment_id not in self.payments:
            self.created += 1
            self.payments[payment_id] = {
                "payment_id": payment_id,
                "booking_id": body["booking_id"],
                "payment_method": body["payment_method"],
                "status": self.pay_status,
                "amount": body["amount"],
                "currency": body["currency"],
                "transaction_id": f"tx-{payment_id[:8]}",
                "receipt_url": f"https://receipts.test/{payment_id}",
                "created_at": NOW.isoformat(),
            }
        if scripted is APPLY_THEN_TIMEOUT:
            raise httpx.ReadTimeout("read timed out")
        return httpx.Response(200, json=self.payments[payment_id])

    def _retry(self, request, payment_id):
        scripted = self._scripted("retry")
        if isinstance(scripted, httpx.Response):
            return scripted
        payment = self.payments.setdefault(payment_id, {"payment_id": payment_id, "amount": 0})
        payment["status"] = "completed"
        return httpx.Response(200, json=payment)

    def _cancel(self, request, payment_id):
        scripted = self._scripted("cancel")
        if isinstance(scripted, httpx.Response):
            return scripted
        if payment_id in self.payments:
            self.payments[payment_id]["status"] = "cancelled"
        return httpx.Response(200, json={"payment_id": payment_id, "status": "cancelled"})

    def _status(self, request, payment_id):
        scripted = self._scripted("status")
        if isinstance(scripted, httpx.Response):
            return scripted
        if payment_id not in self.payments:
            return httpx.Response(404, json={"message": "payment not found"})
        return httpx.Response(200, json=self.payments[payment_id])

    def _refund(self, request):
        body = json.loads(request.content)
        scripted = self._scripted("refund")
        if isinstance(scripted, httpx.Response):
            return scripted
        refund_id = body["refund_id"]
        if refund_id not in self.refunds:
            self.refunds[refund_id] = {
                "refund_id": refund_id,
                "payment_id": body["payment_id"],
                "refund_amount": body["refund_amount"],
                "reason": body["reason"],
                "refunded_at": NOW.isoformat(),
                "refund_transaction_id": f"rtx-{refund_id[:8]}",
            }
        if scripted is APPLY_THEN_TIMEOUT:
            raise httpx.ReadTimeout("read timed out")
        return httpx.Response(200, json=self.refunds[refund_id])


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.calls = []

    async def _record(self, kind, *args):
        self.calls.append((kind, args))
        if self.fail:
            raise RuntimeError("notification channel down")

    async def notify_refund_completed(self, user_id, refund, booking_title):
        await self._record("completed", user_id, refund, booking_title)

    async def notify_refund_failed(self, user_id, booking_title, reason):
        await self._record("failed", user_id, booking_title, reason)

    async def notify_automatic_refund(self, user_id, refund, booking_title, cancellation_reason):
        await self._record("automatic", user_id, refund, booking_title, cancellation_reason)

    async def notify_partial_refund(self, user_id, refund, booking_title, original_amount):
        await self._record("partial", user_id, refund, booking_title, original_amount)

    def kinds(self):
        return [k for k, _ in self.calls]


class InMemoryRedis:
    """The handful of redis.asyncio calls the breaker and consumer use."""

    def __init__(self):
        self.data = {}

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = str(value)
        return True

    async def expire(self, key, seconds):
        return key in self.data

    async def delete(self, *keys):
        return sum(1 for k in keys if self.data.pop(k, None) is not None)

    async def exists(self, key):
        return int(key in self.data)

    async def hget(self, key, field):
        return self.data.get(key, {}).get(field)

    async def hgetall(self, key):
        return dict(self.data.get(key, {}))

    async def hset(self, key, mapping):
        h = self.data.setdefault(key, {})
        h.update({k: str(v) for k, v in mapping.items()})
        return len(mapping)

    async def hincrby(self, key, field, amount=1):
        h = self.data.setdefault(key, {})
        h[field] = str(int(h.get(field) or 0) + amount)
        return int(h[field])

    def pipeline(self):
        return _Pipeline(self)


class _Pipeline:
    def __init__(self, redis):
        self.redis = redis
        self.ops = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.ops.append((name, args, kwargs))
            return self
        return queue

    async def execute(self):
        return [await getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.ops]


@pytest.fixture
async def engine(tmp_path):
    engine = get_engine(f"sqlite+aiosqlite:///{tmp_path / 'booking.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def gateway_api():
    with respx.mock(base_url=GATEWAY_URL, assert_all_called=False) as router:
        yield FakeGatewayApi(router)


@pytest.fixture
def gateway_client():
    return PaymentGatewayClient(GATEWAY_URL, "test-key", max_attempts=3)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
async def container(engine, gateway_api, gateway_client, notifier):
    return wire(engine, gateway_client, notifier, clock=clock)


async def add_slot(container, hours_ahead: float = 200, capacity: int = 5, **kw) -> str:
    """Insert a slot starting `hours_ahead` after NOW, skipping admin validation."""
    start = NOW + timedelta(hours=hours_ahead)
    values = {
        "slot_id": str(uuid.uuid4()),
        "slot_type": "workshop",
        "item_id": "workshop-1",
        "current_bookings": 0,
        "is_available": True,
        **kw,
    }

    async def unit(session):
        session.add(TimeSlot(
            date=start.date(),
            start_time=start.time(),
            end_time=(start + timedelta(hours=1)).time(),
            max_capacity=capacity,
            created_at=NOW,
            **values,
        ))

    await container.store.transaction(unit)
    return values["slot_id"]


async def add_paid_booking(
    container,
    slot_id: str,
    amount: Decimal = Decimal("100000"),
    payment_status: PaymentStatus = PaymentStatus.COMPLETED,
    user_id: str = "user-1",
):
    """Insert a confirmed booking with a payment in the given status."""
    booking_id = str(uuid.uuid4())
    payment_id = str(uuid.uuid4())

    async def unit(session):
        slot = await session.scalar(select(TimeSlot).where(TimeSlot.slot_id == slot_id))
        session.add(Booking(
            booking_id=booking_id,
            user_id=user_id,
            slot_id=slot_id,
            item_id=slot.item_id,
            booking_type=slot.slot_type,
            status=BookingStatus.CONFIRMED.value,
            total_amount=amount,
            payment_id=payment_id,
            created_at=NOW,
        ))
        await session.flush()
        session.add(Payment(
            payment_id=payment_id,
            booking_id=booking_id,
            method="credit_card",
            status=payment_status.value,
            amount=amount,
            currency="KRW",
            refunded_amount=Decimal("0"),
            paid_at=NOW,
            created_at=NOW,
        ))

    await container.store.transaction(unit)
    return booking_id, payment_id


class FakeMessage:
    """Incoming message recording how it was settled."""

    def __init__(self, body, message_id="msg-1"):
        self.body = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        self.message_id = message_id
        self.outcome = None

    @property
    def processed(self):
        return self.outcome is not None

    async def ack(self):
        self.outcome = ("ack", False)

    async def nack(self, requeue=True):
        self.outcome = ("nack", requeue)

    async def reject(self, requeue=False):
        self.outcome = ("reject", requeue)

    @contextlib.asynccontextmanager
    async def process(self, requeue=False, ignore_processed=False):
        try:
            yield self
        except Exception:
            if not (ignore_processed and self.processed):
                await self.reject(requeue=requeue)
            raise
        if not (ignore_processed and self.processed):
            await self.ack()


class FakeBroker:
    """Stands in for aio_pika.connect_robust and records what was declared."""

    def __init__(self):
        self.urls = []
        self.prefetch = None
        self.exchanges = {}
        self.queues = {}
        self.closed = False

    async def connect_robust(self, url):
        self.urls.append(url)
        return _FakeConnection(self)


class _FakeConnection:
    def __init__(self, broker):
        self.broker = broker

    @property
    def is_closed(self):
        return self.broker.closed

    async def channel(self):
        return _FakeChannel(self.broker)

    async def close(self):
        self.broker.closed = True


class _FakeChannel:
    def __init__(self, broker):
        self.broker = broker

    async def set_qos(self, prefetch_count):
        self.broker.prefetch = prefetch_count

    async def declare_exchange(self, name, type, durable=False):
        return self.broker.exchanges.setdefault(name, _FakeExchange(name, type, durable))

    async def declare_queue(self, name, durable=False):
        return self.broker.queues.setdefault(name, _FakeQueue(name, durable))


class _FakeExchange:
    def __init__(self, name, type, durable):
        self.name = name
        self.type = type
        self.durable = durable
        self.published = []

    async def publish(self, message, routing_key):
        self.published.append((routing_key, json.loads(message.body)))


class _FakeQueue:
    def __init__(self, name, durable):
        self.name = name
        self.durable = durable
        self.bindings = []
        self.callback = None

    async def bind(self, exchange, routing_key):
        self.bindings.append((exchange.name, routing_key))

    async def consume(self, callback):
        self.callback = callback
