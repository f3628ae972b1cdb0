import json
from decimal import Decimal

import httpx
import pytest
import respx

from slotbook import errors
from slotbook.breaker import CircuitBreaker
from slotbook.enums import PaymentMethod, PaymentStatus
from slotbook.gateway import PaymentGatewayClient, parse_method, parse_status

from conftest import GATEWAY_URL, InMemoryRedis


def _client(**kw):
    return PaymentGatewayClient(GATEWAY_URL, "secret-key", **kw)


@pytest.mark.parametrize(
    "wire, status",
    [("pending", PaymentStatus.PENDING), ("processing", PaymentStatus.PROCESSING),
     ("completed", PaymentStatus.COMPLETED), ("success", PaymentStatus.COMPLETED),
     ("failed", PaymentStatus.FAILED), ("error", PaymentStatus.FAILED),
     ("cancelled", PaymentStatus.CANCELLED), ("refunded", PaymentStatus.REFUNDED),
     ("partially_refunded", PaymentStatus.PARTIALLY_REFUNDED),
     ("SETTLING", PaymentStatus.PENDING), (None, PaymentStatus.PENDING)],
)
def test_parse_status(wire, status):
    assert parse_status(wire) == status


def test_parse_method_falls_back_to_unknown():
    assert parse_method("kakao_pay") == PaymentMethod.KAKAO_PAY
    assert parse_method("bitcoin") == PaymentMethod.UNKNOWN


@pytest.mark.asyncio
@respx.mock
async def test_pay_sends_auth_idempotency_key_and_body():
    route = respx.post(f"{GATEWAY_URL}/payments").respond(
        200,
        json={
            "id": "pay-1",
            "payment_method": "credit_card",
            "status": "success",
            "amount": 15000.5,
            "created_at": "2030-01-01T10:00:00Z",
            "transaction_id": "tx-1",
        },
    )

    info = await _client().pay("pay-1", "bk-1", Decimal("15000.50"), "KRW", PaymentMethod.CREDIT_CARD, {"k": "v"})

    request = route.calls[0].request
    assert request.headers["Authorization"] == "Bearer secret-key"
    assert request.headers["Idempotency-Key"] == "pay-1"
    body = json.loads(request.content)
    assert body["payment_id"] == "pay-1"
    assert body["booking_id"] == "bk-1"
    assert body["payment_method"] == "credit_card"
    assert body["metadata"] == {"k": "v"}
    assert "timestamp" in body

    assert info.payment_id == "pay-1"
    assert info.status == PaymentStatus.COMPLETED
    assert info.amount == Decimal("15000.5")
    assert info.currency == "KRW"
    assert info.paid_at is not None


@pytest.mark.asyncio
@respx.mock
async def test_rejection_surfaces_processor_message():
    respx.post(f"{GATEWAY_URL}/payments").respond(402, json={"message": "Card declined"})

    with pytest.raises(errors.GatewayError) as exc:
        await _client().pay("pay-1", "bk-1", Decimal("100"), "KRW", PaymentMethod.CREDIT_CARD)

    assert exc.value.message == "Card declined"
    assert exc.value.http_status == 402


@pytest.mark.asyncio
@respx.mock
async def test_timeout_is_distinct_from_rejection():
    respx.post(f"{GATEWAY_URL}/refunds").mock(side_effect=httpx.ReadTimeout("slow"))

    with pytest.raises(errors.PaymentTimeout):
        await _client().refund("pay-1", "rf-1", Decimal("10"), "changed plans")


@pytest.mark.asyncio
@respx.mock
async def test_transport_errors_retry_with_same_key():
    route = respx.post(f"{GATEWAY_URL}/refunds").mock(
        side_effect=[
            httpx.ConnectError("refused"),
            httpx.Response(200, json={"refund_id": "rf-1", "refund_amount": 10, "reason": "r"}),
        ]
    )

    refund = await _client().refund("pay-1", "rf-1", Decimal("10"), "r")

    assert refund.refund_id == "rf-1"
    assert route.call_count == 2
    assert {c.request.headers["Idempotency-Key"] for c in route.calls} == {"rf-1"}


@pytest.mark.asyncio
@respx.mock
async def test_transport_errors_give_up_as_unavailable():
    route = respx.get(f"{GATEWAY_URL}/payments/pay-1").mock(side_effect=httpx.ConnectError("refused"))

    with pytest.raises(errors.GatewayUnavailable):
        await _client(max_attempts=2).status("pay-1")
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_open_breaker_blocks_calls():
    route = respx.get(f"{GATEWAY_URL}/payments/pay-1").respond(503, json={"message": "down"})
    breaker = CircuitBreaker(InMemoryRedis(), "payment-gateway", failure_threshold=2, reset_timeout_seconds=60)
    client = _client(breaker=breaker)

    for _ in range(2):
        with pytest.raises(errors.GatewayError):
            await client.status("pay-1")

    with pytest.raises(errors.GatewayUnavailable):
        await client.status("pay-1")
    assert route.call_count == 2


@pytest.mark.asyncio
@respx.mock
async def test_client_errors_do_not_trip_breaker():
    respx.get(f"{GATEWAY_URL}/payments/pay-1").respond(404, json={"message": "no such payment"})
    breaker = CircuitBreaker(InMemoryRedis(), "payment-gateway", failure_threshold=1)
    client = _client(breaker=breaker)

    with pytest.raises(errors.GatewayError):
        await client.status("pay-1")

    assert (await breaker.status())["state"] == "CLOSED"
