"""
HTTP client for the external payment processor.

Each logical operation carries one idempotency key, sent as the
`Idempotency-Key` header; network-level retries reuse it so the processor
applies the operation at most once. Timeouts surface as PaymentTimeout (the
outcome is unknown), processor rejections as GatewayError, and transport
failures or an open breaker as GatewayUnavailable.
"""
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

import httpx
from dateutil.parser import isoparse

from . import config, errors
from .breaker import CircuitBreaker, CircuitBreakerOpen
from .enums import PaymentMethod, PaymentStatus
from .schemas import PaymentInfo, RefundInfo

logger = logging.getLogger(__name__)

# processor wire value -> status; anything else is logged and read as pending
PAYMENT_STATUS_MAP = {
    "pending": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "completed": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "error": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "refunded": PaymentStatus.REFUNDED,
    "partially_refunded": PaymentStatus.PARTIALLY_REFUNDED,
}

PAYMENT_METHOD_MAP = {
    "credit_card": PaymentMethod.CREDIT_CARD,
    "bank_transfer": PaymentMethod.BANK_TRANSFER,
    "kakao_pay": PaymentMethod.KAKAO_PAY,
    "naver_pay": PaymentMethod.NAVER_PAY,
    "paypal": PaymentMethod.PAYPAL,
}


def parse_status(value) -> PaymentStatus:
    status = PAYMENT_STATUS_MAP.get(str(value or "").lower())
    if status is None:
        logger.warning("unknown payment status from gateway: %r, treating as pending", value)
        return PaymentStatus.PENDING
    return status


def parse_method(value) -> PaymentMethod:
    method = PAYMENT_METHOD_MAP.get(str(value or "").lower())
    if method is None:
        logger.warning("unknown payment method from gateway: %r", value)
        return PaymentMethod.UNKNOWN
    return method


def _decimal(value) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _dt(value) -> Optional[datetime]:
    return isoparse(value) if value else None


def parse_payment(data: dict) -> PaymentInfo:
    return PaymentInfo(
        payment_id=data.get("payment_id") or data["id"],
        booking_id=data.get("booking_id"),
        method=parse_method(data.get("payment_method")),
        status=parse_status(data.get("status")),
        amount=_decimal(data.get("amount")),
        currency=data.get("currency") or config.DEFAULT_CURRENCY,
        paid_at=_dt(data.get("paid_at") or data.get("created_at")),
        transaction_id=data.get("transaction_id"),
        failure_reason=data.get("failure_reason"),
        receipt_url=data.get("receipt_url"),
        created_at=_dt(data.get("created_at")),
        updated_at=_dt(data.get("updated_at")),
    )


def parse_refund(data: dict) -> RefundInfo:
    return RefundInfo(
        refund_id=data.get("refund_id") or data["id"],
        payment_id=data.get("payment_id"),
        refund_amount=_decimal(data.get("refund_amount")),
        reason=data.get("reason") or "",
        refunded_at=_dt(data.get("refunded_at") or data.get("created_at")),
        refund_transaction_id=data.get("refund_transaction_id"),
    )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text or f"HTTP {resp.status_code}"
    if isinstance(body, dict) and body.get("message"):
        return str(body["message"])
    return f"HTTP {resp.status_code}"


class PaymentGatewayClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        breaker: Optional[CircuitBreaker] = None,
        *,
        payment_timeout: float = config.PAYMENT_TIMEOUT_SECONDS,
        status_timeout: float = config.STATUS_TIMEOUT_SECONDS,
        max_attempts: int = config.GATEWAY_MAX_ATTEMPTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.breaker = breaker
        self.payment_timeout = payment_timeout
        self.status_timeout = status_timeout
        self.max_attempts = max(1, max_attempts)
        self.transport = transport

    def _headers(self, idempotency_key: Optional[str]) -> dict:
        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    async def _call(
        self,
        method: str,
        path: str,
        *,
        payload: dict | None = None,
        idempotency_key: str | None = None,
        timeout: float,
    ) -> dict:
        if self.breaker:
            try:
                await self.breaker.allow_request()
            except CircuitBreakerOpen as e:
                raise errors.GatewayUnavailable(str(e)) from e

        url = f"{self.base_url}{path}"
        headers = self._headers(idempotency_key)
        attempt = 0
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            while True:
                attempt += 1
                try:
                    resp = await client.request(method, url, json=payload, headers=headers)
                    break
                except httpx.TimeoutException as e:
                    await self._failure()
                    logger.warning("gateway timeout: %s %s (key=%s)", method, path, idempotency_key)
                    raise errors.PaymentTimeout(f"Payment gateway timed out: {method} {path}") from e
                except httpx.TransportError as e:
                    if attempt < self.max_attempts:
                        logger.warning(
                            "gateway transport error, retrying %s %s (attempt %s/%s): %s",
                            method, path, attempt, self.max_attempts, e,
                        )
                        continue
                    await self._failure()
                    raise errors.GatewayUnavailable(f"Payment gateway unreachable: {e}") from e

        if resp.status_code >= 400:
            if resp.status_code >= 500:
                await self._failure()
            else:
                await self._success()
            message = _error_message(resp)
            logger.info("gateway rejected %s %s: %s %s", method, path, resp.status_code, message)
            raise errors.GatewayError(message, http_status=resp.status_code)

        await self._success()
        if resp.content:
            return resp.json()
        return {}

    async def _success(self):
        if self.breaker:
            await self.breaker.record_success()

    async def _failure(self):
        if self.breaker:
            await self.breaker.record_failure()

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(timezone.utc).isoformat()

    # -------- operations --------

    async def pay(
        self,
        payment_id: str,
        booking_id: str,
        amount: Decimal,
        currency: str,
        method: PaymentMethod,
        metadata: dict | None = None,
    ) -> PaymentInfo:
        data = await self._call(
            "POST",
            "/payments",
            payload={
                "payment_id": payment_id,
                "booking_id": booking_id,
                "amount": float(amount),
                "currency": currency,
                "payment_method": PaymentMethod(method).value,
                "metadata": metadata or {},
                "timestamp": self._timestamp(),
            },
            idempotency_key=payment_id,
            timeout=self.payment_timeout,
        )
        return parse_payment(data)

    async def retry(self, payment_id: str, idempotency_key: str) -> PaymentInfo:
        data = await self._call(
            "POST",
            f"/payments/{payment_id}/retry",
            payload={"payment_id": payment_id, "timestamp": self._timestamp()},
            idempotency_key=idempotency_key,
            timeout=self.payment_timeout,
        )
        return parse_payment(data)

    async def cancel(self, payment_id: str, idempotency_key: str) -> None:
        await self._call(
            "DELETE",
            f"/payments/{payment_id}",
            idempotency_key=idempotency_key,
            timeout=self.payment_timeout,
        )

    async def refund(self, payment_id: str, refund_id: str, amount: Decimal, reason: str) -> RefundInfo:
        data = await self._call(
            "POST",
            "/refunds",
            payload={
                "refund_id": refund_id,
                "payment_id": payment_id,
                "refund_amount": float(amount),
                "reason": reason,
                "timestamp": self._timestamp(),
            },
            idempotency_key=refund_id,
            timeout=self.payment_timeout,
        )
        return parse_refund(data)

    async def status(self, payment_id: str) -> PaymentInfo:
        data = await self._call("GET", f"/payments/{payment_id}", timeout=self.status_timeout)
        return parse_payment(data)
