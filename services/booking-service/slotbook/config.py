import os
from decimal import Decimal

BOOKING_DB = os.getenv("BOOKING_DB")
REDIS_URL = os.getenv("REDIS_URL")  # optional: breaker and consumer idempotency
RABBIT_URL = os.getenv("RABBIT_URL")  # optional in dev, required if you want events

PAYMENT_GATEWAY_URL = os.getenv("PAYMENT_GATEWAY_URL") or "https://api.payment-gateway.com/v1"
PAYMENT_GATEWAY_API_KEY = os.getenv("PAYMENT_GATEWAY_API_KEY")

# gateway timeouts (seconds)
PAYMENT_TIMEOUT_SECONDS = float(os.getenv("PAYMENT_TIMEOUT_SECONDS") or "30")
STATUS_TIMEOUT_SECONDS = float(os.getenv("STATUS_TIMEOUT_SECONDS") or "15")
GATEWAY_MAX_ATTEMPTS = int(os.getenv("GATEWAY_MAX_ATTEMPTS") or "3")

BREAKER_FAILURE_THRESHOLD = int(os.getenv("BREAKER_FAILURE_THRESHOLD") or "5")
BREAKER_RESET_SECONDS = int(os.getenv("BREAKER_RESET_SECONDS") or "15")

TX_MAX_ATTEMPTS = int(os.getenv("TX_MAX_ATTEMPTS") or "5")

DEFAULT_CURRENCY = os.getenv("DEFAULT_CURRENCY") or "KRW"
MAX_PAYMENT_AMOUNT = Decimal(os.getenv("MAX_PAYMENT_AMOUNT") or "10000000")

SLOT_TIMEZONE = os.getenv("SLOT_TIMEZONE") or "UTC"

# booking closes this many hours before the slot starts
BOOKING_CUTOFF_HOURS = 1
# coarse refund gate used for UI enablement
REFUND_ELIGIBILITY_MIN_HOURS = 1
# batch refunds with is_full_refund=False
BATCH_PARTIAL_REFUND_RATE = Decimal("0.8")
