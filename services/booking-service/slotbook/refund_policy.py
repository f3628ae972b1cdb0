"""
Time-based cancellation refund policy.

Pure functions only: the tier table below is the whole policy. Refund
legality (payment state, cumulative cap) is decided by the payment
orchestrator, not here.
"""
import math
from datetime import datetime
from decimal import Decimal, ROUND_DOWN

CENT = Decimal("0.01")

# (minimum whole hours before start, refund rate, policy text), highest tier first
REFUND_TIERS = (
    (168, Decimal("1.0"), "Cancelled 7 or more days before start: 100% refund"),
    (72, Decimal("0.8"), "Cancelled 3-7 days before start: 80% refund"),
    (24, Decimal("0.5"), "Cancelled 1-3 days before start: 50% refund"),
)
NO_REFUND_RATE = Decimal("0.0")
NO_REFUND_TEXT = "Cancelled within 24 hours of start: no refund"


def hours_until_start(slot_start_time: datetime, now: datetime) -> int:
    """Whole hours from `now` until the slot starts, floored; negative once started."""
    return math.floor((slot_start_time - now).total_seconds() / 3600)


def refund_rate(hours: int) -> Decimal:
    for min_hours, rate, _ in REFUND_TIERS:
        if hours >= min_hours:
            return rate
    return NO_REFUND_RATE


def policy_text(hours: int) -> str:
    for min_hours, _, text in REFUND_TIERS:
        if hours >= min_hours:
            return text
    return NO_REFUND_TEXT


def refund_amount(payment_amount: Decimal, slot_start_time: datetime, now: datetime) -> Decimal:
    rate = refund_rate(hours_until_start(slot_start_time, now))
    # never round a refund up past the tier
    return (Decimal(payment_amount) * rate).quantize(CENT, rounding=ROUND_DOWN)
