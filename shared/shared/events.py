import json
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal


def build_event(event_type: str, data: dict, source: str | None = None) -> dict:
    event = {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }
    if source:
        event["source"] = source
    return event


def _encode(value):
    # money goes out as a string so no precision is lost
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=_encode)
