PROCESSED_TTL_SECONDS = 86400


def processed_key(event_id: str) -> str:
    return f"processed_event:{event_id}"


async def mark_processed(redis_client, event_id: str, ttl_seconds: int = PROCESSED_TTL_SECONDS) -> bool:
    """
    Claim an event id. Returns False when another consumer already claimed it.
    """
    return bool(await redis_client.set(processed_key(event_id), "1", ex=ttl_seconds, nx=True))
