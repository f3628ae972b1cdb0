import logging
import time

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"

FAILURE_WINDOW_SECONDS = 60
CLOSED_TTL_SECONDS = 3600


class CircuitBreakerOpen(Exception):
    pass


class CircuitBreaker:
    """
    Circuit breaker for the payment gateway, kept in one Redis hash so every
    instance of the service sees the same state.

    CLOSED counts consecutive failures; OPEN rejects calls until
    `reset_timeout_seconds` have passed; then exactly one instance claims the
    HALF_OPEN probe and its outcome closes or re-opens the breaker.
    """

    def __init__(
        self,
        redis_client,
        name: str,
        failure_threshold: int = 5,
        reset_timeout_seconds: int = 15,
    ):
        self.redis = redis_client
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout_seconds = reset_timeout_seconds
        self.key = f"breaker:{name}"
        self.probe_key = f"breaker:{name}:probe"

    async def _state(self) -> str:
        return await self.redis.hget(self.key, "state") or CLOSED

    async def allow_request(self) -> None:
        state = await self._state()
        if state == CLOSED:
            return

        if state == OPEN:
            opened_at = await self.redis.hget(self.key, "opened_at")
            if opened_at and time.time() - float(opened_at) < self.reset_timeout_seconds:
                raise CircuitBreakerOpen(f"{self.name} circuit is open")

        # reset timeout passed (or a probe is already out): one caller probes
        claimed = await self.redis.set(self.probe_key, "1", ex=self.reset_timeout_seconds, nx=True)
        if not claimed:
            raise CircuitBreakerOpen(f"{self.name} circuit is half-open, probe in flight")
        await self.redis.hset(self.key, mapping={"state": HALF_OPEN})
        logger.info("circuit breaker %s half-open, probing", self.name)

    async def record_success(self) -> None:
        if await self._state() != CLOSED:
            logger.info("circuit breaker %s closed after a successful call", self.name)
            await self.close()
            return
        await self.redis.hset(self.key, mapping={"failures": 0})

    async def record_failure(self) -> None:
        if await self._state() == HALF_OPEN:
            await self.open()
            return

        failures = await self.redis.hincrby(self.key, "failures", 1)
        if failures == 1:
            await self.redis.expire(self.key, FAILURE_WINDOW_SECONDS)
        if failures >= self.failure_threshold:
            await self.open()

    async def open(self) -> None:
        logger.warning("circuit breaker %s opened", self.name)
        pipe = self.redis.pipeline()
        pipe.hset(self.key, mapping={"state": OPEN, "opened_at": time.time(), "failures": 0})
        pipe.expire(self.key, self.reset_timeout_seconds + 30)
        pipe.delete(self.probe_key)
        await pipe.execute()

    async def close(self) -> None:
        pipe = self.redis.pipeline()
        pipe.hset(self.key, mapping={"state": CLOSED, "failures": 0, "opened_at": ""})
        pipe.expire(self.key, CLOSED_TTL_SECONDS)
        pipe.delete(self.probe_key)
        await pipe.execute()

    async def status(self) -> dict:
        data = await self.redis.hgetall(self.key)
        return {
            "name": self.name,
            "state": data.get("state") or CLOSED,
            "failures": int(data.get("failures") or 0),
            "failure_threshold": self.failure_threshold,
            "reset_timeout_seconds": self.reset_timeout_seconds,
        }
