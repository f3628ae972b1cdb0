import logging

import aio_pika

logger = logging.getLogger(__name__)

EXCHANGE_NAME = "domain_events"


async def open_exchange(url: str, exchange_name: str = EXCHANGE_NAME, prefetch_count: int | None = None):
    """Connect and declare the durable topic exchange; returns (connection, channel, exchange)."""
    connection = await aio_pika.connect_robust(url)
    channel = await connection.channel()
    if prefetch_count:
        await channel.set_qos(prefetch_count=prefetch_count)
    exchange = await channel.declare_exchange(exchange_name, aio_pika.ExchangeType.TOPIC, durable=True)
    return connection, channel, exchange


class RabbitPublisher:
    """
    Topic-exchange publisher. Disabled when no URL is configured; publish
    failures are logged and swallowed so callers never fail on events.
    """

    def __init__(self, url: str | None, exchange_name: str = EXCHANGE_NAME):
        self.url = url
        self.exchange_name = exchange_name
        self.enabled = bool(url)
        self._connection: aio_pika.RobustConnection | None = None
        self._channel: aio_pika.abc.AbstractChannel | None = None
        self._exchange: aio_pika.abc.AbstractExchange | None = None

    async def connect(self):
        if not self.enabled:
            return

        if self._connection and not self._connection.is_closed:
            return

        try:
            self._connection, self._channel, self._exchange = await open_exchange(self.url, self.exchange_name)
        except Exception as e:
            logger.warning("RabbitMQ connect failed: %s", e)
            self._connection = None
            self._channel = None
            self._exchange = None
            raise

    async def publish(self, routing_key: str, message_body: str):
        if not self.enabled:
            return

        try:
            await self.connect()
        except Exception:
            return

        if not self._exchange:
            return

        try:
            msg = aio_pika.Message(
                body=message_body.encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            )
            await self._exchange.publish(msg, routing_key=routing_key)
        except Exception as e:
            logger.warning("RabbitMQ publish failed for %s: %s", routing_key, e)

    async def close(self):
        try:
            if self._connection and not self._connection.is_closed:
                await self._connection.close()
        finally:
            self._connection = None
            self._channel = None
            self._exchange = None
