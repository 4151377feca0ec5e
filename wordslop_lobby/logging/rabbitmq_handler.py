import asyncio
import logging
import sys
from typing import Any, Dict, Optional, Set

import aio_pika
from faststream.rabbit import RabbitBroker


class LogShipper:
    """
    Sends log payloads to a durable topic exchange.

    The exchange is declared with aio-pika before the FastStream broker
    connects; both happen lazily on the first payload.
    """

    def __init__(self, url: str, exchange: str, routing_key: str):
        self.url = url
        self.exchange = exchange
        self.routing_key = routing_key
        self._broker: Optional[RabbitBroker] = None
        self._connect_lock = asyncio.Lock()

    async def _ensure_broker(self) -> RabbitBroker:
        async with self._connect_lock:
            if self._broker is None:
                connection = await aio_pika.connect_robust(self.url)
                async with connection:
                    channel = await connection.channel()
                    await channel.declare_exchange(self.exchange, aio_pika.ExchangeType.TOPIC, durable=True)

                broker = RabbitBroker(self.url)
                await broker.connect()
                self._broker = broker
        return self._broker

    async def ship(self, payload: Dict[str, Any]) -> bool:
        try:
            broker = await self._ensure_broker()
            await broker.publish(payload, exchange=self.exchange, routing_key=self.routing_key)
            return True
        except Exception as e:
            # Logging about a logging failure would recurse
            print(f"Log shipping to RabbitMQ failed: {e!r}", file=sys.stderr)
            return False

    async def close(self):
        if self._broker is not None:
            await self._broker.close()
            self._broker = None


class RabbitMQHandler(logging.Handler):
    """
    Logging handler that ships records to RabbitMQ in the background.

    Records emitted outside a running event loop are dropped; the file and
    console handlers still have them.
    """

    def __init__(self, url: str, exchange: str, routing_key: str, level: int = logging.WARNING):
        super().__init__(level)
        self.shipper = LogShipper(url, exchange, routing_key)
        self._pending: Set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord):
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        task = loop.create_task(self.shipper.ship(self.payload(record)))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    @staticmethod
    def payload(record: logging.LogRecord) -> Dict[str, Any]:
        entry = getattr(record, "structured_data", None)
        if entry is not None:
            return entry.to_dict()
        # Third-party records carry no section of their own
        return {
            "timestamp": record.created,
            "level": record.levelname,
            "section": "system",
            "subsection": record.name,
            "message": record.getMessage(),
        }

    async def aclose(self):
        """Wait for in-flight payloads, then drop the broker connection."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
        await self.shipper.close()
