from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable

try:
    from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
except ModuleNotFoundError:  # pragma: no cover
    AIOKafkaConsumer = None
    AIOKafkaProducer = None

from service.logging_config import correlation_id

logger = logging.getLogger(__name__)

DECLARATION_CHANGES_TOPIC = "declaration_changes"
COMPLIANCE_ALERTS_TOPIC = "compliance_alerts"
SWEEP_TRIGGERS_TOPIC = "integrity_sweep_triggers"
INTEGRITY_SNAPSHOTS_TOPIC = "integrity_snapshots"

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


def _encode(value: dict[str, Any]) -> bytes:
    return json.dumps(value, default=str, separators=(",", ":")).encode("utf-8")


class KafkaBus:
    """Publishes integrity events to Kafka.

    Without a reachable broker, events go to a bounded per-topic outbox held
    in process; the oldest event is dropped once a topic's outbox is full.
    """

    def __init__(self, bootstrap_servers: str, client_id: str, outbox_size: int = 10_000) -> None:
        self.bootstrap_servers = bootstrap_servers
        self.client_id = client_id
        self.outbox_size = outbox_size
        self._producer: AIOKafkaProducer | None = None
        self._outbox: dict[str, asyncio.Queue[dict[str, Any]]] = {}

    @property
    def connected(self) -> bool:
        return self._producer is not None

    def _queue(self, topic: str) -> asyncio.Queue[dict[str, Any]]:
        if topic not in self._outbox:
            self._outbox[topic] = asyncio.Queue(maxsize=self.outbox_size)
        return self._outbox[topic]

    async def connect(self) -> None:
        if AIOKafkaProducer is None:
            return
        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            client_id=self.client_id,
            acks="all",
            enable_idempotence=True,
            value_serializer=_encode,
        )
        try:
            await asyncio.wait_for(producer.start(), timeout=1.0)
        except Exception as exc:
            logger.info("Kafka unreachable at %s (%s); events stay in process", self.bootstrap_servers, exc)
            try:
                await producer.stop()
            except Exception:
                logger.debug("Producer cleanup after failed start raised", exc_info=True)
            return
        self._producer = producer

    async def close(self) -> None:
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None

    async def ping(self) -> bool:
        if self._producer is None:
            return False
        try:
            return await self._producer.partitions_for(DECLARATION_CHANGES_TOPIC) is not None
        except Exception:
            return False

    async def publish(self, topic: str, value: dict[str, Any], key: str | None = None) -> bool:
        """Send an event; returns False when it was kept in the outbox instead."""
        if self._producer is not None:
            headers = [("correlation_id", correlation_id.get("").encode("utf-8"))]
            try:
                await self._producer.send_and_wait(
                    topic, value=value, key=None if key is None else key.encode("utf-8"), headers=headers,
                )
                return True
            except Exception as exc:
                logger.warning("Kafka publish to %s failed (%s); kept in outbox", topic, exc)
        queue = self._queue(topic)
        if queue.full():
            dropped = queue.get_nowait()
            logger.warning("Outbox for %s full; dropped event for %s", topic, dropped.get("vehicle_id"))
        queue.put_nowait(value)
        return False

    def pending(self, topic: str) -> list[dict[str, Any]]:
        """Drain the outbox for a topic."""
        queue = self._queue(topic)
        items: list[dict[str, Any]] = []
        while not queue.empty():
            items.append(queue.get_nowait())
        return items

    async def _consume_broker(self, topic: str, handler: Handler, stop_event: asyncio.Event, group: str) -> None:
        consumer = AIOKafkaConsumer(
            topic,
            bootstrap_servers=self.bootstrap_servers,
            group_id=f"{self.client_id}-{group}",
            value_deserializer=lambda v: json.loads(v.decode("utf-8")),
        )
        try:
            await asyncio.wait_for(consumer.start(), timeout=1.0)
            while not stop_event.is_set():
                msg = await consumer.getone()
                await handler(msg.value)
        finally:
            await consumer.stop()

    async def consume_forever(self, topic: str, handler: Handler, stop_event: asyncio.Event, group: str) -> None:
        if self._producer is not None and AIOKafkaConsumer is not None:
            try:
                await self._consume_broker(topic, handler, stop_event, group)
                return
            except Exception:
                logger.exception("Consumer for %s stopped; reading the outbox instead", topic)

        queue = self._queue(topic)
        while not stop_event.is_set():
            try:
                event = await asyncio.wait_for(queue.get(), timeout=0.5)
            except TimeoutError:
                continue
            await handler(event)

    async def consume_sweep_triggers_forever(self, handler: Handler, stop_event: asyncio.Event) -> None:
        await self.consume_forever(SWEEP_TRIGGERS_TOPIC, handler, stop_event, group="sweeper")
