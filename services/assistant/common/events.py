"""
Outbound events of the records assistant.

The assistant announces two facts after they are committed to its stores:

- AnalysisCompleted  (correlation id = analysis id)
- AnswerGenerated    (correlation id = conversation id)

Each goes to a durable queue "<prefix>.<EventType>" on the default exchange.
Publishing is opt-in (PUBLISH_EVENTS) and best-effort: the request that
produced the fact has already succeeded, so a broker problem is only logged.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import aio_pika

from common.config import Settings

logger = logging.getLogger("events")

ENVELOPE_VERSION = "1.0"


def now_iso() -> str:
    """Timezone-aware ISO-8601 UTC timestamp, e.g. "2025-10-26T20:15:23.742123+00:00"."""
    return datetime.now(tz=timezone.utc).isoformat()


@dataclass
class EventEnvelope:
    eventType: str
    eventId: str
    timestamp: str
    correlationId: str
    source: str
    version: str
    payload: Dict[str, Any]

    def to_message(self) -> aio_pika.Message:
        return aio_pika.Message(
            body=json.dumps(asdict(self), ensure_ascii=False).encode("utf-8"),
            content_type="application/json",
            delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            message_id=self.eventId,
            timestamp=datetime.fromisoformat(self.timestamp),
            correlation_id=self.correlationId,
            headers={"eventType": self.eventType, "version": self.version, "source": self.source},
        )


class EventPublisher:
    """
    Lazily connected AMQP publisher owned by one app instance.

    A disabled publisher never touches the network, so tests and local runs
    need no broker.
    """

    def __init__(self, url: str, *, source: str, queue_prefix: str = "assistant", enabled: bool = True):
        self.url = url
        self.source = source
        self.queue_prefix = queue_prefix
        self.enabled = enabled
        self._lock = asyncio.Lock()
        self._connection: Optional[aio_pika.abc.AbstractRobustConnection] = None
        self._channel: Optional[aio_pika.abc.AbstractChannel] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventPublisher":
        return cls(
            settings.rabbitmq_url,
            source=settings.service_name,
            queue_prefix=settings.event_queue_prefix,
            enabled=settings.publish_events,
        )

    def queue_name(self, event_type: str) -> str:
        return f"{self.queue_prefix}.{event_type}"

    def envelope(self, event_type: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> EventEnvelope:
        # an uncorrelated event still gets an id so it can be traced downstream
        return EventEnvelope(
            eventType=event_type,
            eventId=str(uuid.uuid4()),
            timestamp=now_iso(),
            correlationId=correlation_id or str(uuid.uuid4()),
            source=self.source,
            version=ENVELOPE_VERSION,
            payload=payload,
        )

    async def _channel_or_connect(self) -> aio_pika.abc.AbstractChannel:
        async with self._lock:
            if self._channel is not None and not self._channel.is_closed:
                return self._channel
            if self._connection is None or self._connection.is_closed:
                logger.info("Connecting to RabbitMQ for %s events", self.queue_prefix)
                self._connection = await aio_pika.connect_robust(self.url)
            self._channel = await self._connection.channel()
            return self._channel

    async def publish(self, event: EventEnvelope) -> None:
        channel = await self._channel_or_connect()
        queue = await channel.declare_queue(self.queue_name(event.eventType), durable=True)
        await channel.default_exchange.publish(event.to_message(), routing_key=queue.name)
        logger.info("Published %s id=%s corr=%s", event.eventType, event.eventId, event.correlationId)

    async def emit(self, event_type: str, payload: Dict[str, Any], correlation_id: Optional[str] = None) -> None:
        if not self.enabled:
            return
        try:
            await self.publish(self.envelope(event_type, payload, correlation_id))
        except Exception as exc:
            logger.warning("Failed to publish %s event: %s", event_type, exc)

    async def close(self) -> None:
        async with self._lock:
            if self._connection is not None and not self._connection.is_closed:
                await self._connection.close()
            self._connection = None
            self._channel = None
