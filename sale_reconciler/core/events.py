"""
In-process event bus with optional Redis broadcast.

Local subscribers are always delivered first and each handler runs inside
its own error boundary, so one failing subscriber never affects another or
the emitter. ``RedisBroadcastEventBus`` wraps a local bus and additionally
republishes every event on ``<prefix><topic>``; messages published by other
instances are relayed to local subscribers. Redis trouble degrades to
local-only delivery.
"""
import asyncio
import json
import uuid
from collections import defaultdict
from typing import Any, Callable, DefaultDict, Dict, List, Optional

import redis.asyncio as aioredis
import structlog

from ..config import Settings
from .ports import EventHandler

logger = structlog.get_logger(__name__)

SALE_CONFIRMED = "sale.confirmed"
SALE_EXPIRED = "sale.expired"


class LocalEventBus:
    """Topic-keyed pub/sub delivering to handlers in this process."""

    def __init__(self) -> None:
        self._handlers: DefaultDict[str, List[EventHandler]] = defaultdict(list)

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        """
        Register a handler for a topic.

        Args:
            topic: Event topic, e.g. ``sale.confirmed``
            handler: Sync or async callable receiving the payload

        Returns:
            Callable[[], None]: Function that removes the subscription
        """
        self._handlers[topic].append(handler)

        def unsubscribe() -> None:
            handlers = self._handlers.get(topic, [])
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    async def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.deliver_local(topic, payload)

    async def deliver_local(self, topic: str, payload: Dict[str, Any]) -> None:
        # Copy so handlers may unsubscribe while being delivered to
        for handler in list(self._handlers.get(topic, [])):
            try:
                result = handler(payload)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    topic=topic,
                    handler=getattr(handler, "__name__", repr(handler)),
                    error=str(e),
                    exc_info=True,
                )


class RedisBroadcastEventBus:
    """
    Decorates a local bus with cross-instance delivery over Redis pub/sub.

    Every message carries this instance's ``origin`` id so the relay loop
    can skip events it published itself.
    """

    def __init__(
        self,
        local: LocalEventBus,
        redis_client: aioredis.Redis,
        channel_prefix: str = "event:",
        publish_timeout_seconds: float = 1.0,
    ):
        """
        Initialize the broadcast bus.

        Args:
            local: Bus used for in-process delivery
            redis_client: Connected Redis client (decode_responses=True)
            channel_prefix: Prefix prepended to topics to form channel names
            publish_timeout_seconds: Longest wait for one publish before
                the event is treated as local-only
        """
        self.local = local
        self.redis_client = redis_client
        self.channel_prefix = channel_prefix
        self.publish_timeout_seconds = publish_timeout_seconds
        self.origin = uuid.uuid4().hex
        self._listener: Optional[asyncio.Task] = None
        self._pubsub: Any = None

    def subscribe(self, topic: str, handler: EventHandler) -> Callable[[], None]:
        return self.local.subscribe(topic, handler)

    async def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        await self.local.deliver_local(topic, payload)

        message = json.dumps(
            {"origin": self.origin, "topic": topic, "payload": payload}, default=str
        )
        try:
            await asyncio.wait_for(
                self.redis_client.publish(f"{self.channel_prefix}{topic}", message),
                self.publish_timeout_seconds,
            )
        except Exception as e:
            logger.warning(
                "event_broadcast_failed",
                topic=topic,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def start(self) -> None:
        """Start relaying events published by other instances."""
        if self._listener is not None:
            return
        try:
            self._pubsub = self.redis_client.pubsub()
            await asyncio.wait_for(
                self._pubsub.psubscribe(f"{self.channel_prefix}*"),
                self.publish_timeout_seconds,
            )
        except Exception as e:
            logger.warning("event_relay_subscribe_failed", error=str(e))
            self._pubsub = None
            return
        self._listener = asyncio.create_task(self._relay())
        logger.info("event_relay_started", origin=self.origin)

    async def _relay(self) -> None:
        try:
            async for message in self._pubsub.listen():
                if message.get("type") != "pmessage":
                    continue
                await self.handle_message(message.get("data"))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("event_relay_stopped", error=str(e))

    async def handle_message(self, raw: Any) -> None:
        """Deliver a broadcast message locally unless it originated here."""
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("event_relay_malformed_message")
            return

        if message.get("origin") == self.origin:
            return

        topic = message.get("topic")
        if not topic:
            return
        await self.local.deliver_local(topic, message.get("payload") or {})

    async def close(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            try:
                await self._listener
            except asyncio.CancelledError:
                pass
            self._listener = None

        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except Exception as e:
                logger.warning("event_relay_close_failed", error=str(e))
            self._pubsub = None

        await self.redis_client.aclose()


async def build_event_bus(settings: Settings) -> Any:
    """
    Build the event bus for this process.

    Returns a ``RedisBroadcastEventBus`` when Redis is configured and
    answers a ping, otherwise a plain ``LocalEventBus``.
    """
    local = LocalEventBus()
    if not settings.redis_url:
        logger.info("event_bus_local_only", reason="redis_not_configured")
        return local

    redis_client = aioredis.from_url(
        settings.redis_url,
        encoding="utf-8",
        decode_responses=True,
        # No socket_timeout: it would also cut the idle pub/sub relay read
        socket_connect_timeout=settings.redis_timeout_seconds,
    )
    try:
        await asyncio.wait_for(redis_client.ping(), settings.redis_timeout_seconds)
    except Exception as e:
        logger.warning("event_bus_local_only", reason="redis_unreachable", error=str(e))
        await redis_client.aclose()
        return local

    bus = RedisBroadcastEventBus(
        local,
        redis_client,
        settings.event_channel_prefix,
        publish_timeout_seconds=settings.redis_timeout_seconds,
    )
    await bus.start()
    return bus
