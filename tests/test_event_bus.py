"""
Tests for the local event bus and the Redis broadcast decorator.
"""
import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from sale_reconciler.core.events import (
    SALE_CONFIRMED,
    LocalEventBus,
    RedisBroadcastEventBus,
    build_event_bus,
)


class TestLocalEventBus:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_sync_and_async_handlers_receive_payload(self) -> None:
        bus = LocalEventBus()
        received = []

        async def async_handler(payload):
            received.append(("async", payload["sale_id"]))

        bus.subscribe(SALE_CONFIRMED, lambda payload: received.append(("sync", payload["sale_id"])))
        bus.subscribe(SALE_CONFIRMED, async_handler)

        await bus.emit(SALE_CONFIRMED, {"sale_id": 100})

        assert received == [("sync", 100), ("async", 100)]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_handler_error_is_isolated(self) -> None:
        bus = LocalEventBus()
        received = []

        def broken(payload):
            raise ValueError("boom")

        bus.subscribe(SALE_CONFIRMED, broken)
        bus.subscribe(SALE_CONFIRMED, lambda payload: received.append(payload))

        await bus.emit(SALE_CONFIRMED, {"sale_id": 1})

        assert received == [{"sale_id": 1}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unsubscribe(self) -> None:
        bus = LocalEventBus()
        received = []
        unsubscribe = bus.subscribe(SALE_CONFIRMED, received.append)

        unsubscribe()
        unsubscribe()
        await bus.emit(SALE_CONFIRMED, {"sale_id": 1})

        assert received == []

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_other_topics_not_delivered(self) -> None:
        bus = LocalEventBus()
        received = []
        bus.subscribe("sale.expired", received.append)

        await bus.emit(SALE_CONFIRMED, {"sale_id": 1})

        assert received == []


class TestRedisBroadcastEventBus:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_emit_delivers_locally_and_publishes(self) -> None:
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(return_value=1)
        bus = RedisBroadcastEventBus(LocalEventBus(), redis_client, "event:")
        received = []
        bus.subscribe(SALE_CONFIRMED, received.append)

        await bus.emit(SALE_CONFIRMED, {"sale_id": 7})

        assert received == [{"sale_id": 7}]
        channel, message = redis_client.publish.await_args.args
        assert channel == "event:sale.confirmed"
        decoded = json.loads(message)
        assert decoded["origin"] == bus.origin
        assert decoded["payload"] == {"sale_id": 7}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_failure_degrades_to_local(self) -> None:
        redis_client = MagicMock()
        redis_client.publish = AsyncMock(side_effect=ConnectionError("redis down"))
        bus = RedisBroadcastEventBus(LocalEventBus(), redis_client)
        received = []
        bus.subscribe(SALE_CONFIRMED, received.append)

        await bus.emit(SALE_CONFIRMED, {"sale_id": 7})

        assert received == [{"sale_id": 7}]

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_relay_skips_own_messages(self) -> None:
        bus = RedisBroadcastEventBus(LocalEventBus(), MagicMock())
        received = []
        bus.subscribe(SALE_CONFIRMED, received.append)

        own = json.dumps({"origin": bus.origin, "topic": SALE_CONFIRMED, "payload": {"sale_id": 1}})
        other = json.dumps({"origin": "other", "topic": SALE_CONFIRMED, "payload": {"sale_id": 2}})
        await bus.handle_message(own)
        await bus.handle_message(other)
        await bus.handle_message("not json")

        assert received == [{"sale_id": 2}]


    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_hanging_publish_is_bounded(self) -> None:
        async def never_returns(channel, message):
            await asyncio.Event().wait()

        redis_client = MagicMock()
        redis_client.publish = never_returns
        bus = RedisBroadcastEventBus(
            LocalEventBus(), redis_client, publish_timeout_seconds=0.05
        )
        received = []
        bus.subscribe(SALE_CONFIRMED, received.append)

        await asyncio.wait_for(bus.emit(SALE_CONFIRMED, {"sale_id": 7}), 2.0)

        assert received == [{"sale_id": 7}]


class TestBuildEventBus:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_only_without_redis(self, test_settings) -> None:
        bus = await build_event_bus(test_settings)
        assert isinstance(bus, LocalEventBus)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_local_only_when_redis_unreachable(self, test_settings, mocker) -> None:
        redis_client = MagicMock()
        redis_client.ping = AsyncMock(side_effect=ConnectionError("refused"))
        redis_client.aclose = AsyncMock()
        mocker.patch("sale_reconciler.core.events.aioredis.from_url", return_value=redis_client)
        settings = test_settings.model_copy(update={"redis_url": "redis://localhost:6399/0"})

        bus = await build_event_bus(settings)

        assert isinstance(bus, LocalEventBus)
        redis_client.aclose.assert_awaited_once()
