from __future__ import annotations

import logging
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from anatomia.realtime import BrokerConfig, ConnectionRegistry, ConversationDelivery, RedisTransport
from app.monitoring.metrics import realtime_events_total, realtime_publish_errors_total


class DummyWebSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)


class FailingRedis:
    async def publish(self, channel: str, payload: str) -> None:  # pragma: no cover - used in tests
        raise ConnectionError("boom")


class RecordingRedis:
    def __init__(self) -> None:
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, payload: str) -> None:
        self.published.append((channel, payload))


async def allow_all(conversation_id: int, member_id: int) -> bool:
    return True


@pytest.fixture(autouse=True)
def reset_delivery_metrics() -> None:
    realtime_publish_errors_total.clear()
    realtime_events_total.clear()
    yield
    realtime_publish_errors_total.clear()
    realtime_events_total.clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


async def _joined_socket(registry: ConnectionRegistry, member_id: int, conversation_id: int) -> DummyWebSocket:
    websocket = DummyWebSocket()
    connection = registry.register(websocket, member_id)
    await registry.join(connection.connection_id, conversation_id)
    return websocket


@pytest.mark.anyio("asyncio")
async def test_publish_failure_logs_warning_and_still_delivers_locally(caplog):
    transport = RedisTransport(BrokerConfig(redis_url="redis://example"))
    transport._redis = FailingRedis()  # type: ignore[assignment]
    registry = ConnectionRegistry(allow_all)
    delivery = ConversationDelivery(registry, transport, node_id="node-a")
    websocket = await _joined_socket(registry, 2, 15)

    with caplog.at_level(logging.WARNING):
        delivered = await delivery.publish(15, {"type": "typing", "conversationId": 15, "senderId": 1})

    assert delivered == 1
    assert websocket.sent[0]["type"] == "typing"
    assert any(
        record.levelno == logging.WARNING and "typing event" in record.getMessage()
        for record in caplog.records
    ), "Publish failure should be logged as a warning"
    assert realtime_publish_errors_total.value("conversations", "redis", "unavailable") == 1.0


@pytest.mark.anyio("asyncio")
async def test_publish_forwards_envelope_to_broker():
    transport = RedisTransport(
        BrokerConfig(redis_url="redis://example", prefix="test.realtime", node_id="node-a")
    )
    recording = RecordingRedis()
    transport._redis = recording  # type: ignore[assignment]
    registry = ConnectionRegistry(allow_all)
    delivery = ConversationDelivery(registry, transport, node_id="node-a")

    await delivery.publish(3, {"type": "read", "conversationId": 3, "senderId": 4}, exclude_member_id=4)

    assert len(recording.published) == 1
    channel, raw = recording.published[0]
    assert channel == "test.realtime.conversations"
    assert '"origin": "node-a"' in raw
    assert '"exclude_member_id": 4' in raw
    assert realtime_events_total.value("conversations", "out", "read") == 1.0


@pytest.mark.anyio("asyncio")
async def test_local_only_mode_skips_broker():
    transport = RedisTransport(BrokerConfig(redis_url=None))
    registry = ConnectionRegistry(allow_all)
    delivery = ConversationDelivery(registry, transport, node_id="solo")
    websocket = await _joined_socket(registry, 2, 8)

    await delivery.publish(8, {"type": "read", "conversationId": 8, "senderId": 1})

    assert websocket.sent[0]["type"] == "read"
    assert realtime_publish_errors_total.value("conversations", "redis", "unavailable") == 0.0


@pytest.mark.anyio("asyncio")
async def test_remote_events_fan_out_but_own_echo_is_ignored():
    transport = RedisTransport(BrokerConfig(redis_url=None))
    registry = ConnectionRegistry(allow_all)
    delivery = ConversationDelivery(registry, transport, node_id="node-a")
    sender_socket = await _joined_socket(registry, 1, 21)
    peer_socket = await _joined_socket(registry, 2, 21)
    event = {"type": "message", "conversationId": 21, "messageId": 5, "senderId": 1, "content": "yo"}

    await delivery.handle_remote(
        {"origin": "node-a", "conversation_id": 21, "exclude_member_id": 1, "event": event}
    )
    assert peer_socket.sent == []

    await delivery.handle_remote(
        {"origin": "node-b", "conversation_id": 21, "exclude_member_id": 1, "event": event}
    )
    assert peer_socket.sent == [event]
    assert sender_socket.sent == []
    assert realtime_events_total.value("conversations", "in", "message") == 1.0
