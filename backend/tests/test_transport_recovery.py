"""Cross-process conversation delivery over a shared in-memory broker."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Any

import pytest
from fastapi.websockets import WebSocketState

from anatomia.realtime import BrokerConfig, ConnectionRegistry, ConversationDelivery, RedisTransport
from anatomia.realtime.transport import CONVERSATIONS_TOPIC, TransportUnavailableError
from app.monitoring.metrics import realtime_transport_restarts_total


class Broker:
    """Channels shared by every client, standing in for one Redis server."""

    def __init__(self) -> None:
        self.clients: list[BrokerClient] = []
        self.listeners: dict[str, set[BrokerPubSub]] = defaultdict(set)

    def from_url(self, *_args: Any, **_kwargs: Any) -> BrokerClient:
        client = BrokerClient(self)
        self.clients.append(client)
        return client


class BrokerPubSub:
    def __init__(self, client: BrokerClient) -> None:
        self._client = client
        self._inbox: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()
        self._channels: set[str] = set()

    async def subscribe(self, channel: str) -> None:
        self._client.ensure_online()
        self._channels.add(channel)
        self._client.broker.listeners[channel].add(self)

    async def unsubscribe(self, channel: str) -> None:
        self._channels.discard(channel)
        self._client.broker.listeners[channel].discard(self)

    async def close(self) -> None:
        for channel in list(self._channels):
            await self.unsubscribe(channel)

    async def listen(self):
        while True:
            message = await self._inbox.get()
            if message is None:
                return
            yield message

    def deliver(self, data: str) -> None:
        self._inbox.put_nowait({"type": "message", "data": data})

    def hang_up(self) -> None:
        self._inbox.put_nowait(None)


class BrokerClient:
    def __init__(self, broker: Broker) -> None:
        self.broker = broker
        self.online = True
        self._pubsubs: list[BrokerPubSub] = []

    def ensure_online(self) -> None:
        if not self.online:
            raise ConnectionError("connection lost")

    async def ping(self) -> None:
        self.ensure_online()

    async def publish(self, channel: str, data: str) -> int:
        self.ensure_online()
        listeners = list(self.broker.listeners[channel])
        for pubsub in listeners:
            pubsub.deliver(data)
        return len(listeners)

    def pubsub(self) -> BrokerPubSub:
        pubsub = BrokerPubSub(self)
        self._pubsubs.append(pubsub)
        return pubsub

    async def close(self) -> None:
        self.drop()

    def drop(self) -> None:
        self.online = False
        for pubsub in self._pubsubs:
            pubsub.hang_up()


class MemberSocket:
    def __init__(self) -> None:
        self.application_state = WebSocketState.CONNECTED
        self.sent: list[dict[str, Any]] = []
        self.arrived = asyncio.Event()

    async def send_json(self, payload: dict[str, Any]) -> None:
        self.sent.append(payload)
        self.arrived.set()


async def allow_everyone(conversation_id: int, member_id: int) -> bool:
    return True


async def start_node(node_id: str, prefix: str = "test") -> tuple[ConversationDelivery, RedisTransport]:
    transport = RedisTransport(BrokerConfig(redis_url="redis://broker", prefix=prefix, node_id=node_id))
    await transport.start()
    delivery = ConversationDelivery(ConnectionRegistry(allow_everyone), transport, node_id=node_id)
    await delivery.start()
    return delivery, transport


async def stop_node(node: tuple[ConversationDelivery, RedisTransport]) -> None:
    delivery, transport = node
    await delivery.stop()
    await transport.stop()


def typing_event(conversation_id: int, sender_id: int) -> dict[str, Any]:
    return {"type": "typing", "conversationId": conversation_id, "senderId": sender_id}


@pytest.fixture()
def broker(monkeypatch) -> Broker:
    shared = Broker()
    monkeypatch.setattr("anatomia.realtime.transport.redis_asyncio", shared)
    monkeypatch.setattr("anatomia.realtime.transport._RECOVERY_BASE_DELAY", 0.01)
    monkeypatch.setattr("anatomia.realtime.transport._RECOVERY_MAX_DELAY", 0.05)
    return shared


@pytest.fixture(autouse=True)
def reset_transport_restart_metric() -> None:
    realtime_transport_restarts_total.clear()
    yield
    realtime_transport_restarts_total.clear()


@pytest.fixture()
def anyio_backend() -> str:
    return "asyncio"


@pytest.mark.anyio("asyncio")
async def test_conversation_events_reach_other_node_after_broker_reconnect(broker: Broker):
    node_a, transport_a = await start_node("node-a")
    node_b, transport_b = await start_node("node-b")
    ada_socket, alan_socket = MemberSocket(), MemberSocket()
    ada = node_a.registry.register(ada_socket, 1)
    alan = node_b.registry.register(alan_socket, 2)
    await node_a.registry.join(ada.connection_id, 12)
    await node_b.registry.join(alan.connection_id, 12)

    assert await node_a.publish(12, typing_event(12, 1), exclude_member_id=1) == 0
    await asyncio.wait_for(alan_socket.arrived.wait(), timeout=1.0)
    assert alan_socket.sent == [typing_event(12, 1)]

    node_b_client = broker.clients[1]
    node_b_client.drop()

    for _ in range(50):
        if realtime_transport_restarts_total.value("redis", "reader_stopped") >= 1:
            break
        await asyncio.sleep(0.02)
    else:
        raise AssertionError("node-b did not reconnect to the broker")
    assert len(broker.clients) == 3

    alan_socket.arrived.clear()
    await node_a.publish(12, {"type": "read", "conversationId": 12, "senderId": 1}, exclude_member_id=1)
    await asyncio.wait_for(alan_socket.arrived.wait(), timeout=1.0)

    assert [event["type"] for event in alan_socket.sent] == ["typing", "read"]
    # The publishing node ignores its own envelope, and the sender is excluded.
    assert ada_socket.sent == []

    await stop_node((node_a, transport_a))
    await stop_node((node_b, transport_b))


@pytest.mark.anyio("asyncio")
async def test_envelope_names_origin_conversation_and_exclusion(broker: Broker):
    node = await start_node("node-a", prefix="unit")
    node_a, _ = node
    captured: list[str] = []

    class Tap:
        def deliver(self, data: str) -> None:
            captured.append(data)

    broker.listeners[f"unit.{CONVERSATIONS_TOPIC}"].add(Tap())
    await node_a.publish(5, typing_event(5, 9), exclude_member_id=9)

    assert len(captured) == 1
    assert '"origin": "node-a"' in captured[0]
    assert '"conversation_id": 5' in captured[0]
    assert '"exclude_member_id": 9' in captured[0]

    await stop_node(node)


@pytest.mark.anyio("asyncio")
async def test_malformed_broker_payloads_are_skipped(broker: Broker):
    node = await start_node("node-b", prefix="unit")
    node_b, _ = node
    socket = MemberSocket()
    connection = node_b.registry.register(socket, 2)
    await node_b.registry.join(connection.connection_id, 4)

    publisher = broker.from_url("redis://broker")
    channel = f"unit.{CONVERSATIONS_TOPIC}"
    await publisher.publish(channel, "not json")
    await publisher.publish(channel, "[1, 2]")
    await publisher.publish(channel, '{"origin": "node-c", "conversation_id": 4}')
    await publisher.publish(
        channel,
        '{"origin": "node-c", "conversation_id": 4, "exclude_member_id": null, '
        '"event": {"type": "read", "conversationId": 4, "senderId": 1}}',
    )
    await asyncio.wait_for(socket.arrived.wait(), timeout=1.0)

    assert socket.sent == [{"type": "read", "conversationId": 4, "senderId": 1}]

    await stop_node(node)


@pytest.mark.anyio("asyncio")
async def test_unconfigured_transport_refuses_publish_and_subscribe():
    transport = RedisTransport(BrokerConfig(redis_url=None))

    async def handler(payload: dict[str, Any]) -> None:  # pragma: no cover - never called
        raise AssertionError("unexpected delivery")

    assert transport.configured is False
    with pytest.raises(TransportUnavailableError):
        await transport.publish(CONVERSATIONS_TOPIC, {"value": 1})
    with pytest.raises(TransportUnavailableError):
        await transport.subscribe(CONVERSATIONS_TOPIC, handler)
