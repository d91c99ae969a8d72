"""Websocket chat flow: handshake, join, fan-out, relays, resume and idle close."""

from __future__ import annotations

import logging
import time
from typing import Any

import pytest
from fastapi.testclient import TestClient
from starlette.testclient import WebSocketTestSession
from starlette.websockets import WebSocketDisconnect

from anatomia.realtime import ConnectionState, get_registry
from app.api import ws as ws_module
from app.core.sessions import create_session, revoke_session
from app.monitoring.metrics import realtime_handshake_failures_total


@pytest.fixture(autouse=True)
def reset_handshake_metric() -> None:
    realtime_handshake_failures_total.clear()
    yield
    realtime_handshake_failures_total.clear()


@pytest.fixture()
def pair(client: TestClient, make_member, auth_headers) -> dict[str, Any]:
    """Two members sharing a direct conversation, plus an outsider."""

    ada = make_member("Ada", "Lovelace")
    alan = make_member("Alan", "Turing")
    grace = make_member("Grace", "Hopper")
    headers = {member_id: auth_headers(member_id) for member_id in (ada, alan, grace)}
    response = client.post(
        "/api/interactions/conversations", json={"recipientId": alan}, headers=headers[ada]
    )
    assert response.status_code == 201, response.text
    return {
        "conversation_id": response.json()["id"],
        "ada": ada,
        "alan": alan,
        "grace": grace,
        "headers": headers,
    }


def _connect(client: TestClient, headers: dict[str, str], query: str = "") -> WebSocketTestSession:
    return client.websocket_connect(f"/ws/chat{query}", headers=headers)


def _join(connection: WebSocketTestSession, conversation_id: int) -> None:
    connection.send_json({"type": "join", "conversationId": conversation_id})
    # Events are handled in order, so the pong confirms the join was processed.
    connection.send_json({"type": "ping"})
    assert connection.receive_json() == {"type": "pong"}


def _wait_for_empty_registry() -> None:
    registry = get_registry()
    for _ in range(50):
        if len(registry) == 0:
            return
        time.sleep(0.02)
    raise AssertionError("Chat connection was not deregistered")


def test_handshake_without_session_is_rejected(client: TestClient, caplog):
    with caplog.at_level(logging.INFO, logger=ws_module.__name__):
        with pytest.raises(WebSocketDisconnect) as exc:
            with client.websocket_connect("/ws/chat"):
                pass

    assert exc.value.code == ws_module.WS_AUTH_REQUIRED
    assert realtime_handshake_failures_total.value("missing_session") == 1.0
    rejected = [record for record in caplog.records if record.getMessage() == "Rejected chat socket"]
    assert [record.state for record in rejected] == [ConnectionState.REJECTED.value]


def test_handshake_with_invalid_or_revoked_session_is_rejected(client: TestClient, make_member):
    member_id = make_member()
    token, _ = create_session(member_id)
    revoke_session(token)

    for bad_token in ("not-a-token", token):
        with pytest.raises(WebSocketDisconnect) as exc:
            with _connect(client, {"Authorization": f"Bearer {bad_token}"}):
                pass
        assert exc.value.code == ws_module.WS_AUTH_REQUIRED

    assert realtime_handshake_failures_total.value("invalid_session") == 2.0


def test_message_is_delivered_to_joined_participants_only(client: TestClient, pair):
    conversation_id = pair["conversation_id"]
    headers = pair["headers"]

    with _connect(client, headers[pair["alan"]]) as alan_socket, _connect(
        client, headers[pair["ada"]]
    ) as ada_socket:
        assert alan_socket.receive_json()["type"] == "connected"
        connected = ada_socket.receive_json()
        assert connected["type"] == "connected"
        assert connected["memberId"] == pair["ada"]
        _join(alan_socket, conversation_id)
        _join(ada_socket, conversation_id)

        response = client.post(
            f"/api/interactions/conversations/{conversation_id}/messages",
            json={"content": "  Hello Alan  "},
            headers=headers[pair["ada"]],
        )
        assert response.status_code == 201, response.text
        message = response.json()

        event = alan_socket.receive_json()
        assert event["type"] == "message"
        assert event["conversationId"] == conversation_id
        assert event["messageId"] == message["id"]
        assert event["senderId"] == pair["ada"]
        assert event["content"] == "Hello Alan"
        assert event["senderFirstName"] == "Ada"
        assert event["senderLastName"] == "Lovelace"
        assert event["timestamp"]

        # The sender gets no echo: the next frame is the pong for this ping.
        ada_socket.send_json({"type": "ping"})
        assert ada_socket.receive_json() == {"type": "pong"}

    _wait_for_empty_registry()


def test_non_participant_join_is_ignored(client: TestClient, pair):
    conversation_id = pair["conversation_id"]
    headers = pair["headers"]

    with _connect(client, headers[pair["grace"]]) as grace_socket:
        assert grace_socket.receive_json()["type"] == "connected"
        _join(grace_socket, conversation_id)

        response = client.post(
            f"/api/interactions/conversations/{conversation_id}/messages",
            json={"content": "private"},
            headers=headers[pair["ada"]],
        )
        assert response.status_code == 201

        grace_socket.send_json({"type": "ping"})
        assert grace_socket.receive_json() == {"type": "pong"}


def test_typing_and_read_are_relayed_to_other_participants(client: TestClient, pair):
    conversation_id = pair["conversation_id"]
    headers = pair["headers"]

    with _connect(client, headers[pair["alan"]]) as alan_socket, _connect(
        client, headers[pair["ada"]]
    ) as ada_socket:
        alan_socket.receive_json()
        ada_socket.receive_json()
        _join(alan_socket, conversation_id)
        _join(ada_socket, conversation_id)

        ada_socket.send_json({"type": "typing", "conversationId": conversation_id})
        typing = alan_socket.receive_json()
        assert typing["type"] == "typing"
        assert typing["senderId"] == pair["ada"]

        response = client.post(
            f"/api/interactions/conversations/{conversation_id}/read",
            headers=headers[pair["alan"]],
        )
        assert response.json() == {"success": True}
        read = ada_socket.receive_json()
        assert read["type"] == "read"
        assert read["senderId"] == pair["alan"]


def test_malformed_and_unknown_frames_keep_the_socket_open(client: TestClient, pair):
    with _connect(client, pair["headers"][pair["ada"]]) as socket:
        socket.receive_json()
        socket.send_text("{not json")
        socket.send_text("[1, 2, 3]")
        socket.send_json({"type": "dance"})
        socket.send_json({"type": "join"})
        socket.send_json({"type": "ping"})
        assert socket.receive_json() == {"type": "pong"}


def test_binary_frame_keeps_the_socket_open(client: TestClient, pair):
    with _connect(client, pair["headers"][pair["ada"]]) as socket:
        socket.receive_json()
        socket.send_bytes(b"\x00\x01not text")
        socket.send_json({"type": "ping"})
        assert socket.receive_json() == {"type": "pong"}
        assert pair["ada"] in get_registry().connected_member_ids()


def test_accepted_socket_is_registered_open(client: TestClient, pair):
    with _connect(client, pair["headers"][pair["alan"]]) as socket:
        connected = socket.receive_json()
        connection = get_registry().get(connected["connectionId"])
        assert connection is not None
        assert connection.state == ConnectionState.OPEN

    _wait_for_empty_registry()
    assert connection.state == ConnectionState.CLOSED


def test_resume_replays_missed_messages(client: TestClient, pair):
    conversation_id = pair["conversation_id"]
    headers = pair["headers"]

    with _connect(client, headers[pair["alan"]]) as alan_socket:
        connected = alan_socket.receive_json()
        resume_token = connected["resumeToken"]
        _join(alan_socket, conversation_id)

    _wait_for_empty_registry()

    response = client.post(
        f"/api/interactions/conversations/{conversation_id}/messages",
        json={"content": "while you were away"},
        headers=headers[pair["ada"]],
    )
    assert response.status_code == 201
    missed_id = response.json()["id"]

    with _connect(client, headers[pair["alan"]], f"?resume={resume_token}") as alan_socket:
        assert alan_socket.receive_json()["type"] == "connected"
        replayed = alan_socket.receive_json()
        assert replayed["type"] == "message"
        assert replayed["messageId"] == missed_id
        resumed = alan_socket.receive_json()
        assert resumed == {"type": "resumed", "conversationIds": [conversation_id], "replayed": 1}

        # Joined again: new messages keep flowing.
        client.post(
            f"/api/interactions/conversations/{conversation_id}/messages",
            json={"content": "welcome back"},
            headers=headers[pair["ada"]],
        )
        assert alan_socket.receive_json()["content"] == "welcome back"


def test_resume_token_belongs_to_its_member(client: TestClient, pair):
    headers = pair["headers"]

    with _connect(client, headers[pair["alan"]]) as alan_socket:
        resume_token = alan_socket.receive_json()["resumeToken"]
        _join(alan_socket, pair["conversation_id"])

    _wait_for_empty_registry()

    with _connect(client, headers[pair["grace"]]) as grace_socket:
        grace_socket.receive_json()
        grace_socket.send_json({"type": "resume", "resumeToken": resume_token})
        assert grace_socket.receive_json() == {
            "type": "resumed",
            "conversationIds": [],
            "replayed": 0,
        }


def test_keepalive_pings_keep_the_socket_open(client: TestClient, pair):
    """Server side keepalive pings arrive while the client stays responsive."""

    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds

    settings.websocket_keepalive_timeout_seconds = 0.1
    settings.websocket_keepalive_ping_interval_seconds = 0.05

    try:
        with _connect(client, pair["headers"][pair["ada"]]) as connection:
            assert connection.receive_json()["type"] == "connected"

            time.sleep(0.15)
            assert connection.receive_json()["type"] == "ping"
            connection.send_json({"type": "pong"})

            time.sleep(0.12)
            assert connection.receive_json()["type"] == "ping"
            connection.send_json({"type": "pong"})

            connection.send_json({"type": "ping"})
            assert connection.receive_json()["type"] == "pong"
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval


def test_idle_socket_is_closed_and_deregistered(client: TestClient, pair):
    settings = ws_module.settings
    original_timeout = settings.websocket_keepalive_timeout_seconds
    original_interval = settings.websocket_keepalive_ping_interval_seconds
    original_idle = settings.websocket_max_idle_seconds

    settings.websocket_keepalive_timeout_seconds = 0.05
    settings.websocket_keepalive_ping_interval_seconds = 0.05
    settings.websocket_max_idle_seconds = 0.2

    try:
        with _connect(client, pair["headers"][pair["ada"]]) as connection:
            assert connection.receive_json()["type"] == "connected"
            with pytest.raises(WebSocketDisconnect) as exc:
                while True:
                    assert connection.receive_json()["type"] == "ping"
            assert exc.value.code == 1001
    finally:
        settings.websocket_keepalive_timeout_seconds = original_timeout
        settings.websocket_keepalive_ping_interval_seconds = original_interval
        settings.websocket_max_idle_seconds = original_idle

    _wait_for_empty_registry()
