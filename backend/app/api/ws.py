"""WebSocket endpoint for real-time conversation delivery."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Dict, TypeVar

from fastapi import APIRouter, Depends, WebSocket, status
from fastapi.websockets import WebSocketDisconnect, WebSocketState
from starlette.concurrency import run_in_threadpool

from anatomia.realtime import (
    ConnectionRegistry,
    ConnectionState,
    ConversationDelivery,
    LiveConnection,
    ResumeStore,
    advance_state,
    build_message_event,
    get_delivery,
    get_registry,
    get_resume_store,
    safe_send_json,
)
from anatomia.realtime.delivery import isoformat_utc
from app import database
from app.api.deps import load_active_member
from app.config import get_settings
from app.core.sessions import SessionError, resolve_session, session_token_from_headers
from app.models import Member
from app.models.base import utcnow
from app.monitoring.metrics import realtime_events_total, realtime_handshake_failures_total
from app.services.interactions import InteractionStore

router = APIRouter(prefix="/ws", tags=["ws"])

settings = get_settings()

logger = logging.getLogger(__name__)

WS_AUTH_REQUIRED = 4001

T = TypeVar("T")


async def iter_keepalive_messages(
    websocket: WebSocket,
    receiver: Callable[[], Awaitable[T]],
    *,
    timeout_seconds: float | int | None,
    ping_interval_seconds: float | int | None,
    max_idle_seconds: float | int | None = None,
    ping_payload: Dict[str, Any] | None = None,
) -> AsyncIterator[T]:
    """Yield messages from *receiver* while sending keepalive pings when idle.

    When *max_idle_seconds* is set, a socket that has not sent anything for
    that long is closed with 1001 and the iteration ends.
    """

    ping_payload = ping_payload or {"type": "ping"}
    timeout = float(timeout_seconds) if timeout_seconds else 0.0
    interval = float(ping_interval_seconds) if ping_interval_seconds else 0.0
    max_idle = float(max_idle_seconds) if max_idle_seconds else 0.0
    last_activity = time.monotonic()
    last_ping_sent: float | None = None

    while True:
        try:
            if timeout > 0:
                message = await asyncio.wait_for(receiver(), timeout=timeout)
            else:
                message = await receiver()
        except asyncio.TimeoutError:
            if websocket.application_state != WebSocketState.CONNECTED:
                break

            now = time.monotonic()
            if max_idle > 0 and now - last_activity >= max_idle:
                logger.info("Closing idle websocket", extra={"idle_seconds": round(now - last_activity, 3)})
                with contextlib.suppress(RuntimeError):
                    await websocket.close(code=status.WS_1001_GOING_AWAY, reason="Idle timeout")
                break

            should_ping = False
            if interval <= 0:
                should_ping = True
            elif now - last_activity >= interval and (
                last_ping_sent is None or now - last_ping_sent >= interval
            ):
                should_ping = True

            if should_ping:
                if not await safe_send_json(websocket, ping_payload):
                    break
                last_ping_sent = now
            continue
        except asyncio.CancelledError:  # pragma: no cover - cooperative cancellation
            raise
        except (RuntimeError, WebSocketDisconnect):
            break
        else:
            last_activity = time.monotonic()
            last_ping_sent = None
            yield message


async def _reject(websocket: WebSocket, state: ConnectionState, reason: str) -> ConnectionState:
    state = advance_state(state, ConnectionState.REJECTED)
    realtime_handshake_failures_total.labels(reason).inc()
    logger.info("Rejected chat socket", extra={"reason": reason, "state": state.value})
    await websocket.close(code=WS_AUTH_REQUIRED, reason="Authentication required")
    return state


async def _authenticate(websocket: WebSocket) -> tuple[ConnectionState, Member | None]:
    """Resolve the member from the session cookie, closing with 4001 on failure.

    Returns the handshake state reached together with the member, which is
    ``None`` once the socket has been rejected.
    """

    state = advance_state(ConnectionState.CONNECTING, ConnectionState.AUTHENTICATING)
    token = session_token_from_headers(websocket.headers, websocket.cookies)
    if not token:
        return await _reject(websocket, state, "missing_session"), None
    try:
        session = resolve_session(token)
    except SessionError:
        return await _reject(websocket, state, "invalid_session"), None

    def load() -> Member | None:
        with database.get_db_session() as db:
            member = load_active_member(session.member_id, db)
            if member is not None:
                db.expunge(member)
            return member

    member = await run_in_threadpool(load)
    if member is None:
        return await _reject(websocket, state, "unknown_member"), None
    return state, member


async def _receive_frame(websocket: WebSocket) -> str | None:
    """Return the next text frame, or ``None`` for a binary one."""

    message = await websocket.receive()
    if message["type"] == "websocket.disconnect":
        raise WebSocketDisconnect(message.get("code", status.WS_1000_NORMAL_CLOSURE))
    return message.get("text")


def _latest_message_id(conversation_id: int) -> int:
    with database.get_db_session() as db:
        return InteractionStore(db).latest_message_id(conversation_id)


def _missed_message_events(conversation_id: int, after_id: int, limit: int) -> list[dict[str, Any]]:
    with database.get_db_session() as db:
        messages = InteractionStore(db).messages_after(conversation_id, after_id, limit)
        return [build_message_event(message, message.sender) for message in messages]


def _conversation_id_of(payload: dict[str, Any]) -> int | None:
    try:
        return int(payload["conversationId"])
    except (KeyError, TypeError, ValueError):
        return None


async def _join(connection: LiveConnection, conversation_id: int, registry: ConnectionRegistry) -> bool:
    baseline = await run_in_threadpool(_latest_message_id, conversation_id)
    if not await registry.join(connection.connection_id, conversation_id):
        return False
    connection.last_delivered.setdefault(conversation_id, baseline)
    return True


async def _resume(
    connection: LiveConnection,
    token: str,
    registry: ConnectionRegistry,
    resume_store: ResumeStore,
) -> None:
    """Re-join the conversations of a closed socket and replay what it missed."""

    snapshot = resume_store.consume(token, connection.member_id)
    rejoined: list[int] = []
    replayed = 0
    if snapshot is not None:
        for conversation_id in snapshot.conversation_ids:
            after_id = snapshot.last_delivered.get(conversation_id)
            if after_id is None:
                after_id = await run_in_threadpool(_latest_message_id, conversation_id)
            if not await registry.join(connection.connection_id, conversation_id):
                continue
            rejoined.append(conversation_id)
            events = await run_in_threadpool(
                _missed_message_events,
                conversation_id,
                after_id,
                settings.chat_history_max_limit,
            )
            for event in events:
                if not await safe_send_json(connection.websocket, event):
                    break
                connection.record_delivery(conversation_id, event["messageId"])
                replayed += 1
            connection.last_delivered.setdefault(conversation_id, after_id)
    logger.info(
        "Resumed chat connection",
        extra={
            "connection_id": connection.connection_id,
            "conversations": len(rejoined),
            "replayed": replayed,
        },
    )
    await safe_send_json(
        connection.websocket,
        {"type": "resumed", "conversationIds": rejoined, "replayed": replayed},
    )


async def _relay_activity(
    event_type: str,
    connection: LiveConnection,
    conversation_id: int,
    registry: ConnectionRegistry,
    delivery: ConversationDelivery,
) -> None:
    if not registry.has_joined(connection.connection_id, conversation_id):
        logger.debug(
            "Ignoring %s for a conversation that was not joined",
            event_type,
            extra={"connection_id": connection.connection_id, "conversation_id": conversation_id},
        )
        return
    await delivery.publish(
        conversation_id,
        {
            "type": event_type,
            "conversationId": conversation_id,
            "senderId": connection.member_id,
            "timestamp": isoformat_utc(utcnow()),
        },
        exclude_member_id=connection.member_id,
    )


@router.websocket("/chat")
async def websocket_chat(
    websocket: WebSocket,
    registry: ConnectionRegistry = Depends(get_registry),
    delivery: ConversationDelivery = Depends(get_delivery),
    resume_store: ResumeStore = Depends(get_resume_store),
) -> None:
    """Deliver conversation events to an authenticated member."""

    state, member = await _authenticate(websocket)
    if member is None:
        return

    await websocket.accept()
    connection = registry.register(
        websocket, member.id, state=advance_state(state, ConnectionState.OPEN)
    )
    try:
        await safe_send_json(
            websocket,
            {
                "type": "connected",
                "connectionId": connection.connection_id,
                "memberId": member.id,
                "resumeToken": connection.resume_token,
            },
        )
        initial_resume = websocket.query_params.get("resume")
        if initial_resume:
            await _resume(connection, initial_resume, registry, resume_store)

        async for raw_message in iter_keepalive_messages(
            websocket,
            lambda: _receive_frame(websocket),
            timeout_seconds=settings.websocket_keepalive_timeout_seconds,
            ping_interval_seconds=settings.websocket_keepalive_ping_interval_seconds,
            max_idle_seconds=settings.websocket_max_idle_seconds,
        ):
            if raw_message is None:
                logger.warning(
                    "Discarded binary chat frame",
                    extra={"connection_id": connection.connection_id},
                )
                continue
            if not raw_message:
                continue
            try:
                payload = json.loads(raw_message)
            except json.JSONDecodeError:
                logger.warning(
                    "Discarded malformed chat payload",
                    extra={"connection_id": connection.connection_id},
                )
                continue
            if not isinstance(payload, dict):
                logger.warning(
                    "Discarded non-object chat payload",
                    extra={"connection_id": connection.connection_id},
                )
                continue

            event_type = payload.get("type")
            if event_type == "ping":
                await safe_send_json(websocket, {"type": "pong"})
                continue
            if event_type == "pong":
                continue
            if event_type == "resume":
                token = payload.get("resumeToken")
                if isinstance(token, str) and token:
                    await _resume(connection, token, registry, resume_store)
                else:
                    await safe_send_json(
                        websocket, {"type": "resumed", "conversationIds": [], "replayed": 0}
                    )
                continue
            if event_type == "message":
                logger.debug("Ignoring socket message event; messages are sent over HTTP")
                continue
            if event_type not in {"join", "leave", "typing", "read"}:
                logger.debug("Ignoring unknown chat event", extra={"event_type": event_type})
                continue

            conversation_id = _conversation_id_of(payload)
            if conversation_id is None:
                logger.debug("Chat event without a conversation id", extra={"event_type": event_type})
                continue

            realtime_events_total.labels("conversations", "client", event_type).inc()
            if event_type == "join":
                await _join(connection, conversation_id, registry)
            elif event_type == "leave":
                registry.leave(connection.connection_id, conversation_id)
            else:
                await _relay_activity(event_type, connection, conversation_id, registry, delivery)
    finally:
        closed = registry.deregister(connection.connection_id)
        if closed is not None:
            resume_store.save(closed)
