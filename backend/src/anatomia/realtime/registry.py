"""Process-local registry of live chat sockets and their joined conversations."""

from __future__ import annotations

import logging
import secrets
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable

from fastapi.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from app.monitoring.metrics import realtime_connections

logger = logging.getLogger(__name__)

MembershipChecker = Callable[[int, int], Awaitable[bool]]

CONNECTION_SCOPE = "chat"


async def safe_send_json(websocket: WebSocket, data: dict[str, Any]) -> bool:
    """Safely send JSON data through websocket, handling disconnections gracefully.

    Returns True if message was sent successfully, False otherwise.
    """
    if websocket.application_state != WebSocketState.CONNECTED:
        return False
    try:
        await websocket.send_json(data)
        return True
    except (WebSocketDisconnect, RuntimeError) as e:
        logger.debug("Failed to send websocket message: %s", e)
        return False


class ConnectionState(str, Enum):
    """Lifecycle of a chat socket."""

    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    OPEN = "open"
    REJECTED = "rejected"
    CLOSED = "closed"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.CONNECTING: frozenset({ConnectionState.AUTHENTICATING, ConnectionState.CLOSED}),
    ConnectionState.AUTHENTICATING: frozenset(
        {ConnectionState.OPEN, ConnectionState.REJECTED, ConnectionState.CLOSED}
    ),
    ConnectionState.OPEN: frozenset({ConnectionState.CLOSED}),
    ConnectionState.REJECTED: frozenset(),
    ConnectionState.CLOSED: frozenset(),
}


def advance_state(current: ConnectionState, target: ConnectionState) -> ConnectionState:
    """Return *target* if a socket in *current* may move there, else raise ``ValueError``."""

    if target not in _TRANSITIONS[current]:
        raise ValueError(f"Illegal connection transition {current.value} -> {target.value}")
    return target


def _new_resume_token() -> str:
    return secrets.token_urlsafe(24)


@dataclass(slots=True, eq=False)
class LiveConnection:
    """An authenticated socket and the conversations it listens to."""

    connection_id: str
    websocket: WebSocket
    member_id: int
    conversation_ids: set[int] = field(default_factory=set)
    state: ConnectionState = ConnectionState.OPEN
    resume_token: str = field(default_factory=_new_resume_token)
    last_delivered: dict[int, int] = field(default_factory=dict)

    def record_delivery(self, conversation_id: int, message_id: int) -> None:
        current = self.last_delivered.get(conversation_id, 0)
        if message_id > current:
            self.last_delivered[conversation_id] = message_id

    @property
    def is_connected(self) -> bool:
        return self.websocket.application_state == WebSocketState.CONNECTED


def _message_id_of(event: dict[str, Any]) -> int | None:
    if event.get("type") != "message":
        return None
    try:
        return int(event["messageId"])
    except (KeyError, TypeError, ValueError):
        return None


class ConnectionRegistry:
    """Map of connection id to :class:`LiveConnection` for this process.

    Mutations are synchronous so no await can interleave with them. ``join``
    awaits the membership check first and only then touches the map, looking
    the connection up again since it may have closed in the meantime.
    """

    def __init__(self, membership_checker: MembershipChecker) -> None:
        self._check_membership = membership_checker
        self._connections: dict[str, LiveConnection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._connections

    def get(self, connection_id: str) -> LiveConnection | None:
        return self._connections.get(connection_id)

    def register(
        self,
        websocket: WebSocket,
        member_id: int,
        *,
        state: ConnectionState = ConnectionState.OPEN,
    ) -> LiveConnection:
        connection_id = f"{member_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        connection = LiveConnection(
            connection_id=connection_id,
            websocket=websocket,
            member_id=member_id,
            state=state,
        )
        self._connections[connection_id] = connection
        realtime_connections.labels(CONNECTION_SCOPE).inc()
        logger.debug(
            "Registered chat connection",
            extra={"connection_id": connection_id, "member_id": member_id},
        )
        return connection

    def deregister(self, connection_id: str) -> LiveConnection | None:
        connection = self._connections.pop(connection_id, None)
        if connection is None:
            return None
        connection.state = advance_state(connection.state, ConnectionState.CLOSED)
        realtime_connections.labels(CONNECTION_SCOPE).dec()
        logger.debug(
            "Deregistered chat connection",
            extra={"connection_id": connection_id, "member_id": connection.member_id},
        )
        return connection

    async def join(self, connection_id: str, conversation_id: int) -> bool:
        connection = self._connections.get(connection_id)
        if connection is None:
            return False
        allowed = await self._check_membership(conversation_id, connection.member_id)
        connection = self._connections.get(connection_id)
        if connection is None or connection.state != ConnectionState.OPEN:
            return False
        if not allowed:
            logger.debug(
                "Ignoring join for non-participant",
                extra={"connection_id": connection_id, "conversation_id": conversation_id},
            )
            return False
        connection.conversation_ids.add(conversation_id)
        return True

    def leave(self, connection_id: str, conversation_id: int) -> None:
        connection = self._connections.get(connection_id)
        if connection is not None:
            connection.conversation_ids.discard(conversation_id)

    def has_joined(self, connection_id: str, conversation_id: int) -> bool:
        connection = self._connections.get(connection_id)
        return connection is not None and conversation_id in connection.conversation_ids

    def connected_member_ids(self) -> set[int]:
        return {
            connection.member_id
            for connection in self._connections.values()
            if connection.state == ConnectionState.OPEN
        }

    def connections_for(self, conversation_id: int) -> list[LiveConnection]:
        return [
            connection
            for connection in self._connections.values()
            if conversation_id in connection.conversation_ids
        ]

    async def broadcast(
        self,
        conversation_id: int,
        event: dict[str, Any],
        *,
        exclude_member_id: int | None = None,
    ) -> int:
        """Send ``event`` to every joined connection; returns the delivery count."""

        targets = [
            connection
            for connection in self.connections_for(conversation_id)
            if connection.member_id != exclude_member_id and connection.is_connected
        ]
        message_id = _message_id_of(event)
        delivered = 0
        for connection in targets:
            if not await safe_send_json(connection.websocket, event):
                continue
            delivered += 1
            if message_id is not None:
                connection.record_delivery(conversation_id, message_id)
        return delivered
