"""Conversation fan-out: local sockets first, then other processes via the broker."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from app.monitoring.metrics import (
    realtime_events_total,
    realtime_publish_errors_total,
    realtime_subscriptions,
)

from .registry import ConnectionRegistry
from .transport import (
    BACKEND_NAME,
    CONVERSATIONS_TOPIC,
    RedisTransport,
    Subscription,
    TransportUnavailableError,
)

if TYPE_CHECKING:  # pragma: no cover - typing helpers only
    from app.models import Member, Message


logger = logging.getLogger(__name__)


def isoformat_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def build_message_event(message: "Message", sender: "Member") -> dict[str, Any]:
    """Server ``message`` event for a persisted message."""

    return {
        "type": "message",
        "conversationId": message.conversation_id,
        "messageId": message.id,
        "senderId": message.sender_id,
        "content": message.content,
        "timestamp": isoformat_utc(message.created_at),
        "senderFirstName": sender.first_name,
        "senderLastName": sender.last_name,
    }


class ConversationDelivery:
    """Best-effort, at-most-once delivery of conversation events."""

    def __init__(
        self,
        registry: ConnectionRegistry,
        transport: RedisTransport,
        *,
        node_id: str,
    ) -> None:
        self._registry = registry
        self._transport = transport
        self._node_id = node_id
        self._subscription: Subscription | None = None
        self._publish_warning_logged = False
        self._subscribe_warning_logged = False

    @property
    def registry(self) -> ConnectionRegistry:
        return self._registry

    @property
    def node_id(self) -> str:
        return self._node_id

    async def start(self) -> None:
        if not self._transport.configured:
            return
        try:
            self._subscription = await self._transport.subscribe(
                CONVERSATIONS_TOPIC, self.handle_remote
            )
        except TransportUnavailableError:
            if not self._subscribe_warning_logged:
                logger.warning(
                    "Realtime backend unavailable; conversation events will be limited to this instance",
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._subscribe_warning_logged = True
            self._subscription = None
            return
        realtime_subscriptions.labels(CONVERSATIONS_TOPIC, BACKEND_NAME).inc()
        self._subscribe_warning_logged = False

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            realtime_subscriptions.labels(CONVERSATIONS_TOPIC, BACKEND_NAME).dec()
            self._subscription = None

    async def handle_remote(self, message: dict[str, Any]) -> None:
        """Fan out an event published by another process."""

        if message.get("origin") == self._node_id:
            return
        event = message.get("event")
        if not isinstance(event, dict):
            return
        try:
            conversation_id = int(message["conversation_id"])
        except (KeyError, TypeError, ValueError):
            return
        exclude = message.get("exclude_member_id")
        exclude_member_id = exclude if isinstance(exclude, int) else None
        await self._registry.broadcast(
            conversation_id, event, exclude_member_id=exclude_member_id
        )
        realtime_events_total.labels(CONVERSATIONS_TOPIC, "in", event.get("type", "unknown")).inc()

    async def publish(
        self,
        conversation_id: int,
        event: dict[str, Any],
        *,
        exclude_member_id: int | None = None,
    ) -> int:
        """Deliver to local sockets, then forward to the broker; returns local deliveries."""

        delivered = await self._registry.broadcast(
            conversation_id, event, exclude_member_id=exclude_member_id
        )
        if self._transport.configured:
            await self._publish_remote(
                {
                    "origin": self._node_id,
                    "conversation_id": conversation_id,
                    "exclude_member_id": exclude_member_id,
                    "event": event,
                }
            )
        return delivered

    async def notify_new_message(self, message: "Message", sender: "Member") -> int:
        event = build_message_event(message, sender)
        return await self.publish(
            message.conversation_id, event, exclude_member_id=message.sender_id
        )

    async def _publish_remote(self, payload: dict[str, Any]) -> None:
        action = payload["event"].get("type", "unknown")
        try:
            await self._transport.publish(CONVERSATIONS_TOPIC, payload)
        except TransportUnavailableError:
            if not self._publish_warning_logged:
                logger.warning(
                    "Realtime backend unavailable while publishing %s event; operating in local-only mode",
                    action,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )
                self._publish_warning_logged = True
            realtime_publish_errors_total.labels(
                CONVERSATIONS_TOPIC, BACKEND_NAME, "unavailable"
            ).inc()
        except Exception:
            realtime_publish_errors_total.labels(CONVERSATIONS_TOPIC, BACKEND_NAME, "error").inc()
            logger.exception("Unexpected error while publishing %s event", action)
        else:
            self._publish_warning_logged = False
            realtime_events_total.labels(CONVERSATIONS_TOPIC, "out", action).inc()
