"""Short-lived resume tokens for reconnecting chat sockets."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from app.services.cache import CacheBackend

from .registry import LiveConnection

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ResumeSnapshot:
    member_id: int
    conversation_ids: list[int]
    last_delivered: dict[int, int] = field(default_factory=dict)


class ResumeStore:
    """Keeps the joined conversations of closed sockets for a short while."""

    def __init__(self, cache: CacheBackend, *, ttl_seconds: int) -> None:
        self._cache = cache
        self._ttl_seconds = ttl_seconds

    @staticmethod
    def _key(token: str) -> str:
        return f"realtime:resume:{token}"

    def save(self, connection: LiveConnection) -> None:
        payload = {
            "member_id": connection.member_id,
            "conversation_ids": sorted(connection.conversation_ids),
            "last_delivered": {
                str(conversation_id): message_id
                for conversation_id, message_id in connection.last_delivered.items()
                if conversation_id in connection.conversation_ids
            },
        }
        self._cache.set(self._key(connection.resume_token), json.dumps(payload), self._ttl_seconds)

    def consume(self, token: str, member_id: int) -> ResumeSnapshot | None:
        """Return the snapshot behind ``token`` once, and only to its owner."""

        raw = self._cache.pop(self._key(token))
        if raw is None:
            return None
        try:
            payload = json.loads(raw)
            snapshot = ResumeSnapshot(
                member_id=int(payload["member_id"]),
                conversation_ids=[int(value) for value in payload.get("conversation_ids", [])],
                last_delivered={
                    int(key): int(value)
                    for key, value in payload.get("last_delivered", {}).items()
                },
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError):
            logger.warning("Discarded corrupted resume token payload")
            return None
        if snapshot.member_id != member_id:
            logger.info(
                "Resume token presented by another member",
                extra={"member_id": member_id},
            )
            return None
        return snapshot
