"""Process-wide realtime wiring and FastAPI lifecycle hooks."""

from __future__ import annotations

import logging
import uuid

from starlette.concurrency import run_in_threadpool

from app import database
from app.config import get_settings
from app.services.cache import get_cache
from app.services.interactions import InteractionStore

from .delivery import ConversationDelivery
from .registry import ConnectionRegistry
from .resume import ResumeStore
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError

logger = logging.getLogger(__name__)

settings = get_settings()

_node_id = settings.realtime_node_id or uuid.uuid4().hex


async def is_conversation_member(conversation_id: int, member_id: int) -> bool:
    """Membership check against the participation table, run off the event loop."""

    def check() -> bool:
        with database.get_db_session() as db:
            return InteractionStore(db).is_participant(conversation_id, member_id)

    return await run_in_threadpool(check)


transport = RedisTransport(
    BrokerConfig(
        redis_url=settings.realtime_redis_url,
        prefix=settings.realtime_namespace,
        node_id=_node_id,
    )
)

connection_registry = ConnectionRegistry(is_conversation_member)
conversation_delivery = ConversationDelivery(connection_registry, transport, node_id=_node_id)


async def startup_realtime() -> None:
    if not transport.configured:
        logger.info("No realtime broker configured; conversation delivery is node-local")
        return
    try:
        await transport.start()
    except (TransportUnavailableError, OSError):
        logger.warning(
            "Realtime backend unavailable during startup; continuing without cross-node sync",
            exc_info=logger.isEnabledFor(logging.DEBUG),
        )
        return
    await conversation_delivery.start()


async def shutdown_realtime() -> None:
    await conversation_delivery.stop()
    await transport.stop()


# Accessors used as FastAPI dependencies -----------------------------------


def get_registry() -> ConnectionRegistry:
    return connection_registry


def get_delivery() -> ConversationDelivery:
    return conversation_delivery


def get_resume_store() -> ResumeStore:
    return ResumeStore(get_cache(), ttl_seconds=settings.realtime_resume_ttl_seconds)
