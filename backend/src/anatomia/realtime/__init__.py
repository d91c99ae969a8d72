"""Realtime conversation delivery over websockets."""

from .delivery import ConversationDelivery, build_message_event  # noqa: F401
from .lifecycle import (  # noqa: F401
    get_delivery,
    get_registry,
    get_resume_store,
    shutdown_realtime,
    startup_realtime,
)
from .registry import (  # noqa: F401
    ConnectionRegistry,
    ConnectionState,
    LiveConnection,
    advance_state,
    safe_send_json,
)
from .resume import ResumeSnapshot, ResumeStore  # noqa: F401
from .transport import BrokerConfig, RedisTransport, TransportUnavailableError  # noqa: F401

__all__ = [
    "startup_realtime",
    "shutdown_realtime",
    "get_registry",
    "get_delivery",
    "get_resume_store",
    "ConnectionRegistry",
    "ConnectionState",
    "advance_state",
    "LiveConnection",
    "ConversationDelivery",
    "ResumeStore",
    "ResumeSnapshot",
    "RedisTransport",
    "BrokerConfig",
    "TransportUnavailableError",
    "build_message_event",
    "safe_send_json",
]
