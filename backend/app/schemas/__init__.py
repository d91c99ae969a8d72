"""Pydantic schemas for API payloads."""

from .interactions import (
    CommentCreate,
    CommentRead,
    CommentUpdate,
    ConversationCreate,
    ConversationRead,
    DiscussionCreate,
    DiscussionRead,
    LikeToggleResult,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    ParticipantRead,
    ReplyCreate,
    ReplyRead,
)
from .members import (
    LoginRequest,
    MemberCreate,
    MemberRead,
    MemberSummary,
    MemberUpdate,
    PasswordChange,
    SessionResponse,
)

__all__ = [
    "MemberCreate",
    "MemberRead",
    "MemberSummary",
    "MemberUpdate",
    "LoginRequest",
    "PasswordChange",
    "SessionResponse",
    "ConversationCreate",
    "ConversationRead",
    "ParticipantRead",
    "MessageCreate",
    "MessageUpdate",
    "MessageRead",
    "CommentCreate",
    "CommentUpdate",
    "CommentRead",
    "DiscussionCreate",
    "DiscussionRead",
    "ReplyCreate",
    "ReplyRead",
    "LikeToggleResult",
]
