"""Schemas for conversations, messages, comments, discussions and likes."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, constr, field_validator

from app.config import get_settings
from app.models.enums import CommentTargetType, ConversationType
from app.schemas.base import CamelModel
from app.schemas.members import MemberSummary

Content = constr(strip_whitespace=True, min_length=1, max_length=10000)


class MessageCreate(CamelModel):
    content: Content

    @field_validator("content")
    @classmethod
    def limit_length(cls, value: str) -> str:
        limit = get_settings().chat_message_max_length
        if len(value) > limit:
            raise ValueError(f"Message must be at most {limit} characters")
        return value


class MessageUpdate(MessageCreate):
    pass


class MessageRead(CamelModel):
    id: int
    conversation_id: int
    sender_id: int
    content: str
    is_edited: bool = False
    is_deleted: bool = False
    created_at: datetime
    updated_at: datetime
    sender_first_name: str | None = None
    sender_last_name: str | None = None


class ConversationCreate(CamelModel):
    recipient_id: int = Field(..., description="Member to open a direct conversation with")


class ParticipantRead(MemberSummary):
    last_read_at: datetime | None = None


class ConversationRead(CamelModel):
    id: int
    type: ConversationType
    name: str | None = None
    created_at: datetime
    updated_at: datetime
    participants: list[ParticipantRead] = []
    last_message: MessageRead | None = None
    unread_count: int = 0


class CommentCreate(CamelModel):
    content: Content
    parent_id: int | None = None


class CommentUpdate(CamelModel):
    content: Content


class CommentRead(CamelModel):
    id: int
    target_type: CommentTargetType
    target_id: str
    member_id: int
    member_first_name: str | None = None
    member_last_name: str | None = None
    content: str
    parent_id: int | None = None
    is_edited: bool = False
    created_at: datetime
    updated_at: datetime
    likes_count: int = 0
    is_liked_by_current_user: bool = False
    replies: list[CommentRead] = []


class DiscussionCreate(CamelModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=255)
    content: Content
    course_id: constr(strip_whitespace=True, min_length=1, max_length=64) | None = None
    lesson_id: constr(strip_whitespace=True, min_length=1, max_length=64) | None = None


class DiscussionRead(CamelModel):
    id: int
    title: str
    content: str
    course_id: str | None = None
    lesson_id: str | None = None
    member_id: int
    member_first_name: str | None = None
    member_last_name: str | None = None
    is_pinned: bool = False
    is_locked: bool = False
    view_count: int = 0
    reply_count: int = 0
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime


class ReplyCreate(CamelModel):
    content: Content
    parent_id: int | None = None


class ReplyRead(CamelModel):
    id: int
    discussion_id: int
    member_id: int
    member_first_name: str | None = None
    member_last_name: str | None = None
    content: str
    parent_id: int | None = None
    is_edited: bool = False
    created_at: datetime
    updated_at: datetime
    likes_count: int = 0
    is_liked_by_current_user: bool = False


class LikeToggleResult(CamelModel):
    liked: bool
    likes_count: int
