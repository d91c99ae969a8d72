"""Database models package."""

from .base import Base
from .enums import CommentTargetType, ConversationType, LikeTargetType
from .interactions import (
    Comment,
    Conversation,
    ConversationParticipant,
    Discussion,
    DiscussionReply,
    Like,
    Member,
    Message,
)

__all__ = [
    "Base",
    "Member",
    "Conversation",
    "ConversationParticipant",
    "Message",
    "Comment",
    "Discussion",
    "DiscussionReply",
    "Like",
    "ConversationType",
    "CommentTargetType",
    "LikeTargetType",
]
