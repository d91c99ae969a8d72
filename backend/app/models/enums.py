from __future__ import annotations

from enum import Enum


class ConversationType(str, Enum):
    """Kinds of member conversations."""

    DIRECT = "direct"
    GROUP = "group"


class CommentTargetType(str, Enum):
    """Entities that accept comments."""

    ARTICLE = "article"
    COURSE = "course"
    LESSON = "lesson"
    DISCUSSION = "discussion"


class LikeTargetType(str, Enum):
    """Entities that can be liked."""

    COMMENT = "comment"
    DISCUSSION_REPLY = "discussion_reply"
    DISCUSSION = "discussion"
    ARTICLE = "article"
