"""Row-level reads and writes for conversations, messages and social features.

``InteractionStore`` wraps a SQLAlchemy session. Write operations flush but
never commit; callers own the transaction so that a failed commit can be
rolled back and reported at the route boundary.

Domain failures are raised as plain exceptions:

* ``LookupError`` for missing rows,
* ``PermissionError`` when the member is not allowed to act on a row,
* ``ValueError`` for requests that contradict the row state.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session, selectinload

from app.models import (
    Comment,
    CommentTargetType,
    Conversation,
    ConversationParticipant,
    ConversationType,
    Discussion,
    DiscussionReply,
    Like,
    LikeTargetType,
    Member,
    Message,
)
from app.models.base import utcnow


@dataclass(slots=True)
class ConversationSummary:
    conversation: Conversation
    participants: list[Member]
    last_message: Message | None
    unread_count: int


@dataclass(slots=True)
class CommentThread:
    comment: Comment
    likes_count: int
    liked: bool
    replies: list["CommentThread"] = field(default_factory=list)


@dataclass(slots=True)
class DiscussionSummary:
    discussion: Discussion
    reply_count: int
    last_activity_at: datetime


@dataclass(slots=True)
class ReplyEntry:
    reply: DiscussionReply
    likes_count: int
    liked: bool


class InteractionStore:
    """Persistence collaborator for member interactions."""

    def __init__(self, db: Session) -> None:
        self._db = db

    @property
    def db(self) -> Session:
        return self._db

    # Conversations -----------------------------------------------------

    def is_participant(self, conversation_id: int, member_id: int) -> bool:
        stmt = select(ConversationParticipant.id).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.member_id == member_id,
        )
        return self._db.execute(stmt).first() is not None

    def get_participant(
        self, conversation_id: int, member_id: int
    ) -> ConversationParticipant | None:
        stmt = select(ConversationParticipant).where(
            ConversationParticipant.conversation_id == conversation_id,
            ConversationParticipant.member_id == member_id,
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def get_conversation(self, conversation_id: int) -> Conversation | None:
        stmt = (
            select(Conversation)
            .where(Conversation.id == conversation_id)
            .options(
                selectinload(Conversation.participants).selectinload(
                    ConversationParticipant.member
                )
            )
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def find_direct_conversation(self, member_a: int, member_b: int) -> Conversation | None:
        stmt = (
            select(Conversation)
            .join(ConversationParticipant)
            .where(
                ConversationParticipant.member_id == member_a,
                Conversation.type == ConversationType.DIRECT,
            )
            .options(selectinload(Conversation.participants))
        )
        wanted = {member_a, member_b}
        for conversation in self._db.execute(stmt).scalars().unique():
            if conversation.member_ids() == wanted:
                return conversation
        return None

    def get_or_create_direct_conversation(self, member_a: int, member_b: int) -> Conversation:
        """Return the direct conversation between two members, creating it once."""

        if member_a == member_b:
            raise ValueError("Cannot start a conversation with yourself")
        for member_id in (member_a, member_b):
            if self._db.get(Member, member_id) is None:
                raise LookupError("Member not found")

        existing = self.find_direct_conversation(member_a, member_b)
        if existing is not None:
            return existing

        conversation = Conversation(type=ConversationType.DIRECT)
        conversation.participants = [
            ConversationParticipant(member_id=member_a),
            ConversationParticipant(member_id=member_b),
        ]
        self._db.add(conversation)
        self._db.flush()
        return conversation

    def list_conversations(self, member_id: int) -> list[ConversationSummary]:
        stmt = (
            select(Conversation)
            .join(ConversationParticipant)
            .where(ConversationParticipant.member_id == member_id)
            .order_by(Conversation.updated_at.desc(), Conversation.id.desc())
            .options(
                selectinload(Conversation.participants).selectinload(
                    ConversationParticipant.member
                )
            )
        )
        summaries: list[ConversationSummary] = []
        for conversation in self._db.execute(stmt).scalars().unique():
            summaries.append(
                ConversationSummary(
                    conversation=conversation,
                    participants=[participant.member for participant in conversation.participants],
                    last_message=self.last_message(conversation.id),
                    unread_count=self.unread_count(conversation.id, member_id),
                )
            )
        return summaries

    # Messages ----------------------------------------------------------

    def create_message(self, conversation_id: int, sender_id: int, content: str) -> Message:
        """Insert a message and mark the conversation read for its sender."""

        conversation = self._db.get(Conversation, conversation_id)
        if conversation is None:
            raise LookupError("Conversation not found")
        participant = self.get_participant(conversation_id, sender_id)
        if participant is None:
            raise PermissionError("Not a participant of this conversation")

        now = utcnow()
        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=now,
            updated_at=now,
        )
        conversation.updated_at = now
        participant.last_read_at = now
        self._db.add(message)
        self._db.flush()
        return message

    def get_message(self, conversation_id: int, message_id: int) -> Message:
        message = self._db.get(Message, message_id)
        if message is None or message.conversation_id != conversation_id:
            raise LookupError("Message not found")
        return message

    def list_messages(self, conversation_id: int, limit: int, offset: int = 0) -> list[Message]:
        """Return a page counted from the newest message, in ascending order."""

        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(limit)
            .offset(offset)
            .options(selectinload(Message.sender))
        )
        messages = list(self._db.execute(stmt).scalars())
        messages.reverse()
        return messages

    def messages_after(self, conversation_id: int, after_id: int, limit: int) -> list[Message]:
        stmt = (
            select(Message)
            .where(
                Message.conversation_id == conversation_id,
                Message.id > after_id,
                Message.is_deleted.is_(False),
            )
            .order_by(Message.created_at.asc(), Message.id.asc())
            .limit(limit)
            .options(selectinload(Message.sender))
        )
        return list(self._db.execute(stmt).scalars())

    def last_message(self, conversation_id: int) -> Message | None:
        stmt = (
            select(Message)
            .where(Message.conversation_id == conversation_id, Message.is_deleted.is_(False))
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(1)
            .options(selectinload(Message.sender))
        )
        return self._db.execute(stmt).scalar_one_or_none()

    def latest_message_id(self, conversation_id: int) -> int:
        stmt = select(func.max(Message.id)).where(Message.conversation_id == conversation_id)
        return self._db.execute(stmt).scalar_one() or 0

    def mark_read(self, conversation_id: int, member_id: int, at: datetime | None = None) -> None:
        participant = self.get_participant(conversation_id, member_id)
        if participant is None:
            raise PermissionError("Not a participant of this conversation")
        participant.last_read_at = at or utcnow()
        self._db.flush()

    def unread_count(self, conversation_id: int, member_id: int) -> int:
        """Count messages from other members newer than the member's read marker."""

        participant = self.get_participant(conversation_id, member_id)
        if participant is None:
            return 0
        stmt = select(func.count(Message.id)).where(
            Message.conversation_id == conversation_id,
            Message.sender_id != member_id,
            Message.is_deleted.is_(False),
        )
        if participant.last_read_at is not None:
            stmt = stmt.where(Message.created_at > participant.last_read_at)
        return self._db.execute(stmt).scalar_one()

    def edit_message(
        self, conversation_id: int, message_id: int, member_id: int, content: str
    ) -> Message:
        message = self.get_message(conversation_id, message_id)
        if message.sender_id != member_id:
            raise PermissionError("Only the sender can edit this message")
        if message.is_deleted:
            raise ValueError("Message has been deleted")
        message.content = content
        message.is_edited = True
        self._db.flush()
        return message

    def delete_message(self, conversation_id: int, message_id: int, member_id: int) -> Message:
        message = self.get_message(conversation_id, message_id)
        if message.sender_id != member_id:
            raise PermissionError("Only the sender can delete this message")
        if message.is_deleted:
            raise ValueError("Message has been deleted")
        message.is_deleted = True
        self._db.flush()
        return message

    # Members -----------------------------------------------------------

    def search_members(
        self, query: str, exclude_member_id: int | None = None, limit: int = 10
    ) -> list[Member]:
        """Case-insensitive match on full name or email."""

        term = query.strip()
        if not term:
            return []
        full_name = (
            func.coalesce(Member.first_name, "") + " " + func.coalesce(Member.last_name, "")
        )
        stmt = (
            select(Member)
            .where(
                Member.is_active.is_(True),
                or_(
                    full_name.icontains(term, autoescape=True),
                    Member.email.icontains(term, autoescape=True),
                ),
            )
            .order_by(Member.first_name, Member.last_name, Member.id)
            .limit(limit)
        )
        if exclude_member_id is not None:
            stmt = stmt.where(Member.id != exclude_member_id)
        return list(self._db.execute(stmt).scalars())

    # Likes -------------------------------------------------------------

    def toggle_like(self, target_type: LikeTargetType, target_id: str, member_id: int) -> bool:
        """Add the member's like or remove it when present; returns the new state."""

        stmt = select(Like).where(
            Like.target_type == target_type,
            Like.target_id == target_id,
            Like.member_id == member_id,
        )
        existing = self._db.execute(stmt).scalar_one_or_none()
        if existing is not None:
            self._db.delete(existing)
            self._db.flush()
            return False
        self._db.add(Like(target_type=target_type, target_id=target_id, member_id=member_id))
        self._db.flush()
        return True

    def likes_count(self, target_type: LikeTargetType, target_id: str) -> int:
        stmt = select(func.count(Like.id)).where(
            Like.target_type == target_type, Like.target_id == target_id
        )
        return self._db.execute(stmt).scalar_one()

    def _like_stats(
        self, target_type: LikeTargetType, target_ids: Iterable[str], member_id: int | None
    ) -> tuple[dict[str, int], set[str]]:
        ids = list(target_ids)
        if not ids:
            return {}, set()
        counts_stmt = (
            select(Like.target_id, func.count(Like.id))
            .where(Like.target_type == target_type, Like.target_id.in_(ids))
            .group_by(Like.target_id)
        )
        counts = {target_id: count for target_id, count in self._db.execute(counts_stmt)}
        liked: set[str] = set()
        if member_id is not None:
            liked_stmt = select(Like.target_id).where(
                Like.target_type == target_type,
                Like.target_id.in_(ids),
                Like.member_id == member_id,
            )
            liked = set(self._db.execute(liked_stmt).scalars())
        return counts, liked

    # Comments ----------------------------------------------------------

    def create_comment(
        self,
        target_type: CommentTargetType,
        target_id: str,
        member_id: int,
        content: str,
        parent_id: int | None = None,
    ) -> Comment:
        if parent_id is not None:
            parent = self._db.get(Comment, parent_id)
            if (
                parent is None
                or parent.is_deleted
                or parent.target_type != target_type
                or parent.target_id != target_id
            ):
                raise LookupError("Parent comment not found")
            if parent.parent_id is not None:
                raise ValueError("Replies cannot be nested")
        comment = Comment(
            target_type=target_type,
            target_id=target_id,
            member_id=member_id,
            content=content,
            parent_id=parent_id,
        )
        self._db.add(comment)
        self._db.flush()
        return comment

    def list_comments(
        self, target_type: CommentTargetType, target_id: str, member_id: int | None = None
    ) -> list[CommentThread]:
        """Top-level comments oldest first, each with its direct replies."""

        stmt = (
            select(Comment)
            .where(
                Comment.target_type == target_type,
                Comment.target_id == target_id,
                Comment.is_deleted.is_(False),
            )
            .order_by(Comment.created_at.asc(), Comment.id.asc())
            .options(selectinload(Comment.member))
        )
        comments: Sequence[Comment] = self._db.execute(stmt).scalars().all()
        counts, liked = self._like_stats(
            LikeTargetType.COMMENT, (str(comment.id) for comment in comments), member_id
        )

        def _thread(comment: Comment) -> CommentThread:
            key = str(comment.id)
            return CommentThread(comment=comment, likes_count=counts.get(key, 0), liked=key in liked)

        replies: dict[int, list[CommentThread]] = defaultdict(list)
        for comment in comments:
            if comment.parent_id is not None:
                replies[comment.parent_id].append(_thread(comment))

        threads: list[CommentThread] = []
        for comment in comments:
            if comment.parent_id is None:
                thread = _thread(comment)
                thread.replies = replies.get(comment.id, [])
                threads.append(thread)
        return threads

    def _authored_comment(self, comment_id: int, member_id: int) -> Comment:
        comment = self._db.get(Comment, comment_id)
        if comment is None or comment.is_deleted:
            raise LookupError("Comment not found")
        if comment.member_id != member_id:
            raise PermissionError("Only the author can change this comment")
        return comment

    def update_comment(self, comment_id: int, member_id: int, content: str) -> Comment:
        comment = self._authored_comment(comment_id, member_id)
        comment.content = content
        comment.is_edited = True
        self._db.flush()
        return comment

    def delete_comment(self, comment_id: int, member_id: int) -> None:
        comment = self._authored_comment(comment_id, member_id)
        comment.is_deleted = True
        self._db.flush()

    # Discussions -------------------------------------------------------

    def create_discussion(
        self,
        member_id: int,
        title: str,
        content: str,
        course_id: str | None = None,
        lesson_id: str | None = None,
    ) -> Discussion:
        discussion = Discussion(
            member_id=member_id,
            title=title,
            content=content,
            course_id=course_id,
            lesson_id=lesson_id,
        )
        self._db.add(discussion)
        self._db.flush()
        return discussion

    def _reply_stats(self, discussion_ids: list[int]) -> dict[int, tuple[int, datetime | None]]:
        if not discussion_ids:
            return {}
        stmt = (
            select(
                DiscussionReply.discussion_id,
                func.count(DiscussionReply.id),
                func.max(DiscussionReply.created_at),
            )
            .where(
                DiscussionReply.discussion_id.in_(discussion_ids),
                DiscussionReply.is_deleted.is_(False),
            )
            .group_by(DiscussionReply.discussion_id)
        )
        return {row[0]: (row[1], row[2]) for row in self._db.execute(stmt)}

    def _summarize(self, discussions: Sequence[Discussion]) -> list[DiscussionSummary]:
        stats = self._reply_stats([discussion.id for discussion in discussions])
        summaries: list[DiscussionSummary] = []
        for discussion in discussions:
            reply_count, last_reply_at = stats.get(discussion.id, (0, None))
            summaries.append(
                DiscussionSummary(
                    discussion=discussion,
                    reply_count=reply_count,
                    last_activity_at=last_reply_at or discussion.created_at,
                )
            )
        return summaries

    def list_discussions(self, course_id: str | None = None) -> list[DiscussionSummary]:
        """Pinned discussions first, then newest."""

        stmt = (
            select(Discussion)
            .order_by(
                Discussion.is_pinned.desc(), Discussion.created_at.desc(), Discussion.id.desc()
            )
            .options(selectinload(Discussion.member))
        )
        if course_id is not None:
            stmt = stmt.where(Discussion.course_id == course_id)
        return self._summarize(self._db.execute(stmt).scalars().all())

    def get_discussion(self, discussion_id: int) -> Discussion:
        discussion = self._db.get(Discussion, discussion_id)
        if discussion is None:
            raise LookupError("Discussion not found")
        return discussion

    def view_discussion(self, discussion_id: int) -> DiscussionSummary:
        """Load a discussion and count the view."""

        discussion = self.get_discussion(discussion_id)
        discussion.view_count = Discussion.view_count + 1
        self._db.flush()
        self._db.refresh(discussion)
        return self._summarize([discussion])[0]

    def create_reply(
        self,
        discussion_id: int,
        member_id: int,
        content: str,
        parent_id: int | None = None,
    ) -> DiscussionReply:
        discussion = self.get_discussion(discussion_id)
        if discussion.is_locked:
            raise PermissionError("Discussion is locked")
        if parent_id is not None:
            parent = self._db.get(DiscussionReply, parent_id)
            if parent is None or parent.discussion_id != discussion_id:
                raise LookupError("Parent reply not found")
        reply = DiscussionReply(
            discussion_id=discussion_id,
            member_id=member_id,
            content=content,
            parent_id=parent_id,
        )
        discussion.updated_at = utcnow()
        self._db.add(reply)
        self._db.flush()
        return reply

    def list_replies(self, discussion_id: int, member_id: int | None = None) -> list[ReplyEntry]:
        self.get_discussion(discussion_id)
        stmt = (
            select(DiscussionReply)
            .where(
                DiscussionReply.discussion_id == discussion_id,
                DiscussionReply.is_deleted.is_(False),
            )
            .order_by(DiscussionReply.created_at.asc(), DiscussionReply.id.asc())
            .options(selectinload(DiscussionReply.member))
        )
        replies = self._db.execute(stmt).scalars().all()
        counts, liked = self._like_stats(
            LikeTargetType.DISCUSSION_REPLY, (str(reply.id) for reply in replies), member_id
        )
        return [
            ReplyEntry(
                reply=reply,
                likes_count=counts.get(str(reply.id), 0),
                liked=str(reply.id) in liked,
            )
            for reply in replies
        ]
