"""Conversations, messages, comments, discussions and likes."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.exc import SQLAlchemyError

from anatomia.realtime import ConversationDelivery, get_delivery
from anatomia.realtime.delivery import isoformat_utc
from app.api.deps import get_current_member, get_store, require_participant
from app.config import get_settings
from app.models import CommentTargetType, LikeTargetType, Member, Message
from app.models.base import utcnow
from app.schemas import (
    CommentCreate,
    CommentRead,
    CommentUpdate,
    ConversationCreate,
    ConversationRead,
    DiscussionCreate,
    DiscussionRead,
    LikeToggleResult,
    MemberSummary,
    MessageCreate,
    MessageRead,
    MessageUpdate,
    ParticipantRead,
    ReplyCreate,
    ReplyRead,
)
from app.services.interactions import (
    CommentThread,
    ConversationSummary,
    DiscussionSummary,
    InteractionStore,
    ReplyEntry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/interactions", tags=["interactions"])
settings = get_settings()


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Map store exceptions onto HTTP status codes."""

    try:
        yield
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from None
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from None


def _commit(store: InteractionStore, action: str, **context: object) -> None:
    try:
        store.db.commit()
    except SQLAlchemyError:
        store.db.rollback()
        logger.exception("%s failed", action, extra=context)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action.lower()}",
        ) from None


# Serializers ---------------------------------------------------------------


def _serialize_message(message: Message) -> MessageRead:
    sender = message.sender
    return MessageRead(
        id=message.id,
        conversation_id=message.conversation_id,
        sender_id=message.sender_id,
        content="" if message.is_deleted else message.content,
        is_edited=message.is_edited,
        is_deleted=message.is_deleted,
        created_at=message.created_at,
        updated_at=message.updated_at,
        sender_first_name=sender.first_name if sender else None,
        sender_last_name=sender.last_name if sender else None,
    )


def _serialize_conversation(summary: ConversationSummary) -> ConversationRead:
    conversation = summary.conversation
    participants = [
        ParticipantRead(
            id=participant.member_id,
            email=participant.member.email,
            first_name=participant.member.first_name,
            last_name=participant.member.last_name,
            last_read_at=participant.last_read_at,
        )
        for participant in conversation.participants
    ]
    return ConversationRead(
        id=conversation.id,
        type=conversation.type,
        name=conversation.name,
        created_at=conversation.created_at,
        updated_at=conversation.updated_at,
        participants=participants,
        last_message=_serialize_message(summary.last_message) if summary.last_message else None,
        unread_count=summary.unread_count,
    )


def _serialize_comment(thread: CommentThread) -> CommentRead:
    comment = thread.comment
    return CommentRead(
        id=comment.id,
        target_type=comment.target_type,
        target_id=comment.target_id,
        member_id=comment.member_id,
        member_first_name=comment.member.first_name,
        member_last_name=comment.member.last_name,
        content=comment.content,
        parent_id=comment.parent_id,
        is_edited=comment.is_edited,
        created_at=comment.created_at,
        updated_at=comment.updated_at,
        likes_count=thread.likes_count,
        is_liked_by_current_user=thread.liked,
        replies=[_serialize_comment(reply) for reply in thread.replies],
    )


def _serialize_discussion(summary: DiscussionSummary) -> DiscussionRead:
    discussion = summary.discussion
    return DiscussionRead(
        id=discussion.id,
        title=discussion.title,
        content=discussion.content,
        course_id=discussion.course_id,
        lesson_id=discussion.lesson_id,
        member_id=discussion.member_id,
        member_first_name=discussion.member.first_name,
        member_last_name=discussion.member.last_name,
        is_pinned=discussion.is_pinned,
        is_locked=discussion.is_locked,
        view_count=discussion.view_count,
        reply_count=summary.reply_count,
        created_at=discussion.created_at,
        updated_at=discussion.updated_at,
        last_activity_at=summary.last_activity_at,
    )


def _serialize_reply(entry: ReplyEntry) -> ReplyRead:
    reply = entry.reply
    return ReplyRead(
        id=reply.id,
        discussion_id=reply.discussion_id,
        member_id=reply.member_id,
        member_first_name=reply.member.first_name,
        member_last_name=reply.member.last_name,
        content=reply.content,
        parent_id=reply.parent_id,
        is_edited=reply.is_edited,
        created_at=reply.created_at,
        updated_at=reply.updated_at,
        likes_count=entry.likes_count,
        is_liked_by_current_user=entry.liked,
    )


def _conversation_summary(
    store: InteractionStore, conversation_id: int, member_id: int
) -> ConversationSummary:
    conversation = store.get_conversation(conversation_id)
    if conversation is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    return ConversationSummary(
        conversation=conversation,
        participants=[participant.member for participant in conversation.participants],
        last_message=store.last_message(conversation_id),
        unread_count=store.unread_count(conversation_id, member_id),
    )


# Conversations -------------------------------------------------------------


@router.get("/conversations", response_model=list[ConversationRead])
def list_conversations(
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[ConversationRead]:
    return [_serialize_conversation(summary) for summary in store.list_conversations(current_member.id)]


@router.post(
    "/conversations", response_model=ConversationRead, status_code=status.HTTP_201_CREATED
)
def open_conversation(
    payload: ConversationCreate,
    response: Response,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> ConversationRead:
    """Open the direct conversation with another member.

    An existing conversation is returned with 200 instead of 201.
    """

    existing = store.find_direct_conversation(current_member.id, payload.recipient_id)
    if existing is not None:
        response.status_code = status.HTTP_200_OK
        conversation = existing
    else:
        with _domain_errors():
            conversation = store.get_or_create_direct_conversation(
                current_member.id, payload.recipient_id
            )
        _commit(store, "Create conversation", member_id=current_member.id)
    return _serialize_conversation(
        _conversation_summary(store, conversation.id, current_member.id)
    )


@router.get("/conversations/{conversation_id}/messages", response_model=list[MessageRead])
def list_messages(
    conversation_id: int,
    limit: int | None = Query(default=None, ge=1),
    offset: int = Query(default=0, ge=0),
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[MessageRead]:
    """Return a page of history and mark the conversation read for the caller."""

    require_participant(conversation_id, current_member.id, store)
    page_size = min(limit or settings.chat_history_default_limit, settings.chat_history_max_limit)
    messages = store.list_messages(conversation_id, page_size, offset)
    payload = [_serialize_message(message) for message in messages]
    store.mark_read(conversation_id, current_member.id)
    _commit(store, "Mark conversation read", conversation_id=conversation_id)
    return payload


@router.post(
    "/conversations/{conversation_id}/messages",
    response_model=MessageRead,
    status_code=status.HTTP_201_CREATED,
)
async def send_message(
    conversation_id: int,
    payload: MessageCreate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
    delivery: ConversationDelivery = Depends(get_delivery),
) -> MessageRead:
    """Persist a message, then fan it out to joined sockets of other participants."""

    require_participant(conversation_id, current_member.id, store)
    with _domain_errors():
        message = store.create_message(conversation_id, current_member.id, payload.content)
    _commit(store, "Send message", conversation_id=conversation_id, member_id=current_member.id)
    store.db.refresh(message)
    message_payload = _serialize_message(message)

    try:
        await delivery.notify_new_message(message, current_member)
    except Exception:
        logger.exception(
            "Message fan-out failed", extra={"conversation_id": conversation_id, "message_id": message.id}
        )
    return message_payload


@router.patch(
    "/conversations/{conversation_id}/messages/{message_id}", response_model=MessageRead
)
def edit_message(
    conversation_id: int,
    message_id: int,
    payload: MessageUpdate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> MessageRead:
    require_participant(conversation_id, current_member.id, store)
    with _domain_errors():
        message = store.edit_message(conversation_id, message_id, current_member.id, payload.content)
    _commit(store, "Edit message", message_id=message_id)
    store.db.refresh(message)
    return _serialize_message(message)


@router.delete(
    "/conversations/{conversation_id}/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
)
def delete_message(
    conversation_id: int,
    message_id: int,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> Response:
    require_participant(conversation_id, current_member.id, store)
    with _domain_errors():
        store.delete_message(conversation_id, message_id, current_member.id)
    _commit(store, "Delete message", message_id=message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: int,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
    delivery: ConversationDelivery = Depends(get_delivery),
) -> dict[str, bool]:
    require_participant(conversation_id, current_member.id, store)
    read_at = utcnow()
    store.mark_read(conversation_id, current_member.id, at=read_at)
    _commit(store, "Mark conversation read", conversation_id=conversation_id)
    await delivery.publish(
        conversation_id,
        {
            "type": "read",
            "conversationId": conversation_id,
            "senderId": current_member.id,
            "timestamp": isoformat_utc(read_at),
        },
        exclude_member_id=current_member.id,
    )
    return {"success": True}


@router.get("/members/search", response_model=list[MemberSummary])
def search_members(
    q: str = Query(default="", max_length=128),
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[Member]:
    return store.search_members(
        q, exclude_member_id=current_member.id, limit=settings.member_search_limit
    )


# Comments ------------------------------------------------------------------


@router.get("/comments/{target_type}/{target_id}", response_model=list[CommentRead])
def list_comments(
    target_type: CommentTargetType,
    target_id: str,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[CommentRead]:
    threads = store.list_comments(target_type, target_id, member_id=current_member.id)
    return [_serialize_comment(thread) for thread in threads]


@router.post(
    "/comments/{target_type}/{target_id}",
    response_model=CommentRead,
    status_code=status.HTTP_201_CREATED,
)
def create_comment(
    target_type: CommentTargetType,
    target_id: str,
    payload: CommentCreate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> CommentRead:
    with _domain_errors():
        comment = store.create_comment(
            target_type, target_id, current_member.id, payload.content, parent_id=payload.parent_id
        )
    _commit(store, "Post comment", target_type=target_type.value, target_id=target_id)
    store.db.refresh(comment)
    return _serialize_comment(CommentThread(comment=comment, likes_count=0, liked=False))


@router.patch("/comments/{comment_id}", response_model=CommentRead)
def update_comment(
    comment_id: int,
    payload: CommentUpdate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> CommentRead:
    with _domain_errors():
        comment = store.update_comment(comment_id, current_member.id, payload.content)
    _commit(store, "Update comment", comment_id=comment_id)
    store.db.refresh(comment)
    key = str(comment.id)
    return _serialize_comment(
        CommentThread(
            comment=comment,
            likes_count=store.likes_count(LikeTargetType.COMMENT, key),
            liked=False,
        )
    )


@router.delete("/comments/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_comment(
    comment_id: int,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> Response:
    with _domain_errors():
        store.delete_comment(comment_id, current_member.id)
    _commit(store, "Delete comment", comment_id=comment_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Discussions ---------------------------------------------------------------


@router.get("/discussions", response_model=list[DiscussionRead])
def list_discussions(
    course_id: str | None = Query(default=None, alias="courseId"),
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[DiscussionRead]:
    return [_serialize_discussion(summary) for summary in store.list_discussions(course_id)]


@router.post("/discussions", response_model=DiscussionRead, status_code=status.HTTP_201_CREATED)
def create_discussion(
    payload: DiscussionCreate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> DiscussionRead:
    discussion = store.create_discussion(
        current_member.id,
        payload.title,
        payload.content,
        course_id=payload.course_id,
        lesson_id=payload.lesson_id,
    )
    _commit(store, "Create discussion", member_id=current_member.id)
    store.db.refresh(discussion)
    return _serialize_discussion(
        DiscussionSummary(discussion=discussion, reply_count=0, last_activity_at=discussion.created_at)
    )


@router.get("/discussions/{discussion_id}", response_model=DiscussionRead)
def read_discussion(
    discussion_id: int,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> DiscussionRead:
    """Return a discussion and count the view."""

    with _domain_errors():
        summary = store.view_discussion(discussion_id)
    _commit(store, "Record discussion view", discussion_id=discussion_id)
    return _serialize_discussion(summary)


@router.get("/discussions/{discussion_id}/replies", response_model=list[ReplyRead])
def list_replies(
    discussion_id: int,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> list[ReplyRead]:
    with _domain_errors():
        entries = store.list_replies(discussion_id, member_id=current_member.id)
    return [_serialize_reply(entry) for entry in entries]


@router.post(
    "/discussions/{discussion_id}/replies",
    response_model=ReplyRead,
    status_code=status.HTTP_201_CREATED,
)
def create_reply(
    discussion_id: int,
    payload: ReplyCreate,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> ReplyRead:
    with _domain_errors():
        reply = store.create_reply(
            discussion_id, current_member.id, payload.content, parent_id=payload.parent_id
        )
    _commit(store, "Post reply", discussion_id=discussion_id)
    store.db.refresh(reply)
    return _serialize_reply(ReplyEntry(reply=reply, likes_count=0, liked=False))


# Likes ---------------------------------------------------------------------


@router.post("/likes/{target_type}/{target_id}", response_model=LikeToggleResult)
def toggle_like(
    target_type: LikeTargetType,
    target_id: str,
    store: InteractionStore = Depends(get_store),
    current_member: Member = Depends(get_current_member),
) -> LikeToggleResult:
    liked = store.toggle_like(target_type, target_id, current_member.id)
    _commit(store, "Toggle like", target_type=target_type.value, target_id=target_id)
    return LikeToggleResult(liked=liked, likes_count=store.likes_count(target_type, target_id))
