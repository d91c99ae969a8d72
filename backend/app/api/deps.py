"""FastAPI dependencies for the API layer."""

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from app.core.sessions import SessionData, SessionError, resolve_session, session_token_from_headers
from app.database import get_db
from app.models import Member
from app.services.interactions import InteractionStore


def get_store(db: Session = Depends(get_db)) -> InteractionStore:
    return InteractionStore(db)


def get_current_session(request: Request) -> SessionData:
    """Resolve the caller's session from the cookie or bearer header."""

    token = session_token_from_headers(request.headers, request.cookies)
    if token is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )
    try:
        return resolve_session(token)
    except SessionError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        ) from None


def load_active_member(member_id: int, db: Session) -> Member | None:
    member = db.get(Member, member_id)
    if member is None or not member.is_active:
        return None
    return member


def get_current_member(
    session: SessionData = Depends(get_current_session),
    db: Session = Depends(get_db),
) -> Member:
    """Retrieve the member behind the current session."""

    member = load_active_member(session.member_id, db)
    if member is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )
    return member


def require_participant(conversation_id: int, member_id: int, store: InteractionStore) -> None:
    """Ensure the member belongs to the conversation, raising HTTP 404/403 otherwise."""

    if store.get_conversation(conversation_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
    if not store.is_participant(conversation_id, member_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Not a participant of this conversation",
        )
