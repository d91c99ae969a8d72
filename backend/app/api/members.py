"""Member account endpoints: registration, login and profile."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.api.deps import get_current_member
from app.core.sessions import (
    clear_session_cookie,
    create_session,
    get_password_hash,
    revoke_session,
    session_token_from_headers,
    set_session_cookie,
    verify_password,
)
from app.database import get_db
from app.models import Member
from app.schemas import (
    LoginRequest,
    MemberCreate,
    MemberRead,
    MemberUpdate,
    PasswordChange,
    SessionResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _start_session(member: Member, response: Response) -> SessionResponse:
    token, ttl_seconds = create_session(member.id)
    set_session_cookie(response, token, ttl_seconds)
    return SessionResponse(
        member=MemberRead.model_validate(member),
        token=token,
        expires_in=ttl_seconds,
    )


@router.post("/register", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
def register_member(
    member_in: MemberCreate, response: Response, db: Session = Depends(get_db)
) -> SessionResponse:
    """Create a member account and sign it in."""

    existing = db.execute(select(Member).where(Member.email == member_in.email)).scalar_one_or_none()
    if existing is not None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email is already registered",
        )

    member = Member(
        email=member_in.email,
        first_name=member_in.first_name,
        last_name=member_in.last_name,
        hashed_password=get_password_hash(member_in.password),
    )
    db.add(member)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email is already registered",
        ) from None
    db.refresh(member)
    logger.info("Registered member", extra={"member_id": member.id})
    return _start_session(member, response)


@router.post("/login", response_model=SessionResponse)
def login_member(
    credentials: LoginRequest, response: Response, db: Session = Depends(get_db)
) -> SessionResponse:
    """Authenticate with email and password and set the session cookie."""

    member = db.execute(select(Member).where(Member.email == credentials.email)).scalar_one_or_none()
    if (
        member is None
        or not member.is_active
        or not verify_password(credentials.password, member.hashed_password)
    ):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password",
        )
    return _start_session(member, response)


@router.post("/logout")
def logout_member(request: Request, response: Response) -> dict[str, str]:
    """Revoke the current session; succeeds even without one."""

    token = session_token_from_headers(request.headers, request.cookies)
    if token:
        revoke_session(token)
    clear_session_cookie(response)
    return {"message": "Logged out"}


@router.get("/me", response_model=MemberRead)
def read_me(current_member: Member = Depends(get_current_member)) -> Member:
    return current_member


@router.patch("/me", response_model=MemberRead)
def update_me(
    payload: MemberUpdate,
    db: Session = Depends(get_db),
    current_member: Member = Depends(get_current_member),
) -> Member:
    updates = payload.model_dump(exclude_unset=True)
    for field_name, value in updates.items():
        setattr(current_member, field_name, value)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to update member profile", extra={"member_id": current_member.id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update profile",
        ) from None
    db.refresh(current_member)
    return current_member


@router.post("/change-password")
def change_password(
    payload: PasswordChange,
    db: Session = Depends(get_db),
    current_member: Member = Depends(get_current_member),
) -> dict[str, str]:
    if not verify_password(payload.current_password, current_member.hashed_password):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect",
        )
    current_member.hashed_password = get_password_hash(payload.new_password)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to change password", extra={"member_id": current_member.id})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to change password",
        ) from None
    return {"message": "Password updated"}
