"""Member sessions: password hashing, signed session cookies and revocation."""

from __future__ import annotations

import json
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Mapping

import jwt
from fastapi import Response
from passlib.context import CryptContext

from app.config import get_settings
from app.services.cache import get_cache

logger = logging.getLogger(__name__)

settings = get_settings()

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

_BEARER_PREFIX = "bearer "


@dataclass(slots=True)
class SessionData:
    """Validated session attached to a request or socket."""

    session_id: str
    member_id: int
    expires_at: datetime


class SessionError(Exception):
    """Raised when a session token cannot be validated."""


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against its hashed counterpart."""

    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a password for storing in the database."""

    return pwd_context.hash(password)


def _session_cache_key(session_id: str) -> str:
    return f"session:{session_id}"


def create_session(member_id: int) -> tuple[str, int]:
    """Persist a new session for ``member_id`` and return its signed token and TTL."""

    ttl_seconds = settings.session_ttl_seconds
    session_id = secrets.token_urlsafe(24)
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(seconds=ttl_seconds)

    record = {"member_id": member_id, "created_at": now.isoformat()}
    get_cache().set(_session_cache_key(session_id), json.dumps(record), ttl_seconds)

    token = jwt.encode(
        {"sid": session_id, "sub": str(member_id), "exp": expires_at},
        settings.session_secret_key,
        algorithm=settings.session_algorithm,
    )
    return token, ttl_seconds


def resolve_session(token: str) -> SessionData:
    """Verify a session token and load its server-side record."""

    try:
        payload = jwt.decode(
            token,
            settings.session_secret_key,
            algorithms=[settings.session_algorithm],
            options={"require": ["sid", "sub", "exp"]},
        )
    except jwt.ExpiredSignatureError as exc:
        raise SessionError("Session has expired") from exc
    except jwt.InvalidTokenError as exc:
        raise SessionError("Invalid session token") from exc

    session_id = str(payload["sid"])
    try:
        member_id = int(payload["sub"])
    except (TypeError, ValueError) as exc:
        raise SessionError("Invalid session subject") from exc

    cache_key = _session_cache_key(session_id)
    cached = get_cache().get(cache_key)
    if cached is None:
        raise SessionError("Session not found")

    try:
        record = json.loads(cached)
    except json.JSONDecodeError as exc:
        get_cache().delete(cache_key)
        raise SessionError("Corrupted session record") from exc

    if record.get("member_id") != member_id:
        raise SessionError("Session does not belong to this member")

    expires_at = datetime.fromtimestamp(payload["exp"], tz=timezone.utc)
    return SessionData(session_id=session_id, member_id=member_id, expires_at=expires_at)


def revoke_session(token: str) -> None:
    """Drop the server-side record behind ``token``; invalid tokens are ignored."""

    try:
        payload = jwt.decode(
            token,
            settings.session_secret_key,
            algorithms=[settings.session_algorithm],
            options={"verify_exp": False},
        )
    except jwt.InvalidTokenError:
        logger.debug("Ignoring revocation of an invalid session token")
        return
    session_id = payload.get("sid")
    if session_id:
        get_cache().delete(_session_cache_key(str(session_id)))


def session_token_from_headers(
    headers: Mapping[str, str], cookies: Mapping[str, str]
) -> str | None:
    """Return the session token from the session cookie or a bearer header."""

    token = cookies.get(settings.session_cookie_name)
    if token:
        return token
    authorization = headers.get("authorization") or ""
    if authorization.lower().startswith(_BEARER_PREFIX):
        bearer = authorization[len(_BEARER_PREFIX):].strip()
        return bearer or None
    return None


def set_session_cookie(response: Response, token: str, ttl_seconds: int) -> None:
    """Attach the session token to an HTTP-only cookie."""

    expires_at = datetime.now(timezone.utc) + timedelta(seconds=max(ttl_seconds, 1))
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        max_age=ttl_seconds,
        expires=expires_at,
        httponly=True,
        secure=settings.session_cookie_secure,
        samesite=settings.session_cookie_samesite,
        path=settings.session_cookie_path,
        domain=settings.session_cookie_domain,
    )


def clear_session_cookie(response: Response) -> None:
    """Clear the session cookie from the client."""

    response.delete_cookie(
        key=settings.session_cookie_name,
        path=settings.session_cookie_path,
        domain=settings.session_cookie_domain,
    )
