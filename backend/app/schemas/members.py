"""Schemas for member account endpoints."""

from datetime import datetime

from pydantic import Field, constr, field_validator

from app.schemas.base import CamelModel

Email = constr(strip_whitespace=True, to_lower=True, min_length=3, max_length=255)
Password = constr(min_length=8, max_length=128)
Name = constr(strip_whitespace=True, min_length=1, max_length=128)


class MemberCreate(CamelModel):
    """Payload for registering a new member."""

    email: Email = Field(..., description="Login email, stored lower-cased")
    password: Password = Field(..., description="Plain text password that will be hashed")
    first_name: Name | None = None
    last_name: Name | None = None

    @field_validator("email")
    @classmethod
    def require_address(cls, value: str) -> str:
        local, _, domain = value.partition("@")
        if not local or "." not in domain:
            raise ValueError("Invalid email address")
        return value


class LoginRequest(CamelModel):
    email: Email
    password: constr(min_length=1, max_length=128)


class MemberUpdate(CamelModel):
    first_name: Name | None = None
    last_name: Name | None = None


class PasswordChange(CamelModel):
    current_password: constr(min_length=1, max_length=128)
    new_password: Password


class MemberRead(CamelModel):
    """Member profile returned from the API."""

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None
    display_name: str
    created_at: datetime


class MemberSummary(CamelModel):
    """Compact member entry used in search results and participant lists."""

    id: int
    email: str
    first_name: str | None = None
    last_name: str | None = None


class SessionResponse(CamelModel):
    """Returned after login or registration; the token is also set as a cookie."""

    member: MemberRead
    token: str
    expires_in: int
