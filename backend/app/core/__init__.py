"""Core utilities for the Anatomia backend."""

from .sessions import SessionData, SessionError, resolve_session, session_token_from_headers

__all__ = ["SessionData", "SessionError", "resolve_session", "session_token_from_headers"]
