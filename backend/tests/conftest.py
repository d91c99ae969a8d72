"""Shared pytest fixtures for backend tests."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterator

import pytest
from fastapi.testclient import TestClient
from passlib.context import CryptContext
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from app import database
from app.core import sessions
from app.database import get_db
from app.main import app
from app.models import Base, Member
from app.services.cache import get_cache

sessions.pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


@pytest.fixture(autouse=True)
def fresh_cache() -> Iterator[None]:
    """Give every test its own in-process session and resume cache."""

    get_cache.cache_clear()
    yield
    get_cache.cache_clear()


@pytest.fixture()
def test_engine() -> Iterator[Engine]:
    """Provide an in-memory SQLite engine for isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def session_factory(test_engine) -> sessionmaker[Session]:
    """Return a session factory bound to the test engine."""

    return sessionmaker(bind=test_engine, future=True)


@pytest.fixture()
def db_session(session_factory) -> Iterator[Session]:
    """Yield a SQLAlchemy session for unit tests."""

    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def client(session_factory, monkeypatch) -> Iterator[TestClient]:
    """Yield a FastAPI TestClient with the database dependency overridden.

    Websocket handlers open short-lived sessions through ``SessionLocal``
    directly, so the factory is swapped as well.
    """

    def override_get_db() -> Iterator[Session]:
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    monkeypatch.setattr(database, "SessionLocal", session_factory)
    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture()
def make_member(session_factory) -> Callable[..., int]:
    """Create a member row and return its id."""

    counter = {"value": 0}

    def factory(
        first_name: str = "Test",
        last_name: str | None = None,
        *,
        email: str | None = None,
        password: str = "password123",
    ) -> int:
        counter["value"] += 1
        with session_factory() as session:
            member = Member(
                email=email or f"member{counter['value']}@example.com",
                first_name=first_name,
                last_name=last_name or f"Member{counter['value']}",
                hashed_password=sessions.get_password_hash(password),
            )
            session.add(member)
            session.commit()
            return member.id

    return factory


@pytest.fixture()
def auth_headers() -> Callable[[int], dict[str, str]]:
    """Open a session for a member and return a bearer header for it."""

    def factory(member_id: int) -> dict[str, str]:
        token, _ = sessions.create_session(member_id)
        return {"Authorization": f"Bearer {token}"}

    return factory
