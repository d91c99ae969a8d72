from functools import lru_cache
from pathlib import Path
from typing import Annotated, List, Literal

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Anatomia API", env="APP_NAME", description="Human readable service name")
    environment: str = Field(default="development", env="ENVIRONMENT", description="Deployment environment name")
    debug: bool = Field(default=False, env="DEBUG", description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5000",
            "http://127.0.0.1",
            "http://127.0.0.1:5000",
        ],
        env="CORS_ORIGINS",
        description="List of allowed CORS origins",
    )

    cors_allow_origin_regex: str | None = Field(
        default=r"^https?://(localhost|127\.0\.0\.1|\[::1\])(:\d+)?$",
        env="CORS_ALLOW_ORIGIN_REGEX",
        description="Optional regular expression that matches allowed CORS origins",
    )

    database_url_override: str | None = Field(
        default=None,
        validation_alias="DATABASE_URL",
        description="Full SQLAlchemy URL; takes precedence over the DB_* parts",
    )
    db_user: str = Field(default="anatomia", env="DB_USER")
    db_password: str = Field(default="anatomia", env="DB_PASSWORD")
    db_host: str = Field(default="db", env="DB_HOST")
    db_port: int = Field(default=5432, env="DB_PORT")
    db_name: str = Field(default="anatomia", env="DB_NAME")

    session_secret_key: str = Field(default="changeme", env="SESSION_SECRET_KEY")
    session_algorithm: str = Field(default="HS256", env="SESSION_ALGORITHM")
    session_cookie_name: str = Field(default="anatomia.sid", env="SESSION_COOKIE_NAME")
    session_ttl_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        env="SESSION_TTL_SECONDS",
        description="Lifetime of a member session (one week by default)",
    )
    session_cookie_secure: bool = Field(default=False, env="SESSION_COOKIE_SECURE")
    session_cookie_samesite: Literal["lax", "strict", "none"] = Field(
        default="lax", env="SESSION_COOKIE_SAMESITE"
    )
    session_cookie_path: str = Field(default="/", env="SESSION_COOKIE_PATH")
    session_cookie_domain: str | None = Field(default=None, env="SESSION_COOKIE_DOMAIN")

    auth_cache_url: str | None = Field(
        default=None,
        env="AUTH_CACHE_URL",
        description="Redis URL for session and resume token storage",
    )

    realtime_redis_url: str | None = Field(
        default=None,
        env="REALTIME_REDIS_URL",
        description="Redis URL used to fan out conversation events across processes",
    )
    realtime_namespace: str = Field(default="anatomia.realtime", env="REALTIME_NAMESPACE")
    realtime_node_id: str | None = Field(default=None, env="REALTIME_NODE_ID")
    realtime_resume_ttl_seconds: int = Field(
        default=300,
        env="REALTIME_RESUME_TTL_SECONDS",
        description="How long a closed connection can be resumed",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30, env="WEBSOCKET_KEEPALIVE_TIMEOUT_SECONDS"
    )
    websocket_keepalive_ping_interval_seconds: float = Field(
        default=25, env="WEBSOCKET_KEEPALIVE_PING_INTERVAL_SECONDS"
    )
    websocket_max_idle_seconds: float = Field(
        default=120,
        env="WEBSOCKET_MAX_IDLE_SECONDS",
        description="Close sockets that have not sent anything for this long (0 disables)",
    )

    chat_history_default_limit: int = Field(default=50, env="CHAT_HISTORY_DEFAULT_LIMIT")
    chat_history_max_limit: int = Field(default=100, env="CHAT_HISTORY_MAX_LIMIT")
    chat_message_max_length: int = Field(default=2000, env="CHAT_MESSAGE_MAX_LENGTH")
    member_search_limit: int = Field(default=10, env="MEMBER_SEARCH_LIMIT")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+psycopg://{self.db_user}:{self.db_password}"
            f"@{self.db_host}:{self.db_port}/{self.db_name}"
        )

    @field_validator("cors_origins", mode="before")
    @classmethod
    def assemble_cors_origins(cls, v):  # type: ignore[override]
        if v in (None, "", Ellipsis):
            return v
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",") if origin.strip()]
        if isinstance(v, (list, tuple, set)):
            return list(v)
        return v

    @field_validator("session_ttl_seconds", "realtime_resume_ttl_seconds")
    @classmethod
    def ensure_positive_ttl(cls, value: int) -> int:
        return max(int(value), 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()
