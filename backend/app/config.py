from functools import lru_cache
from pathlib import Path
from typing import Annotated, List

from pydantic import AnyHttpUrl, Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = Field(default="Parley API", description="Human readable service name")
    environment: str = Field(default="development", description="Deployment environment name")
    debug: bool = Field(default=False, description="Enable debug mode")

    cors_origins: Annotated[List[AnyHttpUrl], NoDecode] = Field(
        default_factory=lambda: [
            "http://localhost",
            "http://localhost:3000",
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ],
        description="List of allowed CORS origins",
    )

    database_url: str = Field(
        default="sqlite+pysqlite:///./parley.db",
        description="SQLAlchemy database URL",
    )

    jwt_secret_key: str = Field(default="changeme")
    jwt_algorithm: str = Field(default="HS256")
    access_token_expire_minutes: int = Field(default=60 * 24)

    chat_history_default_limit: int = Field(default=50)
    chat_history_max_limit: int = Field(default=100)
    chat_message_max_length: int = Field(default=2000)
    message_edit_window_minutes: int = Field(
        default=10,
        description="How long after creation the author may still edit a text message.",
    )

    websocket_keepalive_timeout_seconds: float = Field(
        default=30,
        description="Idle receive timeout before the server checks the socket with a ping.",
    )
    websocket_keepalive_ping_interval_seconds: float = Field(default=25)

    realtime_typing_ttl_seconds: float = Field(
        default=6.0,
        description="Typing assertions expire server-side after this many seconds without a refresh.",
    )
    realtime_typing_sweep_interval_seconds: float = Field(default=1.0)
    realtime_redis_url: str | None = Field(default=None)
    realtime_redis_prefix: str = Field(default="parley.realtime")
    realtime_nats_url: str | None = Field(default=None)
    realtime_nats_prefix: str = Field(default="parley.realtime")
    realtime_backend_preference: str | None = Field(
        default=None,
        description="Preferred broker backend ('redis' or 'nats'); auto-detected when unset.",
    )
    realtime_node_id: str | None = Field(default=None)

    upload_backend: str = Field(default="local", description="Upload gateway: 'local' or 's3'")
    media_root: Path = Field(default=Path("uploads"))
    media_base_url: str = Field(default="/media")
    max_upload_size: int = Field(
        default=50 * 1024 * 1024, description="Maximum upload size in bytes"
    )
    s3_bucket: str | None = Field(default=None)
    s3_region: str = Field(default="us-east-1")
    s3_endpoint_url: str | None = Field(default=None)
    s3_public_base_url: str | None = Field(
        default=None,
        description="Base URL used to build public object URLs; defaults to the bucket's virtual host.",
    )
    s3_key_prefix: str = Field(default="uploads")

    model_config = SettingsConfigDict(
        env_file=str(Path(__file__).resolve().parents[2] / ".env"),
        env_file_encoding="utf-8",
        extra="ignore",
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

    @field_validator("media_root", mode="before")
    @classmethod
    def resolve_media_root(cls, value: str | Path) -> Path:
        if isinstance(value, Path):
            return value.resolve()
        return Path(value).resolve()

    @field_validator("upload_backend", mode="before")
    @classmethod
    def normalize_upload_backend(cls, value: str) -> str:
        normalized = str(value or "local").strip().lower()
        if normalized not in {"local", "s3"}:
            raise ValueError("upload_backend must be 'local' or 's3'")
        return normalized

    @property
    def realtime_enabled(self) -> bool:
        return bool(self.realtime_redis_url or self.realtime_nats_url)


@lru_cache
def get_settings() -> Settings:
    return Settings()
