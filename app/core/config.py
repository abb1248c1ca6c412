from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_env: str = "local"
    api_port: int = 8000

    postgres_host: str = "127.0.0.1"
    postgres_port: int = 5432
    postgres_db: str = "support_desk"
    postgres_user: str = "desk_user"
    postgres_password: str = "desk_password"
    database_url_override: str | None = Field(
        default=None,
        validation_alias=AliasChoices("DATABASE_URL_OVERRIDE", "DATABASE_URL"),
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_auto_create: bool = False
    storage_backend: str = "postgres"
    storage_retry_attempts: int = 3
    storage_retry_backoff_seconds: float = 0.1

    page_size: int = 20
    max_page_size: int = 100
    greeting_message: str = (
        "Hi! Thanks for reaching out. An agent will be with you shortly."
    )
    upload_dir: str = "uploads"
    max_upload_bytes: int = 10 * 1024 * 1024

    ringing_timeout_seconds: float = 30.0
    connecting_timeout_seconds: float = 45.0
    failed_call_reset_seconds: float = 10.0
    require_both_media_confirmations: bool = True

    presence_stale_after_seconds: float = 45.0
    presence_sweep_interval_seconds: float = 15.0

    one_active_conversation_per_agent: bool = True
    max_active_conversations_per_agent: int = 3

    slot_grid_raw: str = "mon-fri 09:00-17:00"
    slot_minutes: int = 30
    slot_timezone: str = "UTC"
    slot_min_notice_minutes: int = 0
    slot_listing_days: int = 7
    slot_listing_limit: int = 20

    log_level: str = "INFO"
    log_json: bool = False

    cors_allowed_origins_raw: str = "http://127.0.0.1:5173,http://localhost:5173"
    trusted_hosts_raw: str = "127.0.0.1,localhost,testserver"
    force_https: bool = False

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", case_sensitive=False
    )

    @property
    def database_url(self) -> str:
        if self.database_url_override:
            return self.database_url_override
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def agent_capacity(self) -> int:
        if self.one_active_conversation_per_agent:
            return 1
        return max(self.max_active_conversations_per_agent, 1)

    @property
    def cors_allowed_origins(self) -> list[str]:
        return [
            origin.strip()
            for origin in self.cors_allowed_origins_raw.split(",")
            if origin.strip()
        ]

    @property
    def trusted_hosts(self) -> list[str]:
        return [
            host.strip() for host in self.trusted_hosts_raw.split(",") if host.strip()
        ]

    def validate_settings(self) -> None:
        if self.storage_backend not in {"postgres", "memory"}:
            raise ValueError("STORAGE_BACKEND must be 'postgres' or 'memory'.")
        if self.page_size < 1 or self.page_size > self.max_page_size:
            raise ValueError("PAGE_SIZE must be between 1 and MAX_PAGE_SIZE.")
        if self.ringing_timeout_seconds <= 0:
            raise ValueError("RINGING_TIMEOUT_SECONDS must be positive.")
        if self.presence_stale_after_seconds <= self.presence_sweep_interval_seconds:
            raise ValueError(
                "PRESENCE_STALE_AFTER_SECONDS must exceed the sweep interval."
            )

        if self.app_env.lower() != "production":
            return

        if self.storage_backend == "memory":
            raise ValueError("The memory storage backend is not allowed in production.")
        if not self.cors_allowed_origins:
            raise ValueError(
                "CORS_ALLOWED_ORIGINS_RAW must define explicit origins in production."
            )
        if "*" in self.cors_allowed_origins:
            raise ValueError("Wildcard CORS origin is not allowed in production.")
        if not self.trusted_hosts:
            raise ValueError(
                "TRUSTED_HOSTS_RAW must define explicit hosts in production."
            )
        if "*" in self.trusted_hosts:
            raise ValueError("Wildcard trusted host is not allowed in production.")


@lru_cache
def get_settings() -> Settings:
    return Settings()
