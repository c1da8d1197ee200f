"""Application configuration for the signaling relay."""
from __future__ import annotations

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration."""

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    app_env: str = Field(default="development")
    cors_allow_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])
    log_level: str = Field(default="INFO")

    max_viewers_cap: int = Field(default=10, ge=1)
    room_code_length: int = Field(default=6, ge=4)
    room_idle_ttl_hours: float = Field(default=12, gt=0)
    sweep_interval_seconds: float = Field(default=3600, gt=0)

    max_name_length: int = Field(default=50, ge=1)
    max_chat_length: int = Field(default=500, ge=1)

    peer_restart_budget: int = Field(default=3, ge=0)

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def _split_origins(cls, value: object) -> object:
        """Allow comma-separated env values for CORS origins."""

        if isinstance(value, str):
            parts = [item.strip() for item in value.split(",") if item.strip()]
            return parts
        return value


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


settings = get_settings()
