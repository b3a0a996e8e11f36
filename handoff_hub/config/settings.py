"""
Application configuration settings using Pydantic Settings.
Supports environment variables and .env files for flexible deployment.
"""

from functools import lru_cache
from typing import Annotated, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class APISettings(BaseSettings):
    """API server configuration."""
    
    model_config = SettingsConfigDict(env_prefix="API_")
    
    host: str = Field(default="0.0.0.0", description="API host")
    port: int = Field(default=8000, description="API port")
    workers: int = Field(default=1, description="Number of workers")
    debug: bool = Field(default=False, description="Debug mode")
    cors_origins: Annotated[list[str], NoDecode] = Field(
        default=["*"],
        description="CORS allowed origins"
    )
    api_key: str | None = Field(default=None, description="API key for caller and admin routes")
    
    @field_validator("cors_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [origin.strip() for origin in v.split(",")]
        return v


class HandoffSettings(BaseSettings):
    """Transfer orchestration tuning."""
    
    model_config = SettingsConfigDict(env_prefix="HANDOFF_")
    
    snapshot_size: int = Field(
        default=10,
        ge=1,
        description="Conversation messages copied into each transfer snapshot"
    )
    max_reroutes: int = Field(
        default=3,
        ge=0,
        description="Automatic reroutes allowed for one session before escalating"
    )
    transfer_timeout_seconds: int = Field(
        default=120,
        ge=1,
        description="Pending transfers older than this are failed by the sweep"
    )
    sweep_interval_seconds: float = Field(
        default=15.0,
        gt=0,
        description="Interval of the stale-transfer sweep and queue reconciliation loop"
    )
    default_response_time_seconds: int = Field(
        default=60,
        description="Response time assumed for agents without history"
    )
    queue_wait_step_seconds: int = Field(
        default=30,
        description="Estimated wait added per waiting-queue position"
    )
    persistence_retry_delay_seconds: float = Field(
        default=0.2,
        ge=0.0,
        description="Delay before the single persistence retry"
    )
    webhook_urls: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description="URLs receiving transfer lifecycle events"
    )
    webhook_timeout_seconds: float = Field(default=5.0, description="Webhook POST timeout")
    
    @field_validator("webhook_urls", mode="before")
    @classmethod
    def parse_webhook_urls(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [url.strip() for url in v.split(",") if url.strip()]
        return v


class RealtimeSettings(BaseSettings):
    """Real-time delivery layer configuration."""
    
    model_config = SettingsConfigDict(env_prefix="REALTIME_")
    
    agent_token_secret: str = Field(
        default="change-me",
        description="HMAC secret used to sign agent credentials"
    )
    agent_token_ttl_seconds: int = Field(
        default=43200,
        ge=1,
        description="Lifetime of an agent credential"
    )


class Settings(BaseSettings):
    """Main application settings aggregating all sub-settings."""
    
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )
    
    # Environment
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment"
    )
    log_level: str = Field(default="INFO", description="Logging level")
    
    # Sub-settings
    api: APISettings = Field(default_factory=APISettings)
    handoff: HandoffSettings = Field(default_factory=HandoffSettings)
    realtime: RealtimeSettings = Field(default_factory=RealtimeSettings)


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
