"""
Kindred Ops - Configuration
===========================

All application settings loaded from environment variables.
Uses pydantic-settings for validation and type conversion.
"""

from functools import lru_cache
from typing import Literal, Optional

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ==========================================================================
    # Application
    # ==========================================================================
    APP_NAME: str = "Kindred Ops"
    APP_VERSION: str = "0.1.0"
    ENVIRONMENT: Literal["development", "staging", "production", "test"] = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # ==========================================================================
    # API
    # ==========================================================================
    API_V1_PREFIX: str = "/api/v1"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Bearer key for the ops routes; unset disables the check
    OPS_API_KEY: Optional[str] = None

    # ==========================================================================
    # Database (supports SQLite and PostgreSQL)
    # ==========================================================================
    DATABASE_URL: str = "sqlite+aiosqlite:///./kindred_ops.db"
    DATABASE_POOL_SIZE: int = 5
    DATABASE_MAX_OVERFLOW: int = 10
    DATABASE_ECHO: bool = False

    # ==========================================================================
    # Heartbeat
    # ==========================================================================
    OPS_HEARTBEAT_ENABLED: bool = False
    OPS_HEARTBEAT_INTERVAL_SECONDS: int = 300  # 5 minutes

    # Trigger evaluation looks back this far for new events
    OPS_TRIGGER_EVENT_WINDOW_SECONDS: int = 60

    OPS_REACTION_BATCH_SIZE: int = 10
    OPS_REACTION_EVENT_TYPES: list[str] = [
        "step_completed",
        "step_failed",
        "mission_finalized",
    ]

    OPS_STALE_STEP_MINUTES: int = 30

    # ==========================================================================
    # Agents
    # ==========================================================================
    AGENT_POLL_INTERVAL_SECONDS: float = 30.0

    # Step kinds each agent can execute; drives the daily cap gate
    AGENT_CAPABILITIES: dict[str, list[str]] = {
        "steve": ["build", "test", "deploy"],
        "patrick": ["code_review", "audit", "security_check"],
        "buffett": ["analyze", "vote", "research"],
    }

    # ==========================================================================
    # Computed Properties
    # ==========================================================================
    @computed_field  # type: ignore[misc]
    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "development"

    @computed_field  # type: ignore[misc]
    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @computed_field  # type: ignore[misc]
    @property
    def is_test(self) -> bool:
        return self.ENVIRONMENT == "test"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Convenience export
settings = get_settings()
