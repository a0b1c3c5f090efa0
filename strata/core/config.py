"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Logging
    strata_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    strata_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )
    strata_log_dir: str = Field(
        default="logs",
        description="Directory for rotated log files",
    )

    # Persistence
    strata_project_dir: str = Field(
        default=".",
        description="Project root holding the schema and conventions cache",
    )
    strata_state_dir: str = Field(
        default=".orchestration",
        description="Directory for sessions, event logs and checkpoints",
    )

    # Scheduling
    strata_max_concurrent: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum number of tasks executing at once within a layer",
    )
    strata_lock_poll_interval: float = Field(
        default=2.0,
        gt=0,
        description="Seconds between lock acquisition attempts",
    )
    strata_lock_max_wait: float = Field(
        default=60.0,
        gt=0,
        description="Maximum seconds to wait for resource locks",
    )
    strata_checkpoint_frequency: Literal["layer", "task", "never"] = Field(
        default="layer",
        description="When to write checkpoints",
    )

    # Context slicing
    strata_context_depth: int = Field(
        default=1,
        ge=0,
        le=5,
        description="Relationship hops to follow when slicing the schema corpus",
    )

    # Feature toggles
    strata_enable_resource_locking: bool = Field(
        default=True,
        description="Take runtime resource locks around task execution",
    )
    strata_enable_context_slicing: bool = Field(
        default=True,
        description="Assemble a per-task context slice",
    )
    strata_enable_reviews: bool = Field(
        default=True,
        description="Invoke the review callback after execution",
    )

    @property
    def state_path(self) -> Path:
        """Get the state directory, resolved against the project directory."""
        state = Path(self.strata_state_dir)
        if state.is_absolute():
            return state
        return Path(self.strata_project_dir) / state


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.strata_max_concurrent
        5
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
