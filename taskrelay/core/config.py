"""Configuration management using Pydantic Settings."""

from functools import lru_cache
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from taskrelay.core.models import DAY_MS, JoinStrategy, TaskPriority


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        case_sensitive=False,
        extra="ignore",
    )

    # Storage
    relay_data_dir: str = Field(
        default="data",
        description="Root directory for durable records",
    )
    relay_storage_backend: Literal["file", "memory"] = Field(
        default="file",
        description="Durable store backend",
    )

    # Logging
    relay_log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )
    relay_log_dir: str = Field(
        default="logs",
        description="Directory for rotating log files",
    )
    relay_log_to_file: bool = Field(
        default=True,
        description="Write logs to a daily rotating file",
    )
    relay_debug: bool = Field(
        default=False,
        description="Enable debug mode",
    )

    # Task execution
    relay_default_task_timeout_ms: int = Field(
        default=30_000,
        gt=0,
        description="Timeout used when a task does not specify one",
    )
    relay_long_running_threshold_ms: int = Field(
        default=300_000,
        gt=0,
        description="Tasks with a larger timeout are decomposed",
    )
    relay_max_subtask_duration_ms: int = Field(
        default=120_000,
        gt=0,
        description="Upper bound for a single subtask",
    )
    relay_default_estimated_duration_ms: int = Field(
        default=600_000,
        gt=0,
        description="Estimate used for long-running tasks without one",
    )

    # Parallel groups
    relay_high_group_timeout_ms: int = Field(default=30_000, gt=0)
    relay_medium_group_timeout_ms: int = Field(default=60_000, gt=0)
    relay_low_group_timeout_ms: int = Field(default=90_000, gt=0)
    relay_high_group_strategy: JoinStrategy = JoinStrategy.ALL
    relay_medium_group_strategy: JoinStrategy = JoinStrategy.SETTLED
    relay_low_group_strategy: JoinStrategy = JoinStrategy.SETTLED

    # Retention
    relay_intermediate_ttl_ms: int = Field(
        default=DAY_MS,
        gt=0,
        description="Lifetime of intermediate results",
    )
    relay_message_max_age_ms: int = Field(
        default=DAY_MS,
        gt=0,
        description="Mailbox messages older than this are swept",
    )
    relay_context_max_age_ms: int = Field(
        default=DAY_MS,
        gt=0,
        description="Context snapshots older than this are swept",
    )
    relay_status_max_age_ms: int = Field(
        default=DAY_MS,
        gt=0,
        description="Terminal status records older than this are swept",
    )
    relay_completed_task_max_age_ms: int = Field(
        default=60 * 60 * 1000,
        gt=0,
        description="Cached async results older than this are dropped",
    )

    # Waiting
    relay_wait_timeout_ms: int = Field(default=300_000, gt=0)
    relay_batch_wait_timeout_ms: int = Field(default=600_000, gt=0)
    relay_stale_task_threshold_ms: int = Field(
        default=60 * 60 * 1000,
        gt=0,
        description="Running tasks older than this are reported as stale",
    )

    def group_timeout_ms(self, priority: TaskPriority) -> int:
        """Group timeout configured for a priority."""
        return {
            TaskPriority.HIGH: self.relay_high_group_timeout_ms,
            TaskPriority.MEDIUM: self.relay_medium_group_timeout_ms,
            TaskPriority.LOW: self.relay_low_group_timeout_ms,
        }[priority]

    def group_strategy(self, priority: TaskPriority) -> JoinStrategy:
        """Join strategy configured for a priority."""
        return {
            TaskPriority.HIGH: self.relay_high_group_strategy,
            TaskPriority.MEDIUM: self.relay_medium_group_strategy,
            TaskPriority.LOW: self.relay_low_group_strategy,
        }[priority]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance.

    Returns:
        Settings instance loaded from environment.

    Example:
        >>> settings = get_settings()
        >>> settings.relay_max_subtask_duration_ms
        120000
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the settings cache (useful for testing)."""
    get_settings.cache_clear()
