"""Environment-driven configuration with Pydantic v2."""

from typing import Literal, Optional
from pathlib import Path
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Engine settings driven entirely by environment variables."""

    # Logging
    log_level: str = Field(default="INFO")
    log_format: Literal["json", "console"] = Field(default="console")
    log_file: Optional[str] = Field(default=None)

    # Cache / persistence backend
    redis_url: Optional[str] = Field(default=None)
    redis_enabled: bool = Field(default=False)
    cache_ttl: int = Field(default=3600, ge=60)
    snapshot_ttl: int = Field(default=86400, ge=60)

    # Execution budgets (seconds, 0 disables the execution timeout)
    execution_timeout: float = Field(default=300.0, ge=0)
    node_timeout: Optional[float] = Field(default=None, gt=0)

    # Failure policy
    continue_on_node_failure: bool = Field(default=False)
    retry_failed_nodes: bool = Field(default=False)
    max_retry_attempts: int = Field(default=3, ge=1, le=10)
    retry_delay: float = Field(default=1.0, ge=0)
    retry_backoff_multiplier: float = Field(default=2.0, ge=1.0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    # Shared nodes across concurrent executions
    concurrency_policy: Literal["allow", "reject"] = Field(default="allow")

    # Context lifecycle
    context_retention_seconds: float = Field(default=60.0, ge=0)
    sweep_interval: float = Field(default=30.0, gt=0)
    recovery_mode: Literal["resume", "fail"] = Field(default="resume")
    save_progress: bool = Field(default=True)

    # Status reporting
    duration_history_size: int = Field(default=20, ge=1)
    event_history_size: int = Field(default=500, ge=0)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Normalize and check the stdlib level name."""
        level = v.upper()
        if level not in ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("log_file")
    @classmethod
    def validate_log_file(cls, v):
        """Ensure the log directory exists."""
        if v:
            Path(v).parent.mkdir(parents=True, exist_ok=True)
        return v

    @property
    def execution_timeout_or_none(self) -> Optional[float]:
        """Execution timeout with 0 mapped to "no timeout"."""
        return self.execution_timeout or None

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore",
        "env_parse_none_str": "none",
    }
