"""Configuration for the execution engine.

Configuration is loaded from:
- environment variables (prefixed with `DAG_ENGINE_`)
- and a local `.env` file (if present)

Per-run knobs live in :class:`RunOptions`; callers that do not want environment
driven behaviour can construct one directly.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_DEPTH_LIMIT = 5
MAX_SELF_FIX_RETRIES_CAP = 10


def clamp_self_fix_retries(value: int) -> int:
    return max(0, min(MAX_SELF_FIX_RETRIES_CAP, int(value)))


class RunOptions(BaseModel):
    """Options for a single run (one-shot or durable)."""

    depth_limit: int = Field(
        default=DEFAULT_DEPTH_LIMIT,
        ge=0,
        description="Max nesting depth for delegated sub-DAGs (0 disables delegation)",
    )
    max_self_fix_retries: int = Field(
        default=0,
        description="Self-fix attempts allowed per run before pausing for the user",
    )
    context_max_steps: int | None = Field(
        default=None,
        gt=0,
        description="Keep only the newest N history entries (None = unbounded)",
    )

    model_config = {"frozen": True}

    @field_validator("max_self_fix_retries", mode="before")
    @classmethod
    def _clamp_retries(cls, value: object) -> int:
        if value is None:
            return 0
        if not isinstance(value, (int, float, str)):
            raise ValueError("max_self_fix_retries must be a number")
        return clamp_self_fix_retries(int(value))


class EngineSettings(BaseSettings):
    """Settings for the engine and its CLI.

    Environment variables:
    - DAG_ENGINE_LOG_LEVEL              (optional)
    - DAG_ENGINE_DEPTH_LIMIT            (optional)
    - DAG_ENGINE_MAX_SELF_FIX_RETRIES   (optional, clamped to [0, 10])
    - DAG_ENGINE_CONTEXT_MAX_STEPS      (optional)
    - DAG_ENGINE_STORE_PATH             (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(default="INFO", description="Root logging level")

    depth_limit: int = Field(
        default=DEFAULT_DEPTH_LIMIT,
        ge=0,
        description="Default delegation depth limit",
    )
    max_self_fix_retries: int = Field(
        default=0,
        description="Default self-fix retry budget per run",
    )
    context_max_steps: int | None = Field(
        default=None,
        gt=0,
        description="Bound on the history handed to later steps",
    )

    store_path: Path = Field(
        default=Path("agent_state/executions.db"),
        description="SQLite file holding the event queue and run state",
    )

    model_config = SettingsConfigDict(
        env_prefix="DAG_ENGINE_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("max_self_fix_retries", mode="before")
    @classmethod
    def _clamp_retries(cls, value: object) -> int:
        if value is None or value == "":
            return 0
        if not isinstance(value, (int, float, str)):
            raise ValueError("max_self_fix_retries must be a number")
        return clamp_self_fix_retries(int(value))

    def run_options(self) -> RunOptions:
        return RunOptions(
            depth_limit=self.depth_limit,
            max_self_fix_retries=self.max_self_fix_retries,
            context_max_steps=self.context_max_steps,
        )
