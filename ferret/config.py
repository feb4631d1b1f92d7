"""Ferret configuration — loaded from .env via pydantic-settings.

Every knob can be overridden with a ``FERRET_`` environment variable.
Nested groups use a double underscore, e.g. ``FERRET_QUEUE__MAX_CONCURRENT=4``.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_DATA_DIR = Path.home() / ".ferret"


class QueueSettings(BaseModel):
    """Task queue and worker pool limits."""

    max_concurrent: int = Field(default=2, ge=1, description="Worker pool size")
    max_queue_size: int = Field(default=20, ge=1, description="Max tasks waiting in 'queued'")
    task_timeout_s: float = Field(
        default=120.0, gt=0, description="Hard per-task wall-clock bound (seconds)"
    )
    retry_attempts: int = Field(default=2, ge=0, description="Retries after a timeout or crash")
    poll_interval_s: float = Field(
        default=1.0, gt=0, description="Idle wait between queue polls"
    )


class InjectionSettings(BaseModel):
    """Per-session injection budget and selection thresholds."""

    max_per_session: int = Field(default=5, ge=0)
    max_tokens_per_injection: int = Field(default=150, ge=1)
    max_total_tokens_per_session: int = Field(default=500, ge=1)
    cooldown_s: float = Field(default=30.0, ge=0, description="Min gap between injections")

    min_relevance: float = Field(default=0.5, ge=0, le=1)
    memory_only_threshold: float = Field(default=0.8, ge=0, le=1)
    research_only_threshold: float = Field(default=0.6, ge=0, le=1)
    combined_threshold: float = Field(default=0.6, ge=0, le=1)

    memory_only_tokens: int = Field(default=80, ge=1)
    research_only_tokens: int = Field(default=100, ge=1)
    combined_tokens: int = Field(default=150, ge=1)
    warning_tokens: int = Field(default=120, ge=1)


class KnowledgeSettings(BaseModel):
    """Scoring weights and recency decay."""

    weight_preset: str = Field(
        default="default", description="default | memory_first | research_first"
    )
    recency_decay_days: float = Field(default=10.0, gt=0)


class GeneratorSettings(BaseModel):
    """OpenAI-compatible chat-completions endpoint used for plan/evaluate/synthesize."""

    base_url: str = Field(default="http://localhost:8080", description="Server base URL")
    model: str = Field(default="current", description="Model identifier sent with each call")
    api_key: str = Field(default="", description="Bearer token (optional)")
    timeout_s: float = Field(default=60.0, gt=0)
    max_tokens: int = Field(default=1024, ge=1)
    temperature: float = Field(default=0.3, ge=0, le=2)


class CoordinatorSettings(BaseModel):
    """Research loop bounds."""

    max_iterations: int = Field(default=2, ge=1)
    completion_threshold: float = Field(default=0.85, ge=0, le=1)
    specialist_timeout_s: float = Field(default=20.0, gt=0)
    default_specialists: list[str] = Field(default_factory=lambda: ["docs", "code", "web"])

    @model_validator(mode="after")
    def _non_empty_defaults(self) -> "CoordinatorSettings":
        if not self.default_specialists:
            raise ValueError("default_specialists must name at least one specialist")
        return self


class FerretSettings(BaseSettings):
    """All Ferret configuration. Reads from .env file and environment variables."""

    # --- Storage ---
    data_dir: Path = Field(default=_DEFAULT_DATA_DIR, description="Where the SQLite DB lives")
    db_name: str = Field(default="ferret.db")

    # --- Redis (activity log only; optional) ---
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis URL for the per-task activity log",
    )

    # --- Triggering ---
    min_trigger_confidence: float = Field(
        default=0.6, ge=0, le=1, description="Detector confidence needed to enqueue"
    )
    default_depth: Literal["quick", "medium", "deep"] = Field(
        default="medium", description="Depth for research requested without one"
    )
    speculative_probability: float = Field(default=0.3, ge=0, le=1)

    # --- Logging ---
    log_level: str = Field(default="INFO", description="Log level")
    log_format: str = Field(
        default="console",
        description="Log format: 'console' for dev, 'json' for production",
    )

    queue: QueueSettings = Field(default_factory=QueueSettings)
    injection: InjectionSettings = Field(default_factory=InjectionSettings)
    knowledge: KnowledgeSettings = Field(default_factory=KnowledgeSettings)
    generator: GeneratorSettings = Field(default_factory=GeneratorSettings)
    coordinator: CoordinatorSettings = Field(default_factory=CoordinatorSettings)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "env_prefix": "FERRET_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    @property
    def db_path(self) -> Path:
        return self.data_dir / self.db_name


# Singleton for the CLI. Services take explicit settings objects.
settings = FerretSettings()
