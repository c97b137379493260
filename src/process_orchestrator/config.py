"""Configuration for the orchestration core.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CoreSettings(BaseSettings):
    """Settings shared by the HTTP server, the CLI and the background scheduler.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `CoreSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path = Field(
        default=Path("orchestrator_state"),
        validation_alias="ORCHESTRATOR_STATE_PATH",
        description="Directory holding one JSON file per record collection",
    )

    runtime_base_url: str = Field(
        default="http://localhost:8080",
        validation_alias="ORCHESTRATOR_RUNTIME_BASE_URL",
        description="Base URL of the process runtime REST API",
    )
    runtime_token: str = Field(default="", validation_alias="ORCHESTRATOR_RUNTIME_TOKEN")
    runtime_timeout_seconds: float = Field(
        default=10.0,
        validation_alias="ORCHESTRATOR_RUNTIME_TIMEOUT_SECONDS",
        description="Upper bound for every call to the runtime.",
        gt=0,
    )
    runtime_retry_attempts: int = Field(
        default=3,
        validation_alias="ORCHESTRATOR_RUNTIME_RETRY_ATTEMPTS",
        description="Attempts for deploy and start calls. Task completion is never retried.",
        ge=1,
        le=10,
    )
    runtime_retry_backoff_seconds: float = Field(
        default=0.5,
        validation_alias="ORCHESTRATOR_RUNTIME_RETRY_BACKOFF_SECONDS",
        ge=0,
    )

    sla_tick_seconds: float = Field(
        default=10.0,
        validation_alias="ORCHESTRATOR_SLA_TICK_SECONDS",
        gt=0,
    )
    cron_tick_seconds: float = Field(
        default=30.0,
        validation_alias="ORCHESTRATOR_CRON_TICK_SECONDS",
        gt=0,
    )
    tick_concurrency: int = Field(
        default=4,
        validation_alias="ORCHESTRATOR_TICK_CONCURRENCY",
        description="Maximum number of workspaces ticked in parallel.",
        ge=1,
        le=64,
    )
    scheduler_enabled: bool = Field(
        default=True,
        validation_alias="ORCHESTRATOR_SCHEDULER_ENABLED",
        description="If true, the server runs SLA and cron ticks in background threads.",
    )

    sla_closing_statuses: str = Field(
        default="done,closed,resolved,cancelled",
        validation_alias="ORCHESTRATOR_SLA_CLOSING_STATUSES",
        description="Comma-separated entity statuses that resolve and close entity SLAs.",
    )
    sla_pause_statuses: str = Field(
        default="waiting,on_hold,blocked",
        validation_alias="ORCHESTRATOR_SLA_PAUSE_STATUSES",
        description="Comma-separated entity statuses during which entity SLAs are paused.",
    )

    max_trigger_chain_depth: int = Field(
        default=5,
        validation_alias="ORCHESTRATOR_MAX_TRIGGER_CHAIN_DEPTH",
        ge=1,
    )

    privileged_actors: str = Field(
        default="",
        validation_alias="ORCHESTRATOR_PRIVILEGED_ACTORS",
        description="Comma-separated actor ids that may act on tasks assigned to others.",
    )

    notification_buffer: int = Field(
        default=500,
        validation_alias="ORCHESTRATOR_NOTIFICATION_BUFFER",
        description="Messages retained per workspace for polling.",
        ge=1,
    )

    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="ORCHESTRATOR_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def parsed_sla_closing_statuses(self) -> set[str]:
        return {s.strip().lower() for s in self.sla_closing_statuses.split(",") if s.strip()}

    def parsed_sla_pause_statuses(self) -> set[str]:
        return {s.strip().lower() for s in self.sla_pause_statuses.split(",") if s.strip()}

    def parsed_privileged_actors(self) -> set[str]:
        return {a.strip() for a in self.privileged_actors.split(",") if a.strip()}

    def collection_file(self, name: str) -> Path:
        """Path of the JSON file backing one record collection."""

        return self.state_path / f"{name}.json"
