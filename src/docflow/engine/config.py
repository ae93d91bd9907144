"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

State persistence is optional: without DOCFLOW_STATE_PATH / DOCFLOW_AUDIT_LOG_PATH
the engine keeps everything in memory.
"""

from __future__ import annotations

import re
from datetime import timedelta
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_HEX_DIGEST_RE = re.compile(r"^[0-9a-f]{64}$")


class EngineSettings(BaseSettings):
    """Settings for the approval workflow engine.

    Environment variables:
    - LOG_LEVEL                              (optional)
    - DOCFLOW_STATE_PATH                     (optional)
    - DOCFLOW_AUDIT_LOG_PATH                 (optional)
    - DOCFLOW_ESCALATION_INTERVAL_SECONDS    (optional)
    - DOCFLOW_REMINDER_LEAD_MINUTES          (optional)
    - DOCFLOW_BOOKKEEPING_TIMEOUT_SECONDS    (optional)
    - DOCFLOW_AUDIT_SEED_DIGEST              (optional)
    - DOCFLOW_EXPIRE_UNCONSULTED_TASKS       (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path | None = Field(
        default=None,
        validation_alias="DOCFLOW_STATE_PATH",
        description="JSON snapshot of workflow state; memory-only when unset",
    )
    audit_log_path: Path | None = Field(
        default=None,
        validation_alias="DOCFLOW_AUDIT_LOG_PATH",
        description="JSON-lines file backing the audit chain; memory-only when unset",
    )

    escalation_interval_seconds: float = Field(
        default=900.0,
        gt=0,
        validation_alias="DOCFLOW_ESCALATION_INTERVAL_SECONDS",
        description="How often the escalation sweep runs",
    )
    reminder_lead_minutes: int = Field(
        default=240,
        ge=0,
        validation_alias="DOCFLOW_REMINDER_LEAD_MINUTES",
        description="Send one reminder this long before a task is due (0 disables reminders)",
    )
    bookkeeping_timeout_seconds: float = Field(
        default=10.0,
        gt=0,
        validation_alias="DOCFLOW_BOOKKEEPING_TIMEOUT_SECONDS",
        description="Upper bound for one bookkeeping-entry creation call",
    )
    audit_seed_digest: str = Field(
        default="0" * 64,
        validation_alias="DOCFLOW_AUDIT_SEED_DIGEST",
        description="Digest every organization's audit chain starts from",
    )
    expire_unconsulted_tasks: bool = Field(
        default=True,
        validation_alias="DOCFLOW_EXPIRE_UNCONSULTED_TASKS",
        description="Expire still-pending sibling tasks once their stage resolves",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("audit_seed_digest")
    @classmethod
    def _check_seed(cls, value: str) -> str:
        value = value.strip().lower()
        if not _HEX_DIGEST_RE.match(value):
            raise ValueError("DOCFLOW_AUDIT_SEED_DIGEST must be 64 hex characters")
        return value

    @property
    def reminder_lead(self) -> timedelta:
        return timedelta(minutes=self.reminder_lead_minutes)
