"""Process settings for release-spine.

The release launcher passes nothing on the command line beyond the operation
name, so everything else arrives through ``RELEASE_SPINE_*`` environment
variables (or a ``.env`` file next to the release).  ``ReleaseSettings``
validates them once at process start.

Manifesto:
    - **Pydantic validation:** Type-checked at startup, not mid-migration
    - **Environment-driven:** Reads from env vars and .env files
    - **Sensible defaults:** ``release.toml`` in the working directory

Examples:
    >>> from release_spine.settings import ReleaseSettings
    >>> settings = ReleaseSettings(log_level="DEBUG")
    >>> settings.config_path.name
    'release.toml'

Tags:
    settings, configuration, pydantic, environment, release-spine

Doc-Types:
    - API Reference
    - Configuration Guide
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ReleaseSettings(BaseSettings):
    """Settings for a single task run.

    Fields
    ──────
    config_path  : TOML file holding stores and subsystems
    log_level    : Structlog log level
    json_logs    : Force JSON (True) or console (False); None auto-detects
    service_name : ``service.name`` stamped on every log line
    """

    model_config = SettingsConfigDict(
        env_prefix="RELEASE_SPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    config_path: Path = Field(
        default=Path("release.toml"),
        validation_alias="RELEASE_SPINE_CONFIG",
        description="Path to the release configuration file",
    )

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    json_logs: bool | None = None
    service_name: str = "release-spine"

    @field_validator("log_level")
    @classmethod
    def _upper_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"unknown log level {value!r}")
        return level
