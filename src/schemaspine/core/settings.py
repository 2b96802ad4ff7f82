"""
Centralized settings for schemaspine.

Manifesto:
    Where the store lives, how long a writer may wait, and whether ALTERs
    run in place are deployment decisions, not code.  One validated,
    cached settings object reads them from ``SCHEMASPINE_*`` environment
    variables and ``.env`` files.

Examples:
    >>> from schemaspine.core.settings import get_settings
    >>> settings = get_settings()
    >>> settings.lock_timeout
    30.0

Tags:
    schemaspine, configuration, settings, pydantic

Doc-Types:
    api-reference
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SchemaSpineSettings(BaseSettings):
    """schemaspine configuration.

    Fields
    ──────
    database_url    : SQLAlchemy URL of the SQLite store
    versions_dir    : Directory holding revision YAML files
    history_table   : Name of the ledger table
    lock_timeout    : Seconds a writer/migration waits for the store gate
    busy_timeout_ms : SQLite busy_timeout applied to every connection
    journal_mode    : SQLite journal mode applied on connect
    pool_size       : Pooled connections for file-backed stores
    recreate        : ``auto`` uses in-place ALTER where SQLite allows it,
                      ``always`` routes every ALTER through a batch rewrite
    log_level       : structlog level
    log_json        : Force JSON (True) / console (False) logs; None = auto
    """

    model_config = SettingsConfigDict(
        env_prefix="SCHEMASPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Store ────────────────────────────────────────────────────
    database_url: str = Field(default="sqlite:///schemaspine.db")
    versions_dir: Path = Field(default=Path("migrations/versions"))
    history_table: str = Field(default="schemaspine_history")

    # ── Concurrency ──────────────────────────────────────────────
    lock_timeout: float = Field(default=30.0, ge=0)
    busy_timeout_ms: int = Field(default=5000, ge=0)
    journal_mode: str = Field(default="WAL")
    pool_size: int = Field(default=5, ge=1)

    # ── Migrations ───────────────────────────────────────────────
    recreate: Literal["auto", "always"] = "auto"

    # ── Observability ────────────────────────────────────────────
    log_level: str = "INFO"
    log_json: bool | None = None

    @field_validator("database_url")
    @classmethod
    def _require_sqlite(cls, value: str) -> str:
        if not value.startswith("sqlite"):
            raise ValueError(f"schemaspine manages embedded SQLite stores only, got {value!r}")
        return value

    @field_validator("history_table")
    @classmethod
    def _valid_table_name(cls, value: str) -> str:
        if not value.replace("_", "").isalnum():
            raise ValueError(f"history_table must be a plain identifier, got {value!r}")
        return value


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: dict[str, SchemaSpineSettings] = {}


def get_settings(*, _force_reload: bool = False, **overrides: Any) -> SchemaSpineSettings:
    """Load, validate, and cache a :class:`SchemaSpineSettings` instance.

    Keyword overrides (e.g. from CLI options) take precedence over the
    environment; ``None`` values are ignored.
    """
    overrides = {k: v for k, v in overrides.items() if v is not None}
    cache_key = repr(sorted(overrides.items()))

    if not _force_reload and cache_key in _settings_cache:
        return _settings_cache[cache_key]

    settings = SchemaSpineSettings(**overrides)
    _settings_cache[cache_key] = settings
    return settings


def clear_settings_cache() -> None:
    """Clear the settings cache (primarily for testing)."""
    _settings_cache.clear()


__all__ = ["SchemaSpineSettings", "get_settings", "clear_settings_cache"]
