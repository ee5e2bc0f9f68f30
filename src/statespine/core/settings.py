"""
Centralized settings for statespine.

:class:`RuntimeSettings` is a single validated, cached source of truth for
the runtime's tunables. Every field can be set through a ``STATESPINE_*``
environment variable (e.g. ``STATESPINE_CALLBACK_ERRORS=raise``) or a
``.env`` file.

Tags:
    statespine, configuration, settings, pydantic, caching, validation

Doc-Types:
    api-reference
"""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RuntimeSettings(BaseSettings):
    """statespine runtime configuration.

    Fields
    ──────
    log_level           : Structlog log level
    log_format          : ``console`` for development, ``json`` for aggregation
    trace_notifications : Emit a debug event for every change broadcast
    callback_errors     : ``log`` keeps delivering after a failing watcher,
                          ``raise`` re-raises the first failure afterwards
    """

    model_config = SettingsConfigDict(
        env_prefix="STATESPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Logging ──────────────────────────────────────────────────
    log_level: str = Field(default="INFO")
    log_format: Literal["console", "json"] = Field(default="console")

    # ── Dispatch ─────────────────────────────────────────────────
    trace_notifications: bool = Field(
        default=False,
        description="Log every change broadcast at debug level",
    )
    callback_errors: Literal["log", "raise"] = Field(default="log")

    @field_validator("log_level")
    @classmethod
    def _normalize_level(cls, value: str) -> str:
        level = value.upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown log level: {value!r}")
        return level

    @property
    def raise_callback_errors(self) -> bool:
        return self.callback_errors == "raise"


# ── Settings factory with caching ────────────────────────────────────────

_settings_cache: RuntimeSettings | None = None


def get_settings(*, _force_reload: bool = False) -> RuntimeSettings:
    """Load, validate, and cache a :class:`RuntimeSettings` instance."""
    global _settings_cache
    if _settings_cache is None or _force_reload:
        _settings_cache = RuntimeSettings()
    return _settings_cache


def clear_settings_cache() -> None:
    """Drop the cached settings (for testing)."""
    global _settings_cache
    _settings_cache = None


__all__ = ["RuntimeSettings", "clear_settings_cache", "get_settings"]
