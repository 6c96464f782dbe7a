"""Process configuration for the task control plane."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

_LOG_LEVELS = {"debug", "info", "warning", "error", "critical"}


@dataclass(slots=True)
class ProviderRuntimeSettings:
    """Provider call execution settings."""

    call_workers: int = 10
    pricing_raw: str = ""
    echo_providers: tuple[str, ...] = ()


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns.

    Runtime-tunable values (cache TTL, max tokens, per-provider defaults) are
    persisted in the database and served by `SettingsStore`; this object only
    carries what is needed before the database is reachable.
    """

    db_path: Path = Path(".taskplane.db")
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "warning"
    providers: ProviderRuntimeSettings = field(default_factory=ProviderRuntimeSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("TASKPLANE_DB_PATH", ".taskplane.db")),
            sqlite_busy_timeout_ms=int(os.getenv("TASKPLANE_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            log_level=os.getenv("TASKPLANE_LOG_LEVEL", "warning").strip().lower(),
            providers=ProviderRuntimeSettings(
                call_workers=int(os.getenv("TASKPLANE_CALL_WORKERS", "10")),
                pricing_raw=os.getenv("TASKPLANE_PROVIDER_PRICING", ""),
                echo_providers=_collect_csv("TASKPLANE_ECHO_PROVIDERS"),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("TASKPLANE_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.providers.call_workers <= 0:
            raise ValueError("TASKPLANE_CALL_WORKERS must be a positive integer.")
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid TASKPLANE_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of: {', '.join(sorted(_LOG_LEVELS))}.",
            )

    @property
    def logging_level(self) -> int:
        """Numeric `logging` level for the configured name."""

        return logging.getLevelName(self.log_level.upper())


def _collect_csv(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return ()
    values: list[str] = []
    seen: set[str] = set()
    for part in raw.split(","):
        normalized = part.strip().lower()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        values.append(normalized)
    return tuple(values)


def parse_bool(value: str, *, name: str) -> bool:
    """Parse the accepted boolean spellings, raising `ValueError` otherwise."""

    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
