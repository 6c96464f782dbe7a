"""Typed, versioned system settings persisted as text key/value rows."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import asdict, dataclass, fields, replace
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from taskplane.config import parse_bool
from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.repository import ControlPlaneRepository

logger = logging.getLogger(__name__)

SETTINGS_SCHEMA_VERSION = 1
LOG_LEVELS: tuple[str, ...] = ("debug", "info", "warning", "error")


@dataclass(frozen=True, slots=True)
class SystemSettings:
    """Closed set of runtime-tunable settings with their defaults."""

    cache_ttl: int = 3600
    max_tokens: int = 4096
    rate_limit: int = 1000
    default_timeout: int = 30
    max_concurrent_requests: int = 10
    cache_enabled: bool = True
    log_level: str = "error"
    auto_cleanup_days: int = 30
    debug: bool = False
    rate_limit_period_seconds: int = 3600
    timezone: str = "UTC"

    @property
    def tzinfo(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


_DEFAULTS = SystemSettings()
SETTING_KEYS: tuple[str, ...] = tuple(item.name for item in fields(SystemSettings))


class SettingsStore:
    """Reads and writes `SystemSettings` through the repository."""

    def __init__(self, repository: ControlPlaneRepository) -> None:
        self.repository = repository

    def load(self) -> SystemSettings:
        """Current settings; unparseable stored values fall back to defaults."""

        stored = self.repository.load_settings()
        values: dict[str, Any] = {}
        for key in SETTING_KEYS:
            raw = stored.get(key)
            if raw is None:
                continue
            try:
                values[key] = coerce_setting(key, raw)
            except ClientError as error:
                logger.warning(
                    "Ignoring stored setting %s=%r, using default %r: %s",
                    key,
                    raw,
                    getattr(_DEFAULTS, key),
                    error,
                )
        return replace(_DEFAULTS, **values)

    def save(self, updates: Mapping[str, Any]) -> SystemSettings:
        """Validate every supplied value, then persist them together."""

        if not updates:
            raise ClientError("No settings supplied.")
        normalized = {
            key: encode_setting(key, coerce_setting(key, value)) for key, value in updates.items()
        }
        self.repository.save_settings(normalized)
        return self.load()


def coerce_setting(key: str, value: Any) -> Any:
    """Coerce a raw value against the default's type, raising `ClientError` on mismatch."""

    if key not in SETTING_KEYS:
        raise ClientError(f"Unknown setting: {key!r}")
    default = getattr(_DEFAULTS, key)

    if isinstance(default, bool):
        coerced: Any = _coerce_bool(key, value)
    elif isinstance(default, int):
        coerced = _coerce_int(key, value)
    else:
        if not isinstance(value, str):
            raise ClientError(f"Setting {key} must be a string.")
        coerced = value.strip()

    _validate_setting(key, coerced)
    return coerced


def encode_setting(key: str, value: Any) -> str:
    default = getattr(_DEFAULTS, key)
    if isinstance(default, bool):
        return "1" if value else "0"
    return str(value)


def _coerce_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        try:
            return parse_bool(value, name=key)
        except ValueError as error:
            raise ClientError(str(error)) from error
    raise ClientError(f"Setting {key} must be a boolean.")


def _coerce_int(key: str, value: Any) -> int:
    if isinstance(value, bool):
        raise ClientError(f"Setting {key} must be an integer.")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    raise ClientError(f"Setting {key} must be an integer, got {value!r}.")


def _validate_setting(key: str, value: Any) -> None:
    if key == "log_level":
        if value not in LOG_LEVELS:
            raise ClientError(f"Setting log_level must be one of: {', '.join(LOG_LEVELS)}.")
        return
    if key == "timezone":
        try:
            ZoneInfo(value)
        except (ZoneInfoNotFoundError, ValueError) as error:
            raise ClientError(f"Unknown timezone: {value!r}") from error
        return
    if isinstance(value, bool):
        return
    if key == "cache_ttl" and value < 0:
        raise ClientError("Setting cache_ttl must be >= 0.")
    if key != "cache_ttl" and value <= 0:
        raise ClientError(f"Setting {key} must be a positive integer.")
