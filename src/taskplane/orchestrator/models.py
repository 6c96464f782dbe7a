"""Domain models for task orchestration, usage telemetry and provider configuration."""

from __future__ import annotations

import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from taskplane.orchestrator.errors import ClientError

TOKENS_NOT_REPORTED = "N/A"
NO_PROVIDER = "none"


class TaskType(str, Enum):
    """Task kinds a provider can be asked to perform."""

    TEXT_GENERATION = "text_generation"
    CONTENT_ANALYSIS = "content_analysis"
    TRANSLATION = "translation"
    SUMMARIZATION = "summarization"
    CODE_GENERATION = "code_generation"
    IMAGE_ANALYSIS = "image_analysis"
    SENTIMENT_ANALYSIS = "sentiment_analysis"
    ENTITY_EXTRACTION = "entity_extraction"
    CLASSIFICATION = "classification"
    QUESTION_ANSWERING = "question_answering"

    @classmethod
    def parse(cls, value: str | TaskType) -> TaskType:
        """Resolve a task type name, raising `ClientError` for unknown values."""

        if isinstance(value, TaskType):
            return value
        try:
            return cls(str(value).strip())
        except ValueError as error:
            raise ClientError(f"Unknown task type: {value!r}") from error


class UsageStatus(str, Enum):
    """Outcome of one recorded orchestration attempt."""

    SUCCESS = "success"
    ERROR = "error"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"


class LogLevel(str, Enum):
    """Operational log stream levels."""

    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Terminal failure taxonomy returned to callers."""

    CLIENT_ERROR = "client_error"
    PROVIDER_ERROR = "provider_error"
    CONFIGURATION_ERROR = "configuration_error"
    CANCELLED = "cancelled"


class FailureClass(str, Enum):
    """Normalized provider failure classes stored with failed usage records."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    BACKEND_TRANSIENT = "backend_transient"
    BACKEND_NON_RETRYABLE = "backend_non_retryable"
    BILLING_OR_QUOTA = "billing_or_quota"
    ACCESS_OR_AUTH = "access_or_auth"
    MODEL_NOT_AVAILABLE = "model_not_available"
    NO_PROVIDER = "no_provider"


@dataclass(frozen=True, slots=True)
class TaskOptions:
    """Per-call execution options."""

    provider_hint: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.7
    stream: bool = False
    bypass_cache: bool = False

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> TaskOptions:
        """Build options from an untyped payload, rejecting unknown keys and ill-typed values."""

        if not raw:
            return cls()
        payload = dict(raw)
        if "provider" in payload and "provider_hint" not in payload:
            payload["provider_hint"] = payload.pop("provider")
        unknown = sorted(set(payload) - _OPTION_KEYS)
        if unknown:
            raise ClientError(f"Unknown task options: {', '.join(unknown)}")

        hint = payload.get("provider_hint")
        if hint is not None and not isinstance(hint, str):
            raise ClientError("Option provider_hint must be a string.")
        max_tokens = payload.get("max_tokens", 1000)
        if isinstance(max_tokens, bool) or not isinstance(max_tokens, int):
            raise ClientError("Option max_tokens must be an integer.")
        temperature = payload.get("temperature", 0.7)
        if isinstance(temperature, bool) or not isinstance(temperature, int | float):
            raise ClientError("Option temperature must be a number.")
        stream = payload.get("stream", False)
        bypass_cache = payload.get("bypass_cache", False)
        if not isinstance(stream, bool) or not isinstance(bypass_cache, bool):
            raise ClientError("Options stream and bypass_cache must be booleans.")

        options = cls(
            provider_hint=(hint.strip() or None) if hint is not None else None,
            max_tokens=max_tokens,
            temperature=float(temperature),
            stream=stream,
            bypass_cache=bypass_cache,
        )
        options.validate()
        return options

    def validate(self) -> None:
        if self.max_tokens <= 0:
            raise ClientError("Option max_tokens must be > 0.")
        if math.isnan(self.temperature) or not 0.0 <= self.temperature <= 2.0:
            raise ClientError("Option temperature must be within [0, 2].")

    def cache_fields(self) -> dict[str, object]:
        """Options that change provider output and therefore the cache key."""

        return {
            "provider_hint": self.provider_hint,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }


_OPTION_KEYS = {"provider_hint", "max_tokens", "temperature", "stream", "bypass_cache"}


@dataclass(frozen=True, slots=True)
class TaskInput:
    """Validated task payload."""

    prompt: str
    system: str | None = None

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any] | None) -> TaskInput:
        payload = raw or {}
        prompt = payload.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ClientError("Input prompt is required.")
        system = payload.get("system")
        if system is not None and not isinstance(system, str):
            raise ClientError("Input system must be a string.")
        return cls(prompt=prompt, system=system or None)


@dataclass(frozen=True, slots=True)
class TaskResult:
    """Normalized successful task outcome."""

    content: str
    provider_used: str
    tokens_used: int | str
    cost: float | None
    response_time_ms: int
    task_type: TaskType
    cached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": self.content,
            "provider_used": self.provider_used,
            "tokens_used": self.tokens_used,
            "cost": self.cost,
            "response_time_ms": self.response_time_ms,
            "task_type": self.task_type.value,
            "cached": self.cached,
        }


@dataclass(frozen=True, slots=True)
class AttemptFailure:
    """One failed provider attempt inside a single execution."""

    provider: str
    status: UsageStatus
    failure_class: FailureClass
    message: str


@dataclass(frozen=True, slots=True)
class TaskFailure:
    """Terminal failure returned instead of a result."""

    kind: ErrorKind
    message: str
    task_type: str
    provider: str
    timestamp: datetime
    attempts: tuple[AttemptFailure, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "message": self.message,
            "task_type": self.task_type,
            "provider": self.provider,
            "timestamp": self.timestamp.isoformat(),
            "attempts": [
                {
                    "provider": attempt.provider,
                    "status": attempt.status.value,
                    "failure_class": attempt.failure_class.value,
                    "message": attempt.message,
                }
                for attempt in self.attempts
            ],
        }


@dataclass(slots=True)
class UsageRecord:
    """Append-only record of one orchestration attempt."""

    task_type: str
    provider: str
    success: bool
    status: UsageStatus
    response_time_ms: int = 0
    model: str | None = None
    tokens_used: int | None = None
    cost: float | None = None
    failure_class: FailureClass | None = None
    error_message: str | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class LogEntryView:
    """Operational log entry."""

    entry_id: int
    created_at: datetime
    level: LogLevel
    message: str
    provider: str | None
    task_type: str | None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.entry_id,
            "created_at": self.created_at.isoformat(),
            "level": self.level.value,
            "message": self.message,
            "provider": self.provider,
            "task_type": self.task_type,
            "details": self.details,
        }


@dataclass(slots=True)
class ProviderStats:
    """Rolling counters maintained per provider."""

    last_used: datetime | None = None
    total_requests: int = 0
    failed_requests: int = 0
    total_cost: float = 0.0
    avg_response_time_ms: float = 0.0

    @property
    def success_rate(self) -> float:
        """Percentage of successful attempts; 100 before any traffic."""

        if self.total_requests == 0:
            return 100.0
        succeeded = self.total_requests - self.failed_requests
        return round(100.0 * succeeded / self.total_requests, 1)


@dataclass(slots=True)
class StoredProvider:
    """Persisted provider row, secret included; never returned past the registry."""

    name: str
    display_name: str
    api_key: str | None
    api_endpoint: str | None
    model: str | None
    enabled: bool
    priority: int
    rate_limit: int
    timeout_seconds: int
    settings: dict[str, str]
    stats: ProviderStats
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class ProviderView:
    """Provider entry as listed to operators; the secret itself never leaves storage."""

    name: str
    display_name: str
    icon: str
    configured: bool
    enabled: bool
    api_endpoint: str | None
    model: str | None
    priority: int
    rate_limit: int
    timeout_seconds: int
    api_key_preview: str | None = None
    settings: dict[str, str] = field(default_factory=dict)
    stats: ProviderStats = field(default_factory=ProviderStats)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def has_api_key(self) -> bool:
        return self.api_key_preview is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "icon": self.icon,
            "configured": self.configured,
            "enabled": self.enabled,
            "api_endpoint": self.api_endpoint,
            "model": self.model,
            "priority": self.priority,
            "rate_limit": self.rate_limit,
            "timeout_seconds": self.timeout_seconds,
            "has_api_key": self.has_api_key,
            "api_key_preview": self.api_key_preview,
            "settings": dict(self.settings),
            "stats": {
                "last_used": self.stats.last_used.isoformat() if self.stats.last_used else None,
                "total_requests": self.stats.total_requests,
                "failed_requests": self.stats.failed_requests,
                "total_cost": round(self.stats.total_cost, 6),
                "success_rate": self.stats.success_rate,
                "avg_response_time_ms": round(self.stats.avg_response_time_ms, 2),
            },
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


@dataclass(frozen=True, slots=True)
class ProviderSnapshot:
    """Enabled provider configuration as seen by one execution, credentials included."""

    name: str
    api_key: str | None
    api_endpoint: str | None
    model: str | None
    priority: int
    rate_limit: int
    timeout_seconds: int
    settings: Mapping[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class ProviderConfigUpdate:
    """Typed subset of provider fields supplied to one upsert."""

    display_name: str | None = None
    api_key: str | None = None
    api_endpoint: str | None = None
    model: str | None = None
    enabled: bool | None = None
    priority: int | None = None
    rate_limit: int | None = None
    timeout_seconds: int | None = None
    settings: dict[str, str] | None = None

    def supplied(self) -> dict[str, Any]:
        """Only the fields the caller actually set."""

        values = {
            "display_name": self.display_name,
            "api_key": self.api_key,
            "api_endpoint": self.api_endpoint,
            "model": self.model,
            "enabled": self.enabled,
            "priority": self.priority,
            "rate_limit": self.rate_limit,
            "timeout_seconds": self.timeout_seconds,
            "settings": self.settings,
        }
        return {key: value for key, value in values.items() if value is not None}


@dataclass(slots=True)
class HealthStatus:
    level: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"level": self.level, "message": self.message}


@dataclass(slots=True)
class HealthReport:
    """System health verdict per concern."""

    database: HealthStatus
    providers: HealthStatus
    errors: HealthStatus

    @property
    def overall(self) -> str:
        """Worst level across concerns."""

        levels = {self.database.level, self.providers.level, self.errors.level}
        for level in ("error", "warning"):
            if level in levels:
                return level
        return "healthy"

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall": self.overall,
            "database": self.database.to_dict(),
            "providers": self.providers.to_dict(),
            "errors": self.errors.to_dict(),
        }
