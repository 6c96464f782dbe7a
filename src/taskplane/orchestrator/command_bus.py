"""Authenticated command entry point with CSRF gate and uniform envelopes."""

from __future__ import annotations

import hmac
import logging
import platform
import secrets
from collections.abc import Callable, Mapping
from typing import Any

from taskplane import __version__
from taskplane.orchestrator.backend import ProviderClientRegistry
from taskplane.orchestrator.catalog import requires_api_key
from taskplane.orchestrator.engine import TaskOrchestrator
from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.health import HealthEvaluator
from taskplane.orchestrator.models import LogLevel, TaskFailure, TaskResult, TaskType
from taskplane.orchestrator.registry import ProviderRegistry, validate_provider_name
from taskplane.orchestrator.settings_store import SETTINGS_SCHEMA_VERSION, SettingsStore
from taskplane.orchestrator.usage import UsageRecorder

logger = logging.getLogger(__name__)

Envelope = dict[str, Any]
Handler = Callable[[Mapping[str, Any]], Any]

READ_ONLY_ACTIONS: frozenset[str] = frozenset(
    {
        "check_provider_status",
        "get_provider_stats",
        "get_stats",
        "get_analytics",
        "get_recent_activity",
        "get_dashboard_stats",
        "get_recent_errors",
        "health_check",
        "get_chart_data",
        "list_providers",
        "get_settings",
        "get_system_info",
    },
)
MUTATING_ACTIONS: frozenset[str] = frozenset(
    {
        "run_test",
        "test_provider",
        "save_provider_config",
        "save_settings",
        "cleanup",
        "export_config",
        "import_config",
    },
)

CSRF_ERROR = "Invalid security token"
UNKNOWN_ACTION_ERROR = "unknown action"
INTERNAL_ERROR = "internal error"
TEST_PROVIDER_PROMPT = "Hello, this is a test message."


def new_csrf_token() -> str:
    """Fresh session-bound token."""

    return secrets.token_hex(16)


def csrf_tokens_match(session_token: str | None, supplied_token: str | None) -> bool:
    """Constant-time comparison; an empty token on either side never matches."""

    if not session_token or not supplied_token:
        return False
    return hmac.compare_digest(session_token.encode("utf-8"), supplied_token.encode("utf-8"))


class CommandBus:
    """Classifies actions, enforces CSRF on mutations and dispatches to one operation."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        orchestrator: TaskOrchestrator,
        registry: ProviderRegistry,
        settings_store: SettingsStore,
        recorder: UsageRecorder,
        health: HealthEvaluator,
        clients: ProviderClientRegistry,
        system_info: Mapping[str, Any] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.registry = registry
        self.settings_store = settings_store
        self.recorder = recorder
        self.health = health
        self.clients = clients
        self.system_info = dict(system_info or {})
        self._handlers: dict[str, Handler] = {
            "check_provider_status": self._check_provider_status,
            "get_provider_stats": self._get_provider_stats,
            "get_stats": lambda _: self.recorder.today_stats().to_dict(),
            "get_analytics": self._get_analytics,
            "get_recent_activity": self._get_recent_activity,
            "get_dashboard_stats": lambda _: self.health.dashboard_stats().to_dict(),
            "get_recent_errors": self._get_recent_errors,
            "health_check": lambda _: self.health.evaluate().to_dict(),
            "get_chart_data": self._get_chart_data,
            "list_providers": lambda _: [view.to_dict() for view in self.registry.list()],
            "get_settings": lambda _: self.settings_store.load().to_dict(),
            "get_system_info": self._get_system_info,
            "run_test": self._run_test,
            "test_provider": self._test_provider,
            "save_provider_config": self._save_provider_config,
            "save_settings": self._save_settings,
            "cleanup": self._cleanup,
            "export_config": lambda _: self.registry.export_config(),
            "import_config": self._import_config,
        }

    def dispatch(
        self,
        action: str,
        params: Mapping[str, Any] | None,
        session_csrf_token: str | None,
        supplied_csrf_token: str | None,
    ) -> Envelope:
        """Run one command and wrap its outcome in `{success, data | error}`."""

        action_name = (action or "").strip()
        payload: Mapping[str, Any] = params or {}
        read_only = action_name in READ_ONLY_ACTIONS

        if not read_only and not csrf_tokens_match(session_csrf_token, supplied_csrf_token):
            self.recorder.log(
                LogLevel.WARNING,
                f"CSRF validation failed for action {action_name!r}",
                details={"action": action_name},
            )
            return {"success": False, "error": CSRF_ERROR}

        handler = self._handlers.get(action_name)
        if handler is None:
            logger.info("Unknown action requested: %r", action_name)
            return {"success": False, "error": UNKNOWN_ACTION_ERROR}

        try:
            data = handler(payload)
        except ClientError as error:
            if not read_only:
                self.recorder.log(
                    LogLevel.WARNING,
                    f"Action {action_name} rejected: {error}",
                    details={"action": action_name},
                )
            return {"success": False, "error": str(error)}
        except Exception:
            logger.exception("Action %s raised an unexpected error", action_name)
            if not read_only:
                self.recorder.log(
                    LogLevel.ERROR,
                    f"Action {action_name} failed with an internal error",
                    details={"action": action_name},
                )
            return {"success": False, "error": INTERNAL_ERROR}

        if isinstance(data, TaskFailure):
            self._log_mutation(action_name, succeeded=False, detail=data.message)
            return {"success": False, "error": data.message, "data": data.to_dict()}
        if isinstance(data, TaskResult):
            self._log_mutation(action_name, succeeded=True, detail=f"provider={data.provider_used}")
            return {"success": True, "data": data.to_dict()}
        if not read_only:
            self._log_mutation(action_name, succeeded=True)
        return {"success": True, "data": data}

    def _log_mutation(self, action: str, *, succeeded: bool, detail: str | None = None) -> None:
        outcome = "succeeded" if succeeded else "failed"
        message = f"Action {action} {outcome}"
        if detail:
            message = f"{message}: {detail}"
        self.recorder.log(
            LogLevel.INFO if succeeded else LogLevel.WARNING,
            message,
            details={"action": action},
        )

    def _check_provider_status(self, params: Mapping[str, Any]) -> dict[str, Any]:
        name = _require_str(params, "provider")
        view = self.registry.get(name)
        if view is None:
            raise ClientError(f"Unknown provider: {name!r}")
        has_client = name in self.clients
        has_credentials = view.has_api_key or not requires_api_key(name)
        if not view.configured:
            status = "not_configured"
        elif view.enabled and has_client and has_credentials:
            status = "active"
        else:
            status = "inactive"
        return {
            "provider": name,
            "status": status,
            "configured": view.configured,
            "enabled": view.enabled,
            "has_api_key": view.has_api_key,
            "client_available": has_client,
            "success_rate": view.stats.success_rate,
            "avg_response_time_ms": round(view.stats.avg_response_time_ms, 2),
            "last_used": view.stats.last_used.isoformat() if view.stats.last_used else None,
        }

    def _get_provider_stats(self, params: Mapping[str, Any]) -> dict[str, Any]:
        name = _require_str(params, "provider")
        hours = _optional_int(params, "hours", default=24)
        return self.recorder.provider_stats(name, hours=hours).to_dict()

    def _get_analytics(self, params: Mapping[str, Any]) -> dict[str, Any]:
        timeframe = _optional_str(params, "timeframe", default="7d")
        rows = self.recorder.analytics(timeframe)
        return {"timeframe": timeframe, "rows": [row.to_dict() for row in rows]}

    def _get_recent_activity(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        limit = _optional_int(params, "limit", default=10)
        return [entry.to_dict() for entry in self.recorder.recent_activity(limit)]

    def _get_recent_errors(self, params: Mapping[str, Any]) -> list[dict[str, Any]]:
        limit = _optional_int(params, "limit", default=5)
        return [entry.to_dict() for entry in self.recorder.recent_errors(limit)]

    def _get_chart_data(self, params: Mapping[str, Any]) -> dict[str, Any]:
        kind = _optional_str(params, "type", default=_optional_str(params, "kind", default="usage"))
        days = _optional_int(params, "days", default=7)
        return self.recorder.chart_series(kind, days=days).to_dict()

    def _get_system_info(self, _: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "version": __version__,
            "python_version": platform.python_version(),
            "settings_schema_version": SETTINGS_SCHEMA_VERSION,
            "registered_clients": self.clients.names(),
            "task_types": [task_type.value for task_type in TaskType],
            **self.system_info,
        }

    def _run_test(self, params: Mapping[str, Any]) -> TaskResult | TaskFailure:
        task_type = _optional_str(params, "task_type", default=TaskType.TEXT_GENERATION.value)
        task_input = params.get("input")
        if task_input is None:
            task_input = {"prompt": params.get("prompt"), "system": params.get("system")}
        if not isinstance(task_input, Mapping):
            raise ClientError("Parameter input must be a mapping.")
        options = params.get("options")
        if options is not None and not isinstance(options, Mapping):
            raise ClientError("Parameter options must be a mapping.")
        return self.orchestrator.execute(task_type, task_input, options)

    def _test_provider(self, params: Mapping[str, Any]) -> TaskResult | TaskFailure:
        name = validate_provider_name(_require_str(params, "provider"))
        return self.orchestrator.execute(
            TaskType.TEXT_GENERATION,
            {"prompt": TEST_PROVIDER_PROMPT},
            {"provider_hint": name, "max_tokens": 50, "bypass_cache": True},
        )

    def _save_provider_config(self, params: Mapping[str, Any]) -> dict[str, Any]:
        name = _require_str(params, "provider")
        config = params.get("config")
        if not isinstance(config, Mapping):
            raise ClientError("Parameter config must be a mapping.")
        return self.registry.upsert(name, config).to_dict()

    def _save_settings(self, params: Mapping[str, Any]) -> dict[str, Any]:
        values = params.get("settings")
        if not isinstance(values, Mapping):
            raise ClientError("Parameter settings must be a mapping.")
        return self.settings_store.save(values).to_dict()

    def _cleanup(self, params: Mapping[str, Any]) -> dict[str, int]:
        days = params.get("days")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int)):
            raise ClientError("Parameter days must be an integer.")
        return self.recorder.cleanup(days)

    def _import_config(self, params: Mapping[str, Any]) -> dict[str, int]:
        payload = params.get("config")
        if not isinstance(payload, Mapping):
            raise ClientError("Parameter config must be a mapping.")
        return self.registry.import_config(payload)


def _require_str(params: Mapping[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ClientError(f"Parameter {key} is required.")
    return value.strip()


def _optional_str(params: Mapping[str, Any], key: str, *, default: str) -> str:
    value = params.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise ClientError(f"Parameter {key} must be a string.")
    return value.strip()


def _optional_int(params: Mapping[str, Any], key: str, *, default: int) -> int:
    value = params.get(key)
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int):
        raise ClientError(f"Parameter {key} must be an integer.")
    return value
