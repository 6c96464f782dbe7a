"""Controllers for control plane CLI commands."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from taskplane.config import Settings
from taskplane.orchestrator.backend import ProviderClientRegistry
from taskplane.orchestrator.command_bus import new_csrf_token
from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.metrics import render_chart_lines, render_stats_lines
from taskplane.orchestrator.models import TaskFailure
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.services import ControlPlane
from taskplane.orchestrator.settings_store import SystemSettings


@dataclass(slots=True)
class DbInitCommand:
    """CLI input for schema creation / upgrade."""

    db_path: Path | None


@dataclass(slots=True)
class ProvidersListCommand:
    db_path: Path | None


@dataclass(slots=True)
class ProviderSetCommand:
    """CLI input for a partial provider configuration update."""

    db_path: Path | None
    name: str
    api_key: str | None = None
    api_endpoint: str | None = None
    model: str | None = None
    enabled: bool | None = None
    priority: int | None = None
    rate_limit: int | None = None
    timeout_seconds: int | None = None
    settings: tuple[str, ...] = ()


@dataclass(slots=True)
class SettingsShowCommand:
    db_path: Path | None


@dataclass(slots=True)
class SettingsSetCommand:
    """CLI input for `key=value` system setting updates."""

    db_path: Path | None
    assignments: tuple[str, ...]


@dataclass(slots=True)
class RunTaskCommand:
    """CLI input for one synchronous task execution."""

    db_path: Path | None
    task_type: str
    prompt: str
    system: str | None = None
    provider: str | None = None
    max_tokens: int = 1000
    temperature: float = 0.7
    bypass_cache: bool = False
    deadline_seconds: float | None = None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None
    timeframe: str = "7d"


@dataclass(slots=True)
class HealthCommand:
    db_path: Path | None


@dataclass(slots=True)
class ChartCommand:
    db_path: Path | None
    kind: str = "usage"
    days: int = 7


@dataclass(slots=True)
class CleanupCommand:
    db_path: Path | None
    days: int | None = None


@dataclass(slots=True)
class DispatchCommand:
    """CLI input for a raw command bus call with JSON parameters."""

    db_path: Path | None
    action: str
    params_json: str = "{}"


@dataclass(slots=True)
class CliResult:
    """Lines to render plus the process outcome."""

    lines: list[str]
    success: bool


class ControlPlaneCliController:
    """Coordinates provider, settings, task and observability CLI operations."""

    def __init__(self, clients: ProviderClientRegistry | None = None) -> None:
        self.clients = clients

    def init_db(self, command: DbInitCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        settings.validate()
        with _repository(settings) as repository:
            missing = repository.missing_tables()
        if missing:
            return [f"Schema incomplete, missing tables: {', '.join(missing)}"]
        return [f"Database ready: {settings.db_path}"]

    def list_providers(self, command: ProvidersListCommand) -> list[str]:
        with self._control_plane(command.db_path) as plane:
            views = plane.registry.list()
            registered = set(plane.clients.names())

        lines = [f"Providers: {len(views)}"]
        for view in views:
            state = "enabled" if view.enabled else "disabled"
            if not view.configured:
                state = "not configured"
            lines.append(
                f"  {view.name} ({view.display_name}) {state} "
                f"priority={view.priority} rate_limit={view.rate_limit} "
                f"timeout={view.timeout_seconds}s model={view.model or '-'} "
                f"api_key={view.api_key_preview or '-'} "
                f"client={'yes' if view.name in registered else 'no'} "
                f"success_rate={view.stats.success_rate:.1f}%",
            )
        return lines

    def set_provider(self, command: ProviderSetCommand) -> list[str]:
        config: dict[str, Any] = {
            key: value
            for key, value in (
                ("api_key", command.api_key),
                ("api_endpoint", command.api_endpoint),
                ("model", command.model),
                ("enabled", command.enabled),
                ("priority", command.priority),
                ("rate_limit", command.rate_limit),
                ("timeout_seconds", command.timeout_seconds),
            )
            if value is not None
        }
        if command.settings:
            config["settings"] = _parse_assignments(command.settings)
        with self._control_plane(command.db_path) as plane:
            view = plane.registry.upsert(command.name, config)
        return [
            f"Provider saved: {view.name} enabled={view.enabled} priority={view.priority} "
            f"rate_limit={view.rate_limit} timeout={view.timeout_seconds}s "
            f"api_key={view.api_key_preview or '-'}",
        ]

    def show_settings(self, command: SettingsShowCommand) -> list[str]:
        with self._control_plane(command.db_path) as plane:
            current = plane.settings_store.load()
        return _settings_lines(current)

    def set_settings(self, command: SettingsSetCommand) -> list[str]:
        updates = _parse_assignments(command.assignments)
        with self._control_plane(command.db_path) as plane:
            saved = plane.settings_store.save(updates)
        return ["Settings saved.", *_settings_lines(saved)]

    def run_task(self, command: RunTaskCommand) -> CliResult:
        cancel_event = threading.Event()
        deadline = (
            time.monotonic() + command.deadline_seconds
            if command.deadline_seconds is not None
            else None
        )
        with self._control_plane(command.db_path) as plane:
            outcome = plane.orchestrator.execute(
                command.task_type,
                {"prompt": command.prompt, "system": command.system},
                {
                    "provider_hint": command.provider,
                    "max_tokens": command.max_tokens,
                    "temperature": command.temperature,
                    "bypass_cache": command.bypass_cache,
                },
                cancel_event=cancel_event,
                deadline=deadline,
            )

        if isinstance(outcome, TaskFailure):
            lines = [f"Task failed ({outcome.kind.value}): {outcome.message}"]
            lines.extend(
                f"  attempt provider={attempt.provider} status={attempt.status.value} "
                f"class={attempt.failure_class.value}: {attempt.message}"
                for attempt in outcome.attempts
            )
            return CliResult(lines=lines, success=False)

        cost = f"{outcome.cost:.6f}" if outcome.cost is not None else "n/a"
        return CliResult(
            lines=[
                f"Task completed: provider={outcome.provider_used} "
                f"tokens={outcome.tokens_used} cost_usd={cost} "
                f"response_ms={outcome.response_time_ms} cached={outcome.cached}",
                outcome.content,
            ],
            success=True,
        )

    def stats(self, command: StatsCommand) -> list[str]:
        """Show today's headline numbers and per provider/task usage."""

        with self._control_plane(command.db_path) as plane:
            today = plane.recorder.today_stats()
            analytics = plane.recorder.analytics(command.timeframe)
            dashboard = plane.health.dashboard_stats()
        return [
            *render_stats_lines(today=today, analytics=analytics, timeframe=command.timeframe),
            f"Errors today: {dashboard.errors_today} status={dashboard.status} "
            f"active_providers={dashboard.active_providers}",
        ]

    def health(self, command: HealthCommand) -> CliResult:
        with self._control_plane(command.db_path) as plane:
            report = plane.health.evaluate()
        lines = [f"Health: {report.overall}"]
        for part, status in (
            ("database", report.database),
            ("providers", report.providers),
            ("errors", report.errors),
        ):
            lines.append(f"  {part}: {status.level} ({status.message})")
        return CliResult(lines=lines, success=report.overall != "error")

    def chart(self, command: ChartCommand) -> list[str]:
        with self._control_plane(command.db_path) as plane:
            series = plane.recorder.chart_series(command.kind, days=command.days)
        return render_chart_lines(series)

    def cleanup(self, command: CleanupCommand) -> list[str]:
        with self._control_plane(command.db_path) as plane:
            purged = plane.recorder.cleanup(command.days)
        return [
            "Cleanup completed: "
            + " ".join(f"{table}={count}" for table, count in sorted(purged.items())),
        ]

    def dispatch(self, command: DispatchCommand) -> CliResult:
        """Route through the command bus as an authenticated local session."""

        try:
            params = json.loads(command.params_json or "{}")
        except json.JSONDecodeError as error:
            raise ClientError(f"Invalid JSON params: {error.msg}") from error
        if not isinstance(params, dict):
            raise ClientError("JSON params must be an object.")

        token = new_csrf_token()
        with self._control_plane(command.db_path) as plane:
            envelope = plane.command_bus.dispatch(command.action, params, token, token)
        return CliResult(
            lines=[json.dumps(envelope, indent=2, sort_keys=True, default=str)],
            success=bool(envelope.get("success")),
        )

    @contextmanager
    def _control_plane(self, db_path: Path | None) -> Iterator[ControlPlane]:
        settings = Settings.from_env(db_path=db_path)
        settings.validate()
        logging.basicConfig(level=settings.logging_level)
        with _repository(settings) as repository:
            plane = ControlPlane(settings=settings, repository=repository, clients=self.clients)
            _apply_runtime_log_level(plane.settings_store.load())
            try:
                yield plane
            finally:
                plane.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[ControlPlaneRepository]:
    repository = ControlPlaneRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def _apply_runtime_log_level(system: SystemSettings) -> None:
    level = logging.DEBUG if system.debug else logging.getLevelName(system.log_level.upper())
    logging.getLogger("taskplane").setLevel(level)


def _parse_assignments(assignments: tuple[str, ...]) -> dict[str, str]:
    values: dict[str, str] = {}
    for item in assignments:
        key, separator, value = item.partition("=")
        if not separator or not key.strip():
            raise ClientError(f"Expected key=value, got {item!r}")
        values[key.strip()] = value.strip()
    return values


def _settings_lines(settings: SystemSettings) -> list[str]:
    return [f"  {key}={value}" for key, value in settings.to_dict().items()]
