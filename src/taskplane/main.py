"""CLI entrypoint for taskplane."""

from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from taskplane import __version__
from taskplane.orchestrator.controllers import (
    ChartCommand,
    CleanupCommand,
    CliResult,
    ControlPlaneCliController,
    DbInitCommand,
    DispatchCommand,
    HealthCommand,
    ProviderSetCommand,
    ProvidersListCommand,
    RunTaskCommand,
    SettingsSetCommand,
    SettingsShowCommand,
    StatsCommand,
)
from taskplane.orchestrator.models import TaskType

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ControlPlaneCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="taskplane")
def taskplane() -> None:
    """AI provider control plane CLI."""


@taskplane.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@DB_PATH_OPTION
def db_init(db_path: Path | None) -> None:
    """Create or upgrade the schema to the latest migration."""

    with _client_errors():
        _emit_lines(CONTROLLER.init_db(DbInitCommand(db_path=db_path)))


@taskplane.group()
def providers() -> None:
    """Provider registry commands."""


@providers.command("list")
@DB_PATH_OPTION
def providers_list(db_path: Path | None) -> None:
    """List catalog and configured providers with their rolling stats."""

    with _client_errors():
        _emit_lines(CONTROLLER.list_providers(ProvidersListCommand(db_path=db_path)))


@providers.command("set")
@DB_PATH_OPTION
@click.argument("name")
@click.option("--api-key", default=None, help="Provider API key.")
@click.option("--api-endpoint", default=None, help="Override the catalog endpoint.")
@click.option("--model", default=None, help="Model identifier.")
@click.option("--enabled/--disabled", default=None, help="Enable or disable the provider.")
@click.option("--priority", type=click.IntRange(min=0), default=None, help="Lower runs first.")
@click.option(
    "--rate-limit",
    type=click.IntRange(min=1),
    default=None,
    help="Requests allowed per rate limit window.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Per-call timeout in seconds.",
)
@click.option(
    "--setting",
    "settings",
    multiple=True,
    help="Provider-specific key=value setting. Can be repeated.",
)
def providers_set(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    api_key: str | None,
    api_endpoint: str | None,
    model: str | None,
    enabled: bool | None,
    priority: int | None,
    rate_limit: int | None,
    timeout_seconds: int | None,
    settings: tuple[str, ...],
) -> None:
    """Create or partially update one provider; omitted options keep their stored values."""

    with _client_errors():
        _emit_lines(
            CONTROLLER.set_provider(
                ProviderSetCommand(
                    db_path=db_path,
                    name=name,
                    api_key=api_key,
                    api_endpoint=api_endpoint,
                    model=model,
                    enabled=enabled,
                    priority=priority,
                    rate_limit=rate_limit,
                    timeout_seconds=timeout_seconds,
                    settings=settings,
                ),
            ),
        )


@taskplane.group("settings")
def settings_group() -> None:
    """System settings commands."""


@settings_group.command("show")
@DB_PATH_OPTION
def settings_show(db_path: Path | None) -> None:
    """Print the effective system settings."""

    with _client_errors():
        _emit_lines(CONTROLLER.show_settings(SettingsShowCommand(db_path=db_path)))


@settings_group.command("set")
@DB_PATH_OPTION
@click.argument("assignments", nargs=-1, required=True)
def settings_set(db_path: Path | None, assignments: tuple[str, ...]) -> None:
    """Validate and save `key=value` settings; nothing is saved if any value is invalid."""

    with _client_errors():
        _emit_lines(
            CONTROLLER.set_settings(SettingsSetCommand(db_path=db_path, assignments=assignments)),
        )


@taskplane.command("run")
@DB_PATH_OPTION
@click.option(
    "--task-type",
    type=click.Choice([task_type.value for task_type in TaskType], case_sensitive=False),
    default=TaskType.TEXT_GENERATION.value,
    show_default=True,
)
@click.option("--prompt", required=True, help="Task prompt.")
@click.option("--system", default=None, help="Optional system prompt.")
@click.option("--provider", default=None, help="Use only this provider.")
@click.option("--max-tokens", type=int, default=1000, show_default=True)
@click.option("--temperature", type=float, default=0.7, show_default=True)
@click.option("--bypass-cache", is_flag=True, default=False, help="Skip the response cache.")
@click.option(
    "--deadline",
    "deadline_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Overall deadline in seconds across all provider attempts.",
)
def run(  # noqa: PLR0913
    db_path: Path | None,
    task_type: str,
    prompt: str,
    system: str | None,
    provider: str | None,
    max_tokens: int,
    temperature: float,
    bypass_cache: bool,
    deadline_seconds: float | None,
) -> None:
    """Execute one task with provider fallback and print the result."""

    with _client_errors():
        result = CONTROLLER.run_task(
            RunTaskCommand(
                db_path=db_path,
                task_type=task_type.lower(),
                prompt=prompt,
                system=system,
                provider=provider,
                max_tokens=max_tokens,
                temperature=temperature,
                bypass_cache=bypass_cache,
                deadline_seconds=deadline_seconds,
            ),
        )
    _emit_result(result, failure_message="Task failed.")


@taskplane.command("stats")
@DB_PATH_OPTION
@click.option(
    "--timeframe",
    type=click.Choice(["24h", "7d", "30d", "90d", "1y"]),
    default="7d",
    show_default=True,
)
def stats(db_path: Path | None, timeframe: str) -> None:
    """Show today's usage and per provider/task analytics."""

    with _client_errors():
        _emit_lines(CONTROLLER.stats(StatsCommand(db_path=db_path, timeframe=timeframe)))


@taskplane.command("health")
@DB_PATH_OPTION
def health(db_path: Path | None) -> None:
    """Evaluate database, provider and error-rate health."""

    with _client_errors():
        result = CONTROLLER.health(HealthCommand(db_path=db_path))
    _emit_result(result, failure_message="System unhealthy.")


@taskplane.command("chart")
@DB_PATH_OPTION
@click.option(
    "--type",
    "kind",
    type=click.Choice(["usage", "errors"]),
    default="usage",
    show_default=True,
)
@click.option("--days", type=click.IntRange(min=1, max=90), default=7, show_default=True)
def chart(db_path: Path | None, kind: str, days: int) -> None:
    """Print per-day request or error counts."""

    with _client_errors():
        _emit_lines(CONTROLLER.chart(ChartCommand(db_path=db_path, kind=kind, days=days)))


@taskplane.command("cleanup")
@DB_PATH_OPTION
@click.option(
    "--days",
    type=click.IntRange(min=1),
    default=None,
    help="Retention horizon; defaults to the auto_cleanup_days setting.",
)
def cleanup(db_path: Path | None, days: int | None) -> None:
    """Delete usage, log, cache and rate window rows older than the horizon."""

    with _client_errors():
        _emit_lines(CONTROLLER.cleanup(CleanupCommand(db_path=db_path, days=days)))


@taskplane.command("dispatch")
@DB_PATH_OPTION
@click.argument("action")
@click.option("--params", "params_json", default="{}", help="JSON object with action params.")
def dispatch(db_path: Path | None, action: str, params_json: str) -> None:
    """Run a command bus action and print its JSON envelope."""

    with _client_errors():
        result = CONTROLLER.dispatch(
            DispatchCommand(db_path=db_path, action=action, params_json=params_json),
        )
    _emit_result(result, failure_message=f"Action {action} failed.")


@contextmanager
def _client_errors() -> Iterator[None]:
    try:
        yield
    except ValueError as error:
        raise click.ClickException(str(error)) from error


def _emit_result(result: CliResult, *, failure_message: str) -> None:
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException(failure_message)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    taskplane()
