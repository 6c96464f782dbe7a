"""Usage and operational log recording, plus the aggregate queries built on them."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, time, timedelta

from sqlalchemy.exc import SQLAlchemyError

from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.metrics import (
    AnalyticsRow,
    ChartKind,
    ChartSeries,
    ProviderWindowStats,
    TodayStats,
    build_analytics,
    build_chart_series,
    build_provider_window_stats,
    build_today_stats,
    timeframe_hours,
)
from taskplane.orchestrator.models import NO_PROVIDER, LogEntryView, LogLevel, UsageRecord
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.settings_store import SettingsStore
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)

MAX_CHART_DAYS = 365
MAX_WINDOW_HOURS = 8760
MAX_RETENTION_DAYS = 3650

_PY_LEVELS = {
    LogLevel.INFO: logging.INFO,
    LogLevel.WARNING: logging.WARNING,
    LogLevel.ERROR: logging.ERROR,
}


class UsageRecorder:
    """Append-only telemetry writer whose failures never reach the caller."""

    def __init__(
        self,
        *,
        repository: ControlPlaneRepository,
        settings_store: SettingsStore,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self.clock = clock

    def record(self, record: UsageRecord) -> None:
        """Persist one usage record and fold it into the provider's rolling stats."""

        if record.created_at is None:
            record.created_at = self.clock()
        try:
            self.repository.add_usage(
                record,
                update_provider_stats=record.provider != NO_PROVIDER,
            )
        except SQLAlchemyError:
            logger.exception(
                "Failed to persist usage record: provider=%s task_type=%s status=%s",
                record.provider,
                record.task_type,
                record.status.value,
            )

    def log(
        self,
        level: LogLevel,
        message: str,
        *,
        provider: str | None = None,
        task_type: str | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        """Append to the operational log stream and mirror it to `logging`."""

        logger.log(_PY_LEVELS[level], "%s (provider=%s task_type=%s)", message, provider, task_type)
        try:
            self.repository.add_log(
                level=level,
                message=message,
                provider=provider,
                task_type=task_type,
                details=details,
                created_at=self.clock(),
            )
        except SQLAlchemyError:
            logger.exception("Failed to persist log entry: %s", message)

    def today_stats(self) -> TodayStats:
        start, end = self._day_bounds(self._today())
        return build_today_stats(self.repository.list_usage(since=start, until=end))

    def chart_series(self, kind: ChartKind | str, days: int = 7) -> ChartSeries:
        chart_kind = ChartKind.parse(kind)
        if isinstance(days, bool) or not isinstance(days, int) or not 0 < days <= MAX_CHART_DAYS:
            raise ClientError(f"Chart days must be an integer between 1 and {MAX_CHART_DAYS}.")
        today = self._today()
        day_list = [today - timedelta(days=offset) for offset in range(days - 1, -1, -1)]
        since, _ = self._day_bounds(day_list[0])
        _, until = self._day_bounds(today)
        return build_chart_series(
            self.repository.list_usage(since=since, until=until),
            kind=chart_kind,
            days=day_list,
            tz=self.settings_store.load().tzinfo,
        )

    def analytics(self, timeframe: str = "7d") -> list[AnalyticsRow]:
        since = self.clock() - timedelta(hours=timeframe_hours(timeframe))
        return build_analytics(self.repository.list_usage(since=since))

    def provider_stats(self, name: str, *, hours: int = 24) -> ProviderWindowStats:
        if isinstance(hours, bool) or not isinstance(hours, int):
            raise ClientError("Window hours must be an integer.")
        if not 0 < hours <= MAX_WINDOW_HOURS:
            raise ClientError(f"Window hours must be between 1 and {MAX_WINDOW_HOURS}.")
        since = self.clock() - timedelta(hours=hours)
        records = self.repository.list_usage(since=since, provider=name)
        return build_provider_window_stats(records, provider=name, hours=hours)

    def recent_activity(self, limit: int = 10) -> list[LogEntryView]:
        return self.repository.list_logs(limit=_positive_limit(limit))

    def recent_errors(self, limit: int = 5) -> list[LogEntryView]:
        return self.repository.list_logs(limit=_positive_limit(limit), level=LogLevel.ERROR)

    def error_count_since(self, since: datetime) -> int:
        return self.repository.count_logs(level=LogLevel.ERROR, since=since)

    def errors_today(self) -> int:
        start, end = self._day_bounds(self._today())
        return self.repository.count_logs(level=LogLevel.ERROR, since=start, until=end)

    def cleanup(self, days: int | None = None) -> dict[str, int]:
        """Purge telemetry older than `days` (default: the configured horizon)."""

        horizon = days if days is not None else self.settings_store.load().auto_cleanup_days
        if (
            isinstance(horizon, bool)
            or not isinstance(horizon, int)
            or not 0 < horizon <= MAX_RETENTION_DAYS
        ):
            raise ClientError(f"Cleanup days must be between 1 and {MAX_RETENTION_DAYS}.")
        return self.repository.purge_older_than(self.clock() - timedelta(days=horizon))

    def _today(self) -> date:
        return self.clock().astimezone(self.settings_store.load().tzinfo).date()

    def _day_bounds(self, day: date) -> tuple[datetime, datetime]:
        tz = self.settings_store.load().tzinfo
        start = datetime.combine(day, time.min, tzinfo=tz)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=tz)
        return start, end


def _positive_limit(limit: int) -> int:
    if isinstance(limit, bool) or not isinstance(limit, int) or limit <= 0:
        raise ClientError("Limit must be a positive integer.")
    return min(limit, 500)
