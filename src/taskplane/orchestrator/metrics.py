"""Usage aggregates built from usage records, plus their CLI rendering."""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime, tzinfo
from enum import Enum
from typing import Any

from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.models import NO_PROVIDER, TaskType, UsageRecord

TIMEFRAME_HOURS: dict[str, int] = {
    "24h": 24,
    "7d": 168,
    "30d": 720,
    "90d": 2160,
    "1y": 8760,
}


class ChartKind(str, Enum):
    USAGE = "usage"
    ERRORS = "errors"

    @classmethod
    def parse(cls, value: str | ChartKind) -> ChartKind:
        try:
            return cls(value)
        except ValueError as error:
            raise ClientError(f"Unknown chart kind: {value!r}") from error


@dataclass(slots=True)
class TodayStats:
    """Current calendar day aggregates for the dashboard."""

    requests_today: int
    avg_response_time: float
    costs_today: float
    content_generated: int
    error_rate_pct: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_today": self.requests_today,
            "avg_response_time": self.avg_response_time,
            "costs_today": self.costs_today,
            "content_generated": self.content_generated,
            "error_rate_pct": self.error_rate_pct,
        }


@dataclass(slots=True)
class ChartSeries:
    """One zero-filled bucket per calendar day, oldest first."""

    kind: ChartKind
    labels: list[str]
    values: list[int]

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind.value, "labels": self.labels, "values": self.values}


@dataclass(slots=True)
class AnalyticsRow:
    """Usage aggregated for one `(provider, task_type)` pair."""

    provider: str
    task_type: str
    requests: int
    successes: int
    avg_response_time_ms: float
    avg_tokens: float | None
    total_cost: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "task_type": self.task_type,
            "requests": self.requests,
            "successes": self.successes,
            "avg_response_time_ms": self.avg_response_time_ms,
            "avg_tokens": self.avg_tokens,
            "total_cost": self.total_cost,
        }


@dataclass(slots=True)
class ProviderWindowStats:
    """Trailing-window health numbers for a single provider."""

    provider: str
    hours: int
    requests: int
    error_rate_pct: float
    avg_response_time_ms: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "hours": self.hours,
            "requests": self.requests,
            "error_rate_pct": self.error_rate_pct,
            "avg_response_time_ms": self.avg_response_time_ms,
        }


def error_rate_pct(*, errors: int, total: int) -> float:
    """Error percentage rounded to one decimal, 0 without traffic, clamped to [0, 100]."""

    if total <= 0:
        return 0.0
    rate = round(100.0 * errors / total, 1)
    return min(100.0, max(0.0, rate))


def timeframe_hours(timeframe: str) -> int:
    hours = TIMEFRAME_HOURS.get(timeframe)
    if hours is None:
        raise ClientError(
            f"Unknown timeframe: {timeframe!r}. Expected one of: {', '.join(TIMEFRAME_HOURS)}.",
        )
    return hours


def build_today_stats(records: list[UsageRecord]) -> TodayStats:
    """Aggregate one day of usage records.

    Every record counts as a request; the average response time only covers
    attempts that reached a provider.
    """

    total = len(records)
    errors = sum(1 for record in records if not record.success)
    timed = [record.response_time_ms for record in records if record.provider != NO_PROVIDER]
    costs = sum(record.cost for record in records if record.cost is not None)
    content_generated = sum(
        1
        for record in records
        if record.success and record.task_type == TaskType.TEXT_GENERATION.value
    )
    return TodayStats(
        requests_today=total,
        avg_response_time=round(sum(timed) / len(timed), 2) if timed else 0.0,
        costs_today=round(costs, 4),
        content_generated=content_generated,
        error_rate_pct=error_rate_pct(errors=errors, total=total),
    )


def build_chart_series(
    records: list[UsageRecord],
    *,
    kind: ChartKind,
    days: list[date],
    tz: tzinfo,
) -> ChartSeries:
    """Bucket records per local calendar day; days without records stay at zero."""

    counts = dict.fromkeys(days, 0)
    for record in records:
        if record.created_at is None:
            continue
        if kind == ChartKind.ERRORS and record.success:
            continue
        day = record.created_at.astimezone(tz).date()
        if day in counts:
            counts[day] += 1
    return ChartSeries(
        kind=kind,
        labels=[_day_label(day) for day in days],
        values=[counts[day] for day in days],
    )


def build_analytics(records: list[UsageRecord]) -> list[AnalyticsRow]:
    """Group provider attempts by `(provider, task_type)`, busiest first."""

    groups: dict[tuple[str, str], list[UsageRecord]] = defaultdict(list)
    for record in records:
        if record.provider == NO_PROVIDER:
            continue
        groups[(record.provider, record.task_type)].append(record)

    rows: list[AnalyticsRow] = []
    for (provider, task_type), items in groups.items():
        tokens = [item.tokens_used for item in items if item.tokens_used is not None]
        rows.append(
            AnalyticsRow(
                provider=provider,
                task_type=task_type,
                requests=len(items),
                successes=sum(1 for item in items if item.success),
                avg_response_time_ms=round(
                    sum(item.response_time_ms for item in items) / len(items),
                    2,
                ),
                avg_tokens=round(sum(tokens) / len(tokens), 2) if tokens else None,
                total_cost=round(sum(item.cost for item in items if item.cost is not None), 6),
            ),
        )
    rows.sort(key=lambda row: (-row.requests, row.provider, row.task_type))
    return rows


def build_provider_window_stats(
    records: list[UsageRecord],
    *,
    provider: str,
    hours: int,
) -> ProviderWindowStats:
    errors = sum(1 for record in records if not record.success)
    return ProviderWindowStats(
        provider=provider,
        hours=hours,
        requests=len(records),
        error_rate_pct=error_rate_pct(errors=errors, total=len(records)),
        avg_response_time_ms=(
            round(sum(record.response_time_ms for record in records) / len(records), 2)
            if records
            else 0.0
        ),
    )


def render_stats_lines(
    *,
    today: TodayStats,
    analytics: list[AnalyticsRow],
    timeframe: str,
) -> list[str]:
    """Render operator-facing usage lines for CLI output."""

    lines = [
        "Today: "
        f"requests={today.requests_today} "
        f"avg_response_ms={today.avg_response_time:.2f} "
        f"cost_usd={today.costs_today:.4f} "
        f"content_generated={today.content_generated} "
        f"error_rate={today.error_rate_pct:.1f}%",
        f"Usage by provider/task (window={timeframe}):",
    ]
    if not analytics:
        lines.append("  none")
        return lines
    for row in analytics:
        avg_tokens = f"{row.avg_tokens:.1f}" if row.avg_tokens is not None else "n/a"
        lines.append(
            "  "
            f"{row.provider}/{row.task_type}: "
            f"requests={row.requests} successes={row.successes} "
            f"avg_ms={row.avg_response_time_ms:.2f} avg_tokens={avg_tokens} "
            f"cost_usd={row.total_cost:.6f}",
        )
    return lines


def render_chart_lines(series: ChartSeries) -> list[str]:
    width = max((len(label) for label in series.labels), default=0)
    peak = max(series.values, default=0)
    lines = [f"{series.kind.value.capitalize()} per day:"]
    for label, value in zip(series.labels, series.values, strict=True):
        bar = "#" * (round(30 * value / peak) if peak else 0)
        lines.append(f"  {label.ljust(width)} {value:>6} {bar}")
    return lines


def _day_label(day: date | datetime) -> str:
    return f"{day:%b} {day.day}"
