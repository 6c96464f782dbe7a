"""System health verdicts for the dashboard and health checks."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from taskplane.orchestrator.models import HealthReport, HealthStatus
from taskplane.orchestrator.registry import ProviderRegistry
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.usage import UsageRecorder
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)

HOURLY_ERRORS_WARNING = 5
HOURLY_ERRORS_ERROR = 20
DAILY_ERRORS_HEALTHY_MAX = 10
DAILY_ERRORS_WARNING_MAX = 50


def dashboard_status(errors_today: int) -> str:
    """Coarse day-level status: healthy, warning or critical."""

    if errors_today <= DAILY_ERRORS_HEALTHY_MAX:
        return "healthy"
    if errors_today <= DAILY_ERRORS_WARNING_MAX:
        return "warning"
    return "critical"


def errors_status(error_count: int) -> HealthStatus:
    message = f"{error_count} errors in the last hour"
    if error_count < HOURLY_ERRORS_WARNING:
        return HealthStatus(level="healthy", message=message)
    if error_count < HOURLY_ERRORS_ERROR:
        return HealthStatus(level="warning", message=message)
    return HealthStatus(level="error", message=message)


@dataclass(slots=True)
class DashboardStats:
    requests_today: int
    errors_today: int
    active_providers: int
    status: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "requests_today": self.requests_today,
            "errors_today": self.errors_today,
            "active_providers": self.active_providers,
            "status": self.status,
        }


class HealthEvaluator:
    """Derives health from schema presence, enabled providers and recent errors."""

    def __init__(
        self,
        *,
        repository: ControlPlaneRepository,
        registry: ProviderRegistry,
        recorder: UsageRecorder,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.recorder = recorder
        self.clock = clock

    def evaluate(self) -> HealthReport:
        database = self._database_status()
        if database.level == "error":
            unavailable = HealthStatus(level="error", message="Database unavailable")
            return HealthReport(database=database, providers=unavailable, errors=unavailable)

        enabled = self.registry.count_enabled()
        providers = (
            HealthStatus(level="warning", message="No providers enabled")
            if enabled == 0
            else HealthStatus(level="healthy", message=f"{enabled} providers enabled")
        )
        error_count = self.recorder.error_count_since(self.clock() - timedelta(hours=1))
        return HealthReport(
            database=database,
            providers=providers,
            errors=errors_status(error_count),
        )

    def dashboard_stats(self) -> DashboardStats:
        errors_today = self.recorder.errors_today()
        return DashboardStats(
            requests_today=self.recorder.today_stats().requests_today,
            errors_today=errors_today,
            active_providers=self.registry.count_enabled(),
            status=dashboard_status(errors_today),
        )

    def _database_status(self) -> HealthStatus:
        try:
            missing = self.repository.missing_tables()
        except SQLAlchemyError as error:
            logger.exception("Database health probe failed")
            return HealthStatus(
                level="error",
                message=f"Database unreachable: {error.__class__.__name__}",
            )
        if missing:
            return HealthStatus(level="error", message=f"Missing tables: {', '.join(missing)}")
        return HealthStatus(level="healthy", message="All required tables present")
