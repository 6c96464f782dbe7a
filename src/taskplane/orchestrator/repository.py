"""Persistence facade for provider configuration, settings and telemetry."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import delete as sa_delete
from sqlalchemy import func, inspect
from sqlalchemy import update as sa_update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from taskplane.orchestrator.models import (
    FailureClass,
    LogEntryView,
    LogLevel,
    ProviderStats,
    StoredProvider,
    UsageRecord,
    UsageStatus,
)
from taskplane.storage.alembic_runner import upgrade_head
from taskplane.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from taskplane.storage.sqlmodel_models import (
    REQUIRED_TABLES,
    LogEntryRow,
    ProviderConfig,
    ProviderRateWindow,
    ResponseCacheRow,
    SystemSetting,
    UsageRecordRow,
)

logger = logging.getLogger(__name__)

PROVIDER_COLUMNS: tuple[str, ...] = (
    "display_name",
    "api_key",
    "api_endpoint",
    "model",
    "enabled",
    "priority",
    "rate_limit",
    "timeout_seconds",
    "settings",
)


class ControlPlaneRepository:
    """Control-plane persistence facade backed by SQLModel + SQLite."""

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        upgrade_head(self.db_path)

    def missing_tables(self) -> list[str]:
        """Required tables absent from the database, in declaration order."""

        present = set(inspect(self.engine).get_table_names())
        return [name for name in REQUIRED_TABLES if name not in present]

    # Providers

    def list_providers(self) -> list[StoredProvider]:
        with Session(self.engine) as session:
            rows = session.exec(select(ProviderConfig).order_by(col(ProviderConfig.name))).all()
            return [_to_stored_provider(row) for row in rows]

    def list_enabled_providers(self) -> list[StoredProvider]:
        """Enabled providers ordered for selection, read in one statement."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(ProviderConfig)
                .where(col(ProviderConfig.enabled).is_(True))
                .order_by(col(ProviderConfig.priority).asc(), col(ProviderConfig.name).asc()),
            ).all()
            return [_to_stored_provider(row) for row in rows]

    def get_provider(self, name: str) -> StoredProvider | None:
        with Session(self.engine) as session:
            row = session.get(ProviderConfig, name)
            return _to_stored_provider(row) if row is not None else None

    def count_enabled_providers(self) -> int:
        with Session(self.engine) as session:
            return session.exec(
                select(func.count())
                .select_from(ProviderConfig)
                .where(col(ProviderConfig.enabled).is_(True)),
            ).one()

    def upsert_provider(
        self,
        name: str,
        *,
        supplied: dict[str, Any],
        defaults: dict[str, Any],
    ) -> StoredProvider:
        """Insert a provider or overwrite only the supplied fields, in one statement."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._upsert_provider_row(
                session=session,
                name=name,
                supplied=supplied,
                defaults=defaults,
                now=now,
            )
            session.commit()
            row = session.get(ProviderConfig, name)
            if row is None:
                raise RuntimeError(f"Provider vanished after upsert: {name}")
            return _to_stored_provider(row)

    # Settings

    def load_settings(self) -> dict[str, str]:
        with Session(self.engine) as session:
            rows = session.exec(select(SystemSetting)).all()
            return {row.key: row.value for row in rows}

    def save_settings(self, values: dict[str, str]) -> None:
        """Upsert setting values in one transaction."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            self._upsert_setting_rows(session=session, values=values, now=now)
            session.commit()

    def import_config(
        self,
        *,
        providers: list[tuple[str, dict[str, Any], dict[str, Any]]],
        settings: dict[str, str],
    ) -> None:
        """Apply provider upserts and setting values atomically.

        `providers` holds `(name, supplied, defaults)` triples as accepted by
        `upsert_provider`.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            for name, supplied, defaults in providers:
                self._upsert_provider_row(
                    session=session,
                    name=name,
                    supplied=supplied,
                    defaults=defaults,
                    now=now,
                )
            self._upsert_setting_rows(session=session, values=settings, now=now)
            session.commit()

    # Usage and logs

    def add_usage(self, record: UsageRecord, *, update_provider_stats: bool = True) -> None:
        """Append a usage record and, for real providers, fold it into rolling stats."""

        created_at = to_db_datetime(record.created_at or utc_now())
        with Session(self.engine) as session:
            session.add(
                UsageRecordRow(
                    created_at=created_at,
                    task_type=record.task_type,
                    provider=record.provider,
                    model=record.model,
                    response_time_ms=record.response_time_ms,
                    tokens_used=record.tokens_used,
                    cost=record.cost,
                    success=record.success,
                    status=record.status.value,
                    failure_class=record.failure_class.value if record.failure_class else None,
                    error_message=record.error_message,
                ),
            )
            if update_provider_stats:
                session.exec(
                    _provider_stats_update(
                        name=record.provider,
                        success=record.success,
                        response_time_ms=record.response_time_ms,
                        cost=record.cost,
                    ),
                )
            session.commit()

    def list_usage(
        self,
        *,
        since: datetime,
        until: datetime | None = None,
        provider: str | None = None,
    ) -> list[UsageRecord]:
        """Usage records created in `[since, until)`, oldest first."""

        with Session(self.engine) as session:
            statement = (
                select(UsageRecordRow)
                .where(col(UsageRecordRow.created_at) >= to_db_datetime(since))
                .order_by(col(UsageRecordRow.created_at).asc(), col(UsageRecordRow.id).asc())
            )
            if until is not None:
                statement = statement.where(col(UsageRecordRow.created_at) < to_db_datetime(until))
            if provider is not None:
                statement = statement.where(UsageRecordRow.provider == provider)
            rows = session.exec(statement).all()
            return [_to_usage_record(row) for row in rows]

    def add_log(
        self,
        *,
        level: LogLevel,
        message: str,
        provider: str | None = None,
        task_type: str | None = None,
        details: dict[str, object] | None = None,
        created_at: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                LogEntryRow(
                    created_at=to_db_datetime(created_at or utc_now()),
                    level=level.value,
                    message=message,
                    provider=provider,
                    task_type=task_type,
                    details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                    if details
                    else None,
                ),
            )
            session.commit()

    def count_logs(
        self,
        *,
        level: LogLevel,
        since: datetime,
        until: datetime | None = None,
    ) -> int:
        with Session(self.engine) as session:
            statement = (
                select(func.count())
                .select_from(LogEntryRow)
                .where(
                    LogEntryRow.level == level.value,
                    col(LogEntryRow.created_at) >= to_db_datetime(since),
                )
            )
            if until is not None:
                statement = statement.where(col(LogEntryRow.created_at) < to_db_datetime(until))
            return session.exec(statement).one()

    def list_logs(self, *, limit: int, level: LogLevel | None = None) -> list[LogEntryView]:
        """Most recent log entries first."""

        with Session(self.engine) as session:
            statement = (
                select(LogEntryRow)
                .order_by(col(LogEntryRow.created_at).desc(), col(LogEntryRow.id).desc())
                .limit(limit)
            )
            if level is not None:
                statement = statement.where(LogEntryRow.level == level.value)
            rows = session.exec(statement).all()
            return [_to_log_view(row) for row in rows]

    # Rate windows

    def acquire_rate_slot(self, *, provider: str, window_start: datetime, limit: int) -> bool:
        """Atomically take one request slot in the provider's current window."""

        if limit <= 0:
            return False
        window = to_db_datetime(window_start)
        while True:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(ProviderRateWindow)
                    .where(
                        col(ProviderRateWindow.provider) == provider,
                        col(ProviderRateWindow.window_start) == window,
                        col(ProviderRateWindow.request_count) < limit,
                    )
                    .values(request_count=col(ProviderRateWindow.request_count) + 1),
                )
                if result.rowcount == 1:
                    session.commit()
                    return True

                existing = session.exec(
                    select(ProviderRateWindow).where(
                        ProviderRateWindow.provider == provider,
                        col(ProviderRateWindow.window_start) == window,
                    ),
                ).one_or_none()
                if existing is not None:
                    session.rollback()
                    return False

                session.add(
                    ProviderRateWindow(provider=provider, window_start=window, request_count=1),
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    continue
                return True

    def rate_window_count(self, *, provider: str, window_start: datetime) -> int:
        with Session(self.engine) as session:
            row = session.exec(
                select(ProviderRateWindow).where(
                    ProviderRateWindow.provider == provider,
                    col(ProviderRateWindow.window_start) == to_db_datetime(window_start),
                ),
            ).one_or_none()
            return row.request_count if row is not None else 0

    # Response cache

    def get_cached_response(self, cache_key: str) -> tuple[str, datetime] | None:
        with Session(self.engine) as session:
            row = session.get(ResponseCacheRow, cache_key)
            if row is None:
                return None
            return row.payload_json, to_utc_aware_datetime(row.created_at)

    def put_cached_response(self, *, cache_key: str, task_type: str, payload_json: str) -> None:
        now = to_db_datetime(utc_now())
        statement = sqlite_insert(ResponseCacheRow).values(
            cache_key=cache_key,
            task_type=task_type,
            payload_json=payload_json,
            created_at=now,
        )
        statement = statement.on_conflict_do_update(
            index_elements=["cache_key"],
            set_={"payload_json": payload_json, "task_type": task_type, "created_at": now},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            session.commit()

    def delete_cached_response(self, cache_key: str) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_delete(ResponseCacheRow).where(col(ResponseCacheRow.cache_key) == cache_key),
            )
            session.commit()

    # Retention

    def purge_older_than(self, cutoff: datetime) -> dict[str, int]:
        """Delete telemetry rows older than `cutoff`; returns deleted counts per table."""

        threshold = to_db_datetime(cutoff)
        with Session(self.engine) as session:
            counts = {
                "usage_records": session.exec(
                    sa_delete(UsageRecordRow).where(col(UsageRecordRow.created_at) < threshold),
                ).rowcount,
                "log_entries": session.exec(
                    sa_delete(LogEntryRow).where(col(LogEntryRow.created_at) < threshold),
                ).rowcount,
                "response_cache": session.exec(
                    sa_delete(ResponseCacheRow).where(
                        col(ResponseCacheRow.created_at) < threshold,
                    ),
                ).rowcount,
                "provider_rate_windows": session.exec(
                    sa_delete(ProviderRateWindow).where(
                        col(ProviderRateWindow.window_start) < threshold,
                    ),
                ).rowcount,
            }
            session.commit()
        logger.info("Purged rows older than %s: %s", threshold.isoformat(), counts)
        return counts

    def _upsert_provider_row(
        self,
        *,
        session: Session,
        name: str,
        supplied: dict[str, Any],
        defaults: dict[str, Any],
        now: datetime,
    ) -> None:
        unknown = set(supplied) - set(PROVIDER_COLUMNS)
        if unknown:
            raise ValueError(f"Unsupported provider columns: {sorted(unknown)}")

        merged = {**defaults, **supplied}
        insert_values = {
            "name": name,
            "display_name": merged.get("display_name") or name,
            "api_key": merged.get("api_key"),
            "api_endpoint": merged.get("api_endpoint"),
            "model": merged.get("model"),
            "enabled": bool(merged.get("enabled", False)),
            "priority": int(merged.get("priority", 100)),
            "rate_limit": int(merged.get("rate_limit", 1000)),
            "timeout_seconds": int(merged.get("timeout_seconds", 30)),
            "settings_json": _dump_settings(merged.get("settings")),
            "total_requests": 0,
            "failed_requests": 0,
            "total_cost": 0.0,
            "avg_response_time_ms": 0.0,
            "created_at": now,
            "updated_at": now,
        }
        update_values: dict[str, Any] = {"updated_at": now}
        for key, value in supplied.items():
            if key == "settings":
                update_values["settings_json"] = _dump_settings(value)
            else:
                update_values[key] = value

        statement = sqlite_insert(ProviderConfig).values(**insert_values)
        statement = statement.on_conflict_do_update(
            index_elements=["name"],
            set_=update_values,
        )
        session.exec(statement)

    def _upsert_setting_rows(
        self,
        *,
        session: Session,
        values: dict[str, str],
        now: datetime,
    ) -> None:
        for key, value in values.items():
            statement = sqlite_insert(SystemSetting).values(key=key, value=value, updated_at=now)
            statement = statement.on_conflict_do_update(
                index_elements=["key"],
                set_={"value": value, "updated_at": now},
            )
            session.exec(statement)


def _provider_stats_update(
    *,
    name: str,
    success: bool,
    response_time_ms: int,
    cost: float | None,
):
    total = col(ProviderConfig.total_requests)
    return (
        sa_update(ProviderConfig)
        .where(col(ProviderConfig.name) == name)
        .values(
            total_requests=total + 1,
            failed_requests=col(ProviderConfig.failed_requests) + (0 if success else 1),
            total_cost=col(ProviderConfig.total_cost) + float(cost or 0.0),
            avg_response_time_ms=(
                col(ProviderConfig.avg_response_time_ms) * total + float(response_time_ms)
            )
            / (total + 1),
            last_used=to_db_datetime(utc_now()),
        )
    )


def _dump_settings(value: object) -> str | None:
    if not value:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True)


def _load_settings(raw: str | None) -> dict[str, str]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        return {}
    return {str(key): str(value) for key, value in parsed.items()}


def _to_stored_provider(row: ProviderConfig) -> StoredProvider:
    return StoredProvider(
        name=row.name,
        display_name=row.display_name,
        api_key=row.api_key,
        api_endpoint=row.api_endpoint,
        model=row.model,
        enabled=row.enabled,
        priority=row.priority,
        rate_limit=row.rate_limit,
        timeout_seconds=row.timeout_seconds,
        settings=_load_settings(row.settings_json),
        stats=ProviderStats(
            last_used=to_utc_aware_datetime(row.last_used) if row.last_used else None,
            total_requests=row.total_requests,
            failed_requests=row.failed_requests,
            total_cost=row.total_cost,
            avg_response_time_ms=row.avg_response_time_ms,
        ),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_usage_record(row: UsageRecordRow) -> UsageRecord:
    return UsageRecord(
        task_type=row.task_type,
        provider=row.provider,
        success=row.success,
        status=UsageStatus(row.status),
        response_time_ms=row.response_time_ms,
        model=row.model,
        tokens_used=row.tokens_used,
        cost=row.cost,
        failure_class=FailureClass(row.failure_class) if row.failure_class else None,
        error_message=row.error_message,
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_log_view(row: LogEntryRow) -> LogEntryView:
    details: dict[str, Any] = {}
    if row.details_json:
        parsed = json.loads(row.details_json)
        if isinstance(parsed, dict):
            details = parsed
    return LogEntryView(
        entry_id=row.id or 0,
        created_at=to_utc_aware_datetime(row.created_at),
        level=LogLevel(row.level),
        message=row.message,
        provider=row.provider,
        task_type=row.task_type,
        details=details,
    )
