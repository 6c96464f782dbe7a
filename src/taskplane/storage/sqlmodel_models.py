"""SQLModel ORM tables for control-plane storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, Index, PrimaryKeyConstraint, Text
from sqlmodel import Field, SQLModel

REQUIRED_TABLES: tuple[str, ...] = (
    "provider_configs",
    "system_settings",
    "usage_records",
    "log_entries",
    "provider_rate_windows",
    "response_cache",
)


class ProviderConfig(SQLModel, table=True):
    __tablename__ = "provider_configs"  # type: ignore[bad-override]

    name: str = Field(primary_key=True)
    display_name: str
    api_key: str | None = None
    api_endpoint: str | None = None
    model: str | None = None
    enabled: bool = Field(default=False, index=True)
    priority: int = 100
    rate_limit: int = 1000
    timeout_seconds: int = 30
    settings_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))
    last_used: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    total_requests: int = 0
    failed_requests: int = 0
    total_cost: float = 0.0
    avg_response_time_ms: float = 0.0
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SystemSetting(SQLModel, table=True):
    __tablename__ = "system_settings"  # type: ignore[bad-override]

    key: str = Field(primary_key=True)
    value: str = Field(sa_column=Column(Text, nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class UsageRecordRow(SQLModel, table=True):
    __tablename__ = "usage_records"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_usage_records_provider_created", "provider", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    task_type: str = Field(index=True)
    provider: str
    model: str | None = None
    response_time_ms: int = 0
    tokens_used: int | None = None
    cost: float | None = None
    success: bool
    status: str
    failure_class: str | None = None
    error_message: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class LogEntryRow(SQLModel, table=True):
    __tablename__ = "log_entries"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_log_entries_level_created", "level", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
    level: str
    message: str = Field(sa_column=Column(Text, nullable=False))
    provider: str | None = None
    task_type: str | None = None
    details_json: str | None = Field(default=None, sa_column=Column(Text, nullable=True))


class ProviderRateWindow(SQLModel, table=True):
    __tablename__ = "provider_rate_windows"  # type: ignore[bad-override]
    __table_args__ = (
        PrimaryKeyConstraint("provider", "window_start", name="pk_provider_rate_windows"),
    )

    provider: str
    window_start: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    request_count: int = 0


class ResponseCacheRow(SQLModel, table=True):
    __tablename__ = "response_cache"  # type: ignore[bad-override]

    cache_key: str = Field(primary_key=True)
    task_type: str
    payload_json: str = Field(sa_column=Column(Text, nullable=False))
    created_at: datetime = Field(
        sa_column=Column(DateTime(timezone=True), nullable=False, index=True),
    )
