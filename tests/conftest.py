"""Shared test fixtures."""

from __future__ import annotations

import threading
import time
from collections.abc import Callable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from taskplane.config import Settings
from taskplane.orchestrator.backend import (
    ProviderCallRequest,
    ProviderCallResult,
    ProviderClient,
    ProviderClientRegistry,
)
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.services import ControlPlane
from taskplane.storage.common import utc_now

EPOCH = datetime(2000, 1, 1, tzinfo=UTC)

Outcome = ProviderCallResult | BaseException | Callable[[ProviderCallRequest], ProviderCallResult]


class ScriptedProviderClient:
    """Fake provider client replaying outcomes; the last outcome repeats."""

    def __init__(self, *outcomes: Outcome) -> None:
        self.outcomes: list[Outcome] = list(outcomes) or [ProviderCallResult(content="ok")]
        self.calls: list[ProviderCallRequest] = []
        self._lock = threading.Lock()

    def call(self, request: ProviderCallRequest) -> ProviderCallResult:
        with self._lock:
            self.calls.append(request)
            outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return outcome(request)
        return outcome


def slow_result(
    seconds: float,
    result: ProviderCallResult | None = None,
) -> Callable[[ProviderCallRequest], ProviderCallResult]:
    """Outcome that blocks up to `seconds`, stopping early once the call is abandoned."""

    def _run(request: ProviderCallRequest) -> ProviderCallResult:
        deadline = time.monotonic() + seconds
        while time.monotonic() < deadline:
            if request.cancel_requested is not None and request.cancel_requested():
                break
            time.sleep(0.01)
        return result or ProviderCallResult(content="late")

    return _run


class FixedClock:
    """Mutable clock for deterministic windows and day boundaries."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "taskplane.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[ControlPlaneRepository]:
    repo = ControlPlaneRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def make_control_plane(
    db_path: Path,
    repository: ControlPlaneRepository,
) -> Iterator[Callable[..., ControlPlane]]:
    planes: list[ControlPlane] = []

    def _make(
        clients: dict[str, ProviderClient] | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> ControlPlane:
        plane = ControlPlane(
            settings=Settings(db_path=db_path),
            repository=repository,
            clients=ProviderClientRegistry(clients or {}),
            clock=clock,
            poll_interval_seconds=0.01,
        )
        planes.append(plane)
        return plane

    yield _make
    for plane in planes:
        plane.close()


def enable_provider(plane: ControlPlane, name: str, **config: Any) -> None:
    """Persist an enabled provider with a test credential unless overridden."""

    values: dict[str, Any] = {"enabled": True, "api_key": f"sk-test-{name}-0000"}
    values.update(config)
    plane.registry.upsert(name, values)
