"""Composition root wiring the control plane components together."""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime

from taskplane.config import Settings
from taskplane.orchestrator.backend import ProviderClientRegistry
from taskplane.orchestrator.cache import ResponseCache
from taskplane.orchestrator.command_bus import CommandBus
from taskplane.orchestrator.engine import TaskOrchestrator
from taskplane.orchestrator.health import HealthEvaluator
from taskplane.orchestrator.pricing import PricingTable
from taskplane.orchestrator.rate_limit import RateLimiter
from taskplane.orchestrator.registry import ProviderRegistry
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.settings_store import SettingsStore
from taskplane.orchestrator.usage import UsageRecorder
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)


class ControlPlane:
    """One process-wide set of services sharing a repository and a call executor.

    The executor is sized from the smaller of `TASKPLANE_CALL_WORKERS` and the
    persisted `max_concurrent_requests` setting at construction time.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        repository: ControlPlaneRepository,
        clients: ProviderClientRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self.clients = clients if clients is not None else ProviderClientRegistry.from_settings(
            settings,
        )
        self.settings_store = SettingsStore(repository)
        self.registry = ProviderRegistry(repository=repository, settings_store=self.settings_store)
        self.recorder = UsageRecorder(
            repository=repository,
            settings_store=self.settings_store,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(repository, clock=clock)
        self.cache = ResponseCache(repository, clock=clock)
        self.pricing = PricingTable.from_raw(settings.providers.pricing_raw)
        self.health = HealthEvaluator(
            repository=repository,
            registry=self.registry,
            recorder=self.recorder,
            clock=clock,
        )

        max_concurrent = self.settings_store.load().max_concurrent_requests
        workers = max(1, min(settings.providers.call_workers, max_concurrent))
        self.executor = ThreadPoolExecutor(
            max_workers=workers,
            thread_name_prefix="taskplane-call",
        )
        logger.debug("Provider call executor started with %d workers", workers)

        self.orchestrator = TaskOrchestrator(
            registry=self.registry,
            clients=self.clients,
            rate_limiter=self.rate_limiter,
            cache=self.cache,
            recorder=self.recorder,
            settings_store=self.settings_store,
            pricing=self.pricing,
            executor=self.executor,
            clock=clock,
            poll_interval_seconds=poll_interval_seconds,
        )
        self.command_bus = CommandBus(
            orchestrator=self.orchestrator,
            registry=self.registry,
            settings_store=self.settings_store,
            recorder=self.recorder,
            health=self.health,
            clients=self.clients,
            system_info={"db_path": str(settings.db_path), "call_workers": workers},
        )

    def close(self) -> None:
        """Stop accepting calls; abandoned provider threads are not waited for."""

        self.executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> ControlPlane:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
