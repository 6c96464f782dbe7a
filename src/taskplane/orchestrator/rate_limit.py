"""Per-provider windowed request budgets."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.storage.common import utc_now


def window_start_for(moment: datetime, *, period_seconds: int) -> datetime:
    """Start of the fixed window containing `moment`, aligned to the epoch."""

    epoch_seconds = int(moment.astimezone(UTC).timestamp())
    return datetime.fromtimestamp(epoch_seconds - epoch_seconds % period_seconds, tz=UTC)


class RateLimiter:
    """Atomic increment-and-check of provider request counters in storage."""

    def __init__(
        self,
        repository: ControlPlaneRepository,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.repository = repository
        self.clock = clock

    def try_acquire(self, provider: str, *, limit: int, period_seconds: int) -> bool:
        """Take one slot; `False` when the provider already spent its budget this window."""

        window = window_start_for(self.clock(), period_seconds=period_seconds)
        return self.repository.acquire_rate_slot(
            provider=provider,
            window_start=window,
            limit=limit,
        )

    def used(self, provider: str, *, period_seconds: int) -> int:
        window = window_start_for(self.clock(), period_seconds=period_seconds)
        return self.repository.rate_window_count(provider=provider, window_start=window)
