"""Provider client interface for task execution."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Protocol


@dataclass(slots=True)
class ProviderCallRequest:
    """Inputs required to execute one provider call."""

    provider: str
    task_type: str
    prompt: str
    system: str | None
    max_tokens: int
    temperature: float
    stream: bool
    timeout_seconds: float
    api_key: str | None = None
    api_endpoint: str | None = None
    model: str | None = None
    settings: Mapping[str, str] = field(default_factory=dict)
    cancel_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ProviderCallResult:
    """Vendor response normalized to content plus optional usage figures."""

    content: str
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None
    cost: float | None = None

    @property
    def tokens_used(self) -> int | None:
        if self.total_tokens is not None:
            return self.total_tokens
        if self.prompt_tokens is None and self.completion_tokens is None:
            return None
        return (self.prompt_tokens or 0) + (self.completion_tokens or 0)


class ProviderCallError(Exception):
    """Vendor rejection or transport failure for one call."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        transport: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.transport = transport


class ProviderClient(Protocol):
    """Protocol implemented by per-vendor clients."""

    def call(self, request: ProviderCallRequest) -> ProviderCallResult:
        """Run one call and return the normalized result or raise `ProviderCallError`."""
