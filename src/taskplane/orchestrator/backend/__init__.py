"""Provider client implementations."""

from taskplane.orchestrator.backend.base import (
    ProviderCallError,
    ProviderCallRequest,
    ProviderCallResult,
    ProviderClient,
)
from taskplane.orchestrator.backend.echo import EchoProviderClient
from taskplane.orchestrator.backend.registry import ProviderClientRegistry

__all__ = [
    "EchoProviderClient",
    "ProviderCallError",
    "ProviderCallRequest",
    "ProviderCallResult",
    "ProviderClient",
    "ProviderClientRegistry",
]
