"""Name to provider client mapping."""

from __future__ import annotations

from taskplane.config import Settings
from taskplane.orchestrator.backend.base import ProviderClient
from taskplane.orchestrator.backend.echo import EchoProviderClient


class ProviderClientRegistry:
    """Provider clients selectable at runtime by provider name."""

    def __init__(self, clients: dict[str, ProviderClient] | None = None) -> None:
        self._clients: dict[str, ProviderClient] = dict(clients or {})

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderClientRegistry:
        """Registry with the echo client bound to every name in `TASKPLANE_ECHO_PROVIDERS`."""

        echo = EchoProviderClient()
        return cls({name: echo for name in settings.providers.echo_providers})

    def register(self, name: str, client: ProviderClient) -> None:
        self._clients[name] = client

    def get(self, name: str) -> ProviderClient | None:
        return self._clients.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._clients

    def names(self) -> list[str]:
        return sorted(self._clients)
