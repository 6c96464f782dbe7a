"""Provider configuration store merged with the built-in catalog."""

from __future__ import annotations

import logging
import re
import threading
from collections.abc import Mapping
from contextlib import ExitStack
from typing import Any

from taskplane.orchestrator.catalog import DEFAULT_CATALOG, GENERIC_ICON, catalog_entry
from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.models import (
    NO_PROVIDER,
    ProviderConfigUpdate,
    ProviderSnapshot,
    ProviderView,
    StoredProvider,
)
from taskplane.orchestrator.repository import ControlPlaneRepository
from taskplane.orchestrator.sanitization import mask_secret
from taskplane.orchestrator.settings_store import (
    SETTINGS_SCHEMA_VERSION,
    SettingsStore,
    coerce_setting,
    encode_setting,
)
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)

_PROVIDER_NAME = re.compile(r"^[a-z0-9][a-z0-9_.\-]{0,63}$")
_STRING_FIELDS = ("display_name", "api_key", "api_endpoint", "model")
_POSITIVE_INT_FIELDS = ("rate_limit", "timeout_seconds")
_CONFIG_ALIASES = {"timeout": "timeout_seconds"}


class ProviderRegistry:
    """Configured providers keyed by immutable name."""

    def __init__(
        self,
        *,
        repository: ControlPlaneRepository,
        settings_store: SettingsStore,
    ) -> None:
        self.repository = repository
        self.settings_store = settings_store
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def upsert(self, name: str, config: Mapping[str, Any]) -> ProviderView:
        """Create the provider or overwrite the supplied fields, refreshing `updated`."""

        provider_name = validate_provider_name(name)
        update = parse_provider_config(config)
        supplied = update.supplied()
        if not supplied:
            raise ClientError("No provider fields supplied.")

        with self._lock_for(provider_name):
            stored = self.repository.upsert_provider(
                provider_name,
                supplied=supplied,
                defaults=self._defaults_for(provider_name),
            )
        logger.info("Provider %s saved: fields=%s", provider_name, sorted(supplied))
        return _to_view(stored)

    def list(self) -> list[ProviderView]:
        """Persisted providers merged with catalog entries that were never configured."""

        stored = {provider.name: provider for provider in self.repository.list_providers()}
        settings = self.settings_store.load()
        views: list[ProviderView] = []
        for entry in DEFAULT_CATALOG:
            provider = stored.pop(entry.name, None)
            if provider is None:
                views.append(
                    _catalog_only_view(
                        entry.name,
                        rate_limit=settings.rate_limit,
                        timeout_seconds=settings.default_timeout,
                    ),
                )
            else:
                views.append(_to_view(provider))
        views.extend(_to_view(stored[name]) for name in sorted(stored))
        return views

    def get(self, name: str) -> ProviderView | None:
        """Provider view, or `None` for names neither persisted nor in the catalog."""

        stored = self.repository.get_provider(name)
        if stored is not None:
            return _to_view(stored)
        if catalog_entry(name) is None:
            return None
        settings = self.settings_store.load()
        return _catalog_only_view(
            name,
            rate_limit=settings.rate_limit,
            timeout_seconds=settings.default_timeout,
        )

    def enabled_snapshot(self) -> list[ProviderSnapshot]:
        """Enabled providers ordered by `(priority, name)`, credentials included."""

        return [
            ProviderSnapshot(
                name=provider.name,
                api_key=provider.api_key,
                api_endpoint=provider.api_endpoint,
                model=provider.model,
                priority=provider.priority,
                rate_limit=provider.rate_limit,
                timeout_seconds=provider.timeout_seconds,
                settings=dict(provider.settings),
            )
            for provider in self.repository.list_enabled_providers()
        ]

    def count_enabled(self) -> int:
        return self.repository.count_enabled_providers()

    def export_config(self) -> dict[str, Any]:
        """Full provider and settings configuration, secrets included."""

        providers = [
            {
                "name": provider.name,
                "display_name": provider.display_name,
                "api_key": provider.api_key,
                "api_endpoint": provider.api_endpoint,
                "model": provider.model,
                "enabled": provider.enabled,
                "priority": provider.priority,
                "rate_limit": provider.rate_limit,
                "timeout_seconds": provider.timeout_seconds,
                "settings": dict(provider.settings),
            }
            for provider in self.repository.list_providers()
        ]
        return {
            "version": SETTINGS_SCHEMA_VERSION,
            "exported_at": utc_now().isoformat(),
            "providers": providers,
            "settings": self.settings_store.load().to_dict(),
        }

    def import_config(self, payload: Mapping[str, Any]) -> dict[str, int]:
        """Validate an exported payload completely, then apply it in one transaction."""

        version = payload.get("version")
        if version != SETTINGS_SCHEMA_VERSION:
            raise ClientError(f"Unsupported config version: {version!r}")
        raw_providers = payload.get("providers") or []
        raw_settings = payload.get("settings") or {}
        if not isinstance(raw_providers, list) or not isinstance(raw_settings, Mapping):
            raise ClientError("Config payload must hold a providers list and a settings mapping.")

        providers: list[tuple[str, dict[str, Any], dict[str, Any]]] = []
        for item in raw_providers:
            if not isinstance(item, Mapping):
                raise ClientError("Each provider entry must be a mapping.")
            fields = dict(item)
            name = validate_provider_name(fields.pop("name", ""))
            supplied = parse_provider_config(
                {key: value for key, value in fields.items() if value is not None},
            ).supplied()
            providers.append((name, supplied, self._defaults_for(name)))

        settings = {
            key: encode_setting(key, coerce_setting(key, value))
            for key, value in raw_settings.items()
        }
        with ExitStack() as stack:
            for name in sorted({name for name, _, _ in providers}):
                stack.enter_context(self._lock_for(name))
            self.repository.import_config(providers=providers, settings=settings)
        logger.info("Imported config: providers=%d settings=%d", len(providers), len(settings))
        return {"providers": len(providers), "settings": len(settings)}

    def _defaults_for(self, name: str) -> dict[str, Any]:
        settings = self.settings_store.load()
        defaults: dict[str, Any] = {
            "display_name": name,
            "rate_limit": settings.rate_limit,
            "timeout_seconds": settings.default_timeout,
            "priority": 100,
            "enabled": False,
        }
        entry = catalog_entry(name)
        if entry is not None:
            defaults.update(
                display_name=entry.display_name,
                api_endpoint=entry.api_endpoint,
                model=entry.model,
            )
        return defaults

    def _lock_for(self, name: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.Lock()
                self._locks[name] = lock
            return lock


def validate_provider_name(name: object) -> str:
    if (
        not isinstance(name, str)
        or not _PROVIDER_NAME.match(name.strip())
        or name.strip() == NO_PROVIDER
    ):
        raise ClientError(
            f"Invalid provider name: {name!r}. "
            "Use lowercase letters, digits, '.', '_' or '-' (max 64 chars).",
        )
    return name.strip()


def parse_provider_config(config: Mapping[str, Any]) -> ProviderConfigUpdate:
    """Strictly typed provider fields from an untyped payload."""

    values = {_CONFIG_ALIASES.get(key, key): value for key, value in config.items()}
    allowed = {*_STRING_FIELDS, *_POSITIVE_INT_FIELDS, "enabled", "priority", "settings"}
    unknown = sorted(set(values) - allowed)
    if unknown:
        raise ClientError(f"Unknown provider config keys: {', '.join(unknown)}")

    update = ProviderConfigUpdate()
    for key in _STRING_FIELDS:
        if key in values:
            value = values[key]
            if not isinstance(value, str):
                raise ClientError(f"Provider field {key} must be a string.")
            setattr(update, key, value.strip())
    if "enabled" in values:
        if not isinstance(values["enabled"], bool):
            raise ClientError("Provider field enabled must be a boolean.")
        update.enabled = values["enabled"]
    if "priority" in values:
        update.priority = _strict_int("priority", values["priority"], minimum=0)
    for key in _POSITIVE_INT_FIELDS:
        if key in values:
            setattr(update, key, _strict_int(key, values[key], minimum=1))
    if "settings" in values:
        raw_settings = values["settings"]
        if not isinstance(raw_settings, Mapping) or not all(
            isinstance(key, str) and isinstance(value, str) for key, value in raw_settings.items()
        ):
            raise ClientError("Provider field settings must map strings to strings.")
        update.settings = dict(raw_settings)
    return update


def _strict_int(key: str, value: object, *, minimum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ClientError(f"Provider field {key} must be an integer.")
    if value < minimum:
        raise ClientError(f"Provider field {key} must be >= {minimum}.")
    return value


def _to_view(provider: StoredProvider) -> ProviderView:
    entry = catalog_entry(provider.name)
    return ProviderView(
        name=provider.name,
        display_name=provider.display_name,
        icon=entry.icon if entry is not None else GENERIC_ICON,
        configured=True,
        enabled=provider.enabled,
        api_endpoint=provider.api_endpoint,
        model=provider.model,
        priority=provider.priority,
        rate_limit=provider.rate_limit,
        timeout_seconds=provider.timeout_seconds,
        api_key_preview=mask_secret(provider.api_key),
        settings=dict(provider.settings),
        stats=provider.stats,
        created_at=provider.created_at,
        updated_at=provider.updated_at,
    )


def _catalog_only_view(name: str, *, rate_limit: int, timeout_seconds: int) -> ProviderView:
    entry = catalog_entry(name)
    if entry is None:
        raise KeyError(name)
    return ProviderView(
        name=entry.name,
        display_name=entry.display_name,
        icon=entry.icon,
        configured=False,
        enabled=False,
        api_endpoint=entry.api_endpoint,
        model=entry.model,
        priority=100,
        rate_limit=rate_limit,
        timeout_seconds=timeout_seconds,
    )
