from __future__ import annotations

import allure
import pytest

from taskplane.orchestrator.errors import ClientError
from taskplane.orchestrator.settings_store import (
    SETTING_KEYS,
    SettingsStore,
    SystemSettings,
    coerce_setting,
    encode_setting,
)

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("System Settings"),
]


def test_defaults_are_served_for_an_empty_store(repository) -> None:
    settings = SettingsStore(repository).load()

    assert settings == SystemSettings()
    assert settings.cache_ttl == 3600
    assert settings.max_tokens == 4096
    assert settings.cache_enabled is True
    assert settings.log_level == "error"
    assert settings.timezone == "UTC"


def test_save_coerces_text_values_and_persists_encoded(repository) -> None:
    store = SettingsStore(repository)

    saved = store.save({"cache_ttl": "120", "debug": "yes", "max_tokens": 2048})

    assert saved.cache_ttl == 120
    assert saved.debug is True
    assert saved.max_tokens == 2048
    assert repository.load_settings() == {"cache_ttl": "120", "debug": "1", "max_tokens": "2048"}


def test_invalid_value_rejects_the_whole_update(repository) -> None:
    store = SettingsStore(repository)

    with pytest.raises(ClientError, match="max_tokens"):
        store.save({"cache_ttl": "10", "max_tokens": "lots"})

    assert store.load().cache_ttl == 3600
    assert repository.load_settings() == {}


@pytest.mark.parametrize(
    ("key", "value"),
    [
        ("unknown_key", "1"),
        ("cache_enabled", "maybe"),
        ("cache_enabled", 1),
        ("max_tokens", True),
        ("max_tokens", 0),
        ("rate_limit", "-5"),
        ("cache_ttl", -1),
        ("log_level", "verbose"),
        ("timezone", "Mars/Olympus"),
        ("timezone", 5),
    ],
)
def test_coerce_setting_rejects_ill_typed_values(key, value) -> None:
    with pytest.raises(ClientError):
        coerce_setting(key, value)


def test_cache_ttl_accepts_zero_and_timezone_accepts_iana_names() -> None:
    assert coerce_setting("cache_ttl", "0") == 0
    assert coerce_setting("timezone", " Europe/Berlin ") == "Europe/Berlin"
    assert coerce_setting("cache_enabled", "off") is False


def test_unparseable_stored_value_falls_back_to_default(repository) -> None:
    repository.save_settings({"cache_ttl": "oops", "max_tokens": "512"})

    settings = SettingsStore(repository).load()

    assert settings.cache_ttl == 3600
    assert settings.max_tokens == 512


def test_empty_update_is_rejected(repository) -> None:
    with pytest.raises(ClientError):
        SettingsStore(repository).save({})


def test_encode_setting_round_trips_through_coerce() -> None:
    defaults = SystemSettings()
    for key in SETTING_KEYS:
        encoded = encode_setting(key, getattr(defaults, key))
        assert coerce_setting(key, encoded) == getattr(defaults, key)
