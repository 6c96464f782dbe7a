from __future__ import annotations

from pathlib import Path

import allure
import pytest

from taskplane.config import ProviderRuntimeSettings, Settings
from taskplane.orchestrator.backend import (
    EchoProviderClient,
    ProviderCallError,
    ProviderCallRequest,
    ProviderClientRegistry,
)

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Provider Clients"),
]


def _request(prompt: str = "one two three", **overrides) -> ProviderCallRequest:
    values = {
        "provider": "alpha",
        "task_type": "text_generation",
        "prompt": prompt,
        "system": None,
        "max_tokens": 100,
        "temperature": 0.7,
        "stream": False,
        "timeout_seconds": 5.0,
    }
    values.update(overrides)
    return ProviderCallRequest(**values)


def test_echo_returns_prompt_with_token_counts() -> None:
    result = EchoProviderClient().call(_request())

    assert result.content == "one two three"
    assert result.tokens_used == 6
    assert result.cost is None


def test_echo_truncates_to_max_tokens_and_prefixes_system() -> None:
    result = EchoProviderClient().call(_request(max_tokens=2, system=" terse "))

    assert result.content == "terse\none two"
    assert result.prompt_tokens == 3
    assert result.completion_tokens == 2


def test_echo_fail_setting_raises_provider_error() -> None:
    with pytest.raises(ProviderCallError, match="quota exceeded"):
        EchoProviderClient().call(_request(settings={"echo_fail": "quota exceeded"}))


def test_echo_rejects_malformed_delay_as_provider_error() -> None:
    with pytest.raises(ProviderCallError, match="echo_delay_seconds"):
        EchoProviderClient().call(_request(settings={"echo_delay_seconds": "abc"}))


def test_echo_delay_stops_when_cancelled() -> None:
    request = _request(
        settings={"echo_delay_seconds": "5"},
        cancel_requested=lambda: True,
    )

    with pytest.raises(ProviderCallError) as error:
        EchoProviderClient().call(request)

    assert error.value.transport is True


def test_registry_binds_echo_client_to_configured_names(tmp_path: Path) -> None:
    settings = Settings(
        db_path=tmp_path / "x.db",
        providers=ProviderRuntimeSettings(echo_providers=("beta", "alpha")),
    )

    registry = ProviderClientRegistry.from_settings(settings)

    assert registry.names() == ["alpha", "beta"]
    assert isinstance(registry.get("alpha"), EchoProviderClient)
    assert "gamma" not in registry
    assert registry.get("gamma") is None

    registry.register("gamma", EchoProviderClient())
    assert registry.names() == ["alpha", "beta", "gamma"]
