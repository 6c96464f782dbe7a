from __future__ import annotations

import allure
import pytest
from conftest import EPOCH, ScriptedProviderClient, enable_provider

from taskplane import __version__
from taskplane.config import ProviderRuntimeSettings, Settings
from taskplane.orchestrator.backend import ProviderCallError, ProviderCallResult
from taskplane.orchestrator.command_bus import (
    CSRF_ERROR,
    MUTATING_ACTIONS,
    READ_ONLY_ACTIONS,
    TEST_PROVIDER_PROMPT,
    csrf_tokens_match,
    new_csrf_token,
)
from taskplane.orchestrator.models import LogLevel
from taskplane.orchestrator.services import ControlPlane

pytestmark = [
    allure.epic("Control Plane"),
    allure.feature("Command Bus"),
]

TOKEN = "a" * 32


def _warnings(plane) -> list[str]:
    return [entry.message for entry in plane.repository.list_logs(limit=50, level=LogLevel.WARNING)]


def test_action_sets_are_disjoint() -> None:
    assert not READ_ONLY_ACTIONS & MUTATING_ACTIONS


@pytest.mark.parametrize(
    ("session", "supplied", "expected"),
    [
        (TOKEN, TOKEN, True),
        (TOKEN, "b" * 32, False),
        (TOKEN, "", False),
        ("", "", False),
        (None, TOKEN, False),
        (TOKEN, None, False),
    ],
)
def test_csrf_token_comparison(session, supplied, expected) -> None:
    assert csrf_tokens_match(session, supplied) is expected


def test_new_csrf_tokens_are_random_hex() -> None:
    first, second = new_csrf_token(), new_csrf_token()

    assert first != second
    assert len(first) == 32
    int(first, 16)


def test_mutation_with_bad_token_changes_nothing(make_control_plane) -> None:
    plane = make_control_plane()

    envelope = plane.command_bus.dispatch(
        "save_provider_config",
        {"provider": "alpha", "config": {"enabled": True}},
        TOKEN,
        "forged",
    )

    assert envelope == {"success": False, "error": CSRF_ERROR}
    assert plane.repository.get_provider("alpha") is None
    assert any("CSRF validation failed" in message for message in _warnings(plane))


def test_read_only_actions_skip_csrf(make_control_plane) -> None:
    plane = make_control_plane()

    envelope = plane.command_bus.dispatch("get_stats", {}, None, None)

    assert envelope["success"] is True
    assert envelope["data"]["requests_today"] == 0


def test_unknown_action_requires_token_then_is_rejected(make_control_plane) -> None:
    plane = make_control_plane()

    without_token = plane.command_bus.dispatch("drop_tables", {}, TOKEN, None)
    with_token = plane.command_bus.dispatch("drop_tables", {}, TOKEN, TOKEN)

    assert without_token == {"success": False, "error": CSRF_ERROR}
    assert with_token == {"success": False, "error": "unknown action"}


def test_save_provider_config_logs_the_mutation(make_control_plane) -> None:
    plane = make_control_plane()

    envelope = plane.command_bus.dispatch(
        "save_provider_config",
        {"provider": "alpha", "config": {"enabled": True, "api_key": "sk-abcdef123456"}},
        TOKEN,
        TOKEN,
    )

    assert envelope["success"] is True
    assert envelope["data"]["name"] == "alpha"
    assert envelope["data"]["api_key_preview"] == "sk-...3456"
    infos = [entry.message for entry in plane.repository.list_logs(limit=10, level=LogLevel.INFO)]
    assert "Action save_provider_config succeeded" in infos


def test_client_errors_are_returned_in_the_envelope(make_control_plane) -> None:
    plane = make_control_plane()

    invalid = plane.command_bus.dispatch(
        "save_settings",
        {"settings": {"max_tokens": "many"}},
        TOKEN,
        TOKEN,
    )
    missing = plane.command_bus.dispatch("get_provider_stats", {}, None, None)

    assert invalid["success"] is False
    assert "max_tokens" in invalid["error"]
    assert missing == {"success": False, "error": "Parameter provider is required."}
    assert any("Action save_settings rejected" in message for message in _warnings(plane))


def test_unexpected_errors_are_masked(make_control_plane, monkeypatch) -> None:
    plane = make_control_plane()

    def _explode():
        raise RuntimeError("secret internals")

    monkeypatch.setattr(plane.recorder, "today_stats", _explode)

    envelope = plane.command_bus.dispatch("get_stats", {}, None, None)

    assert envelope == {"success": False, "error": "internal error"}


def test_run_test_success_and_failure_envelopes(make_control_plane) -> None:
    alpha = ScriptedProviderClient(
        ProviderCallResult(content="hello back", total_tokens=4),
        ProviderCallError("quota exhausted for project"),
    )
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")

    ok = plane.command_bus.dispatch(
        "run_test",
        {"task_type": "text_generation", "prompt": "hello"},
        TOKEN,
        TOKEN,
    )
    failed = plane.command_bus.dispatch(
        "run_test",
        {"input": {"prompt": "again"}, "options": {"bypass_cache": True}},
        TOKEN,
        TOKEN,
    )

    assert ok["success"] is True
    assert ok["data"]["content"] == "hello back"
    assert ok["data"]["provider_used"] == "alpha"
    assert failed["success"] is False
    assert failed["error"].startswith("All providers failed")
    assert failed["data"]["kind"] == "provider_error"
    assert failed["data"]["attempts"][0]["failure_class"] == "billing_or_quota"


def test_test_provider_sends_fixed_prompt_to_one_provider(make_control_plane) -> None:
    alpha = ScriptedProviderClient()
    beta = ScriptedProviderClient(ProviderCallResult(content="pong"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    envelope = plane.command_bus.dispatch("test_provider", {"provider": "beta"}, TOKEN, TOKEN)

    assert envelope["success"] is True
    assert alpha.calls == []
    assert beta.calls[0].prompt == TEST_PROVIDER_PROMPT


def test_check_provider_status_reports_readiness(make_control_plane) -> None:
    plane = make_control_plane({"alpha": ScriptedProviderClient()})
    enable_provider(plane, "alpha")
    plane.registry.upsert("beta", {"enabled": True})

    alpha = plane.command_bus.dispatch("check_provider_status", {"provider": "alpha"}, None, None)
    beta = plane.command_bus.dispatch("check_provider_status", {"provider": "beta"}, None, None)
    google = plane.command_bus.dispatch(
        "check_provider_status",
        {"provider": "google"},
        None,
        None,
    )
    unknown = plane.command_bus.dispatch(
        "check_provider_status",
        {"provider": "mystery"},
        None,
        None,
    )

    assert alpha["data"]["status"] == "active"
    assert beta["data"]["status"] == "inactive"
    assert google["data"]["status"] == "not_configured"
    assert unknown["success"] is False


def test_read_only_dashboard_actions(make_control_plane) -> None:
    plane = make_control_plane({"alpha": ScriptedProviderClient()})
    enable_provider(plane, "alpha")
    plane.orchestrator.execute("text_generation", {"prompt": "seed"})

    for action, params in (
        ("get_analytics", {"timeframe": "24h"}),
        ("get_recent_activity", {"limit": 5}),
        ("get_recent_errors", {}),
        ("get_dashboard_stats", {}),
        ("health_check", {}),
        ("get_chart_data", {"type": "errors", "days": 3}),
        ("list_providers", {}),
        ("get_settings", {}),
        ("get_system_info", {}),
        ("get_provider_stats", {"provider": "alpha", "hours": 1}),
    ):
        envelope = plane.command_bus.dispatch(action, params, None, None)
        assert envelope["success"] is True, (action, envelope)

    chart = plane.command_bus.dispatch("get_chart_data", {"type": "errors", "days": 3}, None, None)
    assert chart["data"]["kind"] == "errors"
    assert len(chart["data"]["values"]) == 3
    analytics = plane.command_bus.dispatch("get_analytics", {"timeframe": "24h"}, None, None)
    assert analytics["data"]["rows"][0]["provider"] == "alpha"


def test_export_import_and_cleanup_actions(make_control_plane) -> None:
    plane = make_control_plane()
    plane.registry.upsert("alpha", {"enabled": True, "api_key": "sk-alpha-000001"})

    exported = plane.command_bus.dispatch("export_config", {}, TOKEN, TOKEN)
    imported = plane.command_bus.dispatch(
        "import_config",
        {"config": exported["data"]},
        TOKEN,
        TOKEN,
    )
    cleaned = plane.command_bus.dispatch("cleanup", {"days": 1}, TOKEN, TOKEN)
    bad_cleanup = plane.command_bus.dispatch("cleanup", {"days": "1"}, TOKEN, TOKEN)

    assert exported["data"]["providers"][0]["api_key"] == "sk-alpha-000001"
    assert imported["data"]["providers"] == 1
    assert cleaned["success"] is True
    assert set(cleaned["data"]) == {
        "usage_records",
        "log_entries",
        "response_cache",
        "provider_rate_windows",
    }
    assert bad_cleanup["success"] is False
    assert len(plane.repository.list_usage(since=EPOCH)) == 0


def test_system_info_describes_the_running_plane(db_path, repository) -> None:
    settings = Settings(
        db_path=db_path,
        providers=ProviderRuntimeSettings(echo_providers=("alpha",)),
    )

    with ControlPlane(settings=settings, repository=repository) as plane:
        envelope = plane.command_bus.dispatch("get_system_info", {}, None, None)

    assert envelope["success"] is True
    info = envelope["data"]
    assert info["version"] == __version__
    assert info["registered_clients"] == ["alpha"]
    assert info["db_path"] == str(db_path)
    assert info["call_workers"] == 10
    assert "question_answering" in info["task_types"]
