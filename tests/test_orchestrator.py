from __future__ import annotations

import threading
import time

import allure
import pytest
from conftest import EPOCH, ScriptedProviderClient, enable_provider, slow_result

from taskplane.config import ProviderRuntimeSettings, Settings
from taskplane.orchestrator.backend import (
    EchoProviderClient,
    ProviderCallError,
    ProviderCallResult,
    ProviderClientRegistry,
)
from taskplane.orchestrator.models import (
    NO_PROVIDER,
    TOKENS_NOT_REPORTED,
    ErrorKind,
    FailureClass,
    LogLevel,
    TaskFailure,
    TaskResult,
    TaskType,
    UsageStatus,
)
from taskplane.orchestrator.services import ControlPlane

pytestmark = [
    allure.epic("Task Orchestration"),
    allure.feature("Provider Selection & Fallback"),
]


def _usage(plane):
    return plane.repository.list_usage(since=EPOCH)


def _messages(plane, level: LogLevel | None = None) -> list[str]:
    return [entry.message for entry in plane.repository.list_logs(limit=100, level=level)]


def test_falls_back_to_next_provider_after_failure(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallError("upstream 503 service unavailable"))
    beta = ScriptedProviderClient(
        ProviderCallResult(content="from beta", prompt_tokens=3, completion_tokens=2),
    )
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "Say hi"})

    assert isinstance(outcome, TaskResult)
    assert outcome.provider_used == "beta"
    assert outcome.content == "from beta"
    assert outcome.tokens_used == 5
    assert outcome.cached is False
    assert len(alpha.calls) == 1
    assert len(beta.calls) == 1

    records = _usage(plane)
    assert [(record.provider, record.status) for record in records] == [
        ("alpha", UsageStatus.ERROR),
        ("beta", UsageStatus.SUCCESS),
    ]
    assert records[0].failure_class == FailureClass.BACKEND_TRANSIENT
    assert "Fallback successful: alpha -> beta" in _messages(plane, LogLevel.INFO)

    alpha_view = plane.registry.get("alpha")
    assert alpha_view is not None
    assert alpha_view.stats.total_requests == 1
    assert alpha_view.stats.failed_requests == 1
    assert alpha_view.stats.success_rate == 0.0


def test_all_providers_failing_returns_provider_error(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallError("invalid api key", status_code=401))
    beta = ScriptedProviderClient(ProviderCallError("model not found"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute(TaskType.SUMMARIZATION, {"prompt": "Summarize"})

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.PROVIDER_ERROR
    assert outcome.message == "All providers failed: model not found"
    assert outcome.provider == "beta"
    assert [attempt.failure_class for attempt in outcome.attempts] == [
        FailureClass.ACCESS_OR_AUTH,
        FailureClass.MODEL_NOT_AVAILABLE,
    ]

    records = _usage(plane)
    assert [record.provider for record in records] == ["alpha", "beta", NO_PROVIDER]
    terminal = records[-1]
    assert terminal.success is False
    assert terminal.failure_class == FailureClass.NO_PROVIDER
    assert terminal.task_type == "summarization"


def test_candidates_are_ordered_by_priority_then_name(make_control_plane) -> None:
    call_order: list[str] = []

    def _failing(name: str):
        def _run(request):
            call_order.append(request.provider)
            raise ProviderCallError(f"{name} exploded")

        return _run

    clients = {name: ScriptedProviderClient(_failing(name)) for name in ("zeta", "eta", "mu")}
    plane = make_control_plane(clients)
    enable_provider(plane, "zeta", priority=5)
    enable_provider(plane, "eta", priority=5)
    enable_provider(plane, "mu", priority=1)

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "order"})

    assert isinstance(outcome, TaskFailure)
    assert call_order == ["mu", "eta", "zeta"]


def test_provider_hint_restricts_execution_to_one_provider(make_control_plane) -> None:
    alpha = ScriptedProviderClient()
    beta = ScriptedProviderClient(ProviderCallResult(content="beta only"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute(
        "text_generation",
        {"prompt": "hint"},
        {"provider": "beta"},
    )

    assert isinstance(outcome, TaskResult)
    assert outcome.provider_used == "beta"
    assert alpha.calls == []


def test_hint_to_disabled_provider_is_configuration_error(make_control_plane) -> None:
    alpha = ScriptedProviderClient()
    beta = ScriptedProviderClient()
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha")
    enable_provider(plane, "beta", enabled=False)

    outcome = plane.orchestrator.execute(
        "text_generation",
        {"prompt": "hint"},
        {"provider_hint": "beta"},
    )

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CONFIGURATION_ERROR
    assert alpha.calls == []
    assert beta.calls == []
    records = _usage(plane)
    assert len(records) == 1
    assert records[0].provider == NO_PROVIDER
    assert records[0].failure_class == FailureClass.NO_PROVIDER


def test_no_enabled_providers_is_configuration_error(make_control_plane) -> None:
    plane = make_control_plane({"alpha": ScriptedProviderClient()})

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "anyone?"})

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CONFIGURATION_ERROR
    assert outcome.message == "no providers available"
    assert any("no providers available" in message for message in _messages(plane))


def test_providers_without_credentials_or_client_are_not_selected(make_control_plane) -> None:
    keyless = ScriptedProviderClient()
    ollama = ScriptedProviderClient(ProviderCallResult(content="local"))
    plane = make_control_plane({"keyless": keyless, "ollama": ollama})
    plane.registry.upsert("keyless", {"enabled": True, "priority": 1})
    enable_provider(plane, "orphan", priority=2)
    plane.registry.upsert("ollama", {"enabled": True, "priority": 3})

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "local please"})

    assert isinstance(outcome, TaskResult)
    assert outcome.provider_used == "ollama"
    assert keyless.calls == []
    assert ollama.calls[0].model == "llama2"


def test_rate_limited_provider_is_skipped(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="alpha"))
    beta = ScriptedProviderClient(ProviderCallResult(content="beta"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1, rate_limit=1)
    enable_provider(plane, "beta", priority=2)

    first = plane.orchestrator.execute("text_generation", {"prompt": "one"})
    second = plane.orchestrator.execute("text_generation", {"prompt": "two"})

    assert isinstance(first, TaskResult)
    assert first.provider_used == "alpha"
    assert isinstance(second, TaskResult)
    assert second.provider_used == "beta"
    assert len(alpha.calls) == 1
    warnings = _messages(plane, LogLevel.WARNING)
    assert any(message.startswith("rate_limited: provider alpha") for message in warnings)
    # Skipped providers leave no usage record.
    assert [record.provider for record in _usage(plane)] == ["alpha", "beta"]


def test_all_providers_rate_limited(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="alpha"))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha", rate_limit=1)

    plane.orchestrator.execute("text_generation", {"prompt": "one"})
    outcome = plane.orchestrator.execute("text_generation", {"prompt": "two"})

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.PROVIDER_ERROR
    assert outcome.message == "All providers rate limited: alpha"
    assert outcome.attempts == ()


def test_provider_timeout_falls_back(make_control_plane) -> None:
    alpha = ScriptedProviderClient(slow_result(5))
    beta = ScriptedProviderClient(ProviderCallResult(content="fast"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1, timeout_seconds=1)
    enable_provider(plane, "beta", priority=2)

    started = time.monotonic()
    outcome = plane.orchestrator.execute("text_generation", {"prompt": "hurry"})

    assert time.monotonic() - started < 4
    assert isinstance(outcome, TaskResult)
    assert outcome.provider_used == "beta"
    alpha_record = _usage(plane)[0]
    assert alpha_record.status == UsageStatus.TIMEOUT
    assert alpha_record.failure_class == FailureClass.TIMEOUT
    assert alpha_record.response_time_ms >= 900


def test_deadline_bounds_the_whole_execution(make_control_plane) -> None:
    alpha = ScriptedProviderClient(slow_result(5))
    beta = ScriptedProviderClient(ProviderCallResult(content="never"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute(
        "text_generation",
        {"prompt": "deadline"},
        deadline=time.monotonic() + 0.3,
    )

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.PROVIDER_ERROR
    assert "Deadline exceeded" in outcome.message
    assert beta.calls == []
    assert outcome.attempts[0].status == UsageStatus.TIMEOUT


def test_cancellation_during_call_stops_fallback(make_control_plane) -> None:
    alpha = ScriptedProviderClient(slow_result(5))
    beta = ScriptedProviderClient(ProviderCallResult(content="never"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()

    try:
        outcome = plane.orchestrator.execute(
            "text_generation",
            {"prompt": "cancel me"},
            cancel_event=cancel,
        )
    finally:
        timer.cancel()

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CANCELLED
    assert outcome.provider == "alpha"
    assert beta.calls == []
    records = _usage(plane)
    assert len(records) == 1
    assert records[0].status == UsageStatus.CANCELLED


def test_cancellation_before_start_makes_no_calls(make_control_plane) -> None:
    alpha = ScriptedProviderClient()
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")
    cancel = threading.Event()
    cancel.set()

    outcome = plane.orchestrator.execute(
        "text_generation",
        {"prompt": "too late"},
        cancel_event=cancel,
    )

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CANCELLED
    assert alpha.calls == []
    assert _usage(plane) == []


def test_identical_request_is_served_from_cache(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="cached answer", total_tokens=7))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")

    first = plane.orchestrator.execute("translation", {"prompt": "bonjour"})
    second = plane.orchestrator.execute("translation", {"prompt": "bonjour"})
    bypassed = plane.orchestrator.execute(
        "translation",
        {"prompt": "bonjour"},
        {"bypass_cache": True},
    )

    assert isinstance(first, TaskResult)
    assert isinstance(second, TaskResult)
    assert second.cached is True
    assert second.content == "cached answer"
    assert second.provider_used == "alpha"
    assert isinstance(bypassed, TaskResult)
    assert bypassed.cached is False
    assert len(alpha.calls) == 2
    assert len(_usage(plane)) == 2


def test_cache_can_be_disabled_by_setting(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="fresh"))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")
    plane.settings_store.save({"cache_enabled": "false"})

    plane.orchestrator.execute("text_generation", {"prompt": "same"})
    outcome = plane.orchestrator.execute("text_generation", {"prompt": "same"})

    assert isinstance(outcome, TaskResult)
    assert outcome.cached is False
    assert len(alpha.calls) == 2


@pytest.mark.parametrize(
    ("task_type", "task_input", "options"),
    [
        ("text_generation", {"prompt": "   "}, None),
        ("poetry", {"prompt": "roses"}, None),
        ("text_generation", {"prompt": "x"}, {"temperature": 3}),
        ("text_generation", {"prompt": "x"}, {"max_tokens": 0}),
        ("text_generation", {"prompt": "x"}, {"max_tokens": 10_000}),
        ("text_generation", {"prompt": "x"}, {"colour": "blue"}),
    ],
)
def test_invalid_requests_are_client_errors(
    make_control_plane,
    task_type,
    task_input,
    options,
) -> None:
    alpha = ScriptedProviderClient()
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")

    outcome = plane.orchestrator.execute(task_type, task_input, options)

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CLIENT_ERROR
    assert alpha.calls == []
    assert _usage(plane) == []
    assert any(
        message.startswith("Rejected task request")
        for message in _messages(plane, LogLevel.WARNING)
    )


def test_cost_is_estimated_from_catalog_pricing(make_control_plane) -> None:
    openai = ScriptedProviderClient(
        ProviderCallResult(content="priced", prompt_tokens=1000, completion_tokens=1000),
    )
    plane = make_control_plane({"openai": openai})
    enable_provider(plane, "openai")

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "price me"})

    assert isinstance(outcome, TaskResult)
    assert outcome.cost == pytest.approx(0.03)
    assert openai.calls[0].api_endpoint == "https://api.openai.com/v1/chat/completions"
    view = plane.registry.get("openai")
    assert view is not None
    assert view.stats.total_cost == pytest.approx(0.03)


def test_vendor_reported_cost_wins_and_missing_tokens_are_marked(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="no usage", cost=0.5))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "usage?"})

    assert isinstance(outcome, TaskResult)
    assert outcome.cost == 0.5
    assert outcome.tokens_used == TOKENS_NOT_REPORTED
    assert _usage(plane)[0].tokens_used is None


def test_failure_messages_are_sanitized_before_storage(make_control_plane) -> None:
    alpha = ScriptedProviderClient(
        ProviderCallError("upstream rejected Bearer abcdefghijklmnop123 for request"),
    )
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "secret"})

    assert isinstance(outcome, TaskFailure)
    stored = _usage(plane)[0].error_message or ""
    assert "abcdefghijklmnop123" not in stored
    assert "[redacted-token]" in stored
    assert "abcdefghijklmnop123" not in outcome.attempts[0].message


def test_transport_errors_are_classified_as_transient(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ConnectionResetError("peer went away"))
    beta = ScriptedProviderClient(ProviderCallResult(content="ok"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "net"})

    assert isinstance(outcome, TaskResult)
    assert _usage(plane)[0].failure_class == FailureClass.BACKEND_TRANSIENT


def test_provider_call_request_carries_configuration(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="ok"))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(
        plane,
        "alpha",
        model="alpha-large",
        api_endpoint="https://alpha.example/v1",
        timeout_seconds=12,
        settings={"region": "eu"},
    )

    plane.orchestrator.execute(
        "code_generation",
        {"prompt": "write code", "system": "be terse"},
        {"max_tokens": 64, "temperature": 0.2},
    )

    request = alpha.calls[0]
    assert request.task_type == "code_generation"
    assert request.system == "be terse"
    assert request.max_tokens == 64
    assert request.temperature == pytest.approx(0.2)
    assert request.timeout_seconds == pytest.approx(12)
    assert request.api_key == "sk-test-alpha-0000"
    assert request.model == "alpha-large"
    assert request.settings == {"region": "eu"}


def test_cached_result_is_not_served_through_a_disabled_hint(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="warm"))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")
    warm = plane.orchestrator.execute("text_generation", {"prompt": "hi"}, {"provider": "alpha"})
    plane.registry.upsert("alpha", {"enabled": False})

    outcome = plane.orchestrator.execute(
        "text_generation",
        {"prompt": "hi"},
        {"provider": "alpha"},
    )

    assert isinstance(warm, TaskResult)
    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CONFIGURATION_ERROR
    assert len(alpha.calls) == 1


def test_cached_result_does_not_hide_missing_providers(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="warm"))
    plane = make_control_plane({"alpha": alpha})
    enable_provider(plane, "alpha")
    plane.orchestrator.execute("text_generation", {"prompt": "hi"})
    plane.registry.upsert("alpha", {"enabled": False})

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "hi"})

    assert isinstance(outcome, TaskFailure)
    assert outcome.kind == ErrorKind.CONFIGURATION_ERROR
    assert outcome.message == "no providers available"
    assert len(alpha.calls) == 1


def test_cached_result_from_unavailable_provider_is_evicted(make_control_plane) -> None:
    alpha = ScriptedProviderClient(ProviderCallResult(content="from alpha"))
    beta = ScriptedProviderClient(ProviderCallResult(content="from beta"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    plane.orchestrator.execute("text_generation", {"prompt": "hi"})
    plane.registry.upsert("alpha", {"enabled": False})
    enable_provider(plane, "beta", priority=2)

    fresh = plane.orchestrator.execute("text_generation", {"prompt": "hi"})
    repeated = plane.orchestrator.execute("text_generation", {"prompt": "hi"})

    assert isinstance(fresh, TaskResult)
    assert fresh.provider_used == "beta"
    assert fresh.cached is False
    assert isinstance(repeated, TaskResult)
    assert repeated.provider_used == "beta"
    assert repeated.cached is True
    assert len(beta.calls) == 1


def test_unexpected_client_exception_falls_back(make_control_plane) -> None:
    alpha = ScriptedProviderClient(KeyError("choices"))
    beta = ScriptedProviderClient(ProviderCallResult(content="from beta"))
    plane = make_control_plane({"alpha": alpha, "beta": beta})
    enable_provider(plane, "alpha", priority=1)
    enable_provider(plane, "beta", priority=2)

    outcome = plane.orchestrator.execute("text_generation", {"prompt": "parse me"})

    assert isinstance(outcome, TaskResult)
    assert outcome.provider_used == "beta"
    assert len(beta.calls) == 1
    alpha_record, beta_record = _usage(plane)
    assert alpha_record.provider == "alpha"
    assert alpha_record.status == UsageStatus.ERROR
    assert alpha_record.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    assert "KeyError" in (alpha_record.error_message or "")
    assert beta_record.status == UsageStatus.SUCCESS


def test_misconfigured_echo_provider_is_a_provider_failure(make_control_plane) -> None:
    plane = make_control_plane({"alpha": EchoProviderClient()})
    enable_provider(plane, "alpha", settings={"echo_delay_seconds": "abc"})

    envelope = plane.command_bus.dispatch("run_test", {"prompt": "hello"}, "tok", "tok")

    assert envelope["success"] is False
    assert envelope["error"] != "internal error"
    assert envelope["data"]["kind"] == ErrorKind.PROVIDER_ERROR.value
    assert _usage(plane)[0].status == UsageStatus.ERROR


def test_queued_call_is_not_charged_as_provider_timeout(db_path, repository) -> None:
    gate = threading.Event()

    def _hold_worker(_request) -> ProviderCallResult:
        gate.wait(10)
        return ProviderCallResult(content="late")

    alpha = ScriptedProviderClient(_hold_worker)
    beta = ScriptedProviderClient(ProviderCallResult(content="never ran"))
    plane = ControlPlane(
        settings=Settings(db_path=db_path, providers=ProviderRuntimeSettings(call_workers=1)),
        repository=repository,
        clients=ProviderClientRegistry({"alpha": alpha, "beta": beta}),
        poll_interval_seconds=0.01,
    )
    try:
        with plane:
            enable_provider(plane, "alpha", priority=1, timeout_seconds=1)
            enable_provider(plane, "beta", priority=2, timeout_seconds=1)

            outcome = plane.orchestrator.execute("text_generation", {"prompt": "busy"})
    finally:
        gate.set()

    assert isinstance(outcome, TaskFailure)
    assert [attempt.status for attempt in outcome.attempts] == [
        UsageStatus.TIMEOUT,
        UsageStatus.ERROR,
    ]
    assert beta.calls == []
    beta_record = _usage(plane)[1]
    assert beta_record.provider == "beta"
    assert beta_record.failure_class == FailureClass.BACKEND_TRANSIENT
    assert beta_record.response_time_ms == 0
    assert "No call worker" in (beta_record.error_message or "")
