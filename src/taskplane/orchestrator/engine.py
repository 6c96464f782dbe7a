"""Task orchestration: candidate selection, timed provider calls and fallback."""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import Executor, wait
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from taskplane.orchestrator.backend import (
    ProviderCallError,
    ProviderCallRequest,
    ProviderCallResult,
    ProviderClientRegistry,
)
from taskplane.orchestrator.cache import ResponseCache, build_cache_key
from taskplane.orchestrator.catalog import requires_api_key
from taskplane.orchestrator.errors import ClientError, ConfigurationError
from taskplane.orchestrator.failure_classifier import classify_provider_failure
from taskplane.orchestrator.models import (
    NO_PROVIDER,
    TOKENS_NOT_REPORTED,
    AttemptFailure,
    ErrorKind,
    FailureClass,
    LogLevel,
    ProviderSnapshot,
    TaskFailure,
    TaskInput,
    TaskOptions,
    TaskResult,
    TaskType,
    UsageRecord,
    UsageStatus,
)
from taskplane.orchestrator.pricing import PricingTable
from taskplane.orchestrator.rate_limit import RateLimiter
from taskplane.orchestrator.registry import ProviderRegistry
from taskplane.orchestrator.sanitization import sanitize_message
from taskplane.orchestrator.settings_store import SettingsStore
from taskplane.orchestrator.usage import UsageRecorder
from taskplane.storage.common import utc_now

logger = logging.getLogger(__name__)

TaskOutcome = TaskResult | TaskFailure


@dataclass(slots=True)
class _AttemptOutcome:
    status: UsageStatus
    response_time_ms: int
    result: ProviderCallResult | None = None
    message: str | None = None
    failure_class: FailureClass | None = None
    details: dict[str, object] | None = None


class TaskOrchestrator:
    """Executes one task against an ordered list of providers with bounded fallback.

    Provider calls run on `executor` threads; the orchestrator waits on the
    future in short slices so that both the per-call timeout and the caller's
    cancellation event are honoured while the call is in flight. A call that
    times out or is cancelled is abandoned: its thread is asked to stop through
    `ProviderCallRequest.cancel_requested` but cannot be killed.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        registry: ProviderRegistry,
        clients: ProviderClientRegistry,
        rate_limiter: RateLimiter,
        cache: ResponseCache,
        recorder: UsageRecorder,
        settings_store: SettingsStore,
        pricing: PricingTable,
        executor: Executor,
        clock: Callable[[], datetime] = utc_now,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        self.registry = registry
        self.clients = clients
        self.rate_limiter = rate_limiter
        self.cache = cache
        self.recorder = recorder
        self.settings_store = settings_store
        self.pricing = pricing
        self.executor = executor
        self.clock = clock
        self.poll_interval_seconds = poll_interval_seconds

    def execute(  # noqa: C901, PLR0911
        self,
        task_type: str | TaskType,
        task_input: Mapping[str, Any] | TaskInput,
        options: Mapping[str, Any] | TaskOptions | None = None,
        *,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> TaskOutcome:
        """Run the task and return a result or a terminal failure value.

        `deadline` is an absolute `time.monotonic()` value bounding the whole
        execution, provider timeouts included.
        """

        raw_type = task_type.value if isinstance(task_type, TaskType) else str(task_type)
        try:
            parsed_type = TaskType.parse(task_type)
            parsed_input = (
                task_input
                if isinstance(task_input, TaskInput)
                else TaskInput.from_mapping(task_input)
            )
            parsed_options = (
                options if isinstance(options, TaskOptions) else TaskOptions.from_mapping(options)
            )
            parsed_options.validate()
            settings = self.settings_store.load()
            if parsed_options.max_tokens > settings.max_tokens:
                raise ClientError(
                    f"Option max_tokens={parsed_options.max_tokens} exceeds the configured "
                    f"limit of {settings.max_tokens}.",
                )
        except ClientError as error:
            self.recorder.log(
                LogLevel.WARNING,
                f"Rejected task request: {error}",
                task_type=raw_type,
            )
            return self._failure(ErrorKind.CLIENT_ERROR, str(error), task_type=raw_type)

        if _is_cancelled(cancel_event):
            return self._failure(
                ErrorKind.CANCELLED,
                "Task cancelled before any provider call",
                task_type=parsed_type.value,
            )

        try:
            candidates = self._candidates(parsed_options.provider_hint)
        except ConfigurationError as error:
            return self._terminal_failure(
                ErrorKind.CONFIGURATION_ERROR,
                str(error),
                task_type=parsed_type.value,
                failure_class=FailureClass.NO_PROVIDER,
            )

        cache_key: str | None = None
        if settings.cache_enabled and not parsed_options.bypass_cache and not parsed_options.stream:
            cache_key = build_cache_key(
                task_type=parsed_type,
                task_input=parsed_input,
                options=parsed_options,
            )
            cached = self.cache.get(cache_key, ttl_seconds=settings.cache_ttl)
            if cached is not None:
                if any(provider.name == cached.provider_used for provider in candidates):
                    logger.debug("Cache hit for task_type=%s", parsed_type.value)
                    return cached
                # Served only while the answering provider is still selectable.
                logger.debug(
                    "Discarding cached result from unavailable provider %s",
                    cached.provider_used,
                )
                self.cache.discard(cache_key)

        attempts: list[AttemptFailure] = []
        rate_limited: list[str] = []
        last_error: str | None = None
        for provider in candidates:
            if _is_cancelled(cancel_event):
                return self._failure(
                    ErrorKind.CANCELLED,
                    "Task cancelled",
                    task_type=parsed_type.value,
                    provider=attempts[-1].provider if attempts else NO_PROVIDER,
                    attempts=attempts,
                )
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                last_error = "Deadline exceeded before all providers were tried"
                break

            if not self.rate_limiter.try_acquire(
                provider.name,
                limit=provider.rate_limit,
                period_seconds=settings.rate_limit_period_seconds,
            ):
                rate_limited.append(provider.name)
                self.recorder.log(
                    LogLevel.WARNING,
                    f"rate_limited: provider {provider.name} exceeded {provider.rate_limit} "
                    f"requests per {settings.rate_limit_period_seconds}s, skipping",
                    provider=provider.name,
                    task_type=parsed_type.value,
                )
                continue

            outcome = self._attempt(
                provider=provider,
                task_type=parsed_type,
                task_input=parsed_input,
                options=parsed_options,
                cancel_event=cancel_event,
                remaining_seconds=remaining,
            )
            if outcome.status == UsageStatus.SUCCESS and outcome.result is not None:
                result = self._on_success(
                    provider=provider,
                    task_type=parsed_type,
                    outcome=outcome,
                    attempts=attempts,
                )
                if cache_key is not None:
                    self.cache.put(cache_key, result)
                return result

            attempt = self._on_failure(provider=provider, task_type=parsed_type, outcome=outcome)
            attempts.append(attempt)
            last_error = attempt.message
            if outcome.status == UsageStatus.CANCELLED:
                return self._failure(
                    ErrorKind.CANCELLED,
                    "Task cancelled during provider call",
                    task_type=parsed_type.value,
                    provider=provider.name,
                    attempts=attempts,
                )

        if not attempts and rate_limited and last_error is None:
            message = f"All providers rate limited: {', '.join(rate_limited)}"
        else:
            message = f"All providers failed: {last_error or 'no attempt completed'}"
        return self._terminal_failure(
            ErrorKind.PROVIDER_ERROR,
            message,
            task_type=parsed_type.value,
            failure_class=FailureClass.NO_PROVIDER,
            attempts=attempts,
        )

    def _candidates(self, hint: str | None) -> list[ProviderSnapshot]:
        enabled = self.registry.enabled_snapshot()
        if hint is not None:
            match = next((provider for provider in enabled if provider.name == hint), None)
            if match is None:
                raise ConfigurationError(f"Provider {hint!r} is not configured or not enabled")
            reason = self._ineligibility(match)
            if reason is not None:
                raise ConfigurationError(f"Provider {hint!r} is not available: {reason}")
            return [match]

        candidates = [provider for provider in enabled if self._ineligibility(provider) is None]
        if not candidates:
            raise ConfigurationError("no providers available")
        return candidates

    def _ineligibility(self, provider: ProviderSnapshot) -> str | None:
        if provider.name not in self.clients:
            return "no client registered"
        if not provider.api_key and requires_api_key(provider.name):
            return "missing API key"
        return None

    def _attempt(  # noqa: PLR0913
        self,
        *,
        provider: ProviderSnapshot,
        task_type: TaskType,
        task_input: TaskInput,
        options: TaskOptions,
        cancel_event: threading.Event | None,
        remaining_seconds: float | None,
    ) -> _AttemptOutcome:
        client = self.clients.get(provider.name)
        if client is None:
            raise RuntimeError(f"Client disappeared for provider {provider.name}")

        timeout = float(provider.timeout_seconds)
        if remaining_seconds is not None:
            timeout = min(timeout, remaining_seconds)
        abandon = threading.Event()
        request = ProviderCallRequest(
            provider=provider.name,
            task_type=task_type.value,
            prompt=task_input.prompt,
            system=task_input.system,
            max_tokens=options.max_tokens,
            temperature=options.temperature,
            stream=options.stream,
            timeout_seconds=timeout,
            api_key=provider.api_key,
            api_endpoint=provider.api_endpoint,
            model=provider.model,
            settings=provider.settings,
            cancel_requested=abandon.is_set,
        )

        # The timeout clock starts when a worker picks the call up; time spent
        # queued behind abandoned calls is bounded separately by the same budget.
        queued = time.monotonic()
        hard_stop = None if remaining_seconds is None else queued + remaining_seconds
        running_since: list[float] = []

        def _run() -> ProviderCallResult:
            running_since.append(time.monotonic())
            return client.call(request)

        future = self.executor.submit(_run)
        while True:
            started = running_since[0] if running_since else None
            if _is_cancelled(cancel_event):
                abandon.set()
                future.cancel()
                return _AttemptOutcome(
                    status=UsageStatus.CANCELLED,
                    response_time_ms=_elapsed_ms(started or queued),
                    message="Cancelled by caller",
                    failure_class=FailureClass.CANCELLED,
                )
            now = time.monotonic()
            stop = (started or queued) + timeout
            if hard_stop is not None:
                stop = min(stop, hard_stop)
            left = stop - now
            if left <= 0 and started is None and future.cancel():
                return _AttemptOutcome(
                    status=UsageStatus.ERROR,
                    response_time_ms=0,
                    message=f"No call worker became free within {timeout:.1f}s",
                    failure_class=FailureClass.BACKEND_TRANSIENT,
                    details={"reason": "call_pool_saturated"},
                )
            if left <= 0 and started is not None:
                abandon.set()
                future.cancel()
                return _AttemptOutcome(
                    status=UsageStatus.TIMEOUT,
                    response_time_ms=_elapsed_ms(started),
                    message=f"Timed out after {timeout:.1f}s",
                    failure_class=FailureClass.TIMEOUT,
                )
            wait_seconds = self.poll_interval_seconds if left <= 0 else left
            done, _ = wait([future], timeout=min(self.poll_interval_seconds, wait_seconds))
            if done:
                break
        started = running_since[0] if running_since else queued

        try:
            result = future.result()
        except ProviderCallError as error:
            classification = classify_provider_failure(
                provider=provider.name,
                message=str(error),
                status_code=error.status_code,
                transport_error=error.transport,
            )
            return _AttemptOutcome(
                status=UsageStatus.ERROR,
                response_time_ms=_elapsed_ms(started),
                message=str(error) or error.__class__.__name__,
                failure_class=classification.failure_class,
                details=classification.to_log_details(provider=provider.name, model=provider.model),
            )
        except OSError as error:
            classification = classify_provider_failure(
                provider=provider.name,
                message=str(error),
                transport_error=True,
            )
            return _AttemptOutcome(
                status=UsageStatus.ERROR,
                response_time_ms=_elapsed_ms(started),
                message=f"{error.__class__.__name__}: {error}",
                failure_class=classification.failure_class,
                details=classification.to_log_details(provider=provider.name, model=provider.model),
            )
        except Exception as error:  # noqa: BLE001
            logger.exception("Provider client %s raised unexpectedly", provider.name)
            return _AttemptOutcome(
                status=UsageStatus.ERROR,
                response_time_ms=_elapsed_ms(started),
                message=f"{error.__class__.__name__}: {error}",
                failure_class=FailureClass.BACKEND_NON_RETRYABLE,
                details={"provider": provider.name, "error_type": error.__class__.__name__},
            )
        return _AttemptOutcome(
            status=UsageStatus.SUCCESS,
            response_time_ms=_elapsed_ms(started),
            result=result,
        )

    def _on_success(
        self,
        *,
        provider: ProviderSnapshot,
        task_type: TaskType,
        outcome: _AttemptOutcome,
        attempts: list[AttemptFailure],
    ) -> TaskResult:
        call_result = outcome.result
        if call_result is None:
            raise RuntimeError("Successful attempt without a result")
        tokens = call_result.tokens_used
        cost = call_result.cost
        if cost is None and tokens is not None:
            cost = self.pricing.estimate_cost_usd(
                provider=provider.name,
                model=provider.model,
                prompt_tokens=call_result.prompt_tokens,
                completion_tokens=call_result.completion_tokens,
                total_tokens=tokens,
            )

        self.recorder.record(
            UsageRecord(
                task_type=task_type.value,
                provider=provider.name,
                success=True,
                status=UsageStatus.SUCCESS,
                response_time_ms=outcome.response_time_ms,
                model=provider.model,
                tokens_used=tokens,
                cost=cost,
            ),
        )
        if attempts:
            message = f"Fallback successful: {attempts[0].provider} -> {provider.name}"
        else:
            message = f"Task {task_type.value} completed by {provider.name}"
        self.recorder.log(
            LogLevel.INFO,
            message,
            provider=provider.name,
            task_type=task_type.value,
            details={"response_time_ms": outcome.response_time_ms, "tokens_used": tokens},
        )
        return TaskResult(
            content=call_result.content,
            provider_used=provider.name,
            tokens_used=tokens if tokens is not None else TOKENS_NOT_REPORTED,
            cost=cost,
            response_time_ms=outcome.response_time_ms,
            task_type=task_type,
        )

    def _on_failure(
        self,
        *,
        provider: ProviderSnapshot,
        task_type: TaskType,
        outcome: _AttemptOutcome,
    ) -> AttemptFailure:
        message = sanitize_message(outcome.message or "Provider call failed")
        failure_class = outcome.failure_class or FailureClass.BACKEND_NON_RETRYABLE
        self.recorder.record(
            UsageRecord(
                task_type=task_type.value,
                provider=provider.name,
                success=False,
                status=outcome.status,
                response_time_ms=outcome.response_time_ms,
                model=provider.model,
                failure_class=failure_class,
                error_message=message,
            ),
        )
        level = LogLevel.WARNING if outcome.status == UsageStatus.CANCELLED else LogLevel.ERROR
        self.recorder.log(
            level,
            f"Provider {provider.name} failed ({outcome.status.value}): {message}",
            provider=provider.name,
            task_type=task_type.value,
            details=outcome.details,
        )
        return AttemptFailure(
            provider=provider.name,
            status=outcome.status,
            failure_class=failure_class,
            message=message,
        )

    def _terminal_failure(
        self,
        kind: ErrorKind,
        message: str,
        *,
        task_type: str,
        failure_class: FailureClass,
        attempts: list[AttemptFailure] | None = None,
    ) -> TaskFailure:
        self.recorder.record(
            UsageRecord(
                task_type=task_type,
                provider=NO_PROVIDER,
                success=False,
                status=UsageStatus.ERROR,
                failure_class=failure_class,
                error_message=message,
            ),
        )
        self.recorder.log(
            LogLevel.ERROR,
            f"Task {task_type} failed: {message}",
            task_type=task_type,
            details={"kind": kind.value, "attempts": len(attempts or [])},
        )
        last_provider = attempts[-1].provider if attempts else NO_PROVIDER
        return self._failure(
            kind,
            message,
            task_type=task_type,
            provider=last_provider,
            attempts=attempts,
        )

    def _failure(
        self,
        kind: ErrorKind,
        message: str,
        *,
        task_type: str,
        provider: str = NO_PROVIDER,
        attempts: list[AttemptFailure] | None = None,
    ) -> TaskFailure:
        return TaskFailure(
            kind=kind,
            message=message,
            task_type=task_type,
            provider=provider,
            timestamp=self.clock(),
            attempts=tuple(attempts or ()),
        )


def _is_cancelled(cancel_event: threading.Event | None) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))
