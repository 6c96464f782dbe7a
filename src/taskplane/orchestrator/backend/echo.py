"""Local deterministic provider client for development and integration tests."""

from __future__ import annotations

import time

from taskplane.orchestrator.backend.base import (
    ProviderCallError,
    ProviderCallRequest,
    ProviderCallResult,
)

_POLL_SECONDS = 0.05


class EchoProviderClient:
    """Echoes the prompt back; provider `settings` can inject latency or failures.

    Recognized settings: `echo_delay_seconds` (float) and `echo_fail` (error
    message to raise).
    """

    def call(self, request: ProviderCallRequest) -> ProviderCallResult:
        raw_delay = request.settings.get("echo_delay_seconds", "0") or "0"
        try:
            delay = float(raw_delay)
        except ValueError as error:
            raise ProviderCallError(f"Invalid echo_delay_seconds: {raw_delay!r}") from error
        deadline = time.monotonic() + delay
        while time.monotonic() < deadline:
            if request.cancel_requested is not None and request.cancel_requested():
                raise ProviderCallError("echo call cancelled", transport=True)
            time.sleep(min(_POLL_SECONDS, max(0.0, deadline - time.monotonic())))

        failure = request.settings.get("echo_fail")
        if failure:
            raise ProviderCallError(failure)

        prompt_tokens = len(request.prompt.split())
        words = request.prompt.split()[: request.max_tokens]
        content = " ".join(words)
        if request.system:
            content = f"{request.system.strip()}\n{content}"
        return ProviderCallResult(
            content=content,
            prompt_tokens=prompt_tokens,
            completion_tokens=len(words),
            cost=None,
        )
