"""Sanitization helpers for provider error text persisted in DB."""

from __future__ import annotations

import re
from collections.abc import Callable

_MAX_MESSAGE_CHARS = 2_000

_Replacement = str | Callable[[re.Match[str]], str]

_REPLACEMENTS: tuple[tuple[re.Pattern[str], _Replacement], ...] = (
    (
        re.compile(r"(?i)\b(bearer)\s+[a-z0-9._\-]{8,}\b"),
        r"\1 [redacted-token]",
    ),
    (
        re.compile(r"(?i)\b(sk-[a-z0-9\-_]{8,})\b"),
        "[redacted-token]",
    ),
    (
        re.compile(
            r"(?i)\b(taskplane|openai|anthropic|google|gemini|x)[a-z0-9_\-]*_?"
            r"(api[_\-]?)?(key|token)\b"
            r"\s*[:=]\s*['\"]?[^'\" \n\r\t]+['\"]?",
        ),
        "[redacted-secret]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|key|api_key|signature|auth)=[^&\s]+)"),
        lambda match: match.group(1).split("=")[0] + "=[redacted]",
    ),
)


def sanitize_message(text: str, *, max_chars: int = _MAX_MESSAGE_CHARS) -> str:
    """Redact obvious secrets and clamp message size."""

    compact = text.strip()
    if not compact:
        return ""

    redacted = compact
    for pattern, replacement in _REPLACEMENTS:
        redacted = pattern.sub(replacement, redacted)

    if len(redacted) <= max_chars:
        return redacted
    return redacted[:max_chars]


def mask_secret(secret: str | None) -> str | None:
    """Short non-reversible preview of a stored credential."""

    if not secret:
        return None
    if len(secret) <= 8:
        return "****"
    return f"{secret[:3]}...{secret[-4:]}"
