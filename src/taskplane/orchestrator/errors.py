"""Typed exceptions raised inside the control plane and converted at its boundaries."""

from __future__ import annotations


class ClientError(ValueError):
    """Bad or missing caller input: unknown action, invalid option, failed CSRF check."""


class ConfigurationError(RuntimeError):
    """The system is not configured to serve the request (no eligible provider)."""
