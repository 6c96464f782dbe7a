"""Provider control plane: task routing with fallback, usage telemetry and health.

Why not a task queue?
~~~~~~~~~~~~~~~~~~~~~
Tasks here are executed synchronously on behalf of the caller: pick the
enabled providers in priority order, spend one rate-limit slot, call the
provider with a per-call timeout and fall back on failure. Every attempt is
written to SQLite so that the dashboard aggregates, the health verdict and the
per-provider rolling stats all derive from the same append-only records.
A broker would add a moving part without removing any of that bookkeeping.
"""
