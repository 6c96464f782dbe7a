"""Control plane for pluggable AI-task execution."""

__version__ = "0.1.0"
