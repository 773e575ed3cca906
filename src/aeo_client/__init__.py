"""Client-side orchestration of long-running analysis tasks."""

__version__ = "0.1.0"
