"""Task and batch orchestration engine for chained, crash-prone worker pipelines."""

__version__ = "0.1.0"
