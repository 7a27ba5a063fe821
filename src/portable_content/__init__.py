"""Block variant transform pipeline and capability-based variant selection."""

__version__ = "0.1.0"
