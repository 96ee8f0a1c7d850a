"""Per-user code review agent with persistent pattern learning."""

__version__ = "0.1.0"
