"""Task queue with scheduling, promises, optimistic commits and an in-memory engine."""

__version__ = "0.6.1"