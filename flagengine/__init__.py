"""Feature-flag evaluation engine."""

__version__ = "1.0.0"
