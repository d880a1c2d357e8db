"""Core components of the flag engine."""
