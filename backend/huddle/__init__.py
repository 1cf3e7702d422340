"""Huddle: realtime group messaging core."""

__version__ = "0.1.0"
