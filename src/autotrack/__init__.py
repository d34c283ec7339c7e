"""Automatic, crash-safe time tracking for the foreground application."""

__version__ = "0.1.0"
