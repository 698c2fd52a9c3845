"""Taskhive: agent task scheduler and dispatch engine."""

__version__ = "0.1.0"
