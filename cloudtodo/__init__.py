"""Offline-first todo list client with a synchronized local store."""

__version__ = "0.1.0"
