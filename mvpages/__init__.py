"""Async client for a multi-version page store, an SQLite-style connection layer and a filesystem model."""

__version__ = "0.1.0"