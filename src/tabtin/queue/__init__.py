"""Persistent job queue backed by the SQLite record store."""
