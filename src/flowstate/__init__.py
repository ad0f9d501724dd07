"""
Flowstate - a local-first note-taking persistence layer.
This package stores short text documents in SQLite, keeps an FTS5 full-text
index over them, and performs a one-time import of notes that were
previously stored as loose markdown files.

This version uses synchronous operations.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("flowstate")
except PackageNotFoundError:
    __version__ = "0.1.0"
