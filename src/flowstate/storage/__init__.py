"""Storage layer for Flowstate."""
from flowstate.storage.database import Database
from flowstate.storage.fts_index import SearchIndex
from flowstate.storage.note_repository import NoteRepository

__all__ = ["Database", "NoteRepository", "SearchIndex"]
