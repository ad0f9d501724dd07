"""SQLAlchemy database models for Flowstate.

Column names follow the persisted schema (camelCase); attribute names are
the Python ones.
"""
from sqlalchemy import Boolean, Column, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

# Create base class for SQLAlchemy models
Base = declarative_base()


class DBNote(Base):
    """Database model for a note."""
    __tablename__ = "notes"
    id = Column(String, primary_key=True)
    title = Column(Text, nullable=False, default="")
    content = Column(Text, nullable=False, default="")
    created_at = Column("createdAt", DateTime, nullable=False)
    updated_at = Column("updatedAt", DateTime, nullable=False)
    word_count = Column("wordCount", Integer, nullable=False, default=0)
    is_pinned = Column("isPinned", Boolean, nullable=False, default=False)
    is_archived = Column("isArchived", Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("idx_notes_updated", "updatedAt"),
    )

    def __repr__(self) -> str:
        """Return string representation of note."""
        return f"<Note(id='{self.id}', title='{self.title}')>"


class DBDailyStats(Base):
    """Database model for one day of usage counters."""
    __tablename__ = "daily_stats"
    date = Column(String, primary_key=True)
    words_written = Column("wordsWritten", Integer, nullable=False, default=0)
    notes_created = Column("notesCreated", Integer, nullable=False, default=0)
    notes_updated = Column("notesUpdated", Integer, nullable=False, default=0)
    active_minutes = Column("activeMinutes", Integer, nullable=False, default=0)
    ai_actions_used = Column("aiActionsUsed", Integer, nullable=False, default=0)

    def __repr__(self) -> str:
        """Return string representation of daily stats."""
        return f"<DailyStats(date='{self.date}', words={self.words_written})>"


class DBSchemaMigration(Base):
    """Identifier of a schema change that has already been applied."""
    __tablename__ = "schema_migrations"
    identifier = Column(String, primary_key=True)
    applied_at = Column(DateTime, nullable=False)
