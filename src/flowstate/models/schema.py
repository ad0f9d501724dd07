"""Data models for Flowstate."""

import datetime
import re
import uuid
from datetime import timezone
from typing import Optional, Union

from pydantic import BaseModel, Field, field_validator

UNTITLED = "Untitled"
DEFAULT_TITLE_MAX_LENGTH = 50
DAY_FORMAT = "%Y-%m-%d"

# Leading run of markdown heading markers ("# ", "### ", "#")
_HEADING_PREFIX = re.compile(r"^#+\s*")


def utc_now() -> datetime.datetime:
    """Get current UTC time as timezone-aware datetime.

    Returns:
        Current time with UTC timezone info attached.
    """
    return datetime.datetime.now(timezone.utc)


def ensure_timezone_aware(dt_value: Optional[datetime.datetime]) -> datetime.datetime:
    """Ensure a datetime is timezone-aware, treating naive datetimes as UTC.

    SQLite stores DATETIME columns without an offset, so every value read
    back from the database goes through here.

    Args:
        dt_value: A datetime that may or may not have timezone info.

    Returns:
        The same datetime with UTC timezone if it was naive, otherwise unchanged.
    """
    if dt_value is None:
        return utc_now()
    if dt_value.tzinfo is None:
        return dt_value.replace(tzinfo=timezone.utc)
    return dt_value


def to_storage_datetime(dt_value: datetime.datetime) -> datetime.datetime:
    """Normalise a datetime to naive UTC for storage and comparison in SQLite."""
    return ensure_timezone_aware(dt_value).astimezone(timezone.utc).replace(tzinfo=None)


def local_day_key(moment: Optional[datetime.datetime] = None) -> str:
    """Return the local calendar day of ``moment`` as ``YYYY-MM-DD``."""
    moment = ensure_timezone_aware(moment) if moment else utc_now()
    return moment.astimezone().strftime(DAY_FORMAT)


def generate_id() -> str:
    """Generate a new note ID (an upper-case UUID4 literal)."""
    return str(uuid.uuid4()).upper()


def derive_title(content: str, max_length: int = DEFAULT_TITLE_MAX_LENGTH) -> str:
    """Derive a note title from its content.

    The first line that is not blank after trimming wins. Leading markdown
    heading markers are stripped, then the result is trimmed and cut to
    ``max_length`` characters. Content without any non-blank line is titled
    "Untitled"; a first line made only of heading markers gives an empty
    title.
    """
    for line in content.splitlines():
        if not line.strip():
            continue
        cleaned = _HEADING_PREFIX.sub("", line.strip()).strip()
        return cleaned[:max_length]
    return UNTITLED


def count_words(content: str) -> int:
    """Count whitespace-delimited, non-empty tokens in ``content``."""
    return len(content.split())


class Note(BaseModel):
    """A stored document with a derived title and word count."""

    id: str = Field(default_factory=generate_id, description="Stable note identifier")
    title: str = Field(default=UNTITLED, description="Derived from the content")
    content: str = Field(default="", description="Plain-text source of truth")
    created_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was created (UTC)"
    )
    updated_at: datetime.datetime = Field(
        default_factory=utc_now, description="When the note was last saved (UTC)"
    )
    word_count: int = Field(default=0, ge=0, description="Derived from the content")
    is_pinned: bool = Field(default=False)
    is_archived: bool = Field(
        default=False, description="Hidden from listings and search, not deleted"
    )

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Validate that the ID is not blank."""
        if not v or not v.strip():
            raise ValueError("Note ID cannot be empty")
        return v

    @field_validator("created_at", "updated_at")
    @classmethod
    def validate_timestamp(cls, v: datetime.datetime) -> datetime.datetime:
        """Store every timestamp as an aware datetime."""
        return ensure_timezone_aware(v)

    def update_title(self, max_length: int = DEFAULT_TITLE_MAX_LENGTH) -> None:
        """Recompute the title from the current content."""
        self.title = derive_title(self.content, max_length)

    def update_word_count(self) -> None:
        """Recompute the word count from the current content."""
        self.word_count = count_words(self.content)

    def refresh_derived_fields(self, max_length: int = DEFAULT_TITLE_MAX_LENGTH) -> None:
        """Recompute every field that is derived from the content."""
        self.update_title(max_length)
        self.update_word_count()

    @property
    def preview_text(self) -> str:
        """Single-line preview of the content (first 30 characters)."""
        flattened = self.content.replace("\n", " ").strip()
        if len(flattened) > 30:
            return flattened[:30] + "..."
        return flattened


class DailyStats(BaseModel):
    """Running usage counters for one local calendar day."""

    date: str = Field(
        default_factory=local_day_key, description="Local day as YYYY-MM-DD"
    )
    words_written: int = Field(default=0, ge=0)
    notes_created: int = Field(default=0, ge=0)
    notes_updated: int = Field(default=0, ge=0)
    active_minutes: int = Field(default=0, ge=0)
    ai_actions_used: int = Field(default=0, ge=0)

    model_config = {"validate_assignment": True, "extra": "forbid"}

    @field_validator("date", mode="before")
    @classmethod
    def validate_date(cls, v: Union[str, datetime.date]) -> str:
        """Accept a date/datetime or a YYYY-MM-DD string."""
        if isinstance(v, datetime.datetime):
            return local_day_key(v)
        if isinstance(v, datetime.date):
            return v.strftime(DAY_FORMAT)
        datetime.datetime.strptime(v, DAY_FORMAT)
        return v

    @property
    def activity_level(self) -> int:
        """Bucket words written into a 0-4 activity level (heatmap scale)."""
        if self.words_written <= 0:
            return 0
        if self.words_written <= 100:
            return 1
        if self.words_written <= 500:
            return 2
        if self.words_written <= 1000:
            return 3
        return 4
