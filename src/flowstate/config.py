"""Configuration module for Flowstate."""

import logging
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator

# Load environment variables from the project root .env file.
# Anchored to __file__ so it works regardless of the process CWD.
_PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
load_dotenv(_PROJECT_ROOT / ".env")

# User-level config lives next to the default log directory
_USER_ENV = Path.home() / ".flowstate" / ".env"
load_dotenv(_USER_ENV)


logger = logging.getLogger(__name__)


def _default_legacy_dir() -> Path:
    """Location of the loose-file notes written by earlier releases."""
    return Path.home() / "Documents" / "Freewrite"


class FlowstateConfig(BaseModel):
    """Configuration for the Flowstate persistence layer."""

    # Base directory that relative paths are resolved against
    base_dir: Path = Field(
        default_factory=lambda: Path(os.getenv("FLOWSTATE_BASE_DIR", "."))
    )
    # Database configuration
    database_path: Path = Field(
        default_factory=lambda: Path(
            os.getenv("FLOWSTATE_DATABASE_PATH", "data/flowstate.sqlite")
        )
    )
    # Legacy import location (one markdown file per note)
    legacy_notes_dir: Path = Field(
        default_factory=lambda: (
            Path(os.getenv("FLOWSTATE_LEGACY_DIR"))
            if os.getenv("FLOWSTATE_LEGACY_DIR")
            else _default_legacy_dir()
        )
    )
    # Subdirectory of the legacy location that receives migrated originals
    archive_dir_name: str = Field(default="archived")
    # Quiescence window before an autosave fires (seconds)
    autosave_delay: float = Field(
        default_factory=lambda: float(os.getenv("FLOWSTATE_AUTOSAVE_DELAY", "3.0"))
    )
    max_search_results: int = Field(
        default_factory=lambda: int(os.getenv("FLOWSTATE_MAX_SEARCH_RESULTS", "50"))
    )
    recent_notes_limit: int = Field(
        default_factory=lambda: int(os.getenv("FLOWSTATE_RECENT_NOTES_LIMIT", "20"))
    )
    title_max_length: int = Field(default=50)
    # Logging configuration
    log_dir: Path = Field(
        default_factory=lambda: Path(
            os.getenv("FLOWSTATE_LOG_DIR", str(Path.home() / ".flowstate" / "logs"))
        )
    )
    log_level: str = Field(
        default_factory=lambda: os.getenv("FLOWSTATE_LOG_LEVEL", "INFO").upper()
    )

    @model_validator(mode="after")
    def _validate_limits(self) -> "FlowstateConfig":
        """Reject settings the repository and search index cannot honour."""
        if self.autosave_delay <= 0:
            raise ValueError("autosave_delay must be > 0")
        if self.max_search_results < 1:
            raise ValueError("max_search_results must be >= 1")
        if self.recent_notes_limit < 1:
            raise ValueError("recent_notes_limit must be >= 1")
        if self.title_max_length < 1:
            raise ValueError("title_max_length must be >= 1")
        if not self.archive_dir_name or "/" in self.archive_dir_name:
            raise ValueError("archive_dir_name must be a single directory name")
        return self

    def get_absolute_path(self, path: Path) -> Path:
        """Convert a relative path to an absolute path based on base_dir."""
        path = path.expanduser()
        if path.is_absolute():
            return path
        return self.base_dir / path

    def get_db_url(self, database_path: Optional[Path] = None) -> str:
        """Get the database URL for SQLite."""
        db_path = self.get_absolute_path(database_path or self.database_path)
        db_path.parent.mkdir(parents=True, exist_ok=True)
        return f"sqlite:///{db_path}"

    def get_legacy_dir(self) -> Path:
        """Get the absolute path of the legacy import location."""
        return self.get_absolute_path(self.legacy_notes_dir)

    def get_archive_dir(self, legacy_dir: Optional[Path] = None) -> Path:
        """Get the archive directory that sits inside the legacy location."""
        return (legacy_dir or self.get_legacy_dir()) / self.archive_dir_name


# Create a global config instance
config = FlowstateConfig()
