"""One-time import of loose markdown notes into the store.

Earlier releases kept one ``.md`` file per note in a single directory, with
the note id and creation time encoded in the file name::

    [6F9619FF-8B86-D011-B42D-00C04FC964FF]-[2024-01-31-09-15-00].md

Each file is saved through the NoteRepository and its original is moved
into an ``archived`` subdirectory. Originals are never deleted.
"""
import datetime
import logging
import re
import shutil
import uuid
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from flowstate.config import config
from flowstate.exceptions import MigrationFileError, StorageError
from flowstate.models.schema import Note, utc_now
from flowstate.observability import timed_operation
from flowstate.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)

LEGACY_SUFFIX = ".md"
LEGACY_TIMESTAMP_FORMAT = "%Y-%m-%d-%H-%M-%S"

_BRACKETED = re.compile(r"\[([^\[\]]*)\]")


def parse_legacy_filename(
    file_name: str,
) -> Tuple[Optional[str], Optional[datetime.datetime]]:
    """Extract the note id and creation time from a legacy file name.

    Every bracketed segment is inspected; the first one that is a UUID
    literal gives the id (upper-cased), the first one matching
    ``yyyy-MM-dd-HH-mm-ss`` gives the timestamp, read as local time.
    Either may be missing.
    """
    note_id: Optional[str] = None
    created: Optional[datetime.datetime] = None
    for segment in _BRACKETED.findall(file_name):
        segment = segment.strip()
        if note_id is None:
            try:
                note_id = str(uuid.UUID(segment)).upper()
                continue
            except ValueError:
                pass
        if created is None:
            try:
                created = datetime.datetime.strptime(
                    segment, LEGACY_TIMESTAMP_FORMAT
                ).astimezone()
            except ValueError:
                pass
    return note_id, created


class LegacyImporter:
    """Moves legacy file-per-note documents into the note store.

    Args:
        repository: NoteRepository the notes are saved through.
        legacy_dir: Directory holding the legacy ``.md`` files.
            Defaults to config.get_legacy_dir().
        archive_dir: Where migrated originals are moved. Defaults to the
            ``archived`` subdirectory of legacy_dir.
        clock: Callable returning the current aware datetime.
    """

    def __init__(
        self,
        repository: NoteRepository,
        legacy_dir: Optional[Path] = None,
        archive_dir: Optional[Path] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
    ) -> None:
        self.repository = repository
        self.legacy_dir = Path(legacy_dir) if legacy_dir else config.get_legacy_dir()
        self.archive_dir = (
            Path(archive_dir) if archive_dir else config.get_archive_dir(self.legacy_dir)
        )
        self._clock = clock or utc_now
        self.errors: List[MigrationFileError] = []

    def _candidates(self) -> List[Path]:
        if not self.legacy_dir.is_dir():
            return []
        return sorted(
            path
            for path in self.legacy_dir.iterdir()
            if path.suffix == LEGACY_SUFFIX and path.is_file()
        )

    def needs_migration(self) -> bool:
        """True iff the legacy directory has candidates and the store is empty."""
        try:
            if not self._candidates():
                return False
        except OSError as e:
            logger.error(f"Error listing legacy directory {self.legacy_dir}: {e}")
            return False

        try:
            return self.repository.count_notes() == 0
        except StorageError as e:
            logger.error(f"Error checking migration status: {e}")
            return False

    def migrate(self) -> int:
        """Import every legacy document, archiving each original.

        A file that fails to parse, persist or archive is recorded on
        ``errors`` and skipped; the batch continues.

        Returns:
            Number of files that were both persisted and archived.
        """
        self.errors = []
        migrated = 0

        with timed_operation("legacy_import", legacy_dir=str(self.legacy_dir)) as op:
            try:
                candidates = self._candidates()
            except OSError as e:
                logger.error(f"Error listing legacy directory {self.legacy_dir}: {e}")
                candidates = []
            logger.info(f"Found {len(candidates)} legacy notes to migrate")

            for path in candidates:
                try:
                    self._migrate_file(path)
                except MigrationFileError as e:
                    logger.error(f"Error migrating {path.name}: {e}")
                    self.errors.append(e)
                    continue
                migrated += 1

            op["migrated"] = migrated
            op["failed"] = len(self.errors)

        logger.info(
            f"Migration complete. Migrated {migrated} notes, {len(self.errors)} failed."
        )
        return migrated

    def _migrate_file(self, path: Path) -> None:
        note = self.parse_file(path)

        if self.repository.import_note(note) is None:
            raise MigrationFileError(
                f"Could not save note {note.id}", file_name=path.name, stage="persist"
            )
        logger.info(f"Migrated: {path.name}")

        try:
            destination = self._archive_file(path)
        except OSError as e:
            raise MigrationFileError(
                f"Could not archive {path.name}",
                file_name=path.name,
                stage="archive",
                original_error=e,
            ) from e
        logger.info(f"Archived: {path.name} -> {destination.name}")

    def parse_file(self, path: Path) -> Note:
        """Build a Note from a legacy file.

        Raises:
            MigrationFileError: If the file cannot be read as UTF-8 text.
        """
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            raise MigrationFileError(
                f"Could not read {path.name}",
                file_name=path.name,
                stage="parse",
                original_error=e,
            ) from e

        note_id, created = parse_legacy_filename(path.name)
        if created is None:
            created = self._modified_time(path)

        note = Note(content=content, created_at=created, updated_at=created)
        if note_id:
            note.id = note_id
        note.refresh_derived_fields(self.repository.title_max_length)
        return note

    def _modified_time(self, path: Path) -> datetime.datetime:
        try:
            return datetime.datetime.fromtimestamp(
                path.stat().st_mtime, tz=datetime.timezone.utc
            )
        except OSError:
            return self._clock()

    def _archive_file(self, path: Path) -> Path:
        """Move ``path`` into the archive directory without overwriting."""
        self.archive_dir.mkdir(parents=True, exist_ok=True)
        destination = self.archive_dir / path.name
        if destination.exists():
            stamp = int(self._clock().timestamp())
            while destination.exists():
                destination = self.archive_dir / f"{path.stem}_{stamp}{path.suffix}"
                stamp += 1
        shutil.move(str(path), str(destination))
        return destination

    def restore(self) -> int:
        """Move archived documents back into the legacy directory.

        Files whose name is already taken in the legacy directory stay
        archived.

        Returns:
            Number of files restored.
        """
        if not self.archive_dir.is_dir():
            logger.info("No archive directory found")
            return 0

        restored = 0
        for path in sorted(self.archive_dir.iterdir()):
            if path.suffix != LEGACY_SUFFIX or not path.is_file():
                continue
            destination = self.legacy_dir / path.name
            if destination.exists():
                logger.warning(f"Not restoring {path.name}: already present")
                continue
            try:
                shutil.move(str(path), str(destination))
            except OSError as e:
                logger.error(f"Error restoring {path.name}: {e}")
                continue
            restored += 1
            logger.info(f"Restored: {path.name}")

        logger.info(f"Restored {restored} files from archive")
        return restored
