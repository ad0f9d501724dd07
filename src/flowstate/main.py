#!/usr/bin/env python
"""Composition root and command line entry point for Flowstate."""
import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from flowstate.config import config
from flowstate.exceptions import StoreUnavailableError
from flowstate.models.schema import Note
from flowstate.observability import configure_logging, log_metrics
from flowstate.services.legacy_import import LegacyImporter
from flowstate.storage.database import Database
from flowstate.storage.fts_index import SearchIndex
from flowstate.storage.note_repository import NoteRepository

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """The core services, wired together and ready to use."""
    database: Database
    repository: NoteRepository
    search: SearchIndex
    importer: LegacyImporter

    def close(self) -> None:
        """Flush pending autosave, log operation metrics and release the store."""
        self.repository.shutdown()
        log_metrics()
        self.database.close()


def build_services(
    database_path: Optional[Path] = None,
    legacy_dir: Optional[Path] = None,
    run_import: bool = True,
) -> Services:
    """Open the store and construct the core services.

    The schema is migrated before anything else touches the store, and the
    legacy import (when needed) runs before the services are returned.

    Raises:
        StoreUnavailableError: If the store cannot be opened or migrated.
    """
    try:
        url = config.get_db_url(database_path)
    except OSError as e:
        raise StoreUnavailableError(
            f"Cannot prepare database location: {e}", original_error=e
        ) from e

    database = Database(url)
    logger.info(f"Using SQLite database: {database.url}")
    try:
        database.migrate_schema()
    except StoreUnavailableError:
        database.close()
        raise

    repository = NoteRepository(database)
    search = SearchIndex(database)
    importer = LegacyImporter(repository, legacy_dir=legacy_dir)

    if run_import and importer.needs_migration():
        logger.info(f"Importing legacy notes from {importer.legacy_dir}")
        importer.migrate()

    return Services(
        database=database,
        repository=repository,
        search=search,
        importer=importer,
    )


def parse_args(argv: Optional[List[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Flowstate note store")
    parser.add_argument(
        "--database-path",
        help="SQLite database file path",
        type=Path,
        default=None,
    )
    parser.add_argument(
        "--legacy-dir",
        help="Directory of legacy markdown notes to import",
        type=Path,
        default=None,
    )
    parser.add_argument(
        "--log-level",
        help="Logging level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=config.log_level,
    )
    parser.add_argument(
        "--no-import",
        help="Skip the legacy note import",
        action="store_true",
    )
    parser.add_argument("--search", metavar="QUERY", help="Search notes and exit")
    parser.add_argument(
        "--recent",
        metavar="N",
        type=int,
        help="List the N most recently updated notes and exit",
    )
    parser.add_argument(
        "--restore-legacy",
        help="Move archived legacy files back into the legacy directory and exit",
        action="store_true",
    )
    return parser.parse_args(argv)


def _print_notes(notes: List[Note]) -> None:
    for note in notes:
        print(f"{note.id}  {note.updated_at:%Y-%m-%d %H:%M}  {note.title}")


def main(argv: Optional[List[str]] = None) -> int:
    """Run the Flowstate command line."""
    args = parse_args(argv)

    log_level = getattr(logging, args.log_level.upper(), logging.INFO)
    try:
        configure_logging(log_dir=config.log_dir, level=log_level, console=True)
    except OSError as e:
        # Fall back to basic console logging if file logging fails
        logging.basicConfig(level=log_level)
        logger.warning(f"Failed to configure file logging: {e}")

    try:
        services = build_services(
            database_path=args.database_path,
            legacy_dir=args.legacy_dir,
            run_import=not (args.no_import or args.restore_legacy),
        )
    except StoreUnavailableError as e:
        logger.error(f"Failed to initialize database: {e}")
        sys.exit(1)

    try:
        if args.restore_legacy:
            restored = services.importer.restore()
            print(f"Restored {restored} legacy files")
        elif args.search is not None:
            _print_notes(services.search.search(args.search))
        elif args.recent is not None:
            _print_notes(services.search.recent_notes(args.recent))
        else:
            print(f"{len(services.repository.notes)} notes")
    finally:
        services.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
