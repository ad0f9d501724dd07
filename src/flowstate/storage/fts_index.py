"""FTS5 full-text search over notes.

Encapsulates the ranked FTS5 query, graceful degradation to substring
search, and recovery from a corrupted index.
"""
import datetime
import logging
from typing import List, Optional, Union

from sqlalchemy import or_, select, text
from sqlalchemy.orm import Session

from flowstate.config import config
from flowstate.exceptions import ErrorCode, SearchError, StorageError
from flowstate.models.db_models import DBNote
from flowstate.models.schema import Note, ensure_timezone_aware, to_storage_datetime
from flowstate.observability import timed_operation
from flowstate.storage.database import Database
from flowstate.storage.note_repository import db_note_to_model
from flowstate.utils import build_prefix_match_query, escape_like_pattern

logger = logging.getLogger(__name__)

_RANKED_SQL = text("""
    SELECT notes.*
    FROM notes
    JOIN notes_fts ON notes.rowid = notes_fts.rowid
    WHERE notes_fts MATCH :query AND notes.isArchived = 0
    ORDER BY bm25(notes_fts)
    LIMIT :limit
""")


class SearchIndex:
    """Ranked note lookup with graceful fallback.

    Args:
        database: Migrated Database to read through.
        max_results: Cap for search() results. Defaults to config.max_search_results.
        recent_limit: Default cap for recent_notes(). Defaults to
            config.recent_notes_limit.
    """

    def __init__(
        self,
        database: Database,
        max_results: Optional[int] = None,
        recent_limit: Optional[int] = None,
    ) -> None:
        self.database = database
        self.max_results = max_results or config.max_search_results
        self.recent_limit = recent_limit or config.recent_notes_limit
        self.available: bool = True

    # ------------------------------------------------------------------
    # Public query API
    # ------------------------------------------------------------------

    def search(self, query: str) -> List[Note]:
        """Search non-archived notes by token prefix, best match first.

        An empty or all-whitespace query returns recent_notes(). If the
        ranked query cannot run, a substring search with the same filter
        and cap is used instead, ordered by most recently updated.
        """
        if not query or not query.strip():
            return self.recent_notes()

        with timed_operation("search", query=query[:50]) as op:
            if not self.available:
                logger.debug("FTS5 unavailable, using fallback search")
                results = self._fallback_text_search(query)
                op["search_mode"] = "fallback"
            else:
                try:
                    results = self._ranked_search_with_recovery(query)
                    op["search_mode"] = "fts5"
                except SearchError as e:
                    logger.warning(f"Ranked search failed: {e}. Using fallback search.")
                    results = self._fallback_text_search(query)
                    op["search_mode"] = "fallback"
            op["result_count"] = len(results)
        return results

    def recent_notes(self, limit: Optional[int] = None) -> List[Note]:
        """Non-archived notes, most recently updated first."""
        limit = limit if limit is not None else self.recent_limit

        def _query(session: Session) -> List[Note]:
            db_notes = session.scalars(
                select(DBNote)
                .where(DBNote.is_archived.is_(False))
                .order_by(DBNote.updated_at.desc())
                .limit(limit)
            ).all()
            return [db_note_to_model(db) for db in db_notes]

        try:
            return self.database.read(_query, operation="recent_notes")
        except StorageError as e:
            logger.error(f"Error loading recent notes: {e}")
            return []

    def notes_for_date(self, day: Union[datetime.date, datetime.datetime]) -> List[Note]:
        """Non-archived notes created on the local calendar day ``day``.

        Newest first.
        """
        if isinstance(day, datetime.datetime):
            day = ensure_timezone_aware(day).astimezone().date()
        # Naive combine() is local wall time; astimezone() attaches the offset
        start = datetime.datetime.combine(day, datetime.time.min).astimezone()
        end = datetime.datetime.combine(
            day + datetime.timedelta(days=1), datetime.time.min
        ).astimezone()
        start_utc = to_storage_datetime(start)
        end_utc = to_storage_datetime(end)

        def _query(session: Session) -> List[Note]:
            db_notes = session.scalars(
                select(DBNote)
                .where(
                    DBNote.is_archived.is_(False),
                    DBNote.created_at >= start_utc,
                    DBNote.created_at < end_utc,
                )
                .order_by(DBNote.created_at.desc())
            ).all()
            return [db_note_to_model(db) for db in db_notes]

        try:
            return self.database.read(_query, operation="notes_for_date")
        except StorageError as e:
            logger.error(f"Error loading notes for {day}: {e}")
            return []

    def reset_availability(self) -> bool:
        """Re-enable ranked search after manual repair."""
        try:
            self.database.read(
                lambda session: session.execute(
                    text("INSERT INTO notes_fts(notes_fts) VALUES('integrity-check')")
                ),
                operation="fts_integrity_check",
            )
        except StorageError as e:
            logger.error(f"FTS5 still unavailable: {e}")
            self.available = False
            return False
        self.available = True
        logger.info("FTS5 availability reset, ranked search is enabled")
        return True

    # ------------------------------------------------------------------
    # Ranked search
    # ------------------------------------------------------------------

    def _ranked_search_with_recovery(self, query: str) -> List[Note]:
        try:
            return self._ranked_search(query)
        except SearchError as e:
            if e.code is not ErrorCode.FTS_CORRUPTED:
                raise
            logger.error(f"FTS5 corruption detected: {e}. Attempting auto-rebuild...")
            if not self._attempt_recovery():
                logger.error("FTS5 recovery failed. Disabling FTS5 for this session.")
                self.available = False
                raise
            logger.info("FTS5 rebuilt successfully, retrying search")
            return self._ranked_search(query)

    def _ranked_search(self, query: str) -> List[Note]:
        """Run the FTS5 MATCH query.

        Raises:
            SearchError: With code FTS_CORRUPTED when SQLite reports a
                malformed or corrupt index, SEARCH_FAILED otherwise.
        """
        match_query = build_prefix_match_query(query)

        def _query(session: Session) -> List[Note]:
            db_notes = session.scalars(
                select(DBNote).from_statement(_RANKED_SQL),
                {"query": match_query, "limit": self.max_results},
            ).all()
            return [db_note_to_model(db) for db in db_notes]

        try:
            return self.database.read(_query, operation="ranked_search")
        except StorageError as e:
            cause = str(e.original_error or e).lower()
            code = (
                ErrorCode.FTS_CORRUPTED
                if "malformed" in cause or "corrupt" in cause
                else ErrorCode.SEARCH_FAILED
            )
            raise SearchError(
                f"FTS5 query failed: {e.original_error or e}", query=query, code=code
            ) from e

    def _attempt_recovery(self) -> bool:
        """Attempt to recover FTS5 by rebuilding the index."""
        try:
            self.database.rebuild_search_index()
            return True
        except StorageError as e:
            logger.error(f"FTS5 rebuild failed: {e}")
            return False

    # ------------------------------------------------------------------
    # Fallback
    # ------------------------------------------------------------------

    def _fallback_text_search(self, query: str) -> List[Note]:
        """LIKE-based substring search used when FTS5 cannot answer.

        Never raises: a failure here is logged and yields an empty list.
        """
        search_term = f"%{escape_like_pattern(query.strip())}%"

        def _query(session: Session) -> List[Note]:
            db_notes = session.scalars(
                select(DBNote)
                .where(
                    DBNote.is_archived.is_(False),
                    or_(
                        DBNote.title.like(search_term, escape="\\"),
                        DBNote.content.like(search_term, escape="\\"),
                    ),
                )
                .order_by(DBNote.updated_at.desc())
                .limit(self.max_results)
            ).all()
            return [db_note_to_model(db) for db in db_notes]

        try:
            results = self.database.read(_query, operation="fallback_search")
        except Exception as e:
            logger.error(f"Fallback text search failed for '{query}': {e}")
            return []

        logger.debug(
            f"Fallback search returned {len(results)} results for query '{query}'"
        )
        return results
