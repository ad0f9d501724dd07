"""Repository for note storage, autosave and usage statistics."""

import datetime
import logging
import threading
from typing import Callable, List, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from flowstate.config import config
from flowstate.exceptions import ErrorCode, StorageError
from flowstate.models.db_models import DBDailyStats, DBNote
from flowstate.models.schema import (
    DailyStats,
    Note,
    ensure_timezone_aware,
    local_day_key,
    to_storage_datetime,
    utc_now,
)
from flowstate.storage.database import Database

logger = logging.getLogger(__name__)

ListingListener = Callable[[List[Note]], None]


def db_note_to_model(db_note: DBNote) -> Note:
    """Convert a SQLAlchemy DBNote to a domain Note."""
    return Note(
        id=db_note.id,
        title=db_note.title,
        content=db_note.content,
        created_at=ensure_timezone_aware(db_note.created_at),
        updated_at=ensure_timezone_aware(db_note.updated_at),
        word_count=db_note.word_count,
        is_pinned=bool(db_note.is_pinned),
        is_archived=bool(db_note.is_archived),
    )


class NoteRepository:
    """Repository for note storage and retrieval.

    Keeps an in-memory listing of non-archived notes (newest ``updated_at``
    first) that mirrors the store, tracks the currently open note, and owns
    the single autosave timer of the editing session.

    Store failures never escape: a failed save or delete is logged and
    leaves the in-memory state untouched, so the listing (and the
    listing-changed notifications) is the source of truth for what was
    actually persisted.
    """

    def __init__(
        self,
        database: Database,
        autosave_delay: Optional[float] = None,
        clock: Optional[Callable[[], datetime.datetime]] = None,
        title_max_length: Optional[int] = None,
    ) -> None:
        """Initialize the repository.

        Args:
            database: A Database whose schema has already been migrated.
            autosave_delay: Quiescence window in seconds before a scheduled
                autosave fires. Defaults to config.autosave_delay.
            clock: Callable returning the current time as an aware datetime.
                Defaults to utc_now.
            title_max_length: Maximum derived title length. Defaults to
                config.title_max_length.
        """
        self.database = database
        self.autosave_delay = (
            autosave_delay if autosave_delay is not None else config.autosave_delay
        )
        self._clock = clock or utc_now
        self.title_max_length = title_max_length or config.title_max_length

        # Guards the listing and the current note
        self._lock = threading.RLock()
        self._notes: List[Note] = []
        self._current_note: Optional[Note] = None
        self._listeners: List[ListingListener] = []

        # Held from timestamp lookup through listing update so saves apply
        # in order; taken before _autosave_lock, never after it
        self._save_lock = threading.RLock()

        # Autosave state; the generation counter lets a timer that already
        # woke up detect that it has been superseded
        self._autosave_lock = threading.Lock()
        self._autosave_timer: Optional[threading.Timer] = None
        self._autosave_note: Optional[Note] = None
        self._autosave_generation = 0

        self.load_notes()

    # =========================================================================
    # Listing
    # =========================================================================

    @property
    def notes(self) -> List[Note]:
        """Snapshot of the non-archived listing, most recently updated first."""
        with self._lock:
            return [n.model_copy() for n in self._notes]

    @property
    def current_note(self) -> Optional[Note]:
        """The note currently open in the editor, if any."""
        with self._lock:
            return self._current_note.model_copy() if self._current_note else None

    def load_notes(self) -> List[Note]:
        """(Re)load the non-archived listing from the store.

        A failed read leaves an empty listing.
        """
        def _query(session: Session) -> List[Note]:
            db_notes = session.scalars(
                select(DBNote)
                .where(DBNote.is_archived.is_(False))
                .order_by(DBNote.updated_at.desc())
            ).all()
            return [db_note_to_model(db) for db in db_notes]

        try:
            loaded = self.database.read(_query, operation="load_notes")
        except StorageError as e:
            logger.error(f"Error loading notes: {e}")
            loaded = []

        with self._lock:
            self._notes = loaded
            if self._current_note is not None:
                self._current_note = self._find(self._current_note.id)
        logger.info(f"Loaded {len(loaded)} notes")
        self._notify_listeners()
        return [n.model_copy() for n in loaded]

    def add_listener(self, callback: ListingListener) -> None:
        """Register a callback invoked with a snapshot whenever the listing changes.

        Callbacks may run on the autosave timer thread.
        """
        with self._lock:
            if callback not in self._listeners:
                self._listeners.append(callback)

    def remove_listener(self, callback: ListingListener) -> None:
        """Unregister a listing-changed callback (no-op if unknown)."""
        with self._lock:
            if callback in self._listeners:
                self._listeners.remove(callback)

    def _notify_listeners(self) -> None:
        with self._lock:
            listeners = list(self._listeners)
            snapshot = list(self._notes)
        for callback in listeners:
            try:
                callback([n.model_copy() for n in snapshot])
            except Exception as e:
                logger.warning(f"Listing listener {callback!r} failed: {e}")

    def _find(self, note_id: str) -> Optional[Note]:
        for note in self._notes:
            if note.id == note_id:
                return note
        return None

    # =========================================================================
    # CRUD
    # =========================================================================

    def save(self, note: Note) -> Optional[Note]:
        """Persist ``note`` with a fresh ``updated_at`` and derived fields.

        ``updated_at`` never moves backwards and never precedes
        ``created_at``, even if the clock does.

        Returns:
            The saved copy of the note, or None if the write failed (the
            failure is logged and in-memory state is left as it was).
        """
        to_save = note.model_copy()
        with self._save_lock:
            with self._lock:
                previous = self._find(note.id)
            floor = max(
                to_save.created_at,
                to_save.updated_at,
                previous.updated_at if previous else to_save.created_at,
            )
            to_save.updated_at = max(self._clock(), floor)
            return self._persist(to_save, operation="save")

    def import_note(self, note: Note) -> Optional[Note]:
        """Persist ``note`` keeping its timestamps (legacy import path).

        Derived fields are still recomputed from the content.
        """
        to_save = note.model_copy()
        if to_save.updated_at < to_save.created_at:
            to_save.updated_at = to_save.created_at
        with self._save_lock:
            return self._persist(to_save, operation="import_note")

    def _persist(self, note: Note, operation: str) -> Optional[Note]:
        note.refresh_derived_fields(self.title_max_length)

        try:
            self.database.write(
                lambda session: self._sync_note_to_db(session, note),
                operation=operation,
            )
        except StorageError as e:
            logger.error(f"Error saving note {note.id}: {e}")
            return None

        with self._lock:
            self._notes = [n for n in self._notes if n.id != note.id]
            if not note.is_archived:
                self._notes.append(note)
            self._notes.sort(key=lambda n: n.updated_at, reverse=True)
            if self._current_note is not None and self._current_note.id == note.id:
                self._current_note = note
        self._notify_listeners()
        return note.model_copy()

    @staticmethod
    def _sync_note_to_db(session: Session, note: Note) -> None:
        """Upsert a Note into the notes table within an existing session.

        The FTS triggers fire inside the same transaction: an UPDATE
        retracts the old index entry and inserts the new one.
        """
        db_note = session.get(DBNote, note.id)
        if db_note is None:
            db_note = DBNote(id=note.id)
            session.add(db_note)
        db_note.title = note.title
        db_note.content = note.content
        db_note.created_at = to_storage_datetime(note.created_at)
        db_note.updated_at = to_storage_datetime(note.updated_at)
        db_note.word_count = note.word_count
        db_note.is_pinned = note.is_pinned
        db_note.is_archived = note.is_archived

    def create_note(self, content: str = "") -> Note:
        """Create, save and open a new note.

        Returns:
            The saved note. If the write failed, the unsaved note is
            returned and the current note is left unchanged.
        """
        now = self._clock()
        note = Note(content=content, created_at=now, updated_at=now)
        note.refresh_derived_fields(self.title_max_length)

        saved = self.save(note)
        if saved is None:
            logger.error(f"Error creating note {note.id}")
            return note

        with self._lock:
            self._current_note = self._find(saved.id) or saved
        logger.info(f"Created new note: {saved.id}")
        return saved

    def delete(self, note: Note) -> bool:
        """Hard-delete ``note`` (row and index entries) from the store.

        If it was the current note, the most recently updated remaining
        note becomes current, or a fresh blank note when none remain.

        Returns:
            True if the row was deleted, False if the write failed.
        """
        with self._save_lock:
            # A pending or in-flight autosave for the deleted note must not
            # resurrect it
            self._drop_pending_autosave_for(note.id)

            try:
                self.database.write(
                    lambda session: session.execute(
                        delete(DBNote).where(DBNote.id == note.id)
                    ),
                    operation="delete",
                    code=ErrorCode.STORAGE_DELETE_FAILED,
                )
            except StorageError as e:
                logger.error(f"Error deleting note {note.id}: {e}")
                return False

            with self._lock:
                self._notes = [n for n in self._notes if n.id != note.id]
                was_current = (
                    self._current_note is not None and self._current_note.id == note.id
                )
                if was_current:
                    self._current_note = self._notes[0] if self._notes else None
                needs_blank = was_current and self._current_note is None
            self._notify_listeners()

            if needs_blank:
                self.create_note()

        logger.info(f"Deleted note: {note.id}")
        return True

    def get_note(self, note_id: str) -> Optional[Note]:
        """Look up a note in the in-memory listing."""
        with self._lock:
            note = self._find(note_id)
            return note.model_copy() if note else None

    def get_last_edited(self) -> Optional[Note]:
        """Return the most recently updated note of the listing."""
        with self._lock:
            return self._notes[0].model_copy() if self._notes else None

    def count_notes(self) -> int:
        """Count every row in the notes table (archived notes included).

        Raises:
            StorageError: If the store could not be read.
        """
        return self.database.read(
            lambda session: session.scalar(select(func.count()).select_from(DBNote)) or 0,
            operation="count_notes",
        )

    def open_note(self, note: Note) -> None:
        """Make ``note`` the current note, flushing any pending autosave first."""
        self.flush_auto_save()
        with self._lock:
            self._current_note = self._find(note.id) or note.model_copy()

    # =========================================================================
    # Autosave
    # =========================================================================

    @property
    def has_pending_auto_save(self) -> bool:
        """Whether an autosave is scheduled and has not fired yet."""
        with self._autosave_lock:
            return self._autosave_note is not None

    def schedule_auto_save(self, note: Note) -> None:
        """Save ``note`` once no newer edit arrives within the autosave delay.

        Any previously scheduled autosave is cancelled and replaced
        atomically, so two back-to-back calls never both fire.
        """
        with self._autosave_lock:
            self._cancel_timer_unlocked()
            self._autosave_generation += 1
            self._autosave_note = note.model_copy()
            timer = threading.Timer(
                self.autosave_delay,
                self._fire_auto_save,
                args=(self._autosave_generation,),
            )
            timer.daemon = True
            self._autosave_timer = timer
            timer.start()

    def _fire_auto_save(self, generation: int) -> None:
        """Called by the timer. Saves the pending note unless superseded.

        The generation is checked only once the save lock is held, so a
        cancel or explicit save that got in first wins, and one that comes
        later waits for this write to finish.
        """
        with self._save_lock:
            with self._autosave_lock:
                if generation != self._autosave_generation or self._autosave_note is None:
                    return
                note = self._autosave_note
                self._autosave_note = None
                self._autosave_timer = None
            if self.save(note) is not None:
                logger.debug(f"Auto-saved note: {note.id}")

    def cancel_auto_save(self) -> None:
        """Drop any pending autosave without saving (no-op if none is pending)."""
        with self._autosave_lock:
            self._cancel_timer_unlocked()

    def _cancel_timer_unlocked(self) -> None:
        if self._autosave_timer is not None:
            self._autosave_timer.cancel()
            self._autosave_timer = None
        self._autosave_note = None
        self._autosave_generation += 1

    def _drop_pending_autosave_for(self, note_id: str) -> None:
        with self._autosave_lock:
            if self._autosave_note is not None and self._autosave_note.id == note_id:
                self._cancel_timer_unlocked()

    def flush_auto_save(self) -> Optional[Note]:
        """Cancel the pending autosave and save its content synchronously.

        Returns:
            The saved note, or None if nothing was pending or the save failed.
        """
        # Also waits out an autosave the timer is already writing
        with self._save_lock:
            with self._autosave_lock:
                note = self._autosave_note
                self._cancel_timer_unlocked()
            if note is None:
                return None
            return self.save(note)

    def save_immediately(self, note: Note) -> Optional[Note]:
        """Cancel any pending autosave and save ``note`` now.

        Used on explicit save, note switch and application termination.
        """
        self.cancel_auto_save()
        saved = self.save(note)
        if saved is not None:
            logger.debug(f"Immediately saved note: {note.id}")
        return saved

    def shutdown(self) -> None:
        """Flush pending autosave content before the application exits."""
        saved = self.flush_auto_save()
        if saved is not None:
            logger.info(f"Flushed pending autosave for note {saved.id} on shutdown")

    # =========================================================================
    # Usage statistics
    # =========================================================================

    def _today(self) -> str:
        return local_day_key(self._clock())

    def _update_daily_stats(self, operation: str, **increments: int) -> None:
        """Read-modify-write today's DailyStats row, creating it lazily."""
        day = self._today()

        def _upsert(session: Session) -> None:
            db_stats = session.get(DBDailyStats, day)
            if db_stats is None:
                db_stats = DBDailyStats(
                    date=day,
                    words_written=0,
                    notes_created=0,
                    notes_updated=0,
                    active_minutes=0,
                    ai_actions_used=0,
                )
                session.add(db_stats)
            for column, amount in increments.items():
                setattr(db_stats, column, getattr(db_stats, column) + amount)

        try:
            self.database.write(_upsert, operation=operation)
        except StorageError as e:
            logger.error(f"Error updating daily stats for {day}: {e}")

    def track_note_created(self) -> None:
        """Count a note created today."""
        self._update_daily_stats("track_note_created", notes_created=1)

    def track_note_updated(self) -> None:
        """Count a note updated today."""
        self._update_daily_stats("track_note_updated", notes_updated=1)

    def track_words_written(self, count: int) -> None:
        """Add ``count`` words to today's total."""
        if count <= 0:
            return
        self._update_daily_stats("track_words_written", words_written=count)

    def track_active_minutes(self, minutes: int) -> None:
        """Add ``minutes`` of active writing time to today's total."""
        if minutes <= 0:
            return
        self._update_daily_stats("track_active_minutes", active_minutes=minutes)

    def track_ai_action(self) -> None:
        """Count one AI-assist invocation today."""
        self._update_daily_stats("track_ai_action", ai_actions_used=1)

    @staticmethod
    def _db_stats_to_model(db_stats: DBDailyStats) -> DailyStats:
        return DailyStats(
            date=db_stats.date,
            words_written=db_stats.words_written,
            notes_created=db_stats.notes_created,
            notes_updated=db_stats.notes_updated,
            active_minutes=db_stats.active_minutes,
            ai_actions_used=db_stats.ai_actions_used,
        )

    def get_daily_stats(self, day: Optional[datetime.date] = None) -> DailyStats:
        """Return the counters for ``day`` (default: today).

        Days without activity, and failed reads, yield zeroed counters.
        """
        key = DailyStats(date=day).date if day is not None else self._today()

        def _query(session: Session) -> Optional[DailyStats]:
            db_stats = session.get(DBDailyStats, key)
            return self._db_stats_to_model(db_stats) if db_stats else None

        try:
            stats = self.database.read(_query, operation="get_daily_stats")
        except StorageError as e:
            logger.error(f"Error reading daily stats for {key}: {e}")
            stats = None
        return stats or DailyStats(date=key)

    def get_stats_range(
        self, start: datetime.date, end: datetime.date
    ) -> List[DailyStats]:
        """Return stored DailyStats rows for ``start``..``end`` inclusive, by date."""
        start_key = DailyStats(date=start).date
        end_key = DailyStats(date=end).date

        def _query(session: Session) -> List[DailyStats]:
            rows = session.scalars(
                select(DBDailyStats)
                .where(DBDailyStats.date >= start_key, DBDailyStats.date <= end_key)
                .order_by(DBDailyStats.date)
            ).all()
            return [self._db_stats_to_model(row) for row in rows]

        try:
            return self.database.read(_query, operation="get_stats_range")
        except StorageError as e:
            logger.error(f"Error reading daily stats {start_key}..{end_key}: {e}")
            return []
