"""Tests for the SQLite data store: schema changes and transactions."""
import threading
import time
from datetime import datetime

import pytest
from sqlalchemy import inspect, select, text
from sqlalchemy.exc import IntegrityError

from flowstate.exceptions import ErrorCode, StoreUnavailableError, TransactionError
from flowstate.models.db_models import DBNote
from flowstate.storage.database import SCHEMA_MIGRATIONS, Database


def _insert_note(session, note_id, title="t", content="c", archived=False):
    now = datetime(2024, 1, 1, 12, 0)
    session.add(
        DBNote(
            id=note_id,
            title=title,
            content=content,
            created_at=now,
            updated_at=now,
            word_count=len(content.split()),
            is_pinned=False,
            is_archived=archived,
        )
    )


def _fts_rowids(db, term):
    return db.read(
        lambda s: [
            row[0]
            for row in s.execute(
                text("SELECT rowid FROM notes_fts WHERE notes_fts MATCH :q"),
                {"q": term},
            )
        ]
    )


class TestSchemaMigration:
    """Tests for ordered, at-most-once schema changes."""

    def test_fresh_database_applies_all_changes(self, test_config):
        db = Database(test_config.get_db_url())
        try:
            applied = db.migrate_schema()
            assert applied == [identifier for identifier, _ in SCHEMA_MIGRATIONS]
            assert db.applied_migrations() == applied
            assert db.is_ready

            tables = set(inspect(db.engine).get_table_names())
            assert {"notes", "daily_stats", "schema_migrations", "notes_fts"} <= tables
            indexes = {ix["name"] for ix in inspect(db.engine).get_indexes("notes")}
            assert "idx_notes_updated" in indexes
        finally:
            db.close()

    def test_second_run_applies_nothing(self, test_config):
        url = test_config.get_db_url()
        first = Database(url)
        first.migrate_schema()
        first.close()

        second = Database(url)
        try:
            assert second.migrate_schema() == []
            assert second.is_ready
        finally:
            second.close()

    def test_new_change_is_applied_on_next_start(self, test_config):
        url = test_config.get_db_url()
        first = Database(url)
        first.migrate_schema()
        first.close()

        def _v3_add_table(conn):
            conn.execute(text("CREATE TABLE extra (id INTEGER PRIMARY KEY)"))

        second = Database(url, migrations=list(SCHEMA_MIGRATIONS) + [("v3_extra", _v3_add_table)])
        try:
            assert second.migrate_schema() == ["v3_extra"]
            assert "extra" in inspect(second.engine).get_table_names()
        finally:
            second.close()

    def test_failed_change_rolls_back_and_is_fatal(self, test_config):
        """A failing change leaves earlier changes in place and itself unapplied."""

        def _v3_broken(conn):
            conn.execute(text("CREATE TABLE half_done (id INTEGER PRIMARY KEY)"))
            conn.execute(text("THIS IS NOT SQL"))

        db = Database(
            test_config.get_db_url(),
            migrations=list(SCHEMA_MIGRATIONS) + [("v3_broken", _v3_broken)],
        )
        try:
            with pytest.raises(StoreUnavailableError) as exc_info:
                db.migrate_schema()

            assert exc_info.value.migration == "v3_broken"
            assert exc_info.value.code == ErrorCode.SCHEMA_MIGRATION_FAILED
            assert not db.is_ready

            tables = set(inspect(db.engine).get_table_names())
            assert "half_done" not in tables
            assert "notes" in tables
            assert db.applied_migrations() == ["v1_initial", "v2_notes_fts"]
        finally:
            db.close()

    def test_duplicate_identifiers_rejected(self, test_config):
        noop = lambda conn: None
        with pytest.raises(ValueError):
            Database(test_config.get_db_url(), migrations=[("a", noop), ("a", noop)])

    def test_access_before_migration_refused(self, test_config):
        db = Database(test_config.get_db_url())
        try:
            with pytest.raises(StoreUnavailableError):
                db.read(lambda s: s.execute(text("SELECT 1")).scalar())
            with pytest.raises(StoreUnavailableError):
                db.write(lambda s: None)
        finally:
            db.close()

    def test_access_after_close_refused(self, database):
        database.close()
        assert not database.is_ready
        with pytest.raises(StoreUnavailableError):
            database.read(lambda s: None)
        with pytest.raises(StoreUnavailableError):
            database.migrate_schema()


class TestTransactions:
    """Tests for atomic writes and snapshot reads."""

    def test_write_commits(self, database):
        database.write(lambda s: _insert_note(s, "A"))
        assert database.read(lambda s: s.get(DBNote, "A")) is not None

    def test_write_returns_mutation_result(self, database):
        assert database.write(lambda s: 42) == 42

    def test_failed_write_rolls_back_everything(self, database):
        database.write(lambda s: _insert_note(s, "A"))

        def _mutation(session):
            _insert_note(session, "B")
            session.flush()
            _insert_note(session, "A")  # duplicate primary key
            session.flush()

        with pytest.raises(TransactionError) as exc_info:
            database.write(_mutation, operation="duplicate")

        assert exc_info.value.code == ErrorCode.STORAGE_WRITE_FAILED
        assert isinstance(exc_info.value.original_error, IntegrityError)
        ids = database.read(lambda s: s.scalars(select(DBNote.id)).all())
        assert ids == ["A"]

    def test_failed_write_reports_given_code(self, database):
        database.write(lambda s: _insert_note(s, "A"))

        with pytest.raises(TransactionError) as exc_info:
            database.write(
                lambda s: _insert_note(s, "A"),
                operation="delete",
                code=ErrorCode.STORAGE_DELETE_FAILED,
            )

        assert exc_info.value.code == ErrorCode.STORAGE_DELETE_FAILED
        assert exc_info.value.operation == "delete"

    def test_failed_read_raises_transaction_error(self, database):
        with pytest.raises(TransactionError) as exc_info:
            database.read(lambda s: s.execute(text("SELECT * FROM missing_table")).all())
        assert exc_info.value.code == ErrorCode.STORAGE_READ_FAILED

    def test_concurrent_writes_are_serialised(self, database):
        """Two write transactions never overlap."""
        active = []
        overlaps = []
        lock = threading.Lock()

        def _slow_mutation(note_id):
            def _mutation(session):
                with lock:
                    active.append(note_id)
                    if len(active) > 1:
                        overlaps.append(tuple(active))
                time.sleep(0.05)
                _insert_note(session, note_id)
                with lock:
                    active.remove(note_id)
            return _mutation

        threads = [
            threading.Thread(target=database.write, args=(_slow_mutation(f"N{i}"),))
            for i in range(5)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlaps == []
        count = database.read(lambda s: len(s.scalars(select(DBNote.id)).all()))
        assert count == 5


class TestSearchIndexMaintenance:
    """The FTS companion table follows every row mutation in the same transaction."""

    def test_insert_is_indexed(self, database):
        database.write(lambda s: _insert_note(s, "A", content="zebra"))
        assert len(_fts_rowids(database, "zebra")) == 1

    def test_update_replaces_entry(self, database):
        database.write(lambda s: _insert_note(s, "A", content="zebra"))

        def _update(session):
            session.get(DBNote, "A").content = "giraffe"

        database.write(_update)
        assert _fts_rowids(database, "zebra") == []
        assert len(_fts_rowids(database, "giraffe")) == 1

    def test_delete_retracts_entry(self, database):
        database.write(lambda s: _insert_note(s, "A", content="zebra"))
        database.write(lambda s: s.delete(s.get(DBNote, "A")))
        assert _fts_rowids(database, "zebra") == []

    def test_rolled_back_insert_leaves_no_entry(self, database):
        def _mutation(session):
            _insert_note(session, "A", content="zebra")
            session.flush()
            session.add(DBNote(id="B"))  # NOT NULL timestamps missing
            session.flush()

        with pytest.raises(TransactionError):
            database.write(_mutation)
        assert _fts_rowids(database, "zebra") == []

    def test_rebuild_search_index(self, database):
        database.write(lambda s: _insert_note(s, "A", content="zebra"))
        database.write(lambda s: _insert_note(s, "B", content="zebu"))
        assert database.rebuild_search_index() == 2
        assert len(_fts_rowids(database, "zeb*")) == 2

    def test_existing_rows_indexed_when_fts_added(self, test_config):
        """Rows written before the FTS change are indexed when it is applied."""
        url = test_config.get_db_url()
        first = Database(url, migrations=SCHEMA_MIGRATIONS[:1])
        first.migrate_schema()
        first.write(lambda s: _insert_note(s, "A", content="pelican"))
        first.close()

        second = Database(url)
        try:
            assert second.migrate_schema() == ["v2_notes_fts"]
            assert len(_fts_rowids(second, "pelican")) == 1
        finally:
            second.close()
