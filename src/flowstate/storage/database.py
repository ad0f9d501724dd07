"""Durable, schema-versioned SQLite store.

Owns the physical layout (tables, indexes, FTS5 companion table and its
triggers), the ordered list of schema changes, and the write-serialization
discipline: write transactions run one at a time behind a process-wide
lock while reads run concurrently against committed WAL snapshots.
"""
import logging
import threading
from typing import Callable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import create_engine, event, func, insert, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool

from flowstate.config import config
from flowstate.exceptions import (
    ErrorCode,
    StoreUnavailableError,
    TransactionError,
)
from flowstate.models.db_models import Base, DBDailyStats, DBNote, DBSchemaMigration
from flowstate.models.schema import to_storage_datetime, utc_now
from flowstate.observability import timed_operation

logger = logging.getLogger(__name__)

T = TypeVar("T")

SchemaChange = Tuple[str, Callable[[Connection], None]]


def _v1_initial(conn: Connection) -> None:
    """Create the notes and daily_stats tables (with the updatedAt index)."""
    Base.metadata.create_all(
        conn, tables=[DBNote.__table__, DBDailyStats.__table__]
    )


def _v2_notes_fts(conn: Connection) -> None:
    """Create the FTS5 companion index over notes(title, content).

    The virtual table uses notes as an external content table keyed by
    rowid. Triggers retract and insert index entries in the same
    transaction as the row mutation, so the index can never lag the table.
    """
    conn.execute(text("""
        CREATE VIRTUAL TABLE notes_fts USING fts5(
            title,
            content,
            content='notes',
            content_rowid='rowid'
        )
    """))

    conn.execute(text("""
        CREATE TRIGGER notes_ai AFTER INSERT ON notes BEGIN
            INSERT INTO notes_fts(rowid, title, content)
            VALUES (NEW.rowid, NEW.title, NEW.content);
        END
    """))

    conn.execute(text("""
        CREATE TRIGGER notes_ad AFTER DELETE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, content)
            VALUES ('delete', OLD.rowid, OLD.title, OLD.content);
        END
    """))

    conn.execute(text("""
        CREATE TRIGGER notes_au AFTER UPDATE ON notes BEGIN
            INSERT INTO notes_fts(notes_fts, rowid, title, content)
            VALUES ('delete', OLD.rowid, OLD.title, OLD.content);
            INSERT INTO notes_fts(rowid, title, content)
            VALUES (NEW.rowid, NEW.title, NEW.content);
        END
    """))

    # Index rows that existed before this change
    conn.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))


# Ordered; identifiers are recorded in schema_migrations once applied
SCHEMA_MIGRATIONS: Sequence[SchemaChange] = (
    ("v1_initial", _v1_initial),
    ("v2_notes_fts", _v2_notes_fts),
)


def create_store_engine(url: str) -> Engine:
    """Create an engine with hardened SQLite configuration.

    - WAL (Write-Ahead Logging) so readers see committed snapshots while a
      writer is active
    - NORMAL synchronous mode
    - QueuePool for connection reuse; connections may move between threads
      (the autosave timer writes from its own thread)
    - Explicit BEGIN instead of pysqlite's implicit transactions, so schema
      changes (DDL) roll back together with everything else
    """
    engine = create_engine(
        url,
        poolclass=QueuePool,
        pool_size=5,           # Base pool size (concurrent reads)
        max_overflow=10,
        pool_timeout=30,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False, "timeout": 30},
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        # Hand transaction control to the "begin" listener below
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA cache_size=-16000")  # 16MB cache
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


class Database:
    """Transactional access to the Flowstate SQLite store.

    Construct it, then call migrate_schema() before anything else; read()
    and write() refuse to run against a store whose schema is not current.

    Args:
        url: SQLAlchemy database URL. Defaults to the configured database path.
        migrations: Ordered schema changes. Defaults to SCHEMA_MIGRATIONS.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        migrations: Optional[Iterable[SchemaChange]] = None,
    ) -> None:
        self.url = url or config.get_db_url()
        self._migrations: List[SchemaChange] = list(
            SCHEMA_MIGRATIONS if migrations is None else migrations
        )
        identifiers = [identifier for identifier, _ in self._migrations]
        if len(identifiers) != len(set(identifiers)):
            raise ValueError("Schema change identifiers must be unique")

        # SQLite is single-writer; serialise writers in-process instead of
        # letting them fight over the database lock
        self._write_lock = threading.Lock()
        self._ready = False
        self._closed = False

        try:
            self.engine = create_store_engine(self.url)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(
                f"Could not create database engine for {self.url}",
                original_error=e,
            ) from e
        self.session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @property
    def is_ready(self) -> bool:
        """Whether migrate_schema() has completed and the store is open."""
        return self._ready and not self._closed

    # ------------------------------------------------------------------
    # Schema evolution
    # ------------------------------------------------------------------

    def migrate_schema(self) -> List[str]:
        """Apply every schema change that has not been applied yet.

        Each change runs in its own transaction together with the row that
        records it, so a failure leaves earlier changes in place and the
        failed change unapplied.

        Returns:
            Identifiers of the changes applied by this call, in order.

        Raises:
            StoreUnavailableError: If the store cannot be opened or a change
                fails. Callers must treat this as fatal.
        """
        if self._closed:
            raise StoreUnavailableError("Database has been closed")

        applied_now: List[str] = []
        with timed_operation("migrate_schema", url=self.url) as op:
            try:
                with self.engine.begin() as conn:
                    DBSchemaMigration.__table__.create(conn, checkfirst=True)
                already_applied = set(self._fetch_applied())
            except SQLAlchemyError as e:
                logger.error(f"Failed to open database {self.url}: {e}")
                raise StoreUnavailableError(
                    f"Could not open database {self.url}",
                    original_error=e,
                ) from e

            for identifier, change in self._migrations:
                if identifier in already_applied:
                    continue
                try:
                    with self._write_lock, self.engine.begin() as conn:
                        change(conn)
                        conn.execute(
                            insert(DBSchemaMigration.__table__).values(
                                identifier=identifier,
                                applied_at=to_storage_datetime(utc_now()),
                            )
                        )
                except Exception as e:
                    logger.error(f"Schema change '{identifier}' failed: {e}")
                    raise StoreUnavailableError(
                        f"Schema change '{identifier}' failed",
                        migration=identifier,
                        code=ErrorCode.SCHEMA_MIGRATION_FAILED,
                        original_error=e,
                    ) from e
                applied_now.append(identifier)
                logger.info(f"Applied schema change '{identifier}'")

            op["applied"] = len(applied_now)

        self._ready = True
        return applied_now

    def applied_migrations(self) -> List[str]:
        """Identifiers of all applied schema changes, oldest first."""
        try:
            return self._fetch_applied()
        except SQLAlchemyError as e:
            raise TransactionError(
                "Could not list applied schema changes",
                operation="applied_migrations",
                original_error=e,
            ) from e

    def _fetch_applied(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(DBSchemaMigration.identifier).order_by(
                    DBSchemaMigration.applied_at, DBSchemaMigration.identifier
                )
            ).all()
        return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Transactional access
    # ------------------------------------------------------------------

    def _ensure_ready(self) -> None:
        if self._closed:
            raise StoreUnavailableError("Database has been closed")
        if not self._ready:
            raise StoreUnavailableError(
                "Database schema has not been migrated; call migrate_schema() first"
            )

    def write(
        self,
        mutation: Callable[[Session], T],
        operation: str = "write",
        code: ErrorCode = ErrorCode.STORAGE_WRITE_FAILED,
    ) -> T:
        """Run ``mutation`` inside a single write transaction.

        All effects commit together or the transaction is rolled back.
        Concurrent callers are serialised in submission order of the lock.
        ``code`` is reported on the TransactionError raised for a rollback.

        Raises:
            StoreUnavailableError: If the schema has not been migrated.
            TransactionError: If the database rejected the transaction.
        """
        self._ensure_ready()
        with self._write_lock:
            with self.session_factory() as session:
                try:
                    result = mutation(session)
                    session.commit()
                    return result
                except SQLAlchemyError as e:
                    session.rollback()
                    logger.debug(f"Rolled back write '{operation}': {e}")
                    raise TransactionError(
                        f"Write transaction '{operation}' failed",
                        operation=operation,
                        code=code,
                        original_error=e,
                    ) from e

    def read(self, query: Callable[[Session], T], operation: str = "read") -> T:
        """Run ``query`` against a committed snapshot.

        Reads never take the writer lock.

        Raises:
            StoreUnavailableError: If the schema has not been migrated.
            TransactionError: If the query failed.
        """
        self._ensure_ready()
        with self.session_factory() as session:
            try:
                return query(session)
            except SQLAlchemyError as e:
                raise TransactionError(
                    f"Read transaction '{operation}' failed",
                    operation=operation,
                    code=ErrorCode.STORAGE_READ_FAILED,
                    original_error=e,
                ) from e

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def rebuild_search_index(self) -> int:
        """Rebuild the FTS5 index from the notes table.

        Useful when the FTS index reports corruption.

        Returns:
            Number of notes indexed.
        """
        def _rebuild(session: Session) -> int:
            session.execute(text("INSERT INTO notes_fts(notes_fts) VALUES('rebuild')"))
            return session.scalar(select(func.count()).select_from(DBNote)) or 0

        count = self.write(_rebuild, operation="rebuild_search_index")
        logger.info(f"FTS5 index rebuilt with {count} notes")
        return count

    def close(self) -> None:
        """Dispose of the engine; the store cannot be used afterwards."""
        if self._closed:
            return
        self._closed = True
        self._ready = False
        self.engine.dispose()
        logger.debug(f"Database closed: {self.url}")
