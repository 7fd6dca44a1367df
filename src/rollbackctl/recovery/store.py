"""SQLite catalog of rollback points and rollback executions.

Records are stored as JSON payloads next to a few indexed columns. Writes
are serialized through a store-level lock; each write publishes a complete
record, so readers never observe a half-updated execution.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Generic, TypeVar

from .errors import ExecutionInProgress, NotFound
from .models import TERMINAL_STATUSES, RollbackExecution, RollbackPoint

logger = logging.getLogger(__name__)

DEFAULT_MAX_POINTS = 50
DEFAULT_MAX_EXECUTIONS = 100

_PAGE_SIZE = 100

_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)

T = TypeVar("T")


class RecordListing(Generic[T]):
    """Lazy, restartable view over a query.

    Every iteration runs the query again and streams rows in pages, so a
    listing can be iterated any number of times and always reflects the
    latest committed state.
    """

    def __init__(
        self,
        connect: Callable[[], sqlite3.Connection],
        sql: str,
        params: tuple[object, ...],
        parse: Callable[[str], T],
    ):
        self._connect = connect
        self._sql = sql
        self._params = params
        self._parse = parse

    def __iter__(self) -> Iterator[T]:
        cursor = self._connect().execute(self._sql, self._params)
        try:
            while rows := cursor.fetchmany(_PAGE_SIZE):
                for row in rows:
                    yield self._parse(row["payload"])
        finally:
            cursor.close()

    def first(self) -> T | None:
        return next(iter(self), None)


class RollbackPointStore:
    """Durable catalog of rollback points and executions.

    Attributes:
        db_path: Path to the SQLite database file.
        max_points: Retention cap of rollback points per environment.
        max_executions: Retention cap of terminal executions per environment.
    """

    def __init__(
        self,
        db_path: Path | str,
        max_points: int = DEFAULT_MAX_POINTS,
        max_executions: int = DEFAULT_MAX_EXECUTIONS,
    ):
        self.db_path = Path(db_path)
        self.max_points = max_points
        self.max_executions = max_executions
        self._local = threading.local()
        self._write_lock = threading.RLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create a thread-local database connection."""
        conn: sqlite3.Connection | None = getattr(self._local, "connection", None)
        if conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                timeout=30.0,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode = WAL")
            self._local.connection = conn
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Cursor]:
        """Run a serialized write transaction with automatic commit/rollback."""
        with self._write_lock:
            conn = self._get_connection()
            cursor = conn.cursor()
            cursor.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as cursor:
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rollback_points (
                    row_no INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    environment TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS rollback_executions (
                    row_no INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    environment TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    status TEXT NOT NULL,
                    payload TEXT NOT NULL
                )
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_points_env_created
                ON rollback_points(environment, created_at DESC)
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_executions_env_started
                ON rollback_executions(environment, started_at DESC)
                """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_executions_status
                ON rollback_executions(environment, status)
                """
            )

    def close(self) -> None:
        conn = getattr(self._local, "connection", None)
        if conn is not None:
            conn.close()
            self._local.connection = None

    # ------------------------------------------------------------------
    # Rollback points
    # ------------------------------------------------------------------

    def save_point(
        self, point: RollbackPoint, protect: Iterable[str] = ()
    ) -> list[RollbackPoint]:
        """Persist a rollback point, then enforce the per-environment cap.

        Args:
            point: The point to store. Saving the same point again is a no-op.
            protect: Point ids that must survive this eviction pass.

        Returns:
            The points evicted by retention, oldest first.
        """
        with self._transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO rollback_points (id, environment, created_at, payload)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET payload = excluded.payload
                """,
                (
                    point.id,
                    point.environment,
                    point.created_at.isoformat(),
                    point.model_dump_json(),
                ),
            )
        # Eviction only after the new point is committed.
        return self._evict_points(point.environment, {point.id, *protect})

    def _evict_points(self, environment: str, protected: set[str]) -> list[RollbackPoint]:
        with self._transaction() as cursor:
            rows = cursor.execute(
                """
                SELECT id, payload FROM rollback_points
                WHERE environment = ?
                ORDER BY created_at ASC, row_no ASC
                """,
                (environment,),
            ).fetchall()

            excess = len(rows) - self.max_points
            evicted: list[RollbackPoint] = []
            for row in rows:
                if excess <= 0:
                    break
                if row["id"] in protected:
                    continue
                cursor.execute("DELETE FROM rollback_points WHERE id = ?", (row["id"],))
                evicted.append(RollbackPoint.model_validate_json(row["payload"]))
                excess -= 1

        for point in evicted:
            logger.info("Pruned rollback point %s (%s)", point.id, environment)
        return evicted

    def get_point(self, point_id: str) -> RollbackPoint:
        """Load a rollback point.

        Raises:
            NotFound: If no point has this id.
        """
        row = (
            self._get_connection()
            .execute("SELECT payload FROM rollback_points WHERE id = ?", (point_id,))
            .fetchone()
        )
        if row is None:
            raise NotFound("Rollback point", point_id)
        return RollbackPoint.model_validate_json(row["payload"])

    def list_points(self, environment: str | None = None) -> RecordListing[RollbackPoint]:
        """Rollback points, newest first, optionally for one environment."""
        where, params = _environment_filter(environment)
        return RecordListing(
            self._get_connection,
            f"SELECT payload FROM rollback_points{where} ORDER BY created_at DESC, row_no DESC",
            params,
            RollbackPoint.model_validate_json,
        )

    # ------------------------------------------------------------------
    # Rollback executions
    # ------------------------------------------------------------------

    def begin_execution(self, execution: RollbackExecution) -> None:
        """Insert a new execution unless the environment already has one in flight.

        Raises:
            ExecutionInProgress: Nothing is persisted in that case.
        """
        with self._transaction(immediate=True) as cursor:
            row = cursor.execute(
                f"""
                SELECT id FROM rollback_executions
                WHERE environment = ? AND status NOT IN ({_placeholders(_TERMINAL_VALUES)})
                LIMIT 1
                """,
                (execution.environment, *_TERMINAL_VALUES),
            ).fetchone()
            if row is not None:
                raise ExecutionInProgress(execution.environment, row["id"])
            self._upsert_execution(cursor, execution)

        self._evict_executions(execution.environment)

    def save_execution(self, execution: RollbackExecution) -> list[RollbackExecution]:
        """Persist the latest state of an execution, then enforce retention.

        Returns:
            The executions evicted by retention, oldest first.
        """
        with self._transaction() as cursor:
            self._upsert_execution(cursor, execution)
        return self._evict_executions(execution.environment)

    def _upsert_execution(self, cursor: sqlite3.Cursor, execution: RollbackExecution) -> None:
        cursor.execute(
            """
            INSERT INTO rollback_executions (id, environment, started_at, status, payload)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                status = excluded.status,
                payload = excluded.payload
            """,
            (
                execution.id,
                execution.environment,
                execution.started_at.isoformat(),
                execution.status.value,
                execution.model_dump_json(),
            ),
        )

    def _evict_executions(self, environment: str) -> list[RollbackExecution]:
        with self._transaction() as cursor:
            total = cursor.execute(
                "SELECT COUNT(*) FROM rollback_executions WHERE environment = ?",
                (environment,),
            ).fetchone()[0]
            excess = total - self.max_executions
            if excess <= 0:
                return []

            # In-flight executions are never evicted.
            rows = cursor.execute(
                f"""
                SELECT id, payload FROM rollback_executions
                WHERE environment = ? AND status IN ({_placeholders(_TERMINAL_VALUES)})
                ORDER BY started_at ASC, row_no ASC
                LIMIT ?
                """,
                (environment, *_TERMINAL_VALUES, excess),
            ).fetchall()
            for row in rows:
                cursor.execute("DELETE FROM rollback_executions WHERE id = ?", (row["id"],))

        return [RollbackExecution.model_validate_json(row["payload"]) for row in rows]

    def get_execution(self, execution_id: str) -> RollbackExecution:
        """Load a rollback execution.

        Raises:
            NotFound: If no execution has this id.
        """
        row = (
            self._get_connection()
            .execute("SELECT payload FROM rollback_executions WHERE id = ?", (execution_id,))
            .fetchone()
        )
        if row is None:
            raise NotFound("Rollback execution", execution_id)
        return RollbackExecution.model_validate_json(row["payload"])

    def list_executions(
        self, environment: str | None = None
    ) -> RecordListing[RollbackExecution]:
        """Rollback executions, newest first, optionally for one environment."""
        where, params = _environment_filter(environment)
        return RecordListing(
            self._get_connection,
            f"SELECT payload FROM rollback_executions{where} "
            "ORDER BY started_at DESC, row_no DESC",
            params,
            RollbackExecution.model_validate_json,
        )

    def active_execution(self, environment: str) -> RollbackExecution | None:
        """The in-flight execution for an environment, if there is one."""
        row = (
            self._get_connection()
            .execute(
                f"""
                SELECT payload FROM rollback_executions
                WHERE environment = ? AND status NOT IN ({_placeholders(_TERMINAL_VALUES)})
                ORDER BY started_at DESC LIMIT 1
                """,
                (environment, *_TERMINAL_VALUES),
            )
            .fetchone()
        )
        return RollbackExecution.model_validate_json(row["payload"]) if row else None


def _placeholders(values: tuple[object, ...]) -> str:
    return ", ".join("?" for _ in values)


def _environment_filter(environment: str | None) -> tuple[str, tuple[object, ...]]:
    if environment is None:
        return "", ()
    return " WHERE environment = ?", (environment,)
