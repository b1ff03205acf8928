"""
tdd-orchestrator — SQLite state database.

Purpose
- Schema management, checksummed migrations, and connection lifecycle for the
  work-item table, stream cursors, applied-signal keys, escalation records,
  the append-only audit trail, attention windows, and operator requests.

Connections are short-lived and opened per operation; WAL mode keeps
``status`` readable while a window is running in another process.
"""

from __future__ import annotations

import hashlib
import sqlite3
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Final

from tdd_orchestrator.constants import STATE_DB_SCHEMA_VERSION
from tdd_orchestrator.domain.models import (
    EscalationReason,
    Phase,
    WindowStatus,
    WorkItemStatus,
    iso8601z,
    utc_now,
)

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000
DEFAULT_BUSY_RETRY_LIMIT: Final[int] = 4
DEFAULT_BUSY_RETRY_BACKOFF_MS: Final[int] = 25


def _sql_enum(values: Iterable[str]) -> str:
    return ",".join(f"'{value}'" for value in sorted(values))


_PHASE_VALUES: Final[str] = _sql_enum(item.value for item in Phase)
_STATUS_VALUES: Final[str] = _sql_enum(item.value for item in WorkItemStatus)
_REASON_VALUES: Final[str] = _sql_enum(item.value for item in EscalationReason)
_WINDOW_STATUS_VALUES: Final[str] = _sql_enum(item.value for item in WindowStatus)

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_MIGRATION_0001_STATEMENTS: Final[tuple[str, ...]] = (
    _SCHEMA_VERSIONS_TABLE_SQL,
    f"""
    CREATE TABLE IF NOT EXISTS work_items (
        id TEXT PRIMARY KEY,
        ticket_id TEXT NOT NULL,
        project_ref TEXT NOT NULL,
        phase TEXT NOT NULL CHECK (phase IN ({_PHASE_VALUES})),
        status TEXT NOT NULL CHECK (status IN ({_STATUS_VALUES})),
        escalation_reason TEXT CHECK (
            escalation_reason IS NULL OR escalation_reason IN ({_REASON_VALUES})
        ),
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS stream_cursors (
        stream_id TEXT PRIMARY KEY,
        path TEXT NOT NULL,
        epoch INTEGER NOT NULL CHECK (epoch >= 0),
        byte_offset INTEGER NOT NULL CHECK (byte_offset >= 0),
        sequence INTEGER NOT NULL CHECK (sequence >= 0),
        inode INTEGER,
        size INTEGER NOT NULL CHECK (size >= 0),
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS applied_signals (
        work_item_id TEXT NOT NULL,
        signal_key TEXT NOT NULL,
        applied_at TEXT NOT NULL,
        PRIMARY KEY (work_item_id, signal_key),
        FOREIGN KEY(work_item_id) REFERENCES work_items(id) ON DELETE CASCADE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS escalation_records (
        id TEXT PRIMARY KEY,
        work_item_id TEXT NOT NULL,
        phase TEXT NOT NULL CHECK (phase IN ({_PHASE_VALUES})),
        reason TEXT NOT NULL CHECK (reason IN ({_REASON_VALUES})),
        created_at TEXT NOT NULL,
        cleared_at TEXT,
        payload_json TEXT NOT NULL,
        FOREIGN KEY(work_item_id) REFERENCES work_items(id) ON DELETE CASCADE
    )
    """,
    f"""
    CREATE TABLE IF NOT EXISTS audit_trail (
        seq INTEGER PRIMARY KEY AUTOINCREMENT,
        work_item_id TEXT NOT NULL,
        occurred_at TEXT NOT NULL,
        from_phase TEXT CHECK (from_phase IS NULL OR from_phase IN ({_PHASE_VALUES})),
        to_phase TEXT NOT NULL CHECK (to_phase IN ({_PHASE_VALUES})),
        signal_id TEXT NOT NULL,
        note TEXT,
        FOREIGN KEY(work_item_id) REFERENCES work_items(id)
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_trail_append_only_update
    BEFORE UPDATE ON audit_trail
    BEGIN
        SELECT RAISE(ABORT, 'audit_trail is append-only');
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS audit_trail_append_only_delete
    BEFORE DELETE ON audit_trail
    BEGIN
        SELECT RAISE(ABORT, 'audit_trail is append-only');
    END
    """,
    f"""
    CREATE TABLE IF NOT EXISTS attention_windows (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL CHECK (status IN ({_WINDOW_STATUS_VALUES})),
        started_at TEXT NOT NULL,
        closed_at TEXT,
        pid INTEGER,
        payload_json TEXT NOT NULL,
        report_json TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS control_requests (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        window_id TEXT NOT NULL,
        kind TEXT NOT NULL CHECK (kind IN ('cancel','pause')),
        work_item_id TEXT,
        created_at TEXT NOT NULL,
        consumed_at TEXT,
        FOREIGN KEY(window_id) REFERENCES attention_windows(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_work_items_status_created ON work_items(status, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_work_items_project ON work_items(project_ref, status)",
    "CREATE INDEX IF NOT EXISTS idx_work_items_ticket ON work_items(ticket_id)",
    "CREATE INDEX IF NOT EXISTS idx_audit_trail_work_item ON audit_trail(work_item_id, seq)",
    """
    CREATE INDEX IF NOT EXISTS idx_escalations_open
    ON escalation_records(work_item_id, cleared_at)
    """,
    "CREATE INDEX IF NOT EXISTS idx_windows_status ON attention_windows(status, started_at DESC)",
    """
    CREATE INDEX IF NOT EXISTS idx_control_requests_pending
    ON control_requests(window_id, consumed_at)
    """,
)


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    version: int
    name: str
    checksum: str
    applied_at: str


@dataclass(frozen=True, slots=True)
class _Migration:
    version: int
    name: str
    statements: tuple[str, ...]
    checksum: str


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256()
    digest.update(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8"))
        digest.update(b"\n--\n")
    return digest.hexdigest()


_MIGRATIONS: Final[tuple[_Migration, ...]] = (
    _Migration(
        version=1,
        name="initial_orchestration_schema",
        statements=_MIGRATION_0001_STATEMENTS,
        checksum=_migration_checksum(
            1, "initial_orchestration_schema", _MIGRATION_0001_STATEMENTS
        ),
    ),
)

_BUSY_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database is locked",
    "database table is locked",
    "database schema is locked",
)
_CORRUPTION_SUBSTRINGS: Final[tuple[str, ...]] = (
    "database disk image is malformed",
    "malformed database",
    "file is not a database",
)


class StateDBError(RuntimeError):
    """Base class for persistence DB errors."""


class StateDBBusyError(StateDBError):
    """Raised when bounded busy retries are exhausted."""


class StateDBMigrationError(StateDBError):
    """Raised when migrations cannot be applied safely."""


class StateDBCorruptionError(StateDBError):
    """Raised when SQLite reports possible corruption."""


class StateDB:
    """SQLite state DB manager with deterministic migrations and safe helpers."""

    def __init__(
        self,
        path: str | Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        busy_retry_limit: int = DEFAULT_BUSY_RETRY_LIMIT,
        busy_retry_backoff_ms: int = DEFAULT_BUSY_RETRY_BACKOFF_MS,
    ) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        if busy_retry_limit < 0:
            raise ValueError("busy_retry_limit must be >= 0")
        if busy_retry_backoff_ms < 0:
            raise ValueError("busy_retry_backoff_ms must be >= 0")

        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._busy_retry_limit = busy_retry_limit
        self._busy_retry_backoff_ms = busy_retry_backoff_ms
        self._savepoint_counter = 0
        self._migrated = False

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a configured SQLite connection for the state DB."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            self._path,
            timeout=self._busy_timeout_ms / 1000.0,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._configure_connection(conn)
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self.connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(
        self,
        *,
        conn: sqlite3.Connection | None = None,
        immediate: bool = True,
    ) -> Iterator[sqlite3.Connection]:
        """Run statements inside an atomic transaction with savepoint support."""

        if conn is None:
            with self.connection() as owned_conn:
                with self.transaction(conn=owned_conn, immediate=immediate) as txn_conn:
                    yield txn_conn
                return

        if conn.in_transaction:
            savepoint = self._next_savepoint_name()
            self._execute_with_retry(conn, f"SAVEPOINT {savepoint}", (), operation="savepoint")
            try:
                yield conn
            except Exception:
                self._execute_with_retry(
                    conn, f"ROLLBACK TO SAVEPOINT {savepoint}", (), operation="rollback savepoint"
                )
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
                raise
            else:
                self._execute_with_retry(
                    conn, f"RELEASE SAVEPOINT {savepoint}", (), operation="release savepoint"
                )
            return

        begin_sql = "BEGIN IMMEDIATE" if immediate else "BEGIN"
        self._execute_with_retry(conn, begin_sql, (), operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._execute_with_retry(conn, "ROLLBACK", (), operation="rollback transaction")
            raise
        else:
            self._execute_with_retry(conn, "COMMIT", (), operation="commit transaction")

    def migrate(self) -> int:
        """Apply migrations idempotently and return current schema version."""

        if self._migrated:
            return STATE_DB_SCHEMA_VERSION
        self._validate_migration_chain(STATE_DB_SCHEMA_VERSION)
        with self.connection() as conn:
            self._execute_with_retry(
                conn, _SCHEMA_VERSIONS_TABLE_SQL, (), operation="create schema_versions table"
            )
            applied = self._load_applied_migrations(conn)
            current_version = max(applied, default=0)
            if current_version > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    "database schema is newer than supported by this binary "
                    f"(db={current_version}, code={STATE_DB_SCHEMA_VERSION})"
                )

            for migration in _MIGRATIONS:
                if migration.version > STATE_DB_SCHEMA_VERSION:
                    continue
                record = applied.get(migration.version)
                if record is not None:
                    if record.checksum != migration.checksum:
                        raise StateDBMigrationError(
                            "migration checksum mismatch for version "
                            f"{migration.version}: db={record.checksum} code={migration.checksum}"
                        )
                    continue

                with self.transaction(conn=conn, immediate=True) as tx:
                    for statement in migration.statements:
                        self._execute_with_retry(
                            tx, statement, (), operation=f"apply migration {migration.version}"
                        )
                    self._execute_with_retry(
                        tx,
                        """
                        INSERT INTO schema_versions (version, name, checksum, applied_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (migration.version, migration.name, migration.checksum, _utc_now_iso()),
                        operation=f"record migration {migration.version}",
                    )

            version = self.schema_version(conn=conn)
        self._migrated = True
        return version

    def schema_version(self, *, conn: sqlite3.Connection | None = None) -> int:
        row = self.query_one(
            "SELECT COALESCE(MAX(version), 0) AS version FROM schema_versions", conn=conn
        )
        if row is None:
            return 0
        value = row["version"]
        if not isinstance(value, int):
            raise StateDBMigrationError("schema_versions.version must be an integer")
        return value

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Execute a parameterized statement and return affected row count."""

        if conn is not None:
            return self._execute_with_retry(conn, sql, params, operation="execute").rowcount
        with self.transaction(immediate=True) as tx:
            return self._execute_with_retry(tx, sql, params, operation="execute").rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        """Run a query and return rows as typed dictionaries."""

        if conn is not None:
            cursor = self._execute_with_retry(conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]
        with self.connection() as owned_conn:
            cursor = self._execute_with_retry(owned_conn, sql, params, operation="query all")
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        """Run a query and return the first row as a typed dictionary."""

        rows = self.query_all(sql, params, conn=conn)
        return rows[0] if rows else None

    def backup(self, destination: str | Path) -> Path:
        """Create a consistent snapshot using SQLite backup API."""

        destination_path = Path(destination).expanduser()
        destination_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connection() as source:
            target = sqlite3.connect(destination_path, isolation_level=None)
            try:
                source.backup(target)
            finally:
                target.close()
        return destination_path

    def integrity_check(self, *, max_errors: int = 100) -> tuple[str, ...]:
        """Return integrity-check errors; empty tuple means OK."""

        if max_errors <= 0:
            raise ValueError("max_errors must be > 0")
        rows = self.query_all(f"PRAGMA integrity_check({max_errors})")
        messages = tuple(str(row.get("integrity_check", "")) for row in rows)
        return () if messages == ("ok",) else messages

    def __enter__(self) -> StateDB:
        self.migrate()
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        del exc_type, exc, tb

    def _configure_connection(self, conn: sqlite3.Connection) -> None:
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
        journal_row = conn.execute("PRAGMA journal_mode=WAL").fetchone()
        if journal_row is None:
            raise StateDBError("failed to configure journal_mode")
        journal_mode = str(journal_row[0]).lower()
        if journal_mode != "wal":
            raise StateDBError(f"journal_mode must be WAL, got {journal_mode!r}")

    def _load_applied_migrations(self, conn: sqlite3.Connection) -> dict[int, MigrationRecord]:
        cursor = self._execute_with_retry(
            conn,
            "SELECT version, name, checksum, applied_at FROM schema_versions ORDER BY version",
            (),
            operation="load schema_versions",
        )
        out: dict[int, MigrationRecord] = {}
        for row in cursor.fetchall():
            if not isinstance(row["version"], int) or not isinstance(row["checksum"], str):
                raise StateDBMigrationError("schema_versions row is malformed")
            out[row["version"]] = MigrationRecord(
                version=row["version"],
                name=str(row["name"]),
                checksum=row["checksum"],
                applied_at=str(row["applied_at"]),
            )
        return out

    def _validate_migration_chain(self, target_version: int) -> None:
        migration_versions = {migration.version for migration in _MIGRATIONS}
        for version in range(1, target_version + 1):
            if version not in migration_versions:
                raise StateDBMigrationError(f"missing migration for schema version {version}")

    def _next_savepoint_name(self) -> str:
        self._savepoint_counter += 1
        return f"sp_{self._savepoint_counter}"

    def _execute_with_retry(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams,
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        for attempt in range(self._busy_retry_limit + 1):
            try:
                return conn.execute(sql, tuple(params))
            except sqlite3.IntegrityError:
                raise
            except sqlite3.Error as exc:
                if self._is_busy_error(exc) and attempt < self._busy_retry_limit:
                    time.sleep((self._busy_retry_backoff_ms / 1000.0) * float(2**attempt))
                    continue
                self._raise_actionable_error(exc, operation=operation)
        raise StateDBBusyError(f"{operation} exhausted retries unexpectedly")

    def _is_busy_error(self, exc: sqlite3.Error) -> bool:
        message = str(exc).lower()
        return any(fragment in message for fragment in _BUSY_SUBSTRINGS)

    def _raise_actionable_error(self, exc: sqlite3.Error, *, operation: str) -> None:
        message = str(exc).lower()
        if any(fragment in message for fragment in _CORRUPTION_SUBSTRINGS):
            raise StateDBCorruptionError(
                f"{operation} failed for {self._path}: {exc}. "
                "Run `StateDB.integrity_check()` and restore from `StateDB.backup(...)` if needed."
            ) from exc
        if self._is_busy_error(exc):
            raise StateDBBusyError(
                f"{operation} hit SQLITE_BUSY for {self._path} after "
                f"{self._busy_retry_limit + 1} attempt(s): {exc}"
            ) from exc
        raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _row_to_dict(row: sqlite3.Row) -> dict[str, RowValue]:
    return {str(key): row[key] for key in row.keys()}


def _utc_now_iso() -> str:
    return iso8601z(utc_now())


__all__ = [
    "DEFAULT_BUSY_RETRY_BACKOFF_MS",
    "DEFAULT_BUSY_RETRY_LIMIT",
    "DEFAULT_BUSY_TIMEOUT_MS",
    "MigrationRecord",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBBusyError",
    "StateDBCorruptionError",
    "StateDBError",
    "StateDBMigrationError",
]
