"""
patchflow — SQLite state database

Purpose
- Own the ticket-state schema and hand out configured connections.

Functional requirements
- Migrations are versioned and checksummed; a database written by a newer
  patchflow, or one whose applied migration text differs, is refused.
- ``transaction()`` nests through savepoints so a bulk replace is all-or-nothing.
- SQLite failures surface as ``StateDBError`` naming the operation and the file.
  Integrity errors pass through untouched so callers can map them.

Non-functional requirements
- Connections are short-lived; waiting on another writer is left to SQLite's
  busy timeout.
"""

from __future__ import annotations

import hashlib
import itertools
import json
import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

from patchflow.constants import STATE_DB_SCHEMA_VERSION

SQLValue = str | int | float | bytes | None
SQLParams = Sequence[SQLValue]
RowValue = str | int | float | bytes | None

DEFAULT_BUSY_TIMEOUT_MS: Final[int] = 5_000

_SCHEMA_VERSIONS_TABLE_SQL: Final[str] = """
CREATE TABLE IF NOT EXISTS schema_versions (
    version INTEGER PRIMARY KEY CHECK (version > 0),
    name TEXT NOT NULL,
    checksum TEXT NOT NULL CHECK (length(checksum) = 64),
    applied_at TEXT NOT NULL
)
"""

_TICKET_STATE_STATEMENTS: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS tickets (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project TEXT NOT NULL,
        ticket_id TEXT NOT NULL,
        commit_type TEXT NOT NULL CHECK (commit_type IN ('tracker', 'message')),
        commit_message TEXT NOT NULL,
        position INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(project, ticket_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ticket_targets (
        ticket_pk INTEGER NOT NULL,
        target_branch TEXT NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (ticket_pk, target_branch),
        FOREIGN KEY(ticket_pk) REFERENCES tickets(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ticket_branches (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        ticket_pk INTEGER NOT NULL,
        staging_branch TEXT NOT NULL,
        dev_branch TEXT NOT NULL,
        target_branch TEXT NOT NULL,
        merged INTEGER NOT NULL CHECK (merged IN (0, 1)),
        staging_deleted INTEGER NOT NULL CHECK (staging_deleted IN (0, 1)),
        position INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE(ticket_pk, target_branch),
        FOREIGN KEY(ticket_pk) REFERENCES tickets(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch_commits (
        branch_pk INTEGER NOT NULL,
        commit_id TEXT NOT NULL,
        description TEXT NOT NULL,
        committed_at TEXT NOT NULL,
        already_present INTEGER NOT NULL CHECK (already_present IN (0, 1)),
        position INTEGER NOT NULL,
        PRIMARY KEY (branch_pk, position),
        FOREIGN KEY(branch_pk) REFERENCES ticket_branches(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch_reviews (
        branch_pk INTEGER NOT NULL,
        title TEXT NOT NULL,
        review_id INTEGER NOT NULL,
        web_url TEXT NOT NULL,
        position INTEGER NOT NULL,
        PRIMARY KEY (branch_pk, position),
        FOREIGN KEY(branch_pk) REFERENCES ticket_branches(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS branch_linked_issues (
        branch_pk INTEGER PRIMARY KEY,
        link_type TEXT NOT NULL,
        issue_id TEXT NOT NULL,
        summary TEXT NOT NULL,
        status TEXT NOT NULL,
        FOREIGN KEY(branch_pk) REFERENCES ticket_branches(id) ON DELETE CASCADE
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_ticket_branches_ticket ON ticket_branches(ticket_pk, position)",
    "CREATE INDEX IF NOT EXISTS idx_branch_commits_branch ON branch_commits(branch_pk, position)",
)

# version -> (name, statements); versions run contiguously from 1
_MIGRATIONS: Final[dict[int, tuple[str, tuple[str, ...]]]] = {
    1: ("ticket_state_schema", _TICKET_STATE_STATEMENTS),
}


def _migration_checksum(version: int, name: str, statements: Sequence[str]) -> str:
    digest = hashlib.sha256(f"{version}:{name}\n".encode())
    for statement in statements:
        normalized = "\n".join(line.rstrip() for line in statement.strip().splitlines())
        digest.update(normalized.encode("utf-8") + b"\n--\n")
    return digest.hexdigest()


class StateDBError(RuntimeError):
    """A state database operation failed."""


class StateDBMigrationError(StateDBError):
    """The on-disk schema cannot be brought to this version safely."""


class StateDB:
    """Ticket-state database file; helpers open their own connection unless given one."""

    def __init__(self, path: str | Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        if busy_timeout_ms < 0:
            raise ValueError("busy_timeout_ms must be >= 0")
        self._path = Path(path).expanduser()
        self._busy_timeout_ms = busy_timeout_ms
        self._savepoints = itertools.count(1)

    @property
    def path(self) -> Path:
        return self._path

    def connect(self) -> sqlite3.Connection:
        """Open a connection with foreign keys, the busy timeout, and WAL journaling on."""

        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._sqlite_errors("open state DB"):
            conn = sqlite3.connect(
                self._path, timeout=self._busy_timeout_ms / 1000.0, isolation_level=None
            )
        conn.row_factory = sqlite3.Row
        try:
            with self._sqlite_errors("configure connection"):
                conn.execute("PRAGMA foreign_keys=ON")
                conn.execute(f"PRAGMA busy_timeout={self._busy_timeout_ms}")
                journal_mode = str(conn.execute("PRAGMA journal_mode=WAL").fetchone()[0])
            if journal_mode.lower() != "wal":
                raise StateDBError(
                    f"journal_mode must be WAL for {self._path}, got {journal_mode!r}"
                )
        except StateDBError:
            conn.close()
            raise
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
        """Commit on success and roll back on any exception; nested calls use savepoints."""

        if conn is None:
            with self.connection() as owned:
                with self.transaction(conn=owned, immediate=immediate) as tx:
                    yield tx
            return

        if conn.in_transaction:
            savepoint = f"sp_{next(self._savepoints)}"
            self._run(conn, f"SAVEPOINT {savepoint}", operation="savepoint")
            try:
                yield conn
            except Exception:
                self._run(conn, f"ROLLBACK TO SAVEPOINT {savepoint}", operation="rollback")
                self._run(conn, f"RELEASE SAVEPOINT {savepoint}", operation="release savepoint")
                raise
            self._run(conn, f"RELEASE SAVEPOINT {savepoint}", operation="release savepoint")
            return

        self._run(conn, "BEGIN IMMEDIATE" if immediate else "BEGIN", operation="begin transaction")
        try:
            yield conn
        except Exception:
            self._run(conn, "ROLLBACK", operation="rollback")
            raise
        self._run(conn, "COMMIT", operation="commit")

    def migrate(self) -> int:
        """Apply pending migrations and return the schema version now in effect."""

        with self.connection() as conn:
            self._run(conn, _SCHEMA_VERSIONS_TABLE_SQL, operation="create schema_versions")
            applied = {
                int(row["version"]): str(row["checksum"])
                for row in self._run(
                    conn, "SELECT version, checksum FROM schema_versions", operation="read schema"
                )
            }
            newest = max(applied, default=0)
            if newest > STATE_DB_SCHEMA_VERSION:
                raise StateDBMigrationError(
                    f"database schema is newer than supported by this patchflow "
                    f"(db={newest}, code={STATE_DB_SCHEMA_VERSION}): {self._path}"
                )

            for version in range(1, STATE_DB_SCHEMA_VERSION + 1):
                name, statements = _MIGRATIONS[version]
                checksum = _migration_checksum(version, name, statements)
                if version in applied:
                    if applied[version] != checksum:
                        raise StateDBMigrationError(
                            f"migration checksum mismatch for version {version}: "
                            f"db={applied[version]} code={checksum}"
                        )
                    continue
                with self.transaction(conn=conn) as tx:
                    for statement in statements:
                        self._run(tx, statement, operation=f"apply migration {version}")
                    self._run(
                        tx,
                        "INSERT INTO schema_versions (version, name, checksum, applied_at) "
                        "VALUES (?, ?, ?, ?)",
                        (version, name, checksum, _utc_now_iso()),
                        operation=f"record migration {version}",
                    )
        return STATE_DB_SCHEMA_VERSION

    def execute(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> int:
        """Run one statement and return the affected row count; commits when ``conn`` is None."""

        if conn is not None:
            return self._run(conn, sql, params, operation="execute").rowcount
        with self.transaction() as tx:
            return self._run(tx, sql, params, operation="execute").rowcount

    def insert(self, sql: str, params: SQLParams, *, conn: sqlite3.Connection) -> int:
        row_id = self._run(conn, sql, params, operation="insert").lastrowid
        if row_id is None:
            raise StateDBError("insert did not produce a row id")
        return row_id

    def executemany(
        self, sql: str, params_iter: Iterable[SQLParams], *, conn: sqlite3.Connection
    ) -> int:
        rows = [tuple(params) for params in params_iter]
        if not rows:
            return 0
        with self._sqlite_errors("execute many"):
            return conn.executemany(sql, rows).rowcount

    def query_all(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> list[dict[str, RowValue]]:
        with self._borrow(conn) as active:
            return [dict(row) for row in self._run(active, sql, params, operation="query all")]

    def query_one(
        self,
        sql: str,
        params: SQLParams = (),
        *,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, RowValue] | None:
        with self._borrow(conn) as active:
            row = self._run(active, sql, params, operation="query one").fetchone()
            return None if row is None else dict(row)

    @contextmanager
    def _borrow(self, conn: sqlite3.Connection | None) -> Iterator[sqlite3.Connection]:
        if conn is not None:
            yield conn
            return
        with self.connection() as owned:
            yield owned

    def _run(
        self,
        conn: sqlite3.Connection,
        sql: str,
        params: SQLParams = (),
        *,
        operation: str,
    ) -> sqlite3.Cursor:
        with self._sqlite_errors(operation):
            return conn.execute(sql, tuple(params))

    @contextmanager
    def _sqlite_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as exc:
            raise StateDBError(f"{operation} failed for {self._path}: {exc}") from exc


def _utc_now_iso() -> str:
    return datetime.now(UTC).isoformat(timespec="microseconds").replace("+00:00", "Z")


def canonical_json(value: object) -> str:
    """Deterministic JSON for persistence payloads."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


__all__ = [
    "DEFAULT_BUSY_TIMEOUT_MS",
    "RowValue",
    "SQLParams",
    "SQLValue",
    "StateDB",
    "StateDBError",
    "StateDBMigrationError",
    "canonical_json",
]
