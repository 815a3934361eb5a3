"""
Persistence gateway (SQLite).

The engine talks to storage only through ``Transaction.execute``. Every
public workflow operation runs inside one ``SQLiteGateway.transaction()``:
commit on success, rollback on any exception (which is re-raised untouched).

Isolation: write transactions open with ``BEGIN IMMEDIATE``. That takes
SQLite's RESERVED lock up front, so writers are serialized database-wide for
the whole transaction. Column/placement renumbering depends on this; a
gateway over another store must offer serializable isolation or row locks
on the affected board's column and placement rows.
"""
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def utc_now() -> str:
    """ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _connect(db_path: str, busy_timeout_ms: int) -> sqlite3.Connection:
    """Open a connection with FK enforcement and WAL mode, in manual-transaction mode."""
    conn = sqlite3.connect(db_path, timeout=busy_timeout_ms / 1000.0, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)}")
    return conn


SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        owner_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_members (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        role TEXT NOT NULL DEFAULT 'member',
        joined_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
        UNIQUE (project_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project_milestones (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        due_date TEXT,
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        milestone_id INTEGER,
        creator_id TEXT NOT NULL,
        assignee_id TEXT,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        status TEXT NOT NULL DEFAULT 'to_do',
        priority TEXT NOT NULL DEFAULT 'medium',
        start_date TEXT,
        due_date TEXT,
        completed_date TEXT,
        estimated_hours REAL,
        tags TEXT,  -- JSON list
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE,
        FOREIGN KEY (milestone_id) REFERENCES project_milestones(id) ON DELETE SET NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS subtasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        is_completed INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_comments (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        comment TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS time_entries (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER NOT NULL,
        user_id TEXT NOT NULL,
        description TEXT DEFAULT '',
        start_time TEXT NOT NULL,
        end_time TEXT,
        duration INTEGER,  -- seconds
        is_billable INTEGER NOT NULL DEFAULT 1,
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS task_dependencies (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        task_id INTEGER NOT NULL,
        depends_on_task_id INTEGER NOT NULL,
        dependency_type TEXT NOT NULL DEFAULT 'finish_to_start',
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
        FOREIGN KEY (depends_on_task_id) REFERENCES tasks(id) ON DELETE CASCADE,
        UNIQUE (task_id, depends_on_task_id),
        CHECK (task_id != depends_on_task_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kanban_boards (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        project_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        is_default INTEGER NOT NULL DEFAULT 0,
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        FOREIGN KEY (project_id) REFERENCES projects(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kanban_columns (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        board_id INTEGER NOT NULL,
        title TEXT NOT NULL,
        description TEXT DEFAULT '',
        position INTEGER NOT NULL,
        wip_limit INTEGER,
        role TEXT NOT NULL DEFAULT 'none',
        FOREIGN KEY (board_id) REFERENCES kanban_boards(id) ON DELETE CASCADE,
        UNIQUE (board_id, position)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS kanban_tasks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        column_id INTEGER NOT NULL,
        task_id INTEGER NOT NULL UNIQUE,
        position INTEGER NOT NULL,
        FOREIGN KEY (column_id) REFERENCES kanban_columns(id) ON DELETE CASCADE,
        FOREIGN KEY (task_id) REFERENCES tasks(id) ON DELETE CASCADE,
        UNIQUE (column_id, position)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_members_user ON project_members(user_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_project ON tasks(project_id)",
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(project_id, status)",
    "CREATE INDEX IF NOT EXISTS idx_deps_prereq ON task_dependencies(depends_on_task_id)",
    "CREATE INDEX IF NOT EXISTS idx_boards_project ON kanban_boards(project_id)",
)


class Transaction:
    """One open transaction on one connection."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn
        self.active = False

    def begin(self, write: bool = True) -> None:
        self._conn.execute("BEGIN IMMEDIATE" if write else "BEGIN")
        self.active = True

    def commit(self) -> None:
        if self.active:
            self._conn.execute("COMMIT")
            self.active = False

    def rollback(self) -> None:
        if self.active:
            self._conn.execute("ROLLBACK")
            self.active = False

    def execute(self, statement: str, params: Sequence[Any] = ()) -> List[Row]:
        """Run a parameterized statement and return all result rows as dicts."""
        cursor = self._conn.execute(statement, tuple(params))
        return [dict(r) for r in cursor.fetchall()]

    def one(self, statement: str, params: Sequence[Any] = ()) -> Optional[Row]:
        rows = self.execute(statement, params)
        return rows[0] if rows else None

    def scalar(self, statement: str, params: Sequence[Any] = ()) -> Any:
        row = self._conn.execute(statement, tuple(params)).fetchone()
        return row[0] if row else None

    def insert(self, statement: str, params: Sequence[Any] = ()) -> int:
        """Run an INSERT and return the new row id."""
        cursor = self._conn.execute(statement, tuple(params))
        return cursor.lastrowid


class SQLiteGateway:
    """SQLite-backed persistence gateway."""

    def __init__(self, db_path: str, busy_timeout_ms: int = 5000):
        self.db_path = str(db_path)
        self.busy_timeout_ms = busy_timeout_ms
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _init_schema(self) -> None:
        """Create tables if they don't exist."""
        with self.transaction() as tx:
            for ddl in SCHEMA:
                tx.execute(ddl)

    @contextmanager
    def transaction(self, write: bool = True) -> Iterator[Transaction]:
        """Open a connection, begin, yield, then commit or roll back."""
        conn = _connect(self.db_path, self.busy_timeout_ms)
        tx = Transaction(conn)
        try:
            tx.begin(write)
            yield tx
            tx.commit()
        except BaseException:
            tx.rollback()
            raise
        finally:
            conn.close()

    def execute(self, statement: str, params: Sequence[Any] = ()) -> List[Row]:
        """Run a single statement in its own transaction."""
        with self.transaction() as tx:
            return tx.execute(statement, params)
