"""SQLite-backed task storage."""

from __future__ import annotations

import contextlib
import sqlite3
from pathlib import Path
from threading import RLock
from typing import Any


class TaskStore:
    """
    SQLite-backed storage for tasks, the task id counter, and transition events.

    Each write that changes a task also appends its event row inside the
    same database transaction, so an event exists iff its change committed.
    """

    _TASK_COLUMNS: tuple[str, ...] = (
        "task_id",
        "client_id",
        "freelancer_id",
        "description",
        "amount",
        "escrow_ref",
        "deadline",
        "status",
        "deliverable_link",
        "created_at",
        "accepted_at",
        "submitted_at",
        "completed_at",
        "disputed_at",
        "cancelled_at",
    )
    _TASK_COLUMNS_SQL = ", ".join(_TASK_COLUMNS)
    _TASK_INSERT_SQL = (
        f"INSERT INTO tasks ({_TASK_COLUMNS_SQL}) "  # nosec B608
        f"VALUES ({', '.join('?' for _ in _TASK_COLUMNS)})"
    )
    _TASK_SELECT_BASE_SQL = f"SELECT {_TASK_COLUMNS_SQL}, settlement_claim FROM tasks"  # nosec B608
    _EVENT_COLUMNS_SQL = "event_id, task_id, event_type, status, actor_id, occurred_at"
    _EVENT_INSERT_SQL = (
        "INSERT INTO task_events (task_id, event_type, status, actor_id, occurred_at) "
        "VALUES (?, ?, ?, ?, ?)"
    )

    def __init__(self, db_path: str) -> None:
        self._lock = RLock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly with BEGIN IMMEDIATE.
        self._db = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._db.row_factory = sqlite3.Row
        self._db.execute("PRAGMA journal_mode=WAL")
        self._db.execute("PRAGMA foreign_keys=ON")
        self._db.execute("PRAGMA busy_timeout=5000")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._lock:
            self._db.executescript(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id INTEGER PRIMARY KEY,
                    client_id TEXT NOT NULL,
                    freelancer_id TEXT,
                    description TEXT NOT NULL,
                    amount INTEGER NOT NULL CHECK (amount > 0),
                    escrow_ref TEXT NOT NULL,
                    deadline TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'created',
                    deliverable_link TEXT,
                    created_at TEXT NOT NULL,
                    accepted_at TEXT,
                    submitted_at TEXT,
                    completed_at TEXT,
                    disputed_at TEXT,
                    cancelled_at TEXT,
                    settlement_claim TEXT
                );

                CREATE TABLE IF NOT EXISTS task_counter (
                    id INTEGER PRIMARY KEY CHECK (id = 0),
                    next_task_id INTEGER NOT NULL
                );

                INSERT OR IGNORE INTO task_counter (id, next_task_id) VALUES (0, 0);

                CREATE TABLE IF NOT EXISTS task_events (
                    event_id INTEGER PRIMARY KEY AUTOINCREMENT,
                    task_id INTEGER NOT NULL REFERENCES tasks(task_id),
                    event_type TEXT NOT NULL,
                    status TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    occurred_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ix_tasks_client ON tasks(client_id);
                CREATE INDEX IF NOT EXISTS ix_tasks_freelancer ON tasks(freelancer_id);
                CREATE INDEX IF NOT EXISTS ix_task_events_task ON task_events(task_id, event_id);
                """
            )

    def _row_to_task(self, row: sqlite3.Row) -> dict[str, Any]:
        task = {column: row[column] for column in self._TASK_COLUMNS}
        task["settlement_claim"] = row["settlement_claim"]
        return task

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "event_id": row["event_id"],
            "task_id": row["task_id"],
            "event_type": row["event_type"],
            "status": row["status"],
            "actor_id": row["actor_id"],
            "occurred_at": row["occurred_at"],
        }

    def insert_task(self, task_data: dict[str, Any], *, event_type: str) -> int:
        """
        Allocate the next task id, insert the task row and its creation event.

        task_data holds every task column except task_id. Returns the new id.
        """
        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                row = self._db.execute(
                    "SELECT next_task_id FROM task_counter WHERE id = 0"
                ).fetchone()
                task_id = int(row[0])
                values = tuple(
                    task_id if column == "task_id" else task_data[column]
                    for column in self._TASK_COLUMNS
                )
                self._db.execute(self._TASK_INSERT_SQL, values)
                self._db.execute(
                    "UPDATE task_counter SET next_task_id = next_task_id + 1 WHERE id = 0"
                )
                self._db.execute(
                    self._EVENT_INSERT_SQL,
                    (
                        task_id,
                        event_type,
                        task_data["status"],
                        task_data["client_id"],
                        task_data["created_at"],
                    ),
                )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return task_id

    def get_task(self, task_id: int) -> dict[str, Any] | None:
        """Fetch a task by ID."""
        with self._lock:
            cursor = self._db.execute(
                self._TASK_SELECT_BASE_SQL + " WHERE task_id = ?",
                (task_id,),
            )
            row = cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def transition_task(
        self,
        task_id: int,
        updates: dict[str, Any],
        *,
        expected_status: str,
        event_type: str,
        actor_id: str,
        occurred_at: str,
        claim: str | None = None,
    ) -> bool:
        """
        Apply a status transition and record its event.

        The update only applies while the row still holds expected_status
        and its settlement claim equals claim (None for an unclaimed row).
        The claim is cleared by the update. Returns False, writing nothing,
        when the row has moved on.
        """
        if "status" not in updates:
            msg = "A transition must set the task status"
            raise ValueError(msg)
        if any(column not in self._TASK_COLUMNS or column == "task_id" for column in updates):
            msg = "Attempted to update unknown task column"
            raise ValueError(msg)

        set_clause = ", ".join(f"{column} = ?" for column in updates)
        query = (
            "UPDATE tasks SET " + set_clause + ", settlement_claim = NULL "  # nosec B608
            "WHERE task_id = ? AND status = ? AND settlement_claim IS ?"
        )
        params: list[object] = [*updates.values(), task_id, expected_status, claim]

        with self._lock:
            try:
                self._db.execute("BEGIN IMMEDIATE")
                cursor = self._db.execute(query, params)
                if cursor.rowcount == 0:
                    self._db.execute("ROLLBACK")
                    return False
                self._db.execute(
                    self._EVENT_INSERT_SQL,
                    (task_id, event_type, updates["status"], actor_id, occurred_at),
                )
                self._db.execute("COMMIT")
            except Exception:
                with contextlib.suppress(sqlite3.Error):
                    self._db.execute("ROLLBACK")
                raise
        return True

    def claim_settlement(self, task_id: int, *, expected_status: str, claim: str) -> bool:
        """
        Reserve a task for a settlement that moves value before its status write.

        A claimed row refuses every transition except the one carrying the
        same claim, including writers on other connections. Returns False
        when the row is not in expected_status or is already claimed.
        """
        with self._lock:
            cursor = self._db.execute(
                "UPDATE tasks SET settlement_claim = ? "
                "WHERE task_id = ? AND status = ? AND settlement_claim IS NULL",
                (claim, task_id, expected_status),
            )
        return cursor.rowcount == 1

    def release_settlement(self, task_id: int, *, claim: str) -> None:
        """Drop a settlement claim whose transfer did not go through."""
        with self._lock:
            self._db.execute(
                "UPDATE tasks SET settlement_claim = NULL "
                "WHERE task_id = ? AND settlement_claim = ?",
                (task_id, claim),
            )

    def list_tasks(
        self,
        client_id: str | None,
        freelancer_id: str | None,
        status: str | None,
    ) -> list[dict[str, Any]]:
        """List tasks with optional filters (AND logic), ordered by id."""
        query = self._TASK_SELECT_BASE_SQL
        clauses: list[str] = []
        params: list[object] = []

        if client_id is not None:
            clauses.append("client_id = ?")
            params.append(client_id)
        if freelancer_id is not None:
            clauses.append("freelancer_id = ?")
            params.append(freelancer_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY task_id"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_task(row) for row in rows]

    def count_tasks(self) -> int:
        """Return the running task count (ids are allocated 0..count-1)."""
        with self._lock:
            row = self._db.execute("SELECT next_task_id FROM task_counter WHERE id = 0").fetchone()
        return int(row[0]) if row is not None else 0

    def count_tasks_by_status(self) -> dict[str, int]:
        """Count tasks grouped by status."""
        with self._lock:
            rows = self._db.execute("SELECT status, COUNT(*) FROM tasks GROUP BY status").fetchall()
        return {str(row[0]): int(row[1]) for row in rows}

    def sum_amounts(self, statuses: frozenset[str]) -> int:
        """Sum task amounts over the given statuses."""
        if len(statuses) == 0:
            return 0
        placeholders = ", ".join("?" for _ in statuses)
        query = f"SELECT COALESCE(SUM(amount), 0) FROM tasks WHERE status IN ({placeholders})"  # nosec B608
        with self._lock:
            row = self._db.execute(query, tuple(sorted(statuses))).fetchone()
        return int(row[0]) if row is not None else 0

    def list_events(self, after: int | None, task_id: int | None) -> list[dict[str, Any]]:
        """List transition events in event order, optionally after a cursor or for one task."""
        query = f"SELECT {self._EVENT_COLUMNS_SQL} FROM task_events"  # nosec B608
        clauses: list[str] = []
        params: list[object] = []

        if after is not None:
            clauses.append("event_id > ?")
            params.append(after)
        if task_id is not None:
            clauses.append("task_id = ?")
            params.append(task_id)

        if len(clauses) > 0:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY event_id"

        with self._lock:
            rows = self._db.execute(query, params).fetchall()
        return [self._row_to_event(row) for row in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._db.close()
