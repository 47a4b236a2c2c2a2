"""
Resource Scheduler: Checkpoint Store

SQLite-backed persistence for task and workflow instance checkpoints.
The scheduler and orchestrator write a checkpoint on every state change
when a store is injected; a host can read them back after a crash to
decide what to resubmit.

Records are the ``to_checkpoint()`` dicts of Task and WorkflowInstance,
stored as JSON next to a few indexed columns.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any


class _Transaction:
    """
    SQLite transaction context manager.

    While active, individual save_* calls do not commit. The real
    COMMIT happens when the context manager exits cleanly.
    """
    def __init__(self, store: CheckpointStore):
        self.store = store

    def __enter__(self):
        self.store._lock.acquire()
        self.store.conn.execute("BEGIN IMMEDIATE")
        self.store._in_transaction = True
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.store._in_transaction = False
        try:
            if exc_type is None:
                self.store.conn.commit()
            else:
                self.store.conn.rollback()
        finally:
            self.store._lock.release()
        return False


class CheckpointStore:
    """SQLite-backed store for task and workflow checkpoints."""

    def __init__(self, db_path: str | Path = "scheduler.db"):
        self.db_path = str(db_path)
        # Checkpoints are written from executor threads as well as the tick loop
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self._lock = threading.RLock()
        self._in_transaction = False
        self._create_tables()

    def _commit(self):
        """Commit unless inside an explicit transaction block."""
        if not self._in_transaction:
            self.conn.commit()

    def transaction(self) -> _Transaction:
        """
        Context manager for explicit transaction boundaries.

        Usage:
            with store.transaction():
                store.save_task(task_record)
                store.save_workflow(instance_record)
                # Both committed atomically, or both rolled back
        """
        return _Transaction(self)

    def _create_tables(self):
        with self._lock:
            self.conn.executescript("""
                CREATE TABLE IF NOT EXISTS task_checkpoints (
                    task_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    status TEXT NOT NULL,
                    correlation_id TEXT NOT NULL DEFAULT '',
                    record TEXT NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE TABLE IF NOT EXISTS workflow_checkpoints (
                    instance_id TEXT PRIMARY KEY,
                    definition_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    record TEXT NOT NULL,
                    updated_at REAL NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_task_status ON task_checkpoints(status);
                CREATE INDEX IF NOT EXISTS idx_task_correlation ON task_checkpoints(correlation_id);
                CREATE INDEX IF NOT EXISTS idx_workflow_status ON workflow_checkpoints(status);
            """)
            self._commit()

    # ─── Tasks ───────────────────────────────────────────────────────

    def save_task(self, record: dict[str, Any]) -> None:
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO task_checkpoints
                (task_id, name, status, correlation_id, record, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                record["task_id"], record["name"], record["status"],
                record.get("correlation_id", ""),
                json.dumps(record, default=str), time.time(),
            ))
            self._commit()

    def load_task(self, task_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT record FROM task_checkpoints WHERE task_id = ?", (task_id,)
            ).fetchone()
        return json.loads(row["record"]) if row else None

    def list_tasks(
        self,
        status: str | None = None,
        correlation_id: str | None = None,
        limit: int = 1000,
    ) -> list[dict[str, Any]]:
        query = "SELECT record FROM task_checkpoints WHERE 1=1"
        params: list[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if correlation_id:
            query += " AND correlation_id = ?"
            params.append(correlation_id)
        query += " ORDER BY updated_at LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [json.loads(r["record"]) for r in rows]

    # ─── Workflows ───────────────────────────────────────────────────

    def save_workflow(self, record: dict[str, Any]) -> None:
        with self._lock:
            self.conn.execute("""
                INSERT OR REPLACE INTO workflow_checkpoints
                (instance_id, definition_id, status, record, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, (
                record["instance_id"], record["definition_id"], record["status"],
                json.dumps(record, default=str), time.time(),
            ))
            self._commit()

    def load_workflow(self, instance_id: str) -> dict[str, Any] | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT record FROM workflow_checkpoints WHERE instance_id = ?",
                (instance_id,),
            ).fetchone()
        return json.loads(row["record"]) if row else None

    def list_workflows(self, status: str | None = None, limit: int = 500) -> list[dict[str, Any]]:
        query = "SELECT record FROM workflow_checkpoints"
        params: list[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(status)
        query += " ORDER BY updated_at LIMIT ?"
        params.append(limit)
        with self._lock:
            rows = self.conn.execute(query, params).fetchall()
        return [json.loads(r["record"]) for r in rows]

    def stats(self) -> dict[str, Any]:
        with self._lock:
            tasks = self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM task_checkpoints GROUP BY status"
            ).fetchall()
            workflows = self.conn.execute(
                "SELECT status, COUNT(*) AS n FROM workflow_checkpoints GROUP BY status"
            ).fetchall()
        return {
            "tasks": {r["status"]: r["n"] for r in tasks},
            "workflows": {r["status"]: r["n"] for r in workflows},
        }

    def close(self):
        with self._lock:
            self.conn.close()
