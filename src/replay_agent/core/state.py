"""Persistent workflow and run storage using SQLite."""

import asyncio
import json
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import aiosqlite
import structlog

from .errors import PersistenceError
from .models import RunHandle, RunStatus, StepResult, Workflow


logger = structlog.get_logger()


@dataclass
class RunRecord:
    """Stored run row."""
    run_id: str
    workflow_id: str
    status: str
    created_at: float
    updated_at: float
    completed_at: Optional[float]
    summary_json: Optional[str]
    metadata_json: Optional[str]
    error: Optional[str]
    session_data: Optional[str]

    @property
    def summary(self) -> dict[str, Any]:
        return json.loads(self.summary_json) if self.summary_json else {}

    @property
    def metadata(self) -> dict[str, Any]:
        return json.loads(self.metadata_json) if self.metadata_json else {}


@dataclass
class StepRecord:
    """Stored step row."""
    id: int
    run_id: str
    action_id: str
    status: str
    attempts: int
    metadata_json: str
    started_at: str
    finished_at: str
    has_screenshot: bool

    @property
    def metadata(self) -> dict[str, Any]:
        return json.loads(self.metadata_json) if self.metadata_json else {}


_TERMINAL = {RunStatus.SUCCESS.value, RunStatus.PARTIAL.value, RunStatus.FAILED.value}


class StateManager:
    """
    Workflow store and run store backed by SQLite.

    Writes for one run are serialised with a per-run lock so concurrent
    runners sharing a manager never interleave updates of the same record.
    """

    def __init__(self, db_path: str = "./data/state.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._run_locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            -- Recorded workflows
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                name TEXT,
                definition_json TEXT NOT NULL,
                updated_at REAL NOT NULL
            );

            -- Agent runs
            CREATE TABLE IF NOT EXISTS runs (
                run_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                completed_at REAL,
                summary_json TEXT,
                metadata_json TEXT,
                error TEXT,
                session_data TEXT
            );

            -- Per-step results
            CREATE TABLE IF NOT EXISTS run_steps (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                action_id TEXT NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER DEFAULT 0,
                metadata_json TEXT,
                started_at TEXT,
                finished_at TEXT,
                has_screenshot INTEGER DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_runs_workflow ON runs(workflow_id);
            CREATE INDEX IF NOT EXISTS idx_runs_status ON runs(status);
            CREATE INDEX IF NOT EXISTS idx_steps_run ON run_steps(run_id);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    def _conn(self, operation: str) -> aiosqlite.Connection:
        if self._db is None:
            raise PersistenceError("State manager is not initialized", operation=operation)
        return self._db

    # ==================== Workflows ====================

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""
        db = self._conn("save_workflow")
        async with self._lock:
            try:
                await db.execute("""
                    INSERT OR REPLACE INTO workflows (workflow_id, name, definition_json, updated_at)
                    VALUES (?, ?, ?, ?)
                """, (
                    workflow.id,
                    workflow.name,
                    workflow.model_dump_json(by_alias=True),
                    time.time(),
                ))
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to save workflow: {e}", operation="save_workflow")

    async def find_workflow(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by ID, or None when unknown."""
        db = self._conn("find_workflow")
        try:
            cursor = await db.execute(
                "SELECT definition_json FROM workflows WHERE workflow_id = ?",
                (workflow_id,)
            )
            row = await cursor.fetchone()
        except aiosqlite.Error as e:
            raise PersistenceError(f"Failed to load workflow: {e}", operation="find_workflow")

        if not row:
            return None
        return Workflow.model_validate_json(row["definition_json"])

    # ==================== Runs ====================

    async def create_run(self, workflow_id: str) -> RunHandle:
        """Create a run record in RUNNING state."""
        db = self._conn("create_run")
        handle = RunHandle(id=uuid.uuid4().hex, workflow_id=workflow_id)
        now = time.time()

        async with self._run_locks[handle.id]:
            try:
                await db.execute("""
                    INSERT INTO runs (run_id, workflow_id, status, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                """, (handle.id, workflow_id, RunStatus.RUNNING.value, now, now))
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to create run: {e}", operation="create_run")

        logger.debug("run_record_created", run_id=handle.id, workflow_id=workflow_id)
        return handle

    async def update_run(self, handle: RunHandle, patch: dict[str, Any]) -> None:
        """
        Apply a partial update to a run.

        Recognised keys: status, summary, metadata, error, session_data.
        """
        db = self._conn("update_run")
        now = time.time()
        updates = ["updated_at = ?"]
        params: list[Any] = [now]

        status = patch.get("status")
        if status is not None:
            status = getattr(status, "value", status)
            updates.append("status = ?")
            params.append(status)
            if status in _TERMINAL:
                updates.append("completed_at = ?")
                params.append(now)

        if "summary" in patch:
            updates.append("summary_json = ?")
            params.append(json.dumps(patch["summary"], default=str))

        if "metadata" in patch:
            updates.append("metadata_json = ?")
            params.append(json.dumps(patch["metadata"], default=str))

        if "error" in patch:
            updates.append("error = ?")
            params.append(patch["error"])

        if "session_data" in patch:
            updates.append("session_data = ?")
            params.append(patch["session_data"])

        params.append(handle.id)
        async with self._run_locks[handle.id]:
            try:
                cursor = await db.execute(
                    f"UPDATE runs SET {', '.join(updates)} WHERE run_id = ?",
                    params
                )
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(f"Failed to update run: {e}", operation="update_run")

        # A finished run takes no further writes
        if status in _TERMINAL or cursor.rowcount == 0:
            self._run_locks.pop(handle.id, None)

        if cursor.rowcount == 0:
            raise PersistenceError(f"Run {handle.id} not found", operation="update_run")

    async def create_step_record(self, handle: RunHandle, step: StepResult) -> None:
        """Persist one step result."""
        db = self._conn("create_step_record")
        async with self._run_locks[handle.id]:
            try:
                await db.execute("""
                    INSERT INTO run_steps
                    (run_id, action_id, status, attempts, metadata_json,
                     started_at, finished_at, has_screenshot)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    handle.id,
                    step.action_id,
                    step.status.value,
                    step.attempts,
                    json.dumps(step.metadata, default=str),
                    step.started_at.isoformat(),
                    step.finished_at.isoformat(),
                    int(step.screenshot is not None),
                ))
                await db.commit()
            except aiosqlite.Error as e:
                raise PersistenceError(
                    f"Failed to record step: {e}", operation="create_step_record"
                )

    async def get_run(self, run_id: str) -> Optional[RunRecord]:
        """Get run by ID."""
        db = self._conn("get_run")
        cursor = await db.execute(
            "SELECT * FROM runs WHERE run_id = ?",
            (run_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None

        return RunRecord(
            run_id=row["run_id"],
            workflow_id=row["workflow_id"],
            status=row["status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
            summary_json=row["summary_json"],
            metadata_json=row["metadata_json"],
            error=row["error"],
            session_data=row["session_data"],
        )

    async def list_steps(self, run_id: str) -> list[StepRecord]:
        """Get the steps of a run in execution order."""
        db = self._conn("list_steps")
        cursor = await db.execute(
            "SELECT * FROM run_steps WHERE run_id = ? ORDER BY id ASC",
            (run_id,)
        )
        rows = await cursor.fetchall()
        return [
            StepRecord(
                id=row["id"],
                run_id=row["run_id"],
                action_id=row["action_id"],
                status=row["status"],
                attempts=row["attempts"],
                metadata_json=row["metadata_json"],
                started_at=row["started_at"],
                finished_at=row["finished_at"],
                has_screenshot=bool(row["has_screenshot"]),
            )
            for row in rows
        ]
