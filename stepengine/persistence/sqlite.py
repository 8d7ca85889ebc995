"""SQLite implementation of the process step repository."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Iterable, Optional

from ..enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from ..errors import ConcurrencyConflictError
from ..models import Process, ProcessStep, ProcessStepData, VerifyProcessData
from .base import (
    DeleteProcessStep,
    InsertProcess,
    InsertProcessStep,
    Operation,
    StagingRepository,
    UpdateProcess,
    UpdateProcessStep,
)
from .paging import PagedCursor

_PROCESS_COLUMNS = "id, process_type_id, version, lock_expiry"
_STEP_COLUMNS = (
    "id, process_step_type_id, process_step_status_id, process_id, "
    "date_created, date_last_changed, message"
)


def _ts(value: datetime | None) -> str | None:
    # fixed width so that text comparison matches time ordering
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _to_db(column: str, value: Any) -> Any:
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    if column.endswith("_id") and value is not None and not isinstance(value, str):
        return int(value)
    return value


class SQLiteProcessStepRepository(StagingRepository):
    """Persist process state using SQLite."""

    def __init__(self, db_path: str | Path, page_size: int = 100):
        super().__init__()
        self.db_path = str(db_path)
        self.page_size = page_size
        self._conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process (
                id TEXT PRIMARY KEY,
                process_type_id INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                lock_expiry TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS process_step (
                id TEXT PRIMARY KEY,
                process_step_type_id INTEGER NOT NULL,
                process_step_status_id INTEGER NOT NULL,
                process_id TEXT NOT NULL REFERENCES process (id),
                date_created TEXT NOT NULL,
                date_last_changed TEXT,
                message TEXT
            )
            """
        )
        cur.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_process_step_process_status
            ON process_step (process_id, process_step_status_id)
            """
        )

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _execute_batch(self, operations: list[Operation]) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                for op in operations:
                    self._execute_operation(cur, op)
            except BaseException:
                cur.execute("ROLLBACK")
                raise
            cur.execute("COMMIT")

    @staticmethod
    def _execute_operation(cur: sqlite3.Cursor, op: Operation) -> None:
        if isinstance(op, InsertProcess):
            p = op.process
            cur.execute(
                f"INSERT INTO process ({_PROCESS_COLUMNS}) VALUES (?, ?, ?, ?)",
                (str(p.id), int(p.process_type_id), p.version, _ts(p.lock_expiry)),
            )
        elif isinstance(op, InsertProcessStep):
            s = op.step
            cur.execute(
                f"INSERT INTO process_step ({_STEP_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    str(s.id),
                    int(s.process_step_type_id),
                    int(s.process_step_status_id),
                    str(s.process_id),
                    _ts(s.date_created),
                    _ts(s.date_last_changed),
                    s.message,
                ),
            )
        elif isinstance(op, UpdateProcess):
            assignments = ", ".join(f"{column} = ?" for column in op.changes)
            cur.execute(
                f"UPDATE process SET {assignments} WHERE id = ? AND version = ?",
                (
                    *(_to_db(c, v) for c, v in op.changes.items()),
                    str(op.process_id),
                    op.expected_version,
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrencyConflictError(
                    f"process {op.process_id} was modified concurrently "
                    f"(expected version {op.expected_version})"
                )
        elif isinstance(op, UpdateProcessStep):
            assignments = ", ".join(f"{column} = ?" for column in op.changes)
            cur.execute(
                f"UPDATE process_step SET {assignments} WHERE id = ?",
                (
                    *(_to_db(c, v) for c, v in op.changes.items()),
                    str(op.process_step_id),
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrencyConflictError(
                    f"process step {op.process_step_id} does not exist"
                )
        elif isinstance(op, DeleteProcessStep):
            cur.execute(
                "DELETE FROM process_step WHERE id = ?", (str(op.process_step_id),)
            )
            if cur.rowcount != 1:
                raise ConcurrencyConflictError(
                    f"process step {op.process_step_id} does not exist"
                )

    @staticmethod
    def _process_from_row(row: sqlite3.Row, steps: list[ProcessStep] | None = None) -> Process:
        return Process(
            id=uuid.UUID(row["id"]),
            process_type_id=ProcessTypeId(row["process_type_id"]),
            version=row["version"],
            lock_expiry=_dt(row["lock_expiry"]),
            steps=steps or [],
        )

    @staticmethod
    def _step_from_row(row: sqlite3.Row) -> ProcessStep:
        return ProcessStep(
            id=uuid.UUID(row["id"]),
            process_step_type_id=ProcessStepTypeId(row["process_step_type_id"]),
            process_step_status_id=ProcessStepStatusId(row["process_step_status_id"]),
            process_id=uuid.UUID(row["process_id"]),
            date_created=_dt(row["date_created"]),
            date_last_changed=_dt(row["date_last_changed"]),
            message=row["message"],
        )

    async def _load_steps(self, process_id: uuid.UUID) -> list[ProcessStep]:
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_STEP_COLUMNS} FROM process_step WHERE process_id = ? ORDER BY date_created, id",
            str(process_id),
        )
        return [self._step_from_row(r) for r in rows]

    # ------------------------------------------------------------------
    # Repository API
    async def _apply(self, operations: list[Operation]) -> None:
        await asyncio.to_thread(self._execute_batch, operations)

    def get_active_processes(
        self,
        process_type_ids: Iterable[ProcessTypeId],
        process_step_type_ids: Iterable[ProcessStepTypeId],
        lock_expiry_date: datetime,
    ) -> PagedCursor[Process]:
        process_types = [int(t) for t in process_type_ids]
        step_types = [int(t) for t in process_step_type_ids]

        async def fetch_page(after: Optional[str], limit: int) -> list[Process]:
            if not process_types or not step_types:
                return []
            query = f"""
                SELECT {_PROCESS_COLUMNS} FROM process p
                WHERE p.process_type_id IN ({", ".join("?" * len(process_types))})
                AND (p.lock_expiry IS NULL OR p.lock_expiry < ?)
                AND EXISTS (
                    SELECT 1 FROM process_step s
                    WHERE s.process_id = p.id
                    AND s.process_step_status_id = ?
                    AND s.process_step_type_id IN ({", ".join("?" * len(step_types))})
                )
                AND (? IS NULL OR p.id > ?)
                ORDER BY p.id
                LIMIT ?
            """
            rows = await asyncio.to_thread(
                self._fetchall,
                query,
                *process_types,
                _ts(lock_expiry_date),
                int(ProcessStepStatusId.TODO),
                *step_types,
                after,
                after,
                limit,
            )
            return [self._process_from_row(r) for r in rows]

        return PagedCursor(fetch_page, key=lambda p: str(p.id), page_size=self.page_size)

    async def get_process_step_data(
        self, process_id: uuid.UUID
    ) -> AsyncIterator[ProcessStepData]:
        rows = await asyncio.to_thread(
            self._fetchall,
            """
            SELECT id, process_step_type_id FROM process_step
            WHERE process_id = ? AND process_step_status_id = ?
            ORDER BY process_step_type_id, date_created, id
            """,
            str(process_id),
            int(ProcessStepStatusId.TODO),
        )
        for r in rows:
            yield ProcessStepData(
                process_step_id=uuid.UUID(r["id"]),
                process_step_type_id=ProcessStepTypeId(r["process_step_type_id"]),
            )

    async def get_process_step_type_ids(
        self, process_id: uuid.UUID
    ) -> set[ProcessStepTypeId]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT DISTINCT process_step_type_id FROM process_step WHERE process_id = ?",
            str(process_id),
        )
        return {ProcessStepTypeId(r["process_step_type_id"]) for r in rows}

    async def get_process(self, process_id: uuid.UUID) -> Process | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_PROCESS_COLUMNS} FROM process WHERE id = ?",
            str(process_id),
        )
        if not row:
            return None
        return self._process_from_row(row, await self._load_steps(process_id))

    async def list_processes(self) -> list[Process]:
        rows = await asyncio.to_thread(
            self._fetchall, f"SELECT {_PROCESS_COLUMNS} FROM process ORDER BY id"
        )
        processes: list[Process] = []
        for row in rows:
            steps = await self._load_steps(uuid.UUID(row["id"]))
            processes.append(self._process_from_row(row, steps))
        return processes

    async def get_verify_process_data(
        self,
        process_id: uuid.UUID,
        process_step_type_ids: Iterable[ProcessStepTypeId] | None = None,
    ) -> VerifyProcessData | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_PROCESS_COLUMNS} FROM process WHERE id = ?",
            str(process_id),
        )
        if not row:
            return None
        step_types = (
            {ProcessStepTypeId(t) for t in process_step_type_ids}
            if process_step_type_ids is not None
            else None
        )
        all_steps = await self._load_steps(process_id)
        steps = [
            s.model_copy()
            for s in all_steps
            if s.process_step_status_id == ProcessStepStatusId.TODO
            and (step_types is None or s.process_step_type_id in step_types)
        ]
        return VerifyProcessData(
            process=self._process_from_row(row, all_steps), process_steps=steps
        )
