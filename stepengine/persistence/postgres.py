"""PostgreSQL implementation of the process step repository."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Iterable, Optional

import asyncpg

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


def _to_db(value: Any) -> Any:
    # IntEnum members are passed as plain ints so asyncpg encodes them as integer
    if isinstance(value, int) and not isinstance(value, bool):
        return int(value)
    return value


class PostgresProcessStepRepository(StagingRepository):
    """Persist process state using PostgreSQL."""

    def __init__(self, dsn: str, page_size: int = 100):
        super().__init__()
        self._dsn = dsn
        self.page_size = page_size
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS process (
                id UUID PRIMARY KEY,
                process_type_id INTEGER NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                lock_expiry TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS process_step (
                id UUID PRIMARY KEY,
                process_step_type_id INTEGER NOT NULL,
                process_step_status_id INTEGER NOT NULL,
                process_id UUID NOT NULL REFERENCES process (id),
                date_created TIMESTAMPTZ NOT NULL,
                date_last_changed TIMESTAMPTZ,
                message TEXT
            )
            """
        )
        await conn.execute(
            """
            CREATE INDEX IF NOT EXISTS ix_process_step_process_status
            ON process_step (process_id, process_step_status_id)
            """
        )

    @staticmethod
    def _process_from_row(row: asyncpg.Record, steps: list[ProcessStep] | None = None) -> Process:
        return Process(
            id=row["id"],
            process_type_id=ProcessTypeId(row["process_type_id"]),
            version=row["version"],
            lock_expiry=row["lock_expiry"],
            steps=steps or [],
        )

    @staticmethod
    def _step_from_row(row: asyncpg.Record) -> ProcessStep:
        return ProcessStep(
            id=row["id"],
            process_step_type_id=ProcessStepTypeId(row["process_step_type_id"]),
            process_step_status_id=ProcessStepStatusId(row["process_step_status_id"]),
            process_id=row["process_id"],
            date_created=row["date_created"],
            date_last_changed=row["date_last_changed"],
            message=row["message"],
        )

    @staticmethod
    async def _execute_operation(conn: asyncpg.Connection, op: Operation) -> None:
        if isinstance(op, InsertProcess):
            p = op.process
            await conn.execute(
                f"INSERT INTO process ({_PROCESS_COLUMNS}) VALUES ($1, $2, $3, $4)",
                p.id,
                int(p.process_type_id),
                p.version,
                p.lock_expiry,
            )
        elif isinstance(op, InsertProcessStep):
            s = op.step
            await conn.execute(
                f"INSERT INTO process_step ({_STEP_COLUMNS}) VALUES ($1, $2, $3, $4, $5, $6, $7)",
                s.id,
                int(s.process_step_type_id),
                int(s.process_step_status_id),
                s.process_id,
                s.date_created,
                s.date_last_changed,
                s.message,
            )
        elif isinstance(op, UpdateProcess):
            columns = list(op.changes)
            assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
            n = len(columns)
            result = await conn.execute(
                f"UPDATE process SET {assignments} WHERE id = ${n + 1} AND version = ${n + 2}",
                *(_to_db(op.changes[c]) for c in columns),
                op.process_id,
                op.expected_version,
            )
            if result != "UPDATE 1":
                raise ConcurrencyConflictError(
                    f"process {op.process_id} was modified concurrently "
                    f"(expected version {op.expected_version})"
                )
        elif isinstance(op, UpdateProcessStep):
            columns = list(op.changes)
            assignments = ", ".join(f"{c} = ${i}" for i, c in enumerate(columns, start=1))
            result = await conn.execute(
                f"UPDATE process_step SET {assignments} WHERE id = ${len(columns) + 1}",
                *(_to_db(op.changes[c]) for c in columns),
                op.process_step_id,
            )
            if result != "UPDATE 1":
                raise ConcurrencyConflictError(
                    f"process step {op.process_step_id} does not exist"
                )
        elif isinstance(op, DeleteProcessStep):
            result = await conn.execute(
                "DELETE FROM process_step WHERE id = $1", op.process_step_id
            )
            if result != "DELETE 1":
                raise ConcurrencyConflictError(
                    f"process step {op.process_step_id} does not exist"
                )

    # ------------------------------------------------------------------
    async def _apply(self, operations: list[Operation]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                for op in operations:
                    await self._execute_operation(conn, op)
        finally:
            await conn.close()

    def get_active_processes(
        self,
        process_type_ids: Iterable[ProcessTypeId],
        process_step_type_ids: Iterable[ProcessStepTypeId],
        lock_expiry_date: datetime,
    ) -> PagedCursor[Process]:
        process_types = [int(t) for t in process_type_ids]
        step_types = [int(t) for t in process_step_type_ids]

        async def fetch_page(after: Optional[uuid.UUID], limit: int) -> list[Process]:
            if not process_types or not step_types:
                return []
            conn = await self._connect()
            try:
                rows = await conn.fetch(
                    f"""
                    SELECT {_PROCESS_COLUMNS} FROM process p
                    WHERE p.process_type_id = ANY($1::int[])
                    AND (p.lock_expiry IS NULL OR p.lock_expiry < $2)
                    AND EXISTS (
                        SELECT 1 FROM process_step s
                        WHERE s.process_id = p.id
                        AND s.process_step_status_id = $3
                        AND s.process_step_type_id = ANY($4::int[])
                    )
                    AND ($5::uuid IS NULL OR p.id > $5::uuid)
                    ORDER BY p.id
                    LIMIT $6
                    """,
                    process_types,
                    lock_expiry_date,
                    int(ProcessStepStatusId.TODO),
                    step_types,
                    after,
                    limit,
                )
            finally:
                await conn.close()
            return [self._process_from_row(r) for r in rows]

        return PagedCursor(fetch_page, key=lambda p: p.id, page_size=self.page_size)

    async def get_process_step_data(
        self, process_id: uuid.UUID
    ) -> AsyncIterator[ProcessStepData]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT id, process_step_type_id FROM process_step
                WHERE process_id = $1 AND process_step_status_id = $2
                ORDER BY process_step_type_id, date_created, id
                """,
                process_id,
                int(ProcessStepStatusId.TODO),
            )
        finally:
            await conn.close()
        for r in rows:
            yield ProcessStepData(
                process_step_id=r["id"],
                process_step_type_id=ProcessStepTypeId(r["process_step_type_id"]),
            )

    async def get_process_step_type_ids(
        self, process_id: uuid.UUID
    ) -> set[ProcessStepTypeId]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT DISTINCT process_step_type_id FROM process_step WHERE process_id = $1",
                process_id,
            )
        finally:
            await conn.close()
        return {ProcessStepTypeId(r["process_step_type_id"]) for r in rows}

    async def _load(
        self, conn: asyncpg.Connection, process_id: uuid.UUID
    ) -> tuple[asyncpg.Record | None, list[ProcessStep]]:
        row = await conn.fetchrow(
            f"SELECT {_PROCESS_COLUMNS} FROM process WHERE id = $1", process_id
        )
        if not row:
            return None, []
        step_rows = await conn.fetch(
            f"SELECT {_STEP_COLUMNS} FROM process_step WHERE process_id = $1 ORDER BY date_created, id",
            process_id,
        )
        return row, [self._step_from_row(r) for r in step_rows]

    async def get_process(self, process_id: uuid.UUID) -> Process | None:
        conn = await self._connect()
        try:
            row, steps = await self._load(conn, process_id)
        finally:
            await conn.close()
        return self._process_from_row(row, steps) if row else None

    async def list_processes(self) -> list[Process]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(f"SELECT {_PROCESS_COLUMNS} FROM process ORDER BY id")
            step_rows = await conn.fetch(
                f"SELECT {_STEP_COLUMNS} FROM process_step ORDER BY date_created, id"
            )
        finally:
            await conn.close()
        steps_by_process: dict[uuid.UUID, list[ProcessStep]] = {}
        for r in step_rows:
            steps_by_process.setdefault(r["process_id"], []).append(self._step_from_row(r))
        return [self._process_from_row(r, steps_by_process.get(r["id"])) for r in rows]

    async def get_verify_process_data(
        self,
        process_id: uuid.UUID,
        process_step_type_ids: Iterable[ProcessStepTypeId] | None = None,
    ) -> VerifyProcessData | None:
        conn = await self._connect()
        try:
            row, steps = await self._load(conn, process_id)
        finally:
            await conn.close()
        if not row:
            return None
        step_types = (
            set(process_step_type_ids) if process_step_type_ids is not None else None
        )
        pending = [
            s.model_copy()
            for s in steps
            if s.process_step_status_id == ProcessStepStatusId.TODO
            and (step_types is None or s.process_step_type_id in step_types)
        ]
        return VerifyProcessData(
            process=self._process_from_row(row, steps), process_steps=pending
        )
