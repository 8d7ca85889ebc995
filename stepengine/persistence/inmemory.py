"""In-memory implementation of the process step repository."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import AsyncIterator, Dict, Iterable, Optional

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


class InMemoryStore:
    """Rows shared by every repository created on top of it.

    Several repositories over one store behave like several workers sharing
    a database.
    """

    def __init__(self) -> None:
        self.processes: Dict[uuid.UUID, Process] = {}
        self.steps: Dict[uuid.UUID, ProcessStep] = {}


class InMemoryProcessStepRepository(StagingRepository):
    """Store process state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self, store: InMemoryStore | None = None, page_size: int = 100) -> None:
        super().__init__()
        self.store = store or InMemoryStore()
        self.page_size = page_size

    # ------------------------------------------------------------------
    async def _apply(self, operations: list[Operation]) -> None:
        processes = dict(self.store.processes)
        steps = dict(self.store.steps)
        for op in operations:
            if isinstance(op, InsertProcess):
                processes[op.process.id] = op.process.model_copy(update={"steps": []})
            elif isinstance(op, InsertProcessStep):
                steps[op.step.id] = op.step.model_copy()
            elif isinstance(op, UpdateProcess):
                current = processes.get(op.process_id)
                if current is None or current.version != op.expected_version:
                    raise ConcurrencyConflictError(
                        f"process {op.process_id} was modified concurrently "
                        f"(expected version {op.expected_version})"
                    )
                processes[op.process_id] = current.model_copy(update=op.changes)
            elif isinstance(op, UpdateProcessStep):
                current_step = steps.get(op.process_step_id)
                if current_step is None:
                    raise ConcurrencyConflictError(
                        f"process step {op.process_step_id} does not exist"
                    )
                steps[op.process_step_id] = current_step.model_copy(update=op.changes)
            elif isinstance(op, DeleteProcessStep):
                if steps.pop(op.process_step_id, None) is None:
                    raise ConcurrencyConflictError(
                        f"process step {op.process_step_id} does not exist"
                    )
        self.store.processes = processes
        self.store.steps = steps

    # ------------------------------------------------------------------
    def _steps_of(self, process_id: uuid.UUID) -> list[ProcessStep]:
        return sorted(
            (s.model_copy() for s in self.store.steps.values() if s.process_id == process_id),
            key=lambda s: (s.date_created, str(s.id)),
        )

    def _with_steps(self, process: Process) -> Process:
        return process.model_copy(update={"steps": self._steps_of(process.id)})

    def get_active_processes(
        self,
        process_type_ids: Iterable[ProcessTypeId],
        process_step_type_ids: Iterable[ProcessStepTypeId],
        lock_expiry_date: datetime,
    ) -> PagedCursor[Process]:
        process_types = set(process_type_ids)
        step_types = set(process_step_type_ids)

        def is_active(process: Process) -> bool:
            if process.process_type_id not in process_types:
                return False
            if process.lock_expiry is not None and process.lock_expiry >= lock_expiry_date:
                return False
            return any(
                step.process_id == process.id
                and step.process_step_status_id == ProcessStepStatusId.TODO
                and step.process_step_type_id in step_types
                for step in self.store.steps.values()
            )

        async def fetch_page(after: Optional[str], limit: int) -> list[Process]:
            candidates = sorted(
                (p for p in self.store.processes.values() if is_active(p)),
                key=lambda p: str(p.id),
            )
            if after is not None:
                candidates = [p for p in candidates if str(p.id) > after]
            return [p.model_copy() for p in candidates[:limit]]

        return PagedCursor(fetch_page, key=lambda p: str(p.id), page_size=self.page_size)

    async def get_process_step_data(
        self, process_id: uuid.UUID
    ) -> AsyncIterator[ProcessStepData]:
        pending = sorted(
            (
                s
                for s in self.store.steps.values()
                if s.process_id == process_id
                and s.process_step_status_id == ProcessStepStatusId.TODO
            ),
            key=lambda s: (s.process_step_type_id, s.date_created, str(s.id)),
        )
        for step in pending:
            yield ProcessStepData(
                process_step_id=step.id, process_step_type_id=step.process_step_type_id
            )

    async def get_process_step_type_ids(
        self, process_id: uuid.UUID
    ) -> set[ProcessStepTypeId]:
        return {
            s.process_step_type_id
            for s in self.store.steps.values()
            if s.process_id == process_id
        }

    async def get_process(self, process_id: uuid.UUID) -> Process | None:
        process = self.store.processes.get(process_id)
        return self._with_steps(process) if process else None

    async def list_processes(self) -> list[Process]:
        return [self._with_steps(p) for p in self.store.processes.values()]

    async def get_verify_process_data(
        self,
        process_id: uuid.UUID,
        process_step_type_ids: Iterable[ProcessStepTypeId] | None = None,
    ) -> VerifyProcessData | None:
        process = self.store.processes.get(process_id)
        if process is None:
            return None
        step_types = set(process_step_type_ids) if process_step_type_ids is not None else None
        all_steps = self._steps_of(process_id)
        steps = [
            s.model_copy()
            for s in all_steps
            if s.process_step_status_id == ProcessStepStatusId.TODO
            and (step_types is None or s.process_step_type_id in step_types)
        ]
        return VerifyProcessData(
            process=process.model_copy(update={"steps": all_steps}), process_steps=steps
        )
