"""Repository abstraction for process and process step persistence."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import AsyncIterator, Iterable, Protocol

from ..enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from ..models import (
    Process,
    ProcessStep,
    ProcessStepData,
    ProcessStepUpdate,
    ProcessUpdate,
    VerifyProcessData,
)
from .paging import PagedCursor


class ProcessStepRepository(Protocol):
    """Protocol for process state persistence backends.

    Mutating calls only stage changes. Nothing is written before ``save()``,
    which applies everything staged so far in one transaction.
    """

    def create_process(self, process_type_id: ProcessTypeId) -> Process:
        """Stage a new unlocked process with version 0."""

    def create_process_step(
        self,
        process_step_type_id: ProcessStepTypeId,
        process_step_status_id: ProcessStepStatusId,
        process_id: uuid.UUID,
    ) -> ProcessStep:
        """Stage a new step."""

    def create_process_step_range(
        self,
        step_data: Iterable[tuple[ProcessStepTypeId, ProcessStepStatusId, uuid.UUID]],
    ) -> list[ProcessStep]:
        """Stage many steps for one or many processes."""

    def modify_process_step(
        self, process_step_id: uuid.UUID, update: ProcessStepUpdate
    ) -> None:
        """Stage a partial update of a step."""

    def modify_process_steps(
        self, updates: Iterable[tuple[uuid.UUID, ProcessStepUpdate]]
    ) -> None:
        """Stage partial updates of many steps."""

    def modify_process(
        self, process_id: uuid.UUID, expected_version: int, update: ProcessUpdate
    ) -> None:
        """Stage a partial update of a process, guarded by ``expected_version``."""

    def remove_process_step(self, process_step_id: uuid.UUID) -> None:
        """Stage the deletion of a step."""

    async def save(self) -> None:
        """Apply all staged changes atomically."""

    def clear(self) -> None:
        """Discard all staged changes."""

    def get_active_processes(
        self,
        process_type_ids: Iterable[ProcessTypeId],
        process_step_type_ids: Iterable[ProcessStepTypeId],
        lock_expiry_date: datetime,
    ) -> PagedCursor[Process]:
        """Return processes with eligible TODO steps whose lock is unset or expired."""

    def get_process_step_data(
        self, process_id: uuid.UUID
    ) -> AsyncIterator[ProcessStepData]:
        """Yield the TODO steps of a process ordered by step type."""

    async def get_process_step_type_ids(
        self, process_id: uuid.UUID
    ) -> set[ProcessStepTypeId]:
        """Return the types of all steps of a process, whatever their status."""

    async def get_process(self, process_id: uuid.UUID) -> Process | None:
        """Retrieve a process with all of its steps."""

    async def list_processes(self) -> list[Process]:
        """Return all processes with their steps."""

    async def get_verify_process_data(
        self,
        process_id: uuid.UUID,
        process_step_type_ids: Iterable[ProcessStepTypeId] | None = None,
    ) -> VerifyProcessData | None:
        """Load a process and its TODO steps for manual step execution.

        ``process.steps`` holds every step of the process, so callers can
        tell which step types already exist in any status.
        """
