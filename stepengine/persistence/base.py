"""Change staging shared by all repository backends."""

from __future__ import annotations

import abc
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

from ..enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from ..models import (
    Process,
    ProcessStep,
    ProcessStepUpdate,
    ProcessUpdate,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class InsertProcess:
    process: Process


@dataclass
class InsertProcessStep:
    step: ProcessStep


@dataclass
class UpdateProcess:
    process_id: uuid.UUID
    expected_version: int
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class UpdateProcessStep:
    process_step_id: uuid.UUID
    changes: dict[str, Any] = field(default_factory=dict)


@dataclass
class DeleteProcessStep:
    process_step_id: uuid.UUID


Operation = Union[
    InsertProcess, InsertProcessStep, UpdateProcess, UpdateProcessStep, DeleteProcessStep
]


class StagingRepository(abc.ABC):
    """Collect writes in order and hand them to the backend on ``save``.

    Backends implement ``_apply`` and must apply the whole batch in one
    transaction, raising ``ConcurrencyConflictError`` when a process update
    does not match the stored version or a step update finds no row.
    """

    def __init__(self) -> None:
        self._pending: list[Operation] = []

    @property
    def has_pending_changes(self) -> bool:
        return bool(self._pending)

    # ------------------------------------------------------------------
    # Staging
    def create_process(self, process_type_id: ProcessTypeId) -> Process:
        process = Process(process_type_id=process_type_id)
        self._pending.append(InsertProcess(process.model_copy(deep=True)))
        return process

    def create_process_step(
        self,
        process_step_type_id: ProcessStepTypeId,
        process_step_status_id: ProcessStepStatusId,
        process_id: uuid.UUID,
    ) -> ProcessStep:
        step = ProcessStep(
            process_step_type_id=process_step_type_id,
            process_step_status_id=process_step_status_id,
            process_id=process_id,
        )
        self._pending.append(InsertProcessStep(step.model_copy()))
        return step

    def create_process_step_range(
        self,
        step_data: Iterable[tuple[ProcessStepTypeId, ProcessStepStatusId, uuid.UUID]],
    ) -> list[ProcessStep]:
        return [
            self.create_process_step(step_type, status, process_id)
            for step_type, status, process_id in step_data
        ]

    def modify_process_step(
        self, process_step_id: uuid.UUID, update: ProcessStepUpdate
    ) -> None:
        changes = update.changes()
        changes["date_last_changed"] = utcnow()
        self._pending.append(UpdateProcessStep(process_step_id, changes))

    def modify_process_steps(
        self, updates: Iterable[tuple[uuid.UUID, ProcessStepUpdate]]
    ) -> None:
        for process_step_id, update in updates:
            self.modify_process_step(process_step_id, update)

    def modify_process(
        self, process_id: uuid.UUID, expected_version: int, update: ProcessUpdate
    ) -> None:
        if update.version <= expected_version:
            raise ValueError("process version must increase on every update")
        self._pending.append(
            UpdateProcess(process_id, expected_version, update.changes())
        )

    def remove_process_step(self, process_step_id: uuid.UUID) -> None:
        self._pending.append(DeleteProcessStep(process_step_id))

    # ------------------------------------------------------------------
    # Unit of work
    async def save(self) -> None:
        if not self._pending:
            return
        operations, self._pending = self._pending, []
        logger.debug(f"Saving {len(operations)} staged operation(s)")
        await self._apply(operations)

    def clear(self) -> None:
        if self._pending:
            logger.debug(f"Discarding {len(self._pending)} staged operation(s)")
        self._pending = []

    @abc.abstractmethod
    async def _apply(self, operations: list[Operation]) -> None:
        raise NotImplementedError
