"""Executor base class dispatching steps to registered handler coroutines."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Awaitable, Callable, Iterable, Mapping, Optional, Sequence

from ..enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from ..errors import ServiceError, UnexpectedConditionError
from ..models import InitializationResult, StepExecutionResult
from .base import ProcessTypeExecutor

logger = logging.getLogger(__name__)

StepHandler = Callable[
    [uuid.UUID, Sequence[ProcessStepTypeId], Optional[asyncio.Event]],
    Awaitable[StepExecutionResult],
]


def step_done(
    *next_step_type_ids: ProcessStepTypeId, modified: bool = False
) -> StepExecutionResult:
    """Result of a successful step scheduling ``next_step_type_ids``."""
    return StepExecutionResult(
        modified=modified,
        process_step_status_id=ProcessStepStatusId.DONE,
        schedule_step_type_ids=list(next_step_type_ids) or None,
    )


class StepHandlerExecutor(ProcessTypeExecutor):
    """Run each step type with the handler registered for it.

    Remote failures are translated into step outcomes: a recoverable
    ``ServiceError`` keeps the step TODO so a later cycle retries it, any
    other ``ServiceError`` marks the step FAILED. Other exceptions propagate
    and abort the drain of the process.
    """

    process_type_id: ProcessTypeId

    def __init__(
        self,
        handlers: Mapping[ProcessStepTypeId, StepHandler] | None = None,
        lock_requested_step_type_ids: Iterable[ProcessStepTypeId] = (),
        process_type_id: ProcessTypeId | None = None,
    ) -> None:
        if process_type_id is not None:
            self.process_type_id = process_type_id
        if getattr(self, "process_type_id", None) is None:
            raise ValueError(f"{type(self).__name__} has no process_type_id")
        self._handlers: dict[ProcessStepTypeId, StepHandler] = dict(handlers or {})
        self._lock_requested = set(lock_requested_step_type_ids)

    def register(
        self,
        process_step_type_id: ProcessStepTypeId,
        handler: StepHandler,
        lock_requested: bool = False,
    ) -> None:
        self._handlers[process_step_type_id] = handler
        if lock_requested:
            self._lock_requested.add(process_step_type_id)

    def get_process_type_id(self) -> ProcessTypeId:
        return self.process_type_id

    def get_executable_step_type_ids(self) -> frozenset[ProcessStepTypeId]:
        return frozenset(self._handlers)

    async def load_context(self, process_id: uuid.UUID) -> None:
        """Hook to load workflow data (e.g. the owning tenant) for ``process_id``.

        Processes of one type may be drained concurrently, so anything loaded
        here must be stored per ``process_id``.
        """

    async def initialize_process(
        self, process_id: uuid.UUID, process_step_type_ids: Sequence[ProcessStepTypeId]
    ) -> InitializationResult:
        await self.load_context(process_id)
        return InitializationResult(modified=False, schedule_step_type_ids=None)

    async def is_lock_requested(self, process_step_type_id: ProcessStepTypeId) -> bool:
        return process_step_type_id in self._lock_requested

    async def execute_process_step(
        self,
        process_id: uuid.UUID,
        process_step_type_id: ProcessStepTypeId,
        process_step_type_ids: Sequence[ProcessStepTypeId],
        cancellation: Optional[asyncio.Event] = None,
    ) -> StepExecutionResult:
        handler = self._handlers.get(process_step_type_id)
        if handler is None:
            raise UnexpectedConditionError(
                f"process step type {process_step_type_id.name} is not executable "
                f"by {type(self).__name__}"
            )
        try:
            return await handler(process_id, process_step_type_ids, cancellation)
        except ServiceError as error:
            return self._process_error(error, process_id, process_step_type_id)

    def _process_error(
        self,
        error: ServiceError,
        process_id: uuid.UUID,
        process_step_type_id: ProcessStepTypeId,
    ) -> StepExecutionResult:
        status = (
            ProcessStepStatusId.TODO if error.recoverable else ProcessStepStatusId.FAILED
        )
        logger.warning(
            f"Step {process_step_type_id.name} of process {process_id} "
            f"{'will be retried' if error.recoverable else 'failed'}: {error}"
        )
        return StepExecutionResult(
            modified=True,
            process_step_status_id=status,
            process_message=str(error),
        )
