"""Generic drain of the pending steps of a process."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import AsyncIterator, Iterable, Optional

from ..enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from ..errors import UnexpectedConditionError
from ..lifecycle import status_range_updates
from ..models import ProcessExecutionResult, StepExecutionResult
from ..persistence import Repositories
from .base import ProcessTypeExecutor

logger = logging.getLogger(__name__)


class _ProcessContext:
    """Pending steps of one process while it is being drained."""

    def __init__(
        self,
        process_id: uuid.UUID,
        all_steps: dict[ProcessStepTypeId, list[uuid.UUID]],
        known_step_type_ids: set[ProcessStepTypeId],
        executor: ProcessTypeExecutor,
    ) -> None:
        self.process_id = process_id
        self.all_steps = all_steps
        # step types the process has in any status
        self.known_step_type_ids = known_step_type_ids | set(all_steps)
        self.executor = executor
        self.executable_step_type_ids = {
            step_type for step_type in all_steps if executor.is_executable_step_type_id(step_type)
        }

    def next_executable(self) -> ProcessStepTypeId | None:
        if not self.executable_step_type_ids:
            return None
        step_type = min(self.executable_step_type_ids)
        self.executable_step_type_ids.discard(step_type)
        return step_type


class ProcessExecutor:
    """Drive the registered type executors over the steps of a process.

    ``execute_process`` is an async generator. It stages changes through the
    repositories and yields a ``ProcessExecutionResult`` after every unit of
    work, telling the caller whether to lock, save or discard.
    """

    def __init__(
        self, executors: Iterable[ProcessTypeExecutor], repositories: Repositories
    ) -> None:
        self._executors: dict[ProcessTypeId, ProcessTypeExecutor] = {}
        for executor in executors:
            process_type_id = executor.get_process_type_id()
            if process_type_id in self._executors:
                raise ValueError(
                    f"duplicate executor for process type {process_type_id.name}"
                )
            self._executors[process_type_id] = executor
        self._repositories = repositories

    def get_registered_process_type_ids(self) -> list[ProcessTypeId]:
        return list(self._executors)

    def get_executable_step_type_ids(self) -> set[ProcessStepTypeId]:
        return {
            step_type
            for executor in self._executors.values()
            for step_type in executor.get_executable_step_type_ids()
        }

    async def execute_process(
        self,
        process_id: uuid.UUID,
        process_type_id: ProcessTypeId,
        cancellation: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[ProcessExecutionResult]:
        executor = self._executors.get(process_type_id)
        if executor is None:
            raise UnexpectedConditionError(
                f"processType {process_type_id} is not a registered executable processType."
            )

        repository = self._repositories.process_steps
        all_steps: dict[ProcessStepTypeId, list[uuid.UUID]] = {}
        async for step in repository.get_process_step_data(process_id):
            all_steps.setdefault(step.process_step_type_id, []).append(step.process_step_id)
        context = _ProcessContext(
            process_id,
            all_steps,
            await repository.get_process_step_type_ids(process_id),
            executor,
        )

        initialization = await executor.initialize_process(process_id, list(all_steps))
        modified = self._schedule_process_steps(
            initialization.schedule_step_type_ids, context
        )
        modified = initialization.modified or modified
        yield _result(modified)

        while True:
            if cancellation is not None and cancellation.is_set():
                logger.info(f"Stopping drain of process {process_id}: cancelled")
                return
            step_type = context.next_executable()
            if step_type is None:
                return

            if await executor.is_lock_requested(step_type):
                yield ProcessExecutionResult.LOCK_REQUESTED

            result = await executor.execute_process_step(
                process_id, step_type, list(context.all_steps), cancellation
            )
            yield _result(self._apply_result(step_type, result, context))

            if result.process_step_status_id == ProcessStepStatusId.TODO:
                # later step types wait until this one is resolved
                logger.info(
                    f"Step {step_type.name} of process {process_id} is still pending, "
                    "leaving the process for a later cycle"
                )
                return

    def _apply_result(
        self,
        step_type: ProcessStepTypeId,
        result: StepExecutionResult,
        context: _ProcessContext,
    ) -> bool:
        modified = self._set_process_step_status(
            step_type, result.process_step_status_id, result.process_message, context
        )
        modified = self._skip_process_steps(result.skip_step_type_ids, context) or modified
        modified = self._schedule_process_steps(result.schedule_step_type_ids, context) or modified
        logger.info(
            f"Step {step_type.name} of process {context.process_id} "
            f"finished with {result.process_step_status_id.name}"
        )
        return result.modified or modified

    def _set_process_step_status(
        self,
        step_type: ProcessStepTypeId,
        status: ProcessStepStatusId,
        message: Optional[str],
        context: _ProcessContext,
    ) -> bool:
        if status == ProcessStepStatusId.TODO and message is None:
            return False
        step_ids = context.all_steps.get(step_type)
        if not step_ids:
            return False
        self._repositories.process_steps.modify_process_steps(
            status_range_updates(step_ids, status, message)
        )
        if status == ProcessStepStatusId.TODO:
            # only the oldest row stays pending, the others became DUPLICATE
            context.all_steps[step_type] = step_ids[:1]
        else:
            del context.all_steps[step_type]
        return True

    def _skip_process_steps(
        self,
        skip_step_type_ids: Optional[Iterable[ProcessStepTypeId]],
        context: _ProcessContext,
    ) -> bool:
        modified = False
        for step_type in skip_step_type_ids or ():
            step_ids = context.all_steps.pop(step_type, None)
            if not step_ids:
                continue
            self._repositories.process_steps.modify_process_steps(
                status_range_updates(step_ids, ProcessStepStatusId.SKIPPED)
            )
            context.executable_step_type_ids.discard(step_type)
            modified = True
        return modified

    def _schedule_process_steps(
        self,
        schedule_step_type_ids: Optional[Iterable[ProcessStepTypeId]],
        context: _ProcessContext,
    ) -> bool:
        modified = False
        for step_type in schedule_step_type_ids or ():
            if step_type in context.known_step_type_ids:
                continue
            step = self._repositories.process_steps.create_process_step(
                step_type, ProcessStepStatusId.TODO, context.process_id
            )
            context.all_steps[step_type] = [step.id]
            context.known_step_type_ids.add(step_type)
            if context.executor.is_executable_step_type_id(step_type):
                context.executable_step_type_ids.add(step_type)
            modified = True
        return modified


def _result(modified: bool) -> ProcessExecutionResult:
    return (
        ProcessExecutionResult.SAVE_REQUESTED
        if modified
        else ProcessExecutionResult.UNMODIFIED
    )
