"""Contract implemented by every workflow driven by the engine."""

from __future__ import annotations

import abc
import asyncio
import uuid
from typing import Optional, Sequence

from ..enums import ProcessStepTypeId, ProcessTypeId
from ..models import InitializationResult, StepExecutionResult


class ProcessTypeExecutor(metaclass=abc.ABCMeta):
    """Workflow specific logic for the steps of one process type.

    Implementations perform the side effect of a step and describe what
    should happen next. They never commit storage changes themselves.
    """

    @abc.abstractmethod
    def get_process_type_id(self) -> ProcessTypeId:
        raise NotImplementedError

    @abc.abstractmethod
    def get_executable_step_type_ids(self) -> frozenset[ProcessStepTypeId]:
        raise NotImplementedError

    def is_executable_step_type_id(self, process_step_type_id: ProcessStepTypeId) -> bool:
        return process_step_type_id in self.get_executable_step_type_ids()

    @abc.abstractmethod
    async def initialize_process(
        self, process_id: uuid.UUID, process_step_type_ids: Sequence[ProcessStepTypeId]
    ) -> InitializationResult:
        """Prepare a process before its steps run; may request extra steps."""
        raise NotImplementedError

    async def is_lock_requested(self, process_step_type_id: ProcessStepTypeId) -> bool:
        """Whether the lease must be renewed before this step runs."""
        return False

    @abc.abstractmethod
    async def execute_process_step(
        self,
        process_id: uuid.UUID,
        process_step_type_id: ProcessStepTypeId,
        process_step_type_ids: Sequence[ProcessStepTypeId],
        cancellation: Optional[asyncio.Event] = None,
    ) -> StepExecutionResult:
        """Run one step of ``process_id``.

        One executor instance serves every process of its type, so per
        process state must be keyed by ``process_id``.

        Raises:
            NotFoundError: data the step needs is missing.
            ConflictError: a prerequisite of the step is not met.
        """
        raise NotImplementedError
