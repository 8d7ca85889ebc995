"""Process dispatcher for stepengine."""

from __future__ import annotations

import logging
from typing import Iterable

from .enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from .models import Process
from .persistence import Repositories

logger = logging.getLogger(__name__)


class ProcessDispatcher:
    """Service responsible for enqueueing new processes."""

    def __init__(self, repositories: Repositories) -> None:
        self._repositories = repositories

    def create_process(
        self,
        process_type_id: ProcessTypeId,
        initial_step_type_ids: Iterable[ProcessStepTypeId],
    ) -> Process:
        """Stage a process with one TODO step per distinct initial step type.

        Callers that store their own rows alongside the process (e.g. the
        tenant a setup process belongs to) stage them before calling
        ``Repositories.save``.
        """
        step_types = list(dict.fromkeys(initial_step_type_ids))
        if not step_types:
            raise ValueError("a process needs at least one initial step")
        repository = self._repositories.process_steps
        process = repository.create_process(process_type_id)
        process.steps = repository.create_process_step_range(
            (step_type, ProcessStepStatusId.TODO, process.id) for step_type in step_types
        )
        return process

    async def dispatch_process(
        self,
        process_type_id: ProcessTypeId,
        initial_step_type_ids: Iterable[ProcessStepTypeId],
    ) -> Process:
        """Create and commit a new process.

        Returns:
            The new process, including its initial steps.
        """
        try:
            process = self.create_process(process_type_id, initial_step_type_ids)
            await self._repositories.save()
        finally:
            self._repositories.clear()
        logger.info(
            f"Dispatched process {process.id} of type {process_type_id.name} with steps "
            f"{[step.process_step_type_id.name for step in process.steps]}"
        )
        return process
