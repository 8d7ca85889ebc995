"""Process and process step lifecycle operations.

Everything here works on entities already loaded for the current unit of
work and only stages changes through the repository. Committing is left to
the caller.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Callable, Iterable, Optional, Sequence

from .enums import ProcessStepStatusId, ProcessStepTypeId
from .errors import ConflictError, NotFoundError, UnexpectedConditionError
from .models import (
    Process,
    ProcessStep,
    ProcessStepUpdate,
    ProcessUpdate,
    VerifyProcessData,
    utcnow,
)
from .persistence import Repositories
from .persistence.repository import ProcessStepRepository

logger = logging.getLogger(__name__)


# ----------------------------------------------------------------------
# Process lock and version
def request_lock(
    repository: ProcessStepRepository,
    process: Process,
    lock_expiry_date: datetime,
    now: datetime | None = None,
) -> None:
    """Lease ``process`` until ``lock_expiry_date``.

    Raises:
        UnexpectedConditionError: the process is still locked. Callers only
            lock processes they found unlocked, so this is never expected.
    """
    expected_version = process.version
    if not process.try_lock(lock_expiry_date, now):
        raise UnexpectedConditionError("process TryLock should never fail here")
    repository.modify_process(
        process.id,
        expected_version,
        ProcessUpdate(version=process.version, lock_expiry=process.lock_expiry),
    )
    logger.debug(f"Locked process {process.id} until {lock_expiry_date}")


def renew_lock(
    repository: ProcessStepRepository, process: Process, lock_expiry_date: datetime
) -> None:
    """Move the expiry of a lease the caller already holds."""
    expected_version = process.version
    process.lock_expiry = lock_expiry_date
    process.update_version()
    repository.modify_process(
        process.id,
        expected_version,
        ProcessUpdate(version=process.version, lock_expiry=lock_expiry_date),
    )
    logger.debug(f"Renewed lock of process {process.id} until {lock_expiry_date}")


def release_lock(repository: ProcessStepRepository, process: Process) -> bool:
    """Clear the lease. Returns ``False`` when the process was not locked."""
    expected_version = process.version
    if not process.release_lock():
        return False
    repository.modify_process(
        process.id,
        expected_version,
        ProcessUpdate(version=process.version, lock_expiry=None),
    )
    return True


def update_version(repository: ProcessStepRepository, process: Process) -> None:
    """Bump the version so concurrent writers of ``process`` conflict."""
    expected_version = process.version
    process.update_version()
    repository.modify_process(
        process.id, expected_version, ProcessUpdate(version=process.version)
    )


def release_lock_or_update_version(
    repository: ProcessStepRepository, process: Process
) -> None:
    if not release_lock(repository, process):
        update_version(repository, process)


# ----------------------------------------------------------------------
# Step status
def status_range_updates(
    process_step_ids: Sequence[uuid.UUID],
    process_step_status_id: ProcessStepStatusId,
    message: Optional[str] = None,
) -> list[tuple[uuid.UUID, ProcessStepUpdate]]:
    """Updates giving the first id ``process_step_status_id`` and the rest DUPLICATE.

    ``process_step_ids`` must be ordered oldest first.
    """
    updates: list[tuple[uuid.UUID, ProcessStepUpdate]] = []
    for index, process_step_id in enumerate(process_step_ids):
        status = process_step_status_id if index == 0 else ProcessStepStatusId.DUPLICATE
        if message is not None:
            update = ProcessStepUpdate(process_step_status_id=status, message=message)
        else:
            update = ProcessStepUpdate(process_step_status_id=status)
        updates.append((process_step_id, update))
    return updates


def modify_step_status_range(
    steps: Iterable[ProcessStep],
    process_step_status_id: ProcessStepStatusId,
    message: Optional[str] = None,
) -> list[tuple[uuid.UUID, ProcessStepUpdate]]:
    """Give the earliest step ``process_step_status_id``, mark the rest DUPLICATE.

    The loaded step objects are updated in place as well.
    """
    ordered = sorted(steps, key=lambda s: (s.date_created, str(s.id)))
    updates = status_range_updates(
        [step.id for step in ordered], process_step_status_id, message
    )
    for step, (_, update) in zip(ordered, updates):
        step.process_step_status_id = update.process_step_status_id
        if message is not None:
            step.message = message
    return updates


def _group_by_type(
    steps: Iterable[ProcessStep],
) -> dict[ProcessStepTypeId, list[ProcessStep]]:
    groups: dict[ProcessStepTypeId, list[ProcessStep]] = {}
    for step in steps:
        groups.setdefault(step.process_step_type_id, []).append(step)
    return groups


class ManualProcessStepData:
    """A validated process, its TODO steps and the step about to run.

    Obtain instances through :func:`create_manual_process_data`.
    """

    def __init__(
        self,
        process_step_type_id: ProcessStepTypeId,
        process: Process,
        process_steps: list[ProcessStep],
        repositories: Repositories,
    ) -> None:
        self.process_step_type_id = process_step_type_id
        self.process = process
        self.process_steps = process_steps
        self.repositories = repositories

    @property
    def _repository(self) -> ProcessStepRepository:
        return self.repositories.process_steps

    def _other_step_groups(self) -> dict[ProcessStepTypeId, list[ProcessStep]]:
        return _group_by_type(
            step
            for step in self.process_steps
            if step.process_step_type_id != self.process_step_type_id
        )

    def request_lock(self, lock_expiry_date: datetime) -> None:
        request_lock(self._repository, self.process, lock_expiry_date)

    def skip_process_steps(self, process_step_type_ids: Iterable[ProcessStepTypeId]) -> None:
        wanted = set(process_step_type_ids)
        for step_type, group in self._other_step_groups().items():
            if step_type in wanted:
                self._repository.modify_process_steps(
                    modify_step_status_range(group, ProcessStepStatusId.SKIPPED)
                )

    def skip_process_steps_except(
        self, process_step_type_ids: Iterable[ProcessStepTypeId]
    ) -> None:
        kept = set(process_step_type_ids)
        for step_type, group in self._other_step_groups().items():
            if step_type not in kept:
                self._repository.modify_process_steps(
                    modify_step_status_range(group, ProcessStepStatusId.SKIPPED)
                )

    def schedule_process_steps(
        self, process_step_type_ids: Iterable[ProcessStepTypeId]
    ) -> list[ProcessStep]:
        """Create TODO steps for the types the process has in no status yet."""
        existing = {
            step.process_step_type_id
            for step in (*self.process.steps, *self.process_steps)
        }
        new_types: list[ProcessStepTypeId] = []
        for step_type in process_step_type_ids:
            if step_type not in existing and step_type not in new_types:
                new_types.append(step_type)
        created = self._repository.create_process_step_range(
            (step_type, ProcessStepStatusId.TODO, self.process.id) for step_type in new_types
        )
        self.process_steps.extend(created)
        return created

    def finalize_process_step(self) -> None:
        self._repository.modify_process_steps(
            modify_step_status_range(
                (
                    step
                    for step in self.process_steps
                    if step.process_step_type_id == self.process_step_type_id
                ),
                ProcessStepStatusId.DONE,
            )
        )
        release_lock_or_update_version(self._repository, self.process)
        logger.info(
            f"Finalized step {self.process_step_type_id.name} of process {self.process.id}"
        )


def create_manual_process_data(
    process_data: VerifyProcessData | None,
    process_step_type_id: ProcessStepTypeId,
    repositories: Repositories,
    get_process_entity_name: Callable[[], str],
    now: datetime | None = None,
) -> ManualProcessStepData:
    """Validate ``process_data`` before a step of it is run manually.

    Raises:
        NotFoundError: the entity owning the process does not exist.
        ConflictError: no process or steps, the process is locked, or the
            step is not among the pending ones.
        UnexpectedConditionError: non-TODO steps were loaded.
    """
    if process_data is None:
        raise NotFoundError(f"{get_process_entity_name()} does not exist")

    process = process_data.process
    if process is None:
        raise ConflictError(
            f"{get_process_entity_name()} is not associated with any process"
        )

    if process.is_locked(now or utcnow()):
        raise ConflictError(
            f"process {process.id} associated with {get_process_entity_name()} is locked, "
            f"lock expiry is set to {process.lock_expiry}"
        )

    steps = process_data.process_steps
    if steps is None:
        raise ConflictError(
            f"process {process.id} associated with {get_process_entity_name()} has no process steps"
        )

    if any(step.process_step_status_id != ProcessStepStatusId.TODO for step in steps):
        raise UnexpectedConditionError(
            "processSteps should never have any other status than TODO here"
        )

    if all(step.process_step_type_id != process_step_type_id for step in steps):
        raise ConflictError(
            f"{get_process_entity_name()}, process step {process_step_type_id.name} "
            "is not eligible to run"
        )

    return ManualProcessStepData(process_step_type_id, process, list(steps), repositories)
