"""Persisted process/step entities and the records exchanged with executors."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any, Iterable, Optional

from pydantic import BaseModel, Field

from .enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class ProcessStep(BaseModel):
    """One unit of work within a process."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    process_step_type_id: ProcessStepTypeId
    process_step_status_id: ProcessStepStatusId = ProcessStepStatusId.TODO
    process_id: uuid.UUID
    date_created: datetime = Field(default_factory=utcnow)
    date_last_changed: Optional[datetime] = None
    message: Optional[str] = None


class Process(BaseModel):
    """A workflow instance, guarded by a clock-based lease and a version token."""

    id: uuid.UUID = Field(default_factory=uuid.uuid4)
    process_type_id: ProcessTypeId
    version: int = 0
    lock_expiry: Optional[datetime] = None
    steps: list[ProcessStep] = Field(default_factory=list)

    def is_locked(self, now: datetime | None = None) -> bool:
        # claimable only once lock_expiry < now, same as discovery
        now = now or utcnow()
        return self.lock_expiry is not None and self.lock_expiry >= now

    def try_lock(self, lock_expiry: datetime, now: datetime | None = None) -> bool:
        if self.is_locked(now):
            return False
        self.lock_expiry = lock_expiry
        self.version += 1
        return True

    def release_lock(self) -> bool:
        if self.lock_expiry is None:
            return False
        self.lock_expiry = None
        self.version += 1
        return True

    def update_version(self) -> None:
        self.version += 1


class ProcessUpdate(BaseModel):
    """Partial update of a process row.

    Only the fields explicitly passed are written; ``version`` is always set
    by the staging code.
    """

    version: int
    lock_expiry: Optional[datetime] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(include=self.model_fields_set)


class ProcessStepUpdate(BaseModel):
    """Partial update of a process step row."""

    process_step_status_id: Optional[ProcessStepStatusId] = None
    message: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        return self.model_dump(include=self.model_fields_set)


class ProcessStepData(BaseModel):
    """Id and type of a pending step."""

    process_step_id: uuid.UUID
    process_step_type_id: ProcessStepTypeId


class VerifyProcessData(BaseModel):
    """A process together with the TODO steps loaded for manual execution."""

    process: Optional[Process] = None
    process_steps: Optional[list[ProcessStep]] = None


class InitializationResult(BaseModel):
    modified: bool
    schedule_step_type_ids: Optional[list[ProcessStepTypeId]] = None


class StepExecutionResult(BaseModel):
    """Outcome of one step execution, applied by the engine as one unit."""

    modified: bool
    process_step_status_id: ProcessStepStatusId
    schedule_step_type_ids: Optional[list[ProcessStepTypeId]] = None
    skip_step_type_ids: Optional[list[ProcessStepTypeId]] = None
    process_message: Optional[str] = None


class ProcessExecutionResult(IntEnum):
    SAVE_REQUESTED = 1
    LOCK_REQUESTED = 2
    UNMODIFIED = 3


def derive_process_status(steps: Iterable[ProcessStep]) -> str:
    """Summarise step statuses as ``failed``, ``in_progress`` or ``completed``."""
    statuses = {step.process_step_status_id for step in steps}
    if ProcessStepStatusId.FAILED in statuses:
        return "failed"
    if ProcessStepStatusId.TODO in statuses:
        return "in_progress"
    return "completed"
