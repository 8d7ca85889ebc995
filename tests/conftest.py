"""Shared fixtures for stepengine tests."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Sequence

import pytest

from stepengine.enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from stepengine.executors import ProcessTypeExecutor
from stepengine.models import (
    InitializationResult,
    Process,
    ProcessStep,
    StepExecutionResult,
)
from stepengine.persistence import InMemoryProcessStepRepository, InMemoryStore, Repositories

BASE_TIME = datetime(2024, 1, 1, tzinfo=timezone.utc)


class ScriptedExecutor(ProcessTypeExecutor):
    """Type executor returning (or raising) prepared outcomes per step type."""

    def __init__(
        self,
        process_type_id: ProcessTypeId,
        outcomes: dict,
        lock_requested: Sequence[ProcessStepTypeId] = (),
        initial_steps: Sequence[ProcessStepTypeId] | None = None,
    ) -> None:
        self.process_type_id = process_type_id
        self.outcomes = outcomes
        self.lock_requested = set(lock_requested)
        self.initial_steps = list(initial_steps) if initial_steps else None
        self.executed: list[ProcessStepTypeId] = []
        self.seen_step_type_ids: list[list[ProcessStepTypeId]] = []
        self.on_execute: Callable[[ProcessStepTypeId], None] | None = None
        # seconds each step spends "calling out"
        self.delay = 0.0

    def get_process_type_id(self) -> ProcessTypeId:
        return self.process_type_id

    def get_executable_step_type_ids(self) -> frozenset[ProcessStepTypeId]:
        return frozenset(self.outcomes)

    async def initialize_process(self, process_id, process_step_type_ids):
        return InitializationResult(
            modified=False, schedule_step_type_ids=self.initial_steps
        )

    async def is_lock_requested(self, process_step_type_id):
        return process_step_type_id in self.lock_requested

    async def execute_process_step(
        self, process_id, process_step_type_id, process_step_type_ids, cancellation=None
    ):
        self.executed.append(process_step_type_id)
        self.seen_step_type_ids.append(list(process_step_type_ids))
        if self.on_execute is not None:
            self.on_execute(process_step_type_id)
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[process_step_type_id]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def done(*next_steps, skip=None, modified=False) -> StepExecutionResult:
    return StepExecutionResult(
        modified=modified,
        process_step_status_id=ProcessStepStatusId.DONE,
        schedule_step_type_ids=list(next_steps) or None,
        skip_step_type_ids=skip,
    )


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def repositories(store) -> Repositories:
    return Repositories(InMemoryProcessStepRepository(store))


@pytest.fixture
def seed_process(store):
    """Put a process and steps straight into the store.

    Steps are created one second apart in the given order so "oldest" is
    deterministic.
    """

    def _seed(
        process_type_id: ProcessTypeId,
        step_types: Sequence[ProcessStepTypeId],
        statuses: Sequence[ProcessStepStatusId] | None = None,
        lock_expiry: datetime | None = None,
        version: int = 0,
    ) -> tuple[Process, list[ProcessStep]]:
        process = Process(
            process_type_id=process_type_id, version=version, lock_expiry=lock_expiry
        )
        store.processes[process.id] = process
        steps = []
        for index, step_type in enumerate(step_types):
            step = ProcessStep(
                id=uuid.uuid4(),
                process_step_type_id=step_type,
                process_step_status_id=(
                    statuses[index] if statuses else ProcessStepStatusId.TODO
                ),
                process_id=process.id,
                date_created=BASE_TIME + timedelta(seconds=index),
            )
            store.steps[step.id] = step
            steps.append(step)
        return process.model_copy(), steps

    return _seed


@pytest.fixture
def make_executor():
    return ScriptedExecutor


@pytest.fixture
def done_result():
    return done
