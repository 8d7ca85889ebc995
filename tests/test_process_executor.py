"""Draining the pending steps of a process."""

import asyncio

import pytest

from stepengine.dispatch import ProcessDispatcher
from stepengine.enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from stepengine.errors import ConflictError, UnexpectedConditionError
from stepengine.executors import ProcessExecutor
from stepengine.models import ProcessExecutionResult, StepExecutionResult

T = ProcessStepTypeId
S = ProcessStepStatusId
R = ProcessExecutionResult


async def _drain(process_executor, repositories, process, cancellation=None):
    """Consume the drain like a worker would, without lock handling."""
    results = []
    async for result in process_executor.execute_process(
        process.id, process.process_type_id, cancellation
    ):
        results.append(result)
        if result is R.SAVE_REQUESTED:
            await repositories.save()
        repositories.clear()
    return results


async def _steps_by_type(repositories, process):
    stored = await repositories.process_steps.get_process(process.id)
    by_type = {}
    for step in stored.steps:
        by_type.setdefault(step.process_step_type_id, []).append(step.process_step_status_id)
    return by_type


@pytest.mark.asyncio
async def test_steps_run_in_ascending_type_order(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM,
        [T.SUBSCRIBE_APPLICATION, T.CREATE_SUBACCOUNT, T.ASSIGN_ENTITLEMENTS],
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {
            T.CREATE_SUBACCOUNT: done_result(),
            T.ASSIGN_ENTITLEMENTS: done_result(),
            T.SUBSCRIBE_APPLICATION: done_result(),
        },
    )

    results = await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [
        T.CREATE_SUBACCOUNT,
        T.ASSIGN_ENTITLEMENTS,
        T.SUBSCRIBE_APPLICATION,
    ]
    assert results == [R.UNMODIFIED, R.SAVE_REQUESTED, R.SAVE_REQUESTED, R.SAVE_REQUESTED]
    assert executor.seen_step_type_ids[1] == [T.ASSIGN_ENTITLEMENTS, T.SUBSCRIBE_APPLICATION]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_SUBACCOUNT: [S.DONE],
        T.ASSIGN_ENTITLEMENTS: [S.DONE],
        T.SUBSCRIBE_APPLICATION: [S.DONE],
    }


@pytest.mark.asyncio
async def test_scheduled_steps_continue_in_same_drain(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.CREATE_TECHNICAL_USER, [T.CREATE_TECHNICAL_USER]
    )
    executor = make_executor(
        ProcessTypeId.CREATE_TECHNICAL_USER,
        {
            T.CREATE_TECHNICAL_USER: done_result(T.GET_TECHNICAL_USER_DATA),
            T.GET_TECHNICAL_USER_DATA: done_result(T.SEND_TECHNICAL_USER_CREATION_CALLBACK),
        },
    )

    await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_TECHNICAL_USER, T.GET_TECHNICAL_USER_DATA]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_TECHNICAL_USER: [S.DONE],
        T.GET_TECHNICAL_USER_DATA: [S.DONE],
        T.SEND_TECHNICAL_USER_CREATION_CALLBACK: [S.TODO],
    }


@pytest.mark.asyncio
async def test_skipped_steps_are_not_executed(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_APPLICATION, T.CREATE_STATUS_LIST]
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {
            T.CREATE_APPLICATION: done_result(skip=[T.CREATE_STATUS_LIST, T.SEND_CALLBACK]),
            T.CREATE_STATUS_LIST: done_result(),
        },
    )

    await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_APPLICATION]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_APPLICATION: [S.DONE],
        T.CREATE_STATUS_LIST: [S.SKIPPED],
    }


@pytest.mark.asyncio
async def test_duplicate_pending_rows_are_reconciled(
    repositories, seed_process, make_executor, done_result
):
    process, _ = seed_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT, T.CREATE_SUBACCOUNT]
    )
    executor = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: done_result()})

    await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_SUBACCOUNT: [S.DONE, S.DUPLICATE],
    }


@pytest.mark.asyncio
async def test_steps_of_other_executors_are_left_alone(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT, T.SEND_CALLBACK]
    )
    executor = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: done_result()})

    await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert (await _steps_by_type(repositories, process))[T.SEND_CALLBACK] == [S.TODO]


@pytest.mark.asyncio
async def test_recoverable_todo_result_is_not_retried_in_same_drain(
    repositories, make_executor
):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT]
    )
    retry = StepExecutionResult(
        modified=True, process_step_status_id=S.TODO, process_message="timeout"
    )
    executor = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: retry})

    results = await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert results == [R.UNMODIFIED, R.SAVE_REQUESTED]
    (step,) = (await repositories.process_steps.get_process(process.id)).steps
    assert step.process_step_status_id == S.TODO
    assert step.message == "timeout"


@pytest.mark.asyncio
async def test_pending_step_holds_back_later_step_types(
    repositories, make_executor, done_result
):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT, T.ASSIGN_ENTITLEMENTS]
    )
    retry = StepExecutionResult(
        modified=True, process_step_status_id=S.TODO, process_message="timeout"
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_SUBACCOUNT: retry, T.ASSIGN_ENTITLEMENTS: done_result()},
    )

    results = await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert results == [R.UNMODIFIED, R.SAVE_REQUESTED]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_SUBACCOUNT: [S.TODO],
        T.ASSIGN_ENTITLEMENTS: [S.TODO],
    }


@pytest.mark.asyncio
async def test_unmodified_pending_step_also_ends_the_drain(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT, T.ASSIGN_ENTITLEMENTS]
    )
    not_yet = StepExecutionResult(modified=False, process_step_status_id=S.TODO)
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_SUBACCOUNT: not_yet, T.ASSIGN_ENTITLEMENTS: done_result()},
    )

    results = await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert results == [R.UNMODIFIED, R.UNMODIFIED]


@pytest.mark.asyncio
async def test_finished_step_types_are_not_scheduled_again(
    repositories, seed_process, make_executor, done_result
):
    process, _ = seed_process(
        ProcessTypeId.SETUP_DIM,
        [T.CREATE_SUBACCOUNT, T.SEND_CALLBACK],
        statuses=[S.DONE, S.TODO],
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.SEND_CALLBACK: done_result(T.CREATE_SUBACCOUNT)},
        initial_steps=[T.CREATE_SUBACCOUNT],
    )

    await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert executor.executed == [T.SEND_CALLBACK]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_SUBACCOUNT: [S.DONE],
        T.SEND_CALLBACK: [S.DONE],
    }


@pytest.mark.asyncio
async def test_lock_is_requested_before_the_step_runs(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_DIM_SERVICE_INSTANCE]
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_DIM_SERVICE_INSTANCE: done_result()},
        lock_requested=[T.CREATE_DIM_SERVICE_INSTANCE],
    )
    seen = []
    executor.on_execute = lambda step_type: seen.append(list(results))
    process_executor = ProcessExecutor([executor], repositories)

    results = []
    async for result in process_executor.execute_process(process.id, process.process_type_id):
        results.append(result)

    assert seen == [[R.UNMODIFIED, R.LOCK_REQUESTED]]
    assert results == [R.UNMODIFIED, R.LOCK_REQUESTED, R.SAVE_REQUESTED]


@pytest.mark.asyncio
async def test_initialization_can_schedule_steps(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT]
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_SUBACCOUNT: done_result(), T.SEND_CALLBACK: done_result()},
        initial_steps=[T.CREATE_SUBACCOUNT, T.SEND_CALLBACK],
    )

    results = await _drain(ProcessExecutor([executor], repositories), repositories, process)

    assert results[0] is R.SAVE_REQUESTED
    assert executor.executed == [T.CREATE_SUBACCOUNT, T.SEND_CALLBACK]


@pytest.mark.asyncio
async def test_executor_error_propagates_and_keeps_step_todo(repositories, make_executor):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SERVICEMANAGER_BINDINGS]
    )
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_SERVICEMANAGER_BINDINGS: ConflictError("SubAccountId must not be null.")},
    )

    with pytest.raises(ConflictError):
        await _drain(ProcessExecutor([executor], repositories), repositories, process)

    (step,) = (await repositories.process_steps.get_process(process.id)).steps
    assert step.process_step_status_id == S.TODO


@pytest.mark.asyncio
async def test_cancellation_stops_between_steps(repositories, make_executor, done_result):
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.SETUP_DIM, [T.CREATE_SUBACCOUNT, T.ASSIGN_ENTITLEMENTS]
    )
    cancellation = asyncio.Event()
    executor = make_executor(
        ProcessTypeId.SETUP_DIM,
        {T.CREATE_SUBACCOUNT: done_result(), T.ASSIGN_ENTITLEMENTS: done_result()},
    )
    executor.on_execute = lambda step_type: cancellation.set()

    await _drain(ProcessExecutor([executor], repositories), repositories, process, cancellation)

    assert executor.executed == [T.CREATE_SUBACCOUNT]
    assert await _steps_by_type(repositories, process) == {
        T.CREATE_SUBACCOUNT: [S.DONE],
        T.ASSIGN_ENTITLEMENTS: [S.TODO],
    }


@pytest.mark.asyncio
async def test_unregistered_process_type_is_unexpected(repositories, make_executor, done_result):
    executor = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: done_result()})
    process_executor = ProcessExecutor([executor], repositories)
    process = await ProcessDispatcher(repositories).dispatch_process(
        ProcessTypeId.DELETE_TECHNICAL_USER, [T.DELETE_TECHNICAL_USER]
    )

    with pytest.raises(UnexpectedConditionError):
        await _drain(process_executor, repositories, process)


def test_registry_rejects_duplicate_process_types(repositories, make_executor, done_result):
    first = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: done_result()})
    second = make_executor(ProcessTypeId.SETUP_DIM, {T.SEND_CALLBACK: done_result()})
    with pytest.raises(ValueError):
        ProcessExecutor([first, second], repositories)


def test_registry_exposes_interest_set(repositories, make_executor, done_result):
    setup = make_executor(ProcessTypeId.SETUP_DIM, {T.CREATE_SUBACCOUNT: done_result()})
    delete = make_executor(
        ProcessTypeId.DELETE_TECHNICAL_USER, {T.DELETE_TECHNICAL_USER: done_result()}
    )
    process_executor = ProcessExecutor([setup, delete], repositories)

    assert set(process_executor.get_registered_process_type_ids()) == {
        ProcessTypeId.SETUP_DIM,
        ProcessTypeId.DELETE_TECHNICAL_USER,
    }
    assert process_executor.get_executable_step_type_ids() == {
        T.CREATE_SUBACCOUNT,
        T.DELETE_TECHNICAL_USER,
    }
