"""Command line interface for managing processes and running workers."""

from __future__ import annotations

import asyncio
import importlib
import logging
import uuid
from typing import List, Optional

import typer

from stepengine.config import load_config
from stepengine.dispatch import ProcessDispatcher
from stepengine.enums import ProcessStepTypeId, ProcessTypeId, parse_enum
from stepengine.executors import ProcessExecutor, ProcessTypeExecutor
from stepengine.models import derive_process_status
from stepengine.persistence import Repositories, get_repositories
from stepengine.service import ProcessExecutionService

app = typer.Typer(help="CLI for stepengine processes")

# Command groups
process_app = typer.Typer(help="Commands for inspecting and creating processes")
worker_app = typer.Typer(help="Commands for running process workers")

app.add_typer(process_app, name="process")
app.add_typer(worker_app, name="worker")


@app.callback()
def main(
    log_level: str = typer.Option("INFO", help="Logging level for stepengine loggers"),
) -> None:
    """stepengine CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_executor(path: str, repositories: Repositories) -> ProcessTypeExecutor:
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise typer.BadParameter(f"expected module:attribute, got {path!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    if isinstance(target, ProcessTypeExecutor):
        return target
    executor = target(repositories)
    if not isinstance(executor, ProcessTypeExecutor):
        raise typer.BadParameter(f"{path} did not produce a ProcessTypeExecutor")
    return executor


@process_app.command("list")
def process_list() -> None:
    """
    List all processes with their current status.

    Shows process ids, process types, derived status (in_progress, completed,
    failed), version and lock expiry from the configured repository.

    Example:
        stepengine process list
        # Output: 3f0c...  SETUP_DIM  in_progress  v3  unlocked
    """
    repositories = get_repositories()
    processes = asyncio.run(repositories.process_steps.list_processes())
    if not processes:
        typer.echo("No processes found")
        return
    for process in processes:
        lock = process.lock_expiry.isoformat() if process.lock_expiry else "unlocked"
        typer.echo(
            f"{process.id}\t{process.process_type_id.name}\t"
            f"{derive_process_status(process.steps)}\tv{process.version}\t{lock}"
        )


@process_app.command("show")
def process_show(process_id: str) -> None:
    """
    Show detailed information for a specific process.

    Displays the process status and every step with its status, timestamps
    and the last message recorded by its executor.

    Example:
        stepengine process show 3f0c2a9e-...
        # Output: Process 3f0c2a9e-... (SETUP_DIM): in_progress
        #         - CREATE_SUBACCOUNT: DONE (created ... changed ...)
        #         - CREATE_SERVICEMANAGER_BINDINGS: TODO (created ...)
    """
    try:
        parsed_id = uuid.UUID(process_id)
    except ValueError:
        typer.echo("Process not found")
        raise typer.Exit(code=1)
    repositories = get_repositories()
    process = asyncio.run(repositories.process_steps.get_process(parsed_id))
    if process is None:
        typer.echo("Process not found")
        raise typer.Exit(code=1)
    typer.echo(
        f"Process {process.id} ({process.process_type_id.name}): "
        f"{derive_process_status(process.steps)}"
    )
    typer.echo(f"Version: {process.version}")
    if process.lock_expiry:
        typer.echo(f"Locked until: {process.lock_expiry.isoformat()}")
    for step in process.steps:
        line = (
            f"- {step.process_step_type_id.name}: {step.process_step_status_id.name}"
            f" (created {step.date_created.isoformat()}"
        )
        if step.date_last_changed:
            line += f" changed {step.date_last_changed.isoformat()}"
        line += ")"
        if step.message:
            line += f" - {step.message}"
        typer.echo(line)


@process_app.command("create")
def process_create(
    process_type: str,
    step: List[str] = typer.Option(..., "--step", help="Initial step type, repeatable"),
) -> None:
    """
    Create a process with its initial TODO steps.

    Example:
        stepengine process create CREATE_TECHNICAL_USER --step CREATE_TECHNICAL_USER
        # Output: Created process 3f0c2a9e-...
    """
    try:
        process_type_id = parse_enum(ProcessTypeId, process_type)
        step_type_ids = [parse_enum(ProcessStepTypeId, s) for s in step]
    except ValueError as exc:
        typer.secho(str(exc), fg=typer.colors.RED)
        raise typer.Exit(code=1)
    dispatcher = ProcessDispatcher(get_repositories())
    process = asyncio.run(dispatcher.dispatch_process(process_type_id, step_type_ids))
    typer.echo(f"Created process {process.id}")


@worker_app.command("run")
def worker_run(
    executor: List[str] = typer.Option(
        ...,
        "--executor",
        help="module:attribute of an executor instance or a factory taking the repositories",
    ),
    once: bool = typer.Option(False, help="Run a single cycle and exit"),
    lifespan: Optional[float] = typer.Option(
        None, help="Worker timeout in seconds (default: run indefinitely)"
    ),
) -> None:
    """
    Run a worker draining processes of the given executors.

    Example:
        stepengine worker run --executor myflows.technical_user:create_executor
        stepengine worker run --executor myflows.setup:executor --once
    """
    config = load_config()
    repositories = get_repositories()
    executors = [_load_executor(path, repositories) for path in executor]
    service = ProcessExecutionService(
        ProcessExecutor(executors, repositories), repositories, config.worker
    )
    if once:
        count = asyncio.run(service.execute_cycle())
        typer.echo(f"Processed {count} process(es)")
        return
    typer.echo(
        "Starting worker for: "
        + ", ".join(e.get_process_type_id().name for e in executors)
    )
    asyncio.run(service.run(lifespan=lifespan))


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
