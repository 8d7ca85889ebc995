"""Polling worker that drains eligible processes."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from .config import WorkerConfig
from .errors import ConcurrencyConflictError
from .executors import ProcessExecutor
from .lifecycle import release_lock, renew_lock, request_lock, update_version
from .models import Process, ProcessExecutionResult, utcnow
from .persistence import Repositories
from .utils.retry import compute_backoff, wait_or_cancelled

logger = logging.getLogger(__name__)


class ProcessExecutionService:
    """Discover processes with pending work and drain them one at a time.

    A process is leased before its drain starts; losing that race skips the
    process for the cycle. Every result yielded by :class:`ProcessExecutor`
    is then turned into a commit decision: LOCK_REQUESTED renews the lease
    before a long running step, SAVE_REQUESTED commits the step outcome with
    a version bump, UNMODIFIED discards whatever was staged. A failure only
    affects the process it happened in.
    """

    def __init__(
        self,
        process_executor: ProcessExecutor,
        repositories: Repositories,
        config: WorkerConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._process_executor = process_executor
        self._repositories = repositories
        self._config = config or WorkerConfig()
        self._clock = clock

    @property
    def lock_duration(self) -> timedelta:
        return timedelta(seconds=self._config.lock_expiry_seconds)

    async def execute_cycle(self, cancellation: Optional[asyncio.Event] = None) -> int:
        """Drain every currently eligible process once.

        Returns:
            Number of processes attempted.
        """
        now = self._clock()
        processes = self._repositories.process_steps.get_active_processes(
            self._process_executor.get_registered_process_type_ids(),
            self._process_executor.get_executable_step_type_ids(),
            now,
        )
        count = 0
        async for process in processes:
            if cancellation is not None and cancellation.is_set():
                break
            count += 1
            await self.execute_process(process, cancellation)
        logger.debug(f"Cycle finished, {count} process(es) attempted")
        return count

    async def execute_process(
        self, process: Process, cancellation: Optional[asyncio.Event] = None
    ) -> None:
        """Lease ``process`` as loaded by discovery, drain it and release the lease.

        A process another worker leased first is skipped for this cycle.
        """
        try:
            if not await self._acquire_lock(process):
                return
            async for result in self._process_executor.execute_process(
                process.id, process.process_type_id, cancellation
            ):
                if result is ProcessExecutionResult.LOCK_REQUESTED:
                    # hold the lease for the whole external call
                    renew_lock(
                        self._repositories.process_steps,
                        process,
                        self._clock() + self.lock_duration,
                    )
                    save = True
                elif result is ProcessExecutionResult.SAVE_REQUESTED:
                    update_version(self._repositories.process_steps, process)
                    save = True
                else:
                    save = False
                if save:
                    await self._repositories.save()
                self._repositories.clear()

            if release_lock(self._repositories.process_steps, process):
                await self._repositories.save()
            logger.debug(f"Process {process.id} drained, version {process.version}")
        except ConcurrencyConflictError as error:
            self._repositories.clear()
            logger.warning(
                f"Process {process.id} was changed by another worker, skipping: {error}"
            )
        except asyncio.CancelledError:
            self._repositories.clear()
            raise
        except Exception as error:
            self._repositories.clear()
            logger.exception(
                f"Error processing process {process.id} "
                f"type {process.process_type_id.name}: {error}"
            )
            await self._release_after_failure(process)

    async def _acquire_lock(self, process: Process) -> bool:
        now = self._clock()
        if process.is_locked(now):
            logger.info(f"Process {process.id} is leased by another worker, skipping")
            return False
        request_lock(
            self._repositories.process_steps, process, now + self.lock_duration, now
        )
        try:
            await self._repositories.save()
        except ConcurrencyConflictError:
            logger.info(f"Process {process.id} was leased by another worker, skipping")
            return False
        finally:
            self._repositories.clear()
        return True

    async def _release_after_failure(self, process: Process) -> None:
        if not release_lock(self._repositories.process_steps, process):
            return
        try:
            await self._repositories.save()
        except Exception as error:
            logger.error(
                f"Failed to release lock of process {process.id}, "
                f"it expires at {process.lock_expiry}: {error}"
            )
        finally:
            self._repositories.clear()

    async def run(
        self,
        cancellation: Optional[asyncio.Event] = None,
        lifespan: Optional[float] = None,
    ) -> None:
        """Run cycles until cancelled or ``lifespan`` seconds have passed.

        A cycle failing as a whole (e.g. the database is unreachable) is
        retried with exponential backoff.
        """
        cancellation = cancellation or asyncio.Event()
        deadline = time.monotonic() + lifespan if lifespan is not None else None
        attempt = 0
        logger.info(
            "Worker started for process types "
            f"{[t.name for t in self._process_executor.get_registered_process_type_ids()]}"
        )
        while not cancellation.is_set():
            try:
                await self.execute_cycle(cancellation)
                attempt = 0
                delay = self._config.poll_interval_seconds
            except Exception as error:
                attempt = min(attempt + 1, self._config.max_backoff_attempts)
                delay = compute_backoff(attempt)
                logger.error(f"Process cycle failed, retrying in {delay:.1f}s: {error}")
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            if await wait_or_cancelled(delay, cancellation):
                break
        logger.info("Worker stopped")
