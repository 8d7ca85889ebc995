"""Type executor contract and the generic process executor."""

from __future__ import annotations

from .base import ProcessTypeExecutor
from .handlers import StepHandler, StepHandlerExecutor, step_done
from .process_executor import ProcessExecutor

__all__ = [
    "ProcessExecutor",
    "ProcessTypeExecutor",
    "StepHandler",
    "StepHandlerExecutor",
    "step_done",
]
