"""stepengine: persisted, crash-recoverable process/step workflow engine."""

from .dispatch import ProcessDispatcher
from .enums import ProcessStepStatusId, ProcessStepTypeId, ProcessTypeId
from .errors import (
    ConcurrencyConflictError,
    ConflictError,
    NotFoundError,
    ServiceError,
    StepEngineError,
    UnexpectedConditionError,
)
from .executors import ProcessExecutor, ProcessTypeExecutor, StepHandlerExecutor
from .lifecycle import ManualProcessStepData, create_manual_process_data
from .models import (
    InitializationResult,
    Process,
    ProcessExecutionResult,
    ProcessStep,
    StepExecutionResult,
)
from .persistence import Repositories, get_repositories
from .service import ProcessExecutionService

__version__ = "0.1.0"
__all__ = [
    "ConcurrencyConflictError",
    "ConflictError",
    "InitializationResult",
    "ManualProcessStepData",
    "NotFoundError",
    "Process",
    "ProcessDispatcher",
    "ProcessExecutionResult",
    "ProcessExecutionService",
    "ProcessExecutor",
    "ProcessStep",
    "ProcessStepStatusId",
    "ProcessStepTypeId",
    "ProcessTypeExecutor",
    "ProcessTypeId",
    "Repositories",
    "ServiceError",
    "StepEngineError",
    "StepExecutionResult",
    "StepHandlerExecutor",
    "UnexpectedConditionError",
    "create_manual_process_data",
    "get_repositories",
]
