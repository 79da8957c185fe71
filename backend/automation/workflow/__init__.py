"""Workflow automation runtime."""

from .adapters import Adapters, HTTPResponse, configure_adapters, get_adapters
from .dispatcher import ExecutionDispatcher, get_dispatcher
from .dry_run import DryRunConfig, DryRunExecutor, DryRunResult
from .engine import ExecutionEngine
from .errors import (
    AdapterError,
    AutomationError,
    CRMError,
    DefinitionError,
    ExecutionStateError,
    NetworkError,
    SendError,
)
from .pending import PendingInputManager
from .scheduler import ensure_scheduler_started, resume_due_executions, run_scheduler_tick
from .triggers import ExecutionHandle, NormalizedEvent, TriggerEvaluator

__all__ = [
    "AdapterError",
    "Adapters",
    "AutomationError",
    "CRMError",
    "DefinitionError",
    "DryRunConfig",
    "DryRunExecutor",
    "DryRunResult",
    "ExecutionDispatcher",
    "ExecutionEngine",
    "ExecutionHandle",
    "ExecutionStateError",
    "HTTPResponse",
    "NetworkError",
    "NormalizedEvent",
    "PendingInputManager",
    "SendError",
    "TriggerEvaluator",
    "configure_adapters",
    "ensure_scheduler_started",
    "get_adapters",
    "get_dispatcher",
    "resume_due_executions",
    "run_scheduler_tick",
]
