"""Database models for the workflow automation backend."""

from .execution import Execution
from .logs import ExecutionLog
from .pending_input import PendingInput
from .workflow import Workflow

__all__ = ["Workflow", "Execution", "ExecutionLog", "PendingInput"]
