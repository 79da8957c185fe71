"""Exception hierarchy for the automation engine."""
from __future__ import annotations

from typing import Any


class AutomationError(Exception):
    """Base class for errors raised by the automation engine."""


class DefinitionError(AutomationError):
    """Raised when a workflow graph is malformed or cannot be traversed."""

    def __init__(self, message: str, kind: str = "definition_error") -> None:
        super().__init__(message)
        self.kind = kind


class ExecutionStateError(AutomationError):
    """Raised when an execution is not in the state an operation requires."""


class AdapterError(AutomationError):
    """Raised by action adapters when an outbound call fails."""

    default_kind = "adapter_error"

    def __init__(
        self,
        message: str,
        kind: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind or self.default_kind
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.kind, "message": str(self)}
        if self.details:
            payload["details"] = self.details
        return payload


class SendError(AdapterError):
    default_kind = "send_error"


class CRMError(AdapterError):
    default_kind = "crm_error"


class NetworkError(AdapterError):
    default_kind = "network_error"
