"""Graph traversal shared by the persistent engine and the dry-run executor."""
from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Union

from .adapters import Adapters
from .context import merge
from .definition import WorkflowGraph
from .errors import AdapterError, DefinitionError
from .nodes import NODE_HANDLERS

STEP_LIMIT_EXCEEDED = "step_limit_exceeded"


@dataclass(frozen=True)
class Continue:
    next_node_id: str


@dataclass(frozen=True)
class Suspend:
    kind: str
    resume_at: datetime | None = None
    pending_input_id: int | None = None


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Fail:
    reason: str
    kind: str = "execution_error"

    @property
    def message(self) -> str:
        return f"{self.kind}: {self.reason}"


ExecutionOutcome = Union[Continue, Suspend, Complete, Fail]


@dataclass(frozen=True)
class LogRecord:
    level: str
    message: str
    node_id: str | None = None
    details: dict[str, Any] | None = None


@dataclass
class StepResult:
    node_id: str | None
    outcome: ExecutionOutcome
    context: dict[str, Any]
    logs: list[LogRecord] = field(default_factory=list)


@dataclass(frozen=True)
class Limits:
    max_steps: int = 100
    max_run_seconds: float = 300.0

    def check(self, step_count: int, run_started: float | None = None) -> Fail | None:
        """Return a failure when the step or wall-clock budget is spent."""

        if step_count >= self.max_steps:
            return Fail(f"execution exceeded {self.max_steps} steps", kind=STEP_LIMIT_EXCEEDED)
        if run_started is not None and time.monotonic() - run_started > self.max_run_seconds:
            return Fail(
                f"execution exceeded {self.max_run_seconds:g} seconds", kind=STEP_LIMIT_EXCEEDED
            )
        return None


def _record_output(context: dict[str, Any], node_id: str, output: dict[str, Any]) -> dict[str, Any]:
    outputs = dict(context.get("nodes") or {})
    outputs[node_id] = output
    context["nodes"] = outputs
    return context


def advance(
    graph: WorkflowGraph,
    node_id: str | None,
    context: dict[str, Any],
    adapters: Adapters,
    now: datetime,
) -> StepResult:
    """Execute the node at ``node_id`` and decide where the execution goes next."""

    node = graph.node(node_id)
    if node is None:
        reason = f"node {node_id} does not exist in the workflow"
        return StepResult(
            node_id,
            Fail(reason, kind="definition_error"),
            context,
            [LogRecord("error", reason, node_id, {"type": "definition_error"})],
        )

    handler = NODE_HANDLERS.get(node.type)
    if handler is None:
        reason = f"unsupported node type {node.type}"
        return StepResult(
            node.id,
            Fail(reason, kind="definition_error"),
            context,
            [LogRecord("error", reason, node.id, {"type": "definition_error"})],
        )

    try:
        result = handler(node, context, adapters, now)
    except DefinitionError as exc:
        return StepResult(
            node.id,
            Fail(str(exc), kind=exc.kind),
            context,
            [LogRecord("error", str(exc), node.id, {"type": exc.kind})],
        )
    except AdapterError as exc:
        return _adapter_failure(graph, node.id, context, exc)
    except Exception as exc:  # noqa: BLE001
        wrapped = AdapterError(f"{type(exc).__name__}: {exc}", kind="unexpected_error")
        return _adapter_failure(graph, node.id, context, wrapped)

    logs = [LogRecord(level, message, node.id, details) for level, message, details in result.messages]
    new_context = _record_output(merge(context, result.updates), node.id, result.output)

    if node.type == "wait":
        return StepResult(node.id, Suspend("wait", resume_at=result.resume_at), new_context, logs)
    if node.requires_reply:
        logs.append(LogRecord("info", "waiting for reply", node.id))
        return StepResult(node.id, Suspend("input"), new_context, logs)

    try:
        next_node_id = graph.next_node_id(node, result.branch)
    except DefinitionError as exc:
        logs.append(LogRecord("error", str(exc), node.id, {"type": exc.kind}))
        return StepResult(node.id, Fail(str(exc), kind=exc.kind), new_context, logs)

    if next_node_id is None:
        return StepResult(node.id, Complete(), new_context, logs)
    return StepResult(node.id, Continue(next_node_id), new_context, logs)


def _adapter_failure(
    graph: WorkflowGraph,
    node_id: str,
    context: dict[str, Any],
    exc: AdapterError,
) -> StepResult:
    node = graph.node(node_id)
    error = exc.to_dict()
    error_target = graph.error_node_id(node) if node is not None else None
    if error_target is not None:
        new_context = dict(context)
        new_context["last_error"] = {"node_id": node_id, **error}
        log = LogRecord("warn", f"{exc.kind}: {exc}; following error edge", node_id, error)
        return StepResult(node_id, Continue(error_target), new_context, [log])

    log = LogRecord("error", f"{exc.kind}: {exc}", node_id, error)
    return StepResult(node_id, Fail(str(exc), kind=exc.kind), context, [log])


def resume_target(graph: WorkflowGraph, node_id: str | None) -> ExecutionOutcome:
    """Outcome for an execution leaving the suspended node ``node_id``."""

    node = graph.node(node_id)
    if node is None:
        return Fail(f"node {node_id} does not exist in the workflow", kind="definition_error")
    try:
        next_node_id = graph.next_node_id(node)
    except DefinitionError as exc:
        return Fail(str(exc), kind=exc.kind)
    if next_node_id is None:
        return Complete()
    return Continue(next_node_id)
