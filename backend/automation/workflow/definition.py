"""Workflow graph model: parsing, validation and edge selection."""
from __future__ import annotations

import re
from collections import deque
from dataclasses import dataclass, field
from typing import Any

from .errors import DefinitionError

NODE_TYPES = frozenset(
    {
        "trigger",
        "action",
        "crm",
        "http",
        "email",
        "sms",
        "wait",
        "condition",
        "stage",
        "split",
    }
)
BRANCHING_TYPES = frozenset({"condition", "stage", "split"})

ERROR_LABEL = "error"
SUCCESS_LABEL = "success"
DEFAULT_LABEL = "default"

VALIDATION_RULES = frozenset({"regex", "contains", "number", "email", "phone", "length"})


@dataclass(frozen=True)
class Node:
    id: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        label = self.config.get("label")
        return label if isinstance(label, str) and label else self.type

    @property
    def requires_reply(self) -> bool:
        flag = self.config.get("requires_reply", self.config.get("requiresReply"))
        return bool(flag)


@dataclass(frozen=True)
class Edge:
    source: str
    target: str
    branch_label: str | None = None

    @property
    def normalized_label(self) -> str | None:
        if self.branch_label is None:
            return None
        return self.branch_label.strip().lower()


class WorkflowGraph:
    """Immutable view over the nodes and edges of a workflow definition."""

    def __init__(self, nodes: list[Node], edges: list[Edge]) -> None:
        self._nodes = {node.id: node for node in nodes}
        self._order = [node.id for node in nodes]
        self.edges = list(edges)
        self._outgoing: dict[str, list[Edge]] = {node_id: [] for node_id in self._order}
        for edge in self.edges:
            self._outgoing.setdefault(edge.source, []).append(edge)

    @property
    def nodes(self) -> list[Node]:
        return [self._nodes[node_id] for node_id in self._order]

    def node(self, node_id: str | None) -> Node | None:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def outgoing(self, node_id: str) -> list[Edge]:
        return list(self._outgoing.get(node_id, []))

    def entry_node(self) -> Node:
        """Return the trigger node, or the single node without incoming edges."""

        triggers = [node for node in self.nodes if node.type == "trigger"]
        if len(triggers) == 1:
            return triggers[0]
        if len(triggers) > 1:
            raise DefinitionError("workflow has more than one trigger node")

        targets = {edge.target for edge in self.edges}
        roots = [node for node in self.nodes if node.id not in targets]
        if len(roots) != 1:
            raise DefinitionError(
                f"workflow must have exactly one entry node, found {len(roots)}"
            )
        return roots[0]

    def next_node_id(self, node: Node, branch: str | None = None) -> str | None:
        """Pick the edge to follow after ``node`` succeeded.

        Branching nodes must name a ``branch``; a missing match is a hard
        failure. Other nodes follow the ``success`` edge, else the first
        unlabelled edge. ``None`` means the node is terminal.
        """

        edges = self.outgoing(node.id)
        if node.type in BRANCHING_TYPES:
            wanted = (branch or "").strip().lower()
            for edge in edges:
                if edge.normalized_label == wanted:
                    return edge.target
            if node.type == "stage":
                for edge in edges:
                    if edge.normalized_label == DEFAULT_LABEL:
                        return edge.target
            if not edges:
                return None
            raise DefinitionError(
                f"no outgoing edge of node {node.id} matches branch {branch!r}",
                kind="no_matching_branch",
            )

        for edge in edges:
            if edge.normalized_label == SUCCESS_LABEL:
                return edge.target
        for edge in edges:
            if edge.normalized_label is None:
                return edge.target
        return None

    def error_node_id(self, node: Node) -> str | None:
        for edge in self.outgoing(node.id):
            if edge.normalized_label == ERROR_LABEL:
                return edge.target
        return None


def _node_from_dict(raw: Any, index: int) -> Node:
    if not isinstance(raw, dict):
        raise DefinitionError(f"nodes[{index}] must be an object")
    identifier = raw.get("id")
    if identifier is None or str(identifier).strip() == "":
        raise DefinitionError(f"nodes[{index}] is missing an id")
    node_type = raw.get("type")
    if not isinstance(node_type, str) or not node_type:
        raise DefinitionError(f"node {identifier} is missing a type")
    config = raw.get("config")
    if config is None:
        config = raw.get("data")
    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise DefinitionError(f"node {identifier} config must be an object")
    return Node(id=str(identifier), type=node_type.strip().lower(), config=dict(config))


def _edge_from_dict(raw: Any, index: int) -> Edge:
    if not isinstance(raw, dict):
        raise DefinitionError(f"edges[{index}] must be an object")
    source = raw.get("from", raw.get("source"))
    target = raw.get("to", raw.get("target"))
    if source is None or target is None:
        raise DefinitionError(f"edges[{index}] must name both endpoints")
    label = raw.get("branch_label", raw.get("branchLabel"))
    if label is None:
        label = raw.get("label", raw.get("sourceHandle"))
    if label is not None and not isinstance(label, str):
        label = str(label)
    return Edge(source=str(source), target=str(target), branch_label=label or None)


def parse_graph(data: Any) -> WorkflowGraph:
    """Build a :class:`WorkflowGraph` from its stored JSON representation."""

    if not isinstance(data, dict):
        raise DefinitionError("graph must be an object")
    raw_nodes = data.get("nodes") or []
    raw_edges = data.get("edges") or []
    if not isinstance(raw_nodes, list):
        raise DefinitionError("nodes must be a list")
    if not isinstance(raw_edges, list):
        raise DefinitionError("edges must be a list")

    nodes = [_node_from_dict(raw, index) for index, raw in enumerate(raw_nodes)]
    edges = [_edge_from_dict(raw, index) for index, raw in enumerate(raw_edges)]
    return WorkflowGraph(nodes, edges)


def pattern_error(pattern: Any) -> str | None:
    try:
        re.compile(str(pattern))
    except re.error as exc:
        return f"invalid regular expression {pattern!r}: {exc}"
    return None


def validation_errors(validation: Any) -> list[str]:
    """Problems with a reply node's ``validation`` rule, empty when usable."""

    if validation is None:
        return []
    if not isinstance(validation, dict):
        return ["validation must be an object"]

    rule = validation.get("type")
    if rule not in VALIDATION_RULES:
        return [f"unknown validation type {rule!r}"]

    errors: list[str] = []
    if rule == "regex":
        error = pattern_error(validation.get("value") or "")
        if error:
            errors.append(error)
    elif rule == "length":
        for bound in ("min", "max"):
            value = validation.get(bound)
            if value is None:
                continue
            try:
                int(value)
            except (TypeError, ValueError):
                errors.append(f"validation {bound} must be an integer")
    return errors


def validate_graph(data: Any) -> list[str]:
    """Return the publish-time errors of a graph, empty when it is valid."""

    try:
        graph = parse_graph(data)
    except DefinitionError as exc:
        return [str(exc)]

    errors: list[str] = []
    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            errors.append(f"duplicate node id {node.id}")
        seen.add(node.id)
        if node.type not in NODE_TYPES:
            errors.append(f"node {node.id} has unknown type {node.type}")
        for problem in validation_errors(node.config.get("validation")):
            errors.append(f"node {node.id}: {problem}")

    for edge in graph.edges:
        if edge.source not in seen:
            errors.append(f"edge references unknown source node {edge.source}")
        if edge.target not in seen:
            errors.append(f"edge references unknown target node {edge.target}")

    if not graph.nodes:
        errors.append("workflow has no nodes")
        return errors

    try:
        entry = graph.entry_node()
    except DefinitionError as exc:
        errors.append(str(exc))
        return errors

    reachable: set[str] = set()
    queue: deque[str] = deque([entry.id])
    while queue:
        node_id = queue.popleft()
        if node_id in reachable:
            continue
        reachable.add(node_id)
        queue.extend(edge.target for edge in graph.outgoing(node_id))

    for node in graph.nodes:
        if node.id not in reachable:
            errors.append(f"node {node.id} is not reachable from the entry node")
        if node.type == "condition":
            labels = {edge.normalized_label for edge in graph.outgoing(node.id)}
            if labels and not labels <= {"true", "false", ERROR_LABEL}:
                errors.append(f"condition node {node.id} edges must be labelled true or false")
        elif node.type in BRANCHING_TYPES:
            for edge in graph.outgoing(node.id):
                if edge.normalized_label is None:
                    errors.append(f"branch edge from node {node.id} is missing a label")

    return errors
