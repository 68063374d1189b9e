"""Connection graph validation for workflow drafts.

validate_draft() is a pure function: it never mutates its input, performs
no I/O and returns every defect it finds (empty list == valid). Checks run
in this order, each over the nodes in draft order:

  0. invalid_type                node type lacks a "<package>.<name>" dot
  1. trigger_without_output      trigger with no outgoing main edge
  2. disconnected                regular node with no edges at all
     missing_incoming            regular node with outgoing edges but none incoming
  3. missing_specialized_output  sub-node without an outgoing edge of its ai_* kind
  4. unreachable                 regular node not reachable from any trigger
                                 (skipped for nodes already reported under 2)
"""

from __future__ import annotations

import logging
import re
from collections import deque
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from n8n_dev_agent.agent.connections import (
    DEFAULT_RULES,
    ClassificationRule,
    ConnectionKind,
    NodeClassifier,
    NodeRole,
)

logger = logging.getLogger("n8n_dev_agent.agent.validator")

_WRAPPED_RE = re.compile(r"""^(\\?["'])(.*)\1$""", re.S)

_NODE_KEYS = ("id", "name", "type", "typeVersion", "position", "parameters", "credentials")


def normalize_name(value: str) -> str:
    """Strip the stray quoting models add around node names: "A", 'A', \\"A\\".

    Only a matching pair is removed, so a name that merely ends in a quote
    ("When clicking 'Execute workflow'") is left alone.
    """
    name = value.strip()
    while (m := _WRAPPED_RE.match(name)) is not None:
        name = m.group(2).strip()
    return name


def normalize_connections(raw: Any) -> Any:
    """Deep copy of a connection map with every key and string value unquoted."""
    if isinstance(raw, dict):
        return {
            normalize_name(k) if isinstance(k, str) else k: normalize_connections(v)
            for k, v in raw.items()
        }
    if isinstance(raw, list):
        return [normalize_connections(v) for v in raw]
    if isinstance(raw, str):
        return normalize_name(raw)
    return raw


# ---------------------------------------------------------------------------
# Draft model
# ---------------------------------------------------------------------------


@dataclass
class NodeInstance:
    name: str
    type: str
    type_version: float | int = 1
    position: list[float] = field(default_factory=lambda: [0, 0])
    parameters: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    credentials: dict[str, Any] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeInstance:
        return cls(
            name=str(raw.get("name") or ""),
            type=str(raw.get("type") or ""),
            type_version=raw.get("typeVersion", 1),
            position=list(raw.get("position") or [0, 0]),
            parameters=dict(raw.get("parameters") or {}),
            id=raw.get("id"),
            credentials=raw.get("credentials"),
            extra={k: v for k, v in raw.items() if k not in _NODE_KEYS},
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {**self.extra}
        if self.id is not None:
            d["id"] = self.id
        d.update({
            "name": self.name,
            "type": self.type,
            "typeVersion": self.type_version,
            "position": self.position,
            "parameters": self.parameters,
        })
        if self.credentials is not None:
            d["credentials"] = self.credentials
        return d


@dataclass(frozen=True)
class Edge:
    source: str
    kind: str
    target: str
    index: int = 0


@dataclass
class WorkflowDraft:
    """A proposed workflow: ordered nodes plus a normalised connection map."""

    name: str
    nodes: list[NodeInstance]
    connections: dict[str, Any]
    settings: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> WorkflowDraft:
        raw_nodes = payload.get("nodes") or []
        return cls(
            name=str(payload.get("name") or ""),
            nodes=[NodeInstance.from_dict(n) for n in raw_nodes if isinstance(n, dict)],
            connections=normalize_connections(payload.get("connections") or {}),
            settings=dict(payload.get("settings") or {}),
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "nodes": [n.to_dict() for n in self.nodes],
            "connections": self.connections,
            "settings": self.settings,
        }

    def edges(self) -> Iterator[Edge]:
        """Every well-formed edge; malformed groups/targets are ignored."""
        if not isinstance(self.connections, dict):
            return
        for source, by_kind in self.connections.items():
            if not isinstance(by_kind, dict):
                continue
            for kind, groups in by_kind.items():
                if not isinstance(groups, list):
                    continue
                for group in groups:
                    if not isinstance(group, list):
                        continue
                    for target in group:
                        if isinstance(target, dict) and isinstance(target.get("node"), str) and target["node"]:
                            index = target.get("index", 0)
                            yield Edge(
                                source=str(source),
                                kind=str(kind),
                                target=target["node"],
                                index=index if isinstance(index, int) else 0,
                            )


# ---------------------------------------------------------------------------
# Defects
# ---------------------------------------------------------------------------


class DefectKind(str, Enum):
    INVALID_TYPE = "invalid_type"
    TRIGGER_WITHOUT_OUTPUT = "trigger_without_output"
    DISCONNECTED = "disconnected"
    MISSING_INCOMING = "missing_incoming"
    MISSING_SPECIALIZED_OUTPUT = "missing_specialized_output"
    UNREACHABLE = "unreachable"


@dataclass(frozen=True)
class ValidationDefect:
    kind: DefectKind
    nodes: tuple[str, ...]
    message: str


def validate_draft(draft: WorkflowDraft, classifier: NodeClassifier | None = None) -> list[ValidationDefect]:
    classifier = classifier or NodeClassifier()
    defects: list[ValidationDefect] = []
    edges = list(draft.edges())

    outgoing: dict[str, set[str]] = {}
    targets: set[str] = set()
    adjacency: dict[str, list[str]] = {}
    for e in edges:
        outgoing.setdefault(e.source, set()).add(e.kind)
        targets.add(e.target)
        adjacency.setdefault(e.source, []).append(e.target)

    # 0. type ids
    for node in draft.nodes:
        if "." not in node.type:
            defects.append(ValidationDefect(
                DefectKind.INVALID_TYPE, (node.name,),
                f'Node "{node.name or "unknown"}" has invalid type "{node.type}"',
            ))

    roles = {node.name: classifier.role(node.type) for node in draft.nodes}
    triggers = [n.name for n in draft.nodes if roles[n.name] is NodeRole.TRIGGER]
    regular = [n.name for n in draft.nodes if roles[n.name] is NodeRole.REGULAR]

    # 1. triggers
    for name in triggers:
        if ConnectionKind.MAIN.value not in outgoing.get(name, set()):
            defects.append(ValidationDefect(
                DefectKind.TRIGGER_WITHOUT_OUTPUT, (name,),
                f'Trigger "{name}" has no outgoing connection',
            ))

    # 2. regular node connectivity
    flagged: set[str] = set()
    for name in regular:
        has_in = name in targets
        has_out = name in outgoing
        if not has_in and not has_out:
            flagged.add(name)
            defects.append(ValidationDefect(
                DefectKind.DISCONNECTED, (name,),
                f'Node "{name}" is completely disconnected (no incoming or outgoing connections)',
            ))
        elif not has_in:
            flagged.add(name)
            defects.append(ValidationDefect(
                DefectKind.MISSING_INCOMING, (name,),
                f'Node "{name}" has no incoming connection (nothing connects TO it)',
            ))

    # 3. sub-nodes
    for node in draft.nodes:
        if roles[node.name] is not NodeRole.SUB_NODE:
            continue
        rule = classifier.match(node.type)
        if rule is None or rule.kind is None:
            continue
        if rule.kind.value not in outgoing.get(node.name, set()):
            defects.append(ValidationDefect(
                DefectKind.MISSING_SPECIALIZED_OUTPUT, (node.name,),
                f'"{node.name}" ({rule.label or "Sub-node"}) needs {rule.kind.value} connection to '
                f'{rule.target or "its parent node"}',
            ))

    # 4. reachability from triggers over edges of any kind
    visited: set[str] = set()
    queue: deque[str] = deque(triggers)
    while queue:
        current = queue.popleft()
        if current in visited:
            continue
        visited.add(current)
        queue.extend(t for t in adjacency.get(current, []) if t not in visited)
    for name in regular:
        if name not in visited and name not in flagged:
            defects.append(ValidationDefect(
                DefectKind.UNREACHABLE, (name,),
                f'Node "{name}" is not reachable from any trigger',
            ))

    if defects:
        logger.debug("Draft %r: %d defect(s)", draft.name, len(defects))
    return defects


# ---------------------------------------------------------------------------
# Rendering for the model
# ---------------------------------------------------------------------------


def connection_grammar(rules: list[ClassificationRule] | None = None) -> str:
    """Example connection entries: main, then one line per sub-node kind in the rule table."""
    lines = [
        "Connection format for regular nodes:",
        '"SourceNode": { "main": [[{ "node": "TargetNode", "type": "main", "index": 0 }]] }',
        "",
        "Connection format for LangChain nodes:",
    ]
    seen: set[ConnectionKind] = set()
    for rule in rules if rules is not None else DEFAULT_RULES:
        if rule.role is not NodeRole.SUB_NODE or rule.kind is None or rule.kind in seen:
            continue
        seen.add(rule.kind)
        kind = rule.kind.value
        source = rule.label or "SubNode"
        target = rule.target or "ParentNode"
        lines.append(f'"{source}": {{ "{kind}": [[{{ "node": "{target}", "type": "{kind}", "index": 0 }}]] }}')
    return "\n".join(lines)


def _bullets(defects: list[ValidationDefect]) -> str:
    return "\n".join(f"❌ {d.message}" for d in defects)


def format_defects(defects: list[ValidationDefect], rules: list[ClassificationRule] | None = None) -> str:
    return (
        f"ERROR: Workflow has connection problems!\n\n{_bullets(defects)}\n\n"
        "You MUST fix these connections. Every node needs to be connected in sequence.\n\n"
        f"{connection_grammar(rules)}"
    )


def format_give_up(defects: list[ValidationDefect], attempts: int) -> str:
    return (
        f"FATAL ERROR: Unable to create a valid workflow after {attempts} attempts.\n\n"
        f"The following connection issues could not be resolved:\n{_bullets(defects)}\n\n"
        "Please tell the user that you are having difficulty creating this workflow and suggest they:\n"
        "1. Try a simpler workflow first\n"
        "2. Be more specific about the nodes they want\n"
        "3. Check if the requested nodes are compatible with each other"
    )


def format_invalid_type(defect: ValidationDefect, node_type: str) -> str:
    name = defect.nodes[0] if defect.nodes else "unknown"
    return (
        f'Error: Node "{name or "unknown"}" has invalid type "{node_type}". Use search_nodes to find '
        'the correct type (e.g., "n8n-nodes-base.gmail").'
    )
