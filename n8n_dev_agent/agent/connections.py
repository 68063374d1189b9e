"""Connection kinds and node-role classification for n8n workflow graphs.

n8n links nodes with typed edges. Ordinary data flow uses "main"; the
LangChain sub-nodes (embeddings, loaders, splitters, memory, tools, models,
parsers) instead plug into a parent through one specialised ai_* kind and
never carry main traffic.

Which node type plays which role is decided by an ordered regex table, first
match wins. The default table below can be replaced with a JSON file:

    [
      {"pattern": "Trigger|trigger|webhook", "role": "trigger"},
      {"pattern": "langchain\\\\.embeddings", "role": "sub_node",
       "kind": "ai_embedding", "label": "Embeddings", "target": "Vector Store"}
    ]
"""

from __future__ import annotations

import logging
import os
import re
from enum import Enum
from functools import cached_property
from pathlib import Path

from pydantic import BaseModel, TypeAdapter, model_validator

logger = logging.getLogger("n8n_dev_agent.agent.connections")


class ConnectionKind(str, Enum):
    MAIN = "main"
    AI_EMBEDDING = "ai_embedding"
    AI_DOCUMENT = "ai_document"
    AI_TEXT_SPLITTER = "ai_textSplitter"
    AI_MEMORY = "ai_memory"
    AI_TOOL = "ai_tool"
    AI_LANGUAGE_MODEL = "ai_languageModel"
    AI_OUTPUT_PARSER = "ai_outputParser"


class NodeRole(str, Enum):
    TRIGGER = "trigger"
    SUB_NODE = "sub_node"
    REGULAR = "regular"


class ClassificationRule(BaseModel):
    """One row of the classification table.

    kind/label/target are required for sub-node rules and used to phrase the
    defect ("<label> needs <kind> connection to <target>").
    """

    pattern: str
    role: NodeRole
    kind: ConnectionKind | None = None
    label: str = ""
    target: str = ""

    @model_validator(mode="after")
    def _sub_node_needs_kind(self) -> ClassificationRule:
        if self.role is NodeRole.SUB_NODE and self.kind is None:
            raise ValueError(f"sub_node rule {self.pattern!r} must name a connection kind")
        try:
            re.compile(self.pattern)
        except re.error as e:
            raise ValueError(f"invalid pattern {self.pattern!r}: {e}") from e
        return self

    @cached_property
    def regex(self) -> re.Pattern[str]:
        return re.compile(self.pattern)


DEFAULT_RULES: list[ClassificationRule] = [
    ClassificationRule(pattern=r"Trigger|trigger|webhook", role=NodeRole.TRIGGER),
    ClassificationRule(
        pattern=r"langchain\.embeddings", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_EMBEDDING, label="Embeddings", target="Vector Store",
    ),
    ClassificationRule(
        pattern=r"langchain\.document|DataLoader", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_DOCUMENT, label="Document Loader", target="Vector Store",
    ),
    ClassificationRule(
        pattern=r"langchain\.textSplitter", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_TEXT_SPLITTER, label="Text Splitter", target="Document Loader",
    ),
    ClassificationRule(
        pattern=r"langchain\.memory", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_MEMORY, label="Memory", target="AI Agent/Chain",
    ),
    ClassificationRule(
        pattern=r"langchain\.tool", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_TOOL, label="Tool", target="AI Agent",
    ),
    ClassificationRule(
        pattern=r"langchain\.lm", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_LANGUAGE_MODEL, label="Language Model", target="AI Agent/Chain",
    ),
    ClassificationRule(
        pattern=r"langchain\.outputParser", role=NodeRole.SUB_NODE,
        kind=ConnectionKind.AI_OUTPUT_PARSER, label="Output Parser", target="AI Agent/Chain",
    ),
]

_RULES_ADAPTER = TypeAdapter(list[ClassificationRule])


def load_rules(path: Path | str | None = None) -> list[ClassificationRule]:
    """Rules from a JSON file (or $N8N_CONNECTION_RULES); the defaults when neither is set."""
    source = path or os.getenv("N8N_CONNECTION_RULES")
    if not source:
        return list(DEFAULT_RULES)
    rules = _RULES_ADAPTER.validate_json(Path(source).read_bytes())
    logger.info("Loaded %d connection rules from %s", len(rules), source)
    return rules


class NodeClassifier:
    """Maps a node type id to its role (and, for sub-nodes, the rule that matched)."""

    def __init__(
        self,
        rules: list[ClassificationRule] | None = None,
        trigger_types: set[str] | frozenset[str] | None = None,
    ) -> None:
        self.rules = list(rules) if rules is not None else list(DEFAULT_RULES)
        self.trigger_types = frozenset(trigger_types or ())

    def match(self, node_type: str) -> ClassificationRule | None:
        for rule in self.rules:
            if rule.regex.search(node_type):
                return rule
        return None

    def role(self, node_type: str) -> NodeRole:
        if node_type in self.trigger_types:
            return NodeRole.TRIGGER
        rule = self.match(node_type)
        return rule.role if rule is not None else NodeRole.REGULAR
