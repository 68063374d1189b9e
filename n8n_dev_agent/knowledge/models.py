"""Data types for the node capability index.

Snapshot JSON uses the camelCase keys of the n8n ecosystem (displayName,
isTrigger, codePath …); the dataclasses use snake_case and convert at the
to_dict()/from_dict() boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


def _number(value: float | int) -> float | int:
    """Render integral floats as int so version 2.0 serialises as 2."""
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


@dataclass
class Credential:
    name: str
    required: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "required": self.required}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Credential:
        return cls(name=str(raw.get("name", "")), required=bool(raw.get("required", False)))


@dataclass
class Operation:
    name: str
    value: str
    description: str | None = None

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {"name": self.name, "value": self.value}
        if self.description:
            d["description"] = self.description
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Operation:
        return cls(
            name=str(raw.get("name", "")),
            value=str(raw.get("value", "")),
            description=raw.get("description"),
        )


@dataclass
class Resource:
    name: str
    value: str
    operations: list[Operation] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "value": self.value,
            "operations": [op.to_dict() for op in self.operations],
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Resource:
        return cls(
            name=str(raw.get("name", "")),
            value=str(raw.get("value", "")),
            operations=[Operation.from_dict(o) for o in raw.get("operations") or []],
        )


@dataclass
class Parameter:
    """One configurable field of a node type.

    show_for is the visibility predicate: {"resource": [...], "operation": [...]}.
    A parameter without show_for is visible for every resource/operation.
    """

    name: str
    display_name: str
    type: str
    required: bool = False
    default: Any = None
    description: str | None = None
    options: list[dict[str, Any]] | None = None
    show_for: dict[str, list[str]] | None = None

    def visible_for(self, resource: str | None = None, operation: str | None = None) -> bool:
        if not self.show_for:
            return True
        if resource and "resource" in self.show_for and resource not in self.show_for["resource"]:
            return False
        if operation and "operation" in self.show_for and operation not in self.show_for["operation"]:
            return False
        return True

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "name": self.name,
            "displayName": self.display_name,
            "type": self.type,
            "required": self.required,
        }
        if self.default is not None:
            d["default"] = self.default
        if self.description:
            d["description"] = self.description
        if self.options:
            d["options"] = self.options
        if self.show_for:
            d["showFor"] = self.show_for
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Parameter:
        return cls(
            name=str(raw.get("name", "")),
            display_name=str(raw.get("displayName", "")),
            type=str(raw.get("type", "")),
            required=bool(raw.get("required", False)),
            default=raw.get("default"),
            description=raw.get("description"),
            options=raw.get("options"),
            show_for=raw.get("showFor"),
        )


@dataclass
class NodeSummary:
    """Compact search row; what the LLM sees from search and list tools."""

    type: str
    display_name: str
    description: str
    is_trigger: bool
    credential_types: list[str]

    @property
    def requires_credentials(self) -> bool:
        return bool(self.credential_types)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "displayName": self.display_name,
            "description": self.description,
            "isTrigger": self.is_trigger,
            "requiresCredentials": self.requires_credentials,
            "credentialTypes": self.credential_types,
        }


@dataclass
class NodeTypeEntry:
    """Everything the index knows about one node type.

    type is the canonical identifier (e.g. "n8n-nodes-base.gmail") and the only
    stable cross-reference key. parameters is None until first requested
    through CapabilityIndex.get_details(); an empty list means "looked, found none".
    """

    type: str
    display_name: str
    name: str
    description: str = ""
    group: list[str] = field(default_factory=list)
    version: float = 1
    credentials: list[Credential] = field(default_factory=list)
    resources: list[Resource] | None = None
    parameters: list[Parameter] | None = None
    is_trigger: bool = False
    code_path: str = ""
    has_schema: bool = False
    schema_version: str | None = None
    # field name -> "parsed" | "manifest" | "fallback"
    confidence: dict[str, str] = field(default_factory=dict)

    def summary(self) -> NodeSummary:
        return NodeSummary(
            type=self.type,
            display_name=self.display_name,
            description=self.description,
            is_trigger=self.is_trigger,
            credential_types=[c.name for c in self.credentials],
        )

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "type": self.type,
            "displayName": self.display_name,
            "name": self.name,
            "description": self.description,
            "group": list(self.group),
            "version": _number(self.version),
            "credentials": [c.to_dict() for c in self.credentials],
            "isTrigger": self.is_trigger,
            "codePath": self.code_path,
            "hasSchema": self.has_schema,
        }
        if self.resources:
            d["resources"] = [r.to_dict() for r in self.resources]
        if self.schema_version:
            d["schemaVersion"] = self.schema_version
        if self.confidence:
            d["confidence"] = dict(self.confidence)
        return d

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> NodeTypeEntry:
        resources = raw.get("resources")
        parameters = raw.get("parameters")
        return cls(
            type=str(raw["type"]),
            display_name=str(raw.get("displayName") or raw.get("name") or raw["type"]),
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
            group=[str(g) for g in raw.get("group") or []],
            version=raw.get("version") or 1,
            credentials=[Credential.from_dict(c) for c in raw.get("credentials") or []],
            resources=[Resource.from_dict(r) for r in resources] if resources else None,
            parameters=[Parameter.from_dict(p) for p in parameters] if parameters is not None else None,
            is_trigger=bool(raw.get("isTrigger", False)),
            code_path=str(raw.get("codePath") or ""),
            has_schema=bool(raw.get("hasSchema", False)),
            schema_version=raw.get("schemaVersion"),
            confidence=dict(raw.get("confidence") or {}),
        )


@dataclass
class OperationSchema:
    """Captured output shape for one (resource, operation) of a node type."""

    resource: str
    operation: str
    output_schema: Any

    def to_dict(self) -> dict[str, Any]:
        return {"resource": self.resource, "operation": self.operation, "outputSchema": self.output_schema}
