"""Merge a model-proposed workflow update into the workflow stored in n8n.

The public API rejects read-only fields on PUT and the model routinely drops
node ids and credentials it never saw, so the update sent upstream is
rebuilt from the current workflow:

  - read-only keys (id, active, createdAt, updatedAt, staticData, shared, tags) are stripped
  - nodes are matched by name; a matched node keeps the stored node's id,
    credentials and other keys, takes position/type/typeVersion from the
    update, and gets parameters shallow-merged (update wins)
  - a matched node keeps its stored id when that is a UUID; otherwise the
    update's UUID is used, or a fresh uuid4
  - unmatched nodes keep their own UUID or get a fresh uuid4
  - name/nodes/connections/settings fall back to the current workflow

merge_workflow_update(current, merge_workflow_update(current, u)) equals
merge_workflow_update(current, u).
"""

from __future__ import annotations

import logging
import re
import uuid
from typing import Any

logger = logging.getLogger("n8n_dev_agent.agent.merge")

READ_ONLY_KEYS: frozenset[str] = frozenset({
    "id", "active", "createdAt", "updatedAt", "staticData", "shared", "tags",
})

_CALLER_WINS = ("position", "type", "typeVersion")

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


def is_uuid(value: Any) -> bool:
    return isinstance(value, str) and bool(_UUID_RE.match(value))


def _merge_node(existing: dict[str, Any], proposed: dict[str, Any]) -> dict[str, Any]:
    merged = dict(existing)
    for key, value in proposed.items():
        if key in ("id", "credentials", "parameters"):
            continue
        if key in _CALLER_WINS or key not in merged:
            merged[key] = value
    if not merged.get("credentials") and proposed.get("credentials"):
        merged["credentials"] = proposed["credentials"]
    merged["parameters"] = {**(existing.get("parameters") or {}), **(proposed.get("parameters") or {})}

    if is_uuid(existing.get("id")):
        merged["id"] = existing["id"]
    elif is_uuid(proposed.get("id")):
        merged["id"] = proposed["id"]
    else:
        merged["id"] = str(uuid.uuid4())
    return merged


def merge_nodes(current_nodes: list[dict[str, Any]], proposed_nodes: list[dict[str, Any]]) -> list[dict[str, Any]]:
    by_name = {n.get("name"): n for n in current_nodes if isinstance(n, dict)}
    out: list[dict[str, Any]] = []
    for node in proposed_nodes:
        if not isinstance(node, dict):
            continue
        existing = by_name.get(node.get("name"))
        if existing is not None:
            out.append(_merge_node(existing, node))
            continue
        fresh = dict(node)
        if not is_uuid(fresh.get("id")):
            fresh["id"] = str(uuid.uuid4())
        out.append(fresh)
    return out


def merge_workflow_update(current: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    """Return the PUT payload: {name, nodes, connections, settings}."""
    updates = {k: v for k, v in (updates or {}).items() if k not in READ_ONLY_KEYS}
    current_nodes = current.get("nodes") or []
    if "nodes" in updates and updates["nodes"] is not None:
        nodes = merge_nodes(current_nodes, updates["nodes"])
    else:
        nodes = current_nodes
    payload = {
        "name": updates.get("name") or current.get("name"),
        "nodes": nodes,
        "connections": updates["connections"] if updates.get("connections") is not None else current.get("connections") or {},
        "settings": updates["settings"] if updates.get("settings") is not None else current.get("settings") or {},
    }
    logger.debug(
        "Merged update for %r: %d node(s) (%d stored)", payload["name"], len(nodes), len(current_nodes),
    )
    return payload
