"""CapabilityIndex: searchable catalogue of n8n node types.

Lifecycle:
  - The snapshot (<corpus>/node-index.json) is loaded lazily on first use.
  - The sha256 fingerprint in node-index.meta.json is checked at load time;
    a mismatch is logged and the on-disk bytes are used as-is.
  - Without a snapshot a minimal manifest-only scan is used so lookups of
    the common nodes still work. Run the build CLI (or rebuild()) for the
    full index.
  - Parameter lists are extracted from source on first get_details() call and
    cached on the entry; nothing else mutates after load.

All lookups are synchronous and never raise for a missing node: they return
None / [] and leave it to the caller to phrase a corrective message.
"""

from __future__ import annotations

import datetime
import hashlib
import json
import logging
from pathlib import Path
from typing import Any

from n8n_dev_agent.knowledge import corpus
from n8n_dev_agent.knowledge.models import (
    Credential,
    NodeSummary,
    NodeTypeEntry,
    Operation,
    OperationSchema,
    Resource,
)

logger = logging.getLogger("n8n_dev_agent.knowledge.index")

DEFAULT_CORPUS_ROOT = Path(".n8n-nodes-cache")
SNAPSHOT_NAME = "node-index.json"
META_NAME = "node-index.meta.json"

ALIAS_SCORE = 100


def _now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).isoformat().replace("+00:00", "Z")


class CapabilityIndex:
    """Node type catalogue with alias-aware fuzzy search."""

    def __init__(
        self,
        corpus_root: Path | str = DEFAULT_CORPUS_ROOT,
        snapshot_path: Path | str | None = None,
    ) -> None:
        self.corpus_root = Path(corpus_root)
        self.snapshot_path = Path(snapshot_path) if snapshot_path else self.corpus_root / SNAPSHOT_NAME
        self.meta_path = self.snapshot_path.with_name(META_NAME)
        self.generated_at: str = ""
        self.nodes: dict[str, NodeTypeEntry] = {}
        self.by_category: dict[str, list[str]] = {}
        self.trigger_nodes: list[str] = []
        self.aliases: dict[str, str] = {}
        self._lower_ids: dict[str, str] = {}
        self._loaded = False

    @classmethod
    def from_entries(
        cls,
        entries: list[NodeTypeEntry],
        corpus_root: Path | str = DEFAULT_CORPUS_ROOT,
    ) -> CapabilityIndex:
        """Build an in-memory index without touching the snapshot file."""
        index = cls(corpus_root)
        index._install(entries, generated_at=_now())
        index._loaded = True
        return index

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def _install(
        self,
        entries: list[NodeTypeEntry],
        generated_at: str,
        aliases: dict[str, str] | None = None,
    ) -> None:
        self.generated_at = generated_at
        self.nodes = {}
        self.by_category = {}
        self.trigger_nodes = []
        for entry in entries:
            if entry.type in self.nodes:
                logger.warning("Duplicate node type %s (%s); keeping first", entry.type, entry.code_path)
                continue
            self.nodes[entry.type] = entry
            for tag in entry.group:
                self.by_category.setdefault(tag, []).append(entry.type)
            if entry.is_trigger:
                self.trigger_nodes.append(entry.type)
        self.aliases = aliases if aliases is not None else corpus.build_aliases(list(self.nodes.values()))
        self._lower_ids = {t.lower(): t for t in self.nodes}

    def _load(self) -> None:
        """Idempotent; called lazily by every public lookup."""
        if self._loaded:
            return
        self._loaded = True

        if self._load_snapshot():
            return

        logger.info(
            "No usable snapshot at %s; building minimal index from manifests "
            "(run: n8n-agent-build-index --corpus %s)",
            self.snapshot_path, self.corpus_root,
        )
        entries = corpus.minimal_scan(self.corpus_root)
        aliases: dict[str, str] = {}
        for entry in entries:
            aliases[entry.code_path.rsplit("/", 1)[-1].lower()] = entry.type
        self._install(entries, generated_at=_now(), aliases=aliases)
        logger.info("Minimal index: %d node types", len(self.nodes))

    def _load_snapshot(self) -> bool:
        if not self.snapshot_path.exists():
            return False
        try:
            raw_bytes = self.snapshot_path.read_bytes()
            if self.meta_path.exists():
                meta = json.loads(self.meta_path.read_text(encoding="utf-8"))
                stored = meta.get("fingerprint")
                if stored and hashlib.sha256(raw_bytes).hexdigest() != stored:
                    logger.warning(
                        "Fingerprint mismatch for %s; snapshot may be externally modified. "
                        "Proceeding with on-disk content.",
                        self.snapshot_path,
                    )
            data = json.loads(raw_bytes.decode("utf-8"))
        except (OSError, ValueError):
            logger.exception("Failed to load snapshot %s", self.snapshot_path)
            return False

        raw_nodes = data.get("nodes") or {}
        if not raw_nodes:
            logger.info("Snapshot %s is empty", self.snapshot_path)
            return False
        entries = [NodeTypeEntry.from_dict(n) for n in raw_nodes.values()]
        self._install(entries, generated_at=data.get("generatedAt", ""), aliases=dict(data.get("aliases") or {}))
        logger.info("Loaded %d node types from %s", len(self.nodes), self.snapshot_path)
        return True

    def rebuild(self, write: bool = True) -> int:
        """Full scan of the corpus, replacing the in-memory index. Returns node count."""
        entries = corpus.scan_corpus(self.corpus_root)
        self._install(entries, generated_at=_now())
        self._loaded = True
        if write:
            self.write_snapshot()
        return len(self.nodes)

    def to_snapshot(self) -> dict[str, Any]:
        return {
            "generatedAt": self.generated_at,
            "totalNodes": len(self.nodes),
            "nodes": {t: e.to_dict() for t, e in self.nodes.items()},
            "byCategory": self.by_category,
            "triggerNodes": self.trigger_nodes,
            "aliases": self.aliases,
        }

    def write_snapshot(self) -> dict[str, Any]:
        """Persist snapshot + meta; returns the meta dict."""
        content_bytes = json.dumps(self.to_snapshot(), indent=2, ensure_ascii=False).encode("utf-8")
        self.snapshot_path.parent.mkdir(parents=True, exist_ok=True)
        self.snapshot_path.write_bytes(content_bytes)
        meta = {
            "snapshot_file": self.snapshot_path.name,
            "generated_at": self.generated_at,
            "node_count": len(self.nodes),
            "fingerprint": hashlib.sha256(content_bytes).hexdigest(),
        }
        self.meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")
        logger.info("Written: %s (%d node types)", self.snapshot_path, len(self.nodes))
        return meta

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def lookup(self, type_or_alias: str) -> NodeTypeEntry | None:
        """Resolve a type id, display/machine name or alias without loading parameters."""
        self._load()
        entry = self.nodes.get(type_or_alias)
        if entry is not None:
            return entry
        key = type_or_alias.strip().lower()
        canonical = self._lower_ids.get(key) or self.aliases.get(key)
        return self.nodes.get(canonical) if canonical else None

    def search(self, query: str, limit: int = 10) -> list[NodeSummary]:
        """Score every entry against query; highest first, ties in corpus order.

        The alias hit is listed first and its alias bonus is added to the
        regular field score, so an exact display-name query always ranks the
        named node above nodes that merely contain the query.
        """
        self._load()
        q = query.strip().lower()
        if not q or not self.nodes:
            return []

        alias_hit = self.aliases.get(q)
        ordered = list(self.nodes.items())
        if alias_hit in self.nodes:
            ordered.sort(key=lambda item: item[0] != alias_hit)

        results: list[tuple[int, NodeTypeEntry]] = []
        for type_id, entry in ordered:
            name = entry.name.lower()
            display = entry.display_name.lower()
            score = ALIAS_SCORE if type_id == alias_hit else 0
            if name == q:
                score += 90
            if display == q:
                score += 90
            if q in name:
                score += 50
            if q in display:
                score += 50
            if q in entry.description.lower():
                score += 20
            if q in type_id.lower():
                score += 40
            if score > 0:
                results.append((score, entry))

        results.sort(key=lambda r: r[0], reverse=True)
        return [entry.summary() for _, entry in results[:limit]]

    def get_details(self, type_or_alias: str) -> NodeTypeEntry | None:
        entry = self.lookup(type_or_alias)
        if entry is None:
            return None
        if entry.parameters is None:
            entry.parameters = corpus.load_parameters(self.corpus_root, entry)
            logger.debug("Extracted %d parameters for %s", len(entry.parameters), entry.type)
        return entry

    def get_trigger_types(self) -> list[NodeSummary]:
        self._load()
        return [self.nodes[t].summary() for t in self.trigger_nodes if t in self.nodes]

    def get_by_category(self, category: str) -> list[NodeSummary]:
        self._load()
        return [self.nodes[t].summary() for t in self.by_category.get(category, []) if t in self.nodes]

    def categories(self) -> list[str]:
        self._load()
        return sorted(self.by_category)

    def _schema_dir(self, entry: NodeTypeEntry) -> Path | None:
        if not entry.has_schema or not entry.schema_version:
            return None
        node_dir = corpus.node_dir_for(self.corpus_root, entry.code_path)
        if node_dir is None:
            return None
        schema_dir = node_dir / "__schema__" / entry.schema_version
        return schema_dir if schema_dir.is_dir() else None

    def get_operation_schema(
        self,
        type_or_alias: str,
        resource: str | None = None,
        operation: str | None = None,
    ) -> OperationSchema | None:
        entry = self.lookup(type_or_alias)
        if entry is None:
            return None
        schema_dir = self._schema_dir(entry)
        if schema_dir is None:
            return None
        if resource and operation:
            path = schema_dir / resource / f"{operation}.json"
        elif operation:
            path = schema_dir / f"{operation}.json"
        else:
            return None
        if not path.is_file():
            return None
        try:
            schema = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.debug("Could not load schema for %s: %s", entry.type, e)
            return None
        return OperationSchema(resource=resource or "", operation=operation or "", output_schema=schema)

    def get_resources_and_operations(self, type_or_alias: str) -> list[Resource] | None:
        """Entry resources, else derived from the schema folder layout."""
        entry = self.lookup(type_or_alias)
        if entry is None:
            return None
        if entry.resources:
            return entry.resources
        schema_dir = self._schema_dir(entry)
        if schema_dir is None:
            return None
        resources: list[Resource] = []
        for item in sorted(p for p in schema_dir.iterdir() if p.is_dir()):
            ops = [Operation(name=f.stem, value=f.stem) for f in sorted(item.glob("*.json"))]
            if ops:
                resources.append(Resource(name=item.name[:1].upper() + item.name[1:], value=item.name, operations=ops))
        return resources or None

    def get_credential_info(self, type_or_alias: str) -> dict[str, Any] | None:
        entry = self.lookup(type_or_alias)
        if entry is None:
            return None
        return {
            "credentials": [c.to_dict() for c in entry.credentials],
            "instructions": credential_instructions(entry.display_name, entry.credentials),
        }


def credential_instructions(display_name: str, credentials: list[Credential]) -> str:
    if not credentials:
        return "This node does not require credentials."
    names = ", ".join(c.name for c in credentials)
    return (
        "This node requires credentials. The user must configure the following credential "
        f"type(s) in their n8n instance: {names}. After creating the workflow, instruct the "
        f"user to: 1) Open the workflow in n8n UI, 2) Click on the {display_name} node, "
        "3) Select or create the appropriate credentials."
    )
