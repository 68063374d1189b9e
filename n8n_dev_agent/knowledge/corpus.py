"""Filesystem scan of an n8n source checkout.

Layout understood:

    <root>/packages/<pkg-dir>/nodes/<...>/<Leaf>/
        <Leaf>.node.ts            primary description (or V<n>/<Leaf>V<n>.node.ts)
        <Leaf>Trigger.node.ts     optional sibling trigger
        <Leaf>.node.json          optional manifest ({"node": "<type id>", ...})
        *Description*.ts          parameter definitions
        __schema__/v<n>/[<resource>/]<operation>.json

A leaf is any directory holding at least one *.node.ts file; scanning does
not descend below a leaf.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from pathlib import Path

from n8n_dev_agent.knowledge.extraction import extract_node, extract_parameters
from n8n_dev_agent.knowledge.models import NodeTypeEntry, Parameter

logger = logging.getLogger("n8n_dev_agent.knowledge.corpus")

PACKAGE_PREFIXES: dict[str, str] = {
    "nodes-base": "n8n-nodes-base",
    "nodes-langchain": "@n8n/n8n-nodes-langchain",
}

SKIP_DIRS: frozenset[str] = frozenset({"__schema__", "test"})

_VERSION_DIR_RE = re.compile(r"^[vV](\d+)")

# Curated query -> type shortcuts; an entry is only installed when its target exists.
MANUAL_ALIASES: dict[str, str] = {
    "email": "n8n-nodes-base.gmail",
    "mail": "n8n-nodes-base.gmail",
    "http": "n8n-nodes-base.httpRequest",
    "api": "n8n-nodes-base.httpRequest",
    "rest": "n8n-nodes-base.httpRequest",
    "webhook": "n8n-nodes-base.webhook",
    "hook": "n8n-nodes-base.webhook",
    "cron": "n8n-nodes-base.cron",
    "schedule": "n8n-nodes-base.scheduleTrigger",
    "timer": "n8n-nodes-base.scheduleTrigger",
    "if": "n8n-nodes-base.if",
    "condition": "n8n-nodes-base.if",
    "switch": "n8n-nodes-base.switch",
    "code": "n8n-nodes-base.code",
    "javascript": "n8n-nodes-base.code",
    "js": "n8n-nodes-base.code",
    "python": "n8n-nodes-base.code",
    "json": "n8n-nodes-base.code",
    "set": "n8n-nodes-base.set",
    "merge": "n8n-nodes-base.merge",
    "split": "n8n-nodes-base.splitInBatches",
    "wait": "n8n-nodes-base.wait",
    "delay": "n8n-nodes-base.wait",
    "slack": "n8n-nodes-base.slack",
    "discord": "n8n-nodes-base.discord",
    "telegram": "n8n-nodes-base.telegram",
    "sheets": "n8n-nodes-base.googleSheets",
    "google sheets": "n8n-nodes-base.googleSheets",
    "spreadsheet": "n8n-nodes-base.googleSheets",
    "drive": "n8n-nodes-base.googleDrive",
    "google drive": "n8n-nodes-base.googleDrive",
    "notion": "n8n-nodes-base.notion",
    "airtable": "n8n-nodes-base.airtable",
    "postgres": "n8n-nodes-base.postgres",
    "postgresql": "n8n-nodes-base.postgres",
    "database": "n8n-nodes-base.postgres",
    "db": "n8n-nodes-base.postgres",
    "mysql": "n8n-nodes-base.mySql",
    "openai": "n8n-nodes-base.openAi",
    "gpt": "n8n-nodes-base.openAi",
    "chatgpt": "n8n-nodes-base.openAi",
    "stripe": "n8n-nodes-base.stripe",
    "shopify": "n8n-nodes-base.shopify",
    "hubspot": "n8n-nodes-base.hubspot",
    "salesforce": "n8n-nodes-base.salesforce",
    "jira": "n8n-nodes-base.jira",
    "github": "n8n-nodes-base.github",
    "gitlab": "n8n-nodes-base.gitlab",
    "aws": "n8n-nodes-base.awsS3",
    "s3": "n8n-nodes-base.awsS3",
    "ftp": "n8n-nodes-base.ftp",
    "sftp": "n8n-nodes-base.ftp",
    "ssh": "n8n-nodes-base.ssh",
    "xml": "n8n-nodes-base.xml",
    "csv": "n8n-nodes-base.spreadsheetFile",
    "excel": "n8n-nodes-base.microsoftExcel",
    "pdf": "n8n-nodes-base.readPdf",
    # LangChain package
    "ai": "@n8n/n8n-nodes-langchain.agent",
    "agent": "@n8n/n8n-nodes-langchain.agent",
    "llm": "@n8n/n8n-nodes-langchain.lmChatOpenAi",
    "chat": "@n8n/n8n-nodes-langchain.lmChatOpenAi",
    "anthropic": "@n8n/n8n-nodes-langchain.lmChatAnthropic",
    "claude": "@n8n/n8n-nodes-langchain.lmChatAnthropic",
    "gemini": "@n8n/n8n-nodes-langchain.lmChatGoogleGemini",
    "mistral": "@n8n/n8n-nodes-langchain.lmChatMistralCloud",
    "ollama": "@n8n/n8n-nodes-langchain.lmChatOllama",
    "embedding": "@n8n/n8n-nodes-langchain.embeddingsOpenAi",
    "embeddings": "@n8n/n8n-nodes-langchain.embeddingsOpenAi",
    "vector store": "@n8n/n8n-nodes-langchain.vectorStoreInMemory",
    "vectorstore": "@n8n/n8n-nodes-langchain.vectorStoreInMemory",
    "pinecone": "@n8n/n8n-nodes-langchain.vectorStorePinecone",
    "qdrant": "@n8n/n8n-nodes-langchain.vectorStoreQdrant",
    "supabase vector": "@n8n/n8n-nodes-langchain.vectorStoreSupabase",
    "memory": "@n8n/n8n-nodes-langchain.memoryBufferWindow",
    "chain": "@n8n/n8n-nodes-langchain.chainLlm",
    "retrieval": "@n8n/n8n-nodes-langchain.chainRetrievalQa",
    "rag": "@n8n/n8n-nodes-langchain.chainRetrievalQa",
    "text splitter": "@n8n/n8n-nodes-langchain.textSplitterRecursiveCharacterTextSplitter",
    "document loader": "@n8n/n8n-nodes-langchain.documentDefaultDataLoader",
    "tool": "@n8n/n8n-nodes-langchain.toolCode",
}


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def prefix_for_package(package_dir: str) -> str:
    return PACKAGE_PREFIXES.get(package_dir, f"n8n-nodes-{package_dir}")


def package_for_prefix(prefix: str) -> str | None:
    for package_dir, known in PACKAGE_PREFIXES.items():
        if known == prefix:
            return package_dir
    if prefix.startswith("n8n-nodes-"):
        return prefix[len("n8n-nodes-"):]
    return None


def node_dir_for(corpus_root: Path, code_path: str) -> Path | None:
    """Resolve an entry's code_path ("<prefix>/<rel dir>") back to its directory."""
    # Scoped prefixes contain a slash themselves: "@n8n/n8n-nodes-langchain/Foo".
    parts = code_path.split("/")
    if code_path.startswith("@") and len(parts) > 2:
        prefix, rel = "/".join(parts[:2]), "/".join(parts[2:])
    elif len(parts) > 1:
        prefix, rel = parts[0], "/".join(parts[1:])
    else:
        return None
    package_dir = package_for_prefix(prefix)
    if package_dir is None:
        return None
    return corpus_root / "packages" / package_dir / "nodes" / rel


def _skipped(name: str) -> bool:
    return name.startswith(".") or name in SKIP_DIRS


def _node_files(directory: Path) -> list[Path]:
    return sorted(p for p in directory.iterdir() if p.is_file() and p.name.endswith(".node.ts"))


def version_dirs(node_dir: Path) -> list[Path]:
    """Version sub-directories, highest number first."""
    found: list[tuple[int, Path]] = []
    for child in node_dir.iterdir():
        if not child.is_dir():
            continue
        m = _VERSION_DIR_RE.match(child.name)
        if m:
            found.append((int(m.group(1)), child))
    found.sort(key=lambda item: item[0], reverse=True)
    return [p for _, p in found]


def find_primary_file(node_dir: Path) -> Path | None:
    root_files = _node_files(node_dir)
    for f in root_files:
        if "Trigger" not in f.name:
            return f
    for vdir in version_dirs(node_dir):
        vfiles = _node_files(vdir)
        if vfiles:
            return vfiles[0]
    return root_files[0] if root_files else None


def read_manifest(node_dir: Path) -> dict | None:
    for f in sorted(node_dir.glob("*.node.json")):
        try:
            data = json.loads(f.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning("Unreadable manifest %s: %s", f, e)
            return None
        return data if isinstance(data, dict) else None
    return None


def _natural_key(name: str) -> list:
    return [int(tok) if tok.isdigit() else tok for tok in re.split(r"(\d+)", name)]


def schema_info(node_dir: Path) -> tuple[bool, str | None]:
    schema_dir = node_dir / "__schema__"
    if not schema_dir.is_dir():
        return False, None
    versions = sorted((d.name for d in schema_dir.iterdir() if d.is_dir()), key=_natural_key, reverse=True)
    return True, versions[0] if versions else None


def iter_leaf_dirs(nodes_dir: Path, rel: str = "") -> Iterator[tuple[Path, str]]:
    """Yield (leaf directory, path relative to nodes_dir) in sorted order."""
    try:
        children = sorted(p for p in nodes_dir.iterdir() if p.is_dir())
    except OSError as e:
        logger.warning("Cannot list %s: %s", nodes_dir, e)
        return
    for child in children:
        if _skipped(child.name):
            continue
        child_rel = f"{rel}/{child.name}" if rel else child.name
        if _node_files(child):
            yield child, child_rel
        else:
            yield from iter_leaf_dirs(child, child_rel)


def iter_packages(corpus_root: Path) -> Iterator[tuple[str, Path]]:
    """Yield (type prefix, nodes dir) for every package under <root>/packages."""
    packages = corpus_root / "packages"
    if not packages.is_dir():
        logger.warning("Corpus has no packages/ directory: %s", corpus_root)
        return
    for pkg in sorted(p for p in packages.iterdir() if p.is_dir() and not _skipped(p.name)):
        nodes_dir = pkg / "nodes"
        if nodes_dir.is_dir():
            yield prefix_for_package(pkg.name), nodes_dir


# ---------------------------------------------------------------------------
# Full scan
# ---------------------------------------------------------------------------


def _read(path: Path) -> str | None:
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except OSError as e:
        logger.warning("Cannot read %s: %s", path, e)
        return None


def _default_name(dir_name: str) -> str:
    compact = dir_name.replace(" ", "")
    return compact[:1].lower() + compact[1:]


def _entry_from_source(
    source: str,
    leaf_name: str,
    type_id: str | None,
    prefix: str,
    code_path: str,
    schema: tuple[bool, str | None],
    trigger: bool = False,
) -> NodeTypeEntry:
    extracted = extract_node(source, fallback_name=leaf_name)
    name = extracted.name or _default_name(leaf_name)
    confidence = dict(extracted.confidence)
    if type_id:
        confidence["type"] = "manifest"
    else:
        type_id = f"{prefix}.{name}"
        confidence["type"] = "parsed" if extracted.name else "fallback"
    group = extracted.group or (["trigger"] if trigger else [])
    return NodeTypeEntry(
        type=type_id,
        display_name=extracted.display_name or leaf_name,
        name=name,
        description=extracted.description,
        group=group,
        version=extracted.version,
        credentials=extracted.credentials,
        resources=extracted.resources or None,
        is_trigger=trigger or extracted.is_trigger,
        code_path=code_path,
        has_schema=schema[0],
        schema_version=schema[1],
        confidence=confidence,
    )


def scan_leaf(node_dir: Path, rel: str, prefix: str) -> list[NodeTypeEntry]:
    """Build the entries (primary plus optional sibling trigger) for one leaf directory."""
    primary = find_primary_file(node_dir)
    if primary is None:
        return []
    source = _read(primary)
    if source is None:
        return []
    # Latest version content backs up a thin root file (VersionedNodeType wrappers).
    vdirs = version_dirs(node_dir)
    if vdirs and primary.parent == node_dir:
        for vf in _node_files(vdirs[0]):
            extra = _read(vf)
            if extra:
                source = f"{source}\n{extra}"

    manifest = read_manifest(node_dir) or {}
    manifest_type = manifest.get("node") if isinstance(manifest.get("node"), str) else None
    schema = schema_info(node_dir)
    code_path = f"{prefix}/{rel}"

    entries = [_entry_from_source(source, node_dir.name, manifest_type, prefix, code_path, schema)]

    if "Trigger" not in primary.name:
        trigger_file = next((f for f in _node_files(node_dir) if "Trigger" in f.name), None)
        if trigger_file is not None:
            trigger_source = _read(trigger_file)
            if trigger_source is not None:
                entries.append(_entry_from_source(
                    trigger_source, f"{node_dir.name} Trigger", None, prefix, code_path, schema, trigger=True,
                ))
    return entries


def scan_corpus(corpus_root: Path) -> list[NodeTypeEntry]:
    """Walk every package; returns entries in corpus order."""
    entries: list[NodeTypeEntry] = []
    for prefix, nodes_dir in iter_packages(corpus_root):
        before = len(entries)
        for leaf, rel in iter_leaf_dirs(nodes_dir):
            try:
                entries.extend(scan_leaf(leaf, rel, prefix))
            except (OSError, ValueError) as e:
                logger.warning("Skipping %s: %s", leaf, e)
        logger.info("Scanned %s: %d node types", prefix, len(entries) - before)
    return entries


def minimal_scan(corpus_root: Path) -> list[NodeTypeEntry]:
    """Manifest-only scan used when no snapshot exists. No source parsing."""
    entries: list[NodeTypeEntry] = []
    for prefix, nodes_dir in iter_packages(corpus_root):
        for leaf, rel in iter_leaf_dirs(nodes_dir):
            manifest = read_manifest(leaf)
            if manifest is None:
                continue
            node = manifest.get("node")
            type_id = node if isinstance(node, str) and node else f"{prefix}.{leaf.name.lower()}"
            has_schema, schema_version = schema_info(leaf)
            is_trigger = "Trigger" in leaf.name
            entries.append(NodeTypeEntry(
                type=type_id,
                display_name=leaf.name,
                name=leaf.name.lower(),
                group=["trigger"] if is_trigger else [],
                is_trigger=is_trigger,
                code_path=f"{prefix}/{rel}",
                has_schema=has_schema,
                schema_version=schema_version,
                confidence={"type": "manifest", "displayName": "fallback", "name": "fallback"},
            ))
    return entries


def load_parameters(corpus_root: Path, entry: NodeTypeEntry) -> list[Parameter]:
    """Parameter descriptors for an entry, read from its directory's sources."""
    node_dir = node_dir_for(corpus_root, entry.code_path)
    if node_dir is None or not node_dir.is_dir():
        logger.debug("No source directory for %s (%s)", entry.type, entry.code_path)
        return []

    files: list[Path] = sorted(f for f in node_dir.iterdir() if f.is_file() and "Description" in f.name and f.suffix == ".ts")
    vdirs = version_dirs(node_dir)
    if vdirs:
        files.extend(sorted(f for f in vdirs[0].rglob("*.ts") if "Description" in f.name))
    primary = find_primary_file(node_dir)
    if primary is not None:
        files.append(primary)

    chunks = [text for text in (_read(f) for f in files) if text]
    if not chunks:
        return []
    return extract_parameters("\n".join(chunks))


def build_aliases(entries: list[NodeTypeEntry]) -> dict[str, str]:
    aliases: dict[str, str] = {}
    for entry in entries:
        lower_name = entry.name.lower()
        lower_display = entry.display_name.lower()
        if lower_name:
            aliases[lower_name] = entry.type
        aliases[lower_display] = entry.type
        compact = re.sub(r"\s+", "", lower_display)
        if compact != lower_name:
            aliases[compact] = entry.type
    known = {e.type for e in entries}
    for alias, target in MANUAL_ALIASES.items():
        if target in known:
            aliases[alias] = target
    return aliases
