"""Offline build of the node capability snapshot.

Usage:
    python -m n8n_dev_agent.knowledge.build
    python -m n8n_dev_agent.knowledge.build --corpus /path/to/n8n --dry-run
    python -m n8n_dev_agent.knowledge.build --output schemas/node-index.json

Scans <corpus>/packages/*/nodes and writes node-index.json plus
node-index.meta.json (sha256 fingerprint). The source tree is never parsed
in full at runtime; the agent loads the snapshot instead.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from n8n_dev_agent.knowledge.index import DEFAULT_CORPUS_ROOT, CapabilityIndex

logger = logging.getLogger("n8n_dev_agent.knowledge.build")


def _diff(old: dict, new: dict) -> tuple[list[str], list[str]]:
    return sorted(set(new) - set(old)), sorted(set(old) - set(new))


def build(corpus_root: Path, output: Path | None = None, dry_run: bool = False) -> int:
    if not (corpus_root / "packages").is_dir():
        logger.error("No packages/ directory under %s", corpus_root)
        return 1

    index = CapabilityIndex(corpus_root, snapshot_path=output)
    existing: dict = {}
    if index.snapshot_path.exists():
        try:
            existing = json.loads(index.snapshot_path.read_text(encoding="utf-8")).get("nodes") or {}
        except (OSError, ValueError) as e:
            logger.warning("Existing snapshot unreadable (%s); treating as empty", e)

    total = index.rebuild(write=False)
    added, removed = _diff(existing, index.nodes)

    print(f"\n[nodes]  {total} node types", end="")
    if existing:
        print(f" | was {len(existing)}", end="")
    print(f" | {len(index.trigger_nodes)} triggers | {len(index.by_category)} categories")
    if added:
        print(f"  + added   ({len(added)}): {', '.join(added[:10])}" + (" …" if len(added) > 10 else ""))
    if removed:
        print(f"  - removed ({len(removed)}): {', '.join(removed[:10])}" + (" …" if len(removed) > 10 else ""))

    fallbacks = [t for t, e in index.nodes.items() if e.confidence.get("name") == "fallback"]
    if fallbacks:
        logger.warning("%d node types fell back to directory names: %s", len(fallbacks), ", ".join(fallbacks[:10]))

    if total == 0:
        logger.error("Scan produced no node types; snapshot not written")
        return 1
    if dry_run:
        logger.info("--dry-run: nothing written")
        return 0

    meta = index.write_snapshot()
    logger.info("Fingerprint: %s", meta["fingerprint"][:16] + "…")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Build the n8n node capability snapshot from a source checkout.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m n8n_dev_agent.knowledge.build
  python -m n8n_dev_agent.knowledge.build --corpus ~/src/n8n --dry-run
""",
    )
    parser.add_argument(
        "--corpus",
        default=str(DEFAULT_CORPUS_ROOT),
        help="Root of the n8n checkout (contains packages/). Default: %(default)s",
    )
    parser.add_argument(
        "--output",
        default=None,
        help="Snapshot path. Default: <corpus>/node-index.json",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Scan and report but do not write any files.",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(levelname)s  %(message)s")
    return build(Path(args.corpus), Path(args.output) if args.output else None, dry_run=args.dry_run)


if __name__ == "__main__":
    sys.exit(main())
