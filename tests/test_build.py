"""Offline snapshot build and the build-index CLI command."""

from __future__ import annotations

import hashlib
import json

import pytest

from n8n_dev_agent import cli
from n8n_dev_agent.knowledge.build import build, main
from n8n_dev_agent.knowledge.index import META_NAME, SNAPSHOT_NAME, CapabilityIndex


def test_build_writes_snapshot_and_meta(corpus, capsys):
    assert build(corpus) == 0

    snapshot = corpus / SNAPSHOT_NAME
    meta = json.loads((corpus / META_NAME).read_text(encoding="utf-8"))
    assert meta["fingerprint"] == hashlib.sha256(snapshot.read_bytes()).hexdigest()
    assert meta["node_count"] == len(json.loads(snapshot.read_text(encoding="utf-8"))["nodes"])
    assert "n8n-nodes-base.slack" in json.loads(snapshot.read_text(encoding="utf-8"))["nodes"]
    assert "node types" in capsys.readouterr().out


def test_snapshot_loads_without_rescanning(corpus):
    build(corpus)
    index = CapabilityIndex(corpus)
    assert index.get_details("slack").type == "n8n-nodes-base.slack"


def test_second_build_reports_previous_count(corpus, capsys):
    build(corpus)
    capsys.readouterr()
    build(corpus)
    assert "| was " in capsys.readouterr().out


def test_dry_run_writes_nothing(corpus):
    assert build(corpus, dry_run=True) == 0
    assert not (corpus / SNAPSHOT_NAME).exists()
    assert not (corpus / META_NAME).exists()


def test_custom_output(corpus, tmp_path):
    output = tmp_path / "out" / "index.json"
    assert build(corpus, output=output) == 0
    assert output.exists()
    assert (tmp_path / "out" / META_NAME).exists()
    assert not (corpus / SNAPSHOT_NAME).exists()


def test_missing_packages_dir(tmp_path):
    assert build(tmp_path) == 1


def test_empty_corpus_not_written(tmp_path):
    (tmp_path / "packages").mkdir()
    assert build(tmp_path) == 1
    assert not (tmp_path / SNAPSHOT_NAME).exists()


def test_main_parses_args(corpus, tmp_path):
    output = tmp_path / "snap.json"
    assert main(["--corpus", str(corpus), "--output", str(output)]) == 0
    assert output.exists()


def test_cli_build_index_exits_with_build_status(corpus):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(["build-index", "--corpus", str(corpus), "--dry-run"])
    assert exc_info.value.code == 0
    assert not (corpus / SNAPSHOT_NAME).exists()


def test_cli_without_command_prints_help(capsys):
    with pytest.raises(SystemExit) as exc_info:
        cli.main([])
    assert exc_info.value.code == 1
    assert "n8n-agent" in capsys.readouterr().out
