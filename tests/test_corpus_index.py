"""Corpus scan and CapabilityIndex lookups against the miniature checkout in conftest."""

from __future__ import annotations

import json
import logging

import pytest

from n8n_dev_agent.knowledge import CapabilityIndex
from n8n_dev_agent.knowledge.corpus import (
    build_aliases,
    find_primary_file,
    minimal_scan,
    node_dir_for,
    scan_corpus,
    schema_info,
)

SLACK = "n8n-nodes-base.slack"
SLACK_TRIGGER = "n8n-nodes-base.slackTrigger"
SHEETS = "n8n-nodes-base.googleSheets"
HTTP = "n8n-nodes-base.httpRequest"
MANUAL = "n8n-nodes-base.manualTrigger"
EMBEDDINGS = "@n8n/n8n-nodes-langchain.embeddingsOpenAi"


# ---------------------------------------------------------------------------
# Scan
# ---------------------------------------------------------------------------


class TestScanCorpus:
    def test_corpus_order(self, corpus):
        types = [e.type for e in scan_corpus(corpus)]
        assert types == [
            "n8n-nodes-base.broken",
            SHEETS,
            HTTP,
            MANUAL,
            SLACK,
            SLACK_TRIGGER,
            EMBEDDINGS,
        ]

    def test_test_directories_skipped(self, corpus):
        assert all("Fake" not in e.code_path for e in scan_corpus(corpus))

    def test_unparseable_source_falls_back_to_directory(self, corpus):
        broken = scan_corpus(corpus)[0]
        assert broken.display_name == "Broken"
        assert broken.name == "broken"
        assert broken.confidence["type"] == "fallback"
        assert broken.version == 1

    def test_versioned_wrapper_reads_latest_version_dir(self, corpus):
        sheets = {e.type: e for e in scan_corpus(corpus)}[SHEETS]
        assert sheets.display_name == "Google Sheets"
        assert sheets.version == 4.5
        assert sheets.group == ["input", "output"]
        assert [c.name for c in sheets.credentials] == ["googleSheetsOAuth2Api"]
        assert [r.value for r in sheets.resources] == ["sheet"]
        assert sheets.code_path == "n8n-nodes-base/Google/Sheet"

    def test_manifest_type_wins(self, corpus):
        http = {e.type: e for e in scan_corpus(corpus)}[HTTP]
        assert http.confidence["type"] == "manifest"
        assert http.version == 4.2

    def test_sibling_trigger_shares_directory(self, corpus):
        entries = {e.type: e for e in scan_corpus(corpus)}
        trigger = entries[SLACK_TRIGGER]
        assert trigger.is_trigger
        assert trigger.display_name == "Slack Trigger"
        assert trigger.code_path == entries[SLACK].code_path == "n8n-nodes-base/Slack"
        assert not entries[SLACK].is_trigger

    def test_scoped_package_prefix(self, corpus):
        emb = {e.type: e for e in scan_corpus(corpus)}[EMBEDDINGS]
        assert emb.code_path == "@n8n/n8n-nodes-langchain/embeddings/EmbeddingsOpenAI"
        assert node_dir_for(corpus, emb.code_path).is_dir()

    def test_schema_version_is_highest(self, corpus):
        slack_dir = corpus / "packages" / "nodes-base" / "nodes" / "Slack"
        assert schema_info(slack_dir) == (True, "v2.2.0")
        assert schema_info(corpus / "packages" / "nodes-base" / "nodes" / "Broken") == (False, None)

    def test_primary_file_prefers_non_trigger(self, corpus):
        slack_dir = corpus / "packages" / "nodes-base" / "nodes" / "Slack"
        assert find_primary_file(slack_dir).name == "Slack.node.ts"

    def test_missing_packages_dir(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING):
            assert scan_corpus(tmp_path) == []
        assert "no packages/" in caplog.text


class TestAliases:
    def test_name_display_and_manual_aliases(self, corpus):
        aliases = build_aliases(scan_corpus(corpus))
        assert aliases["slack"] == SLACK
        assert aliases["slack trigger"] == SLACK_TRIGGER
        assert aliases["google sheets"] == SHEETS
        assert aliases["googlesheets"] == SHEETS
        assert aliases["sheets"] == SHEETS
        assert aliases["http"] == HTTP
        assert aliases["api"] == HTTP
        assert aliases["embeddings"] == EMBEDDINGS

    def test_manual_aliases_need_their_target(self, corpus):
        aliases = build_aliases(scan_corpus(corpus))
        assert "webhook" not in aliases
        assert "email" not in aliases

    def test_manifest_alias_lists_are_not_aliases(self, corpus):
        assert "fetch" not in build_aliases(scan_corpus(corpus))


# ---------------------------------------------------------------------------
# Index lookups
# ---------------------------------------------------------------------------


class TestSearch:
    def test_exact_display_name_ranks_first(self, index):
        results = index.search("Slack")
        assert results[0].type == SLACK
        assert results[1].type == SLACK_TRIGGER

    def test_alias_query(self, index):
        assert index.search("sheets")[0].type == SHEETS
        assert index.search("http")[0].type == HTTP

    def test_description_match(self, index):
        types = [r.type for r in index.search("button")]
        assert types == [MANUAL]

    def test_empty_query(self, index):
        assert index.search("") == []
        assert index.search("   ") == []

    def test_no_match(self, index):
        assert index.search("zzzzqqq") == []

    def test_limit(self, index):
        assert len(index.search("n8n-nodes-base", limit=3)) == 3

    def test_summary_shape(self, index):
        row = index.search("Slack")[0].to_dict()
        assert row == {
            "type": SLACK,
            "displayName": "Slack",
            "description": "Consume Slack API",
            "isTrigger": False,
            "requiresCredentials": True,
            "credentialTypes": ["slackApi", "slackOAuth2Api"],
        }


class TestDetails:
    @pytest.mark.parametrize("key", [SLACK, "slack", "SLACK", " Slack "])
    def test_same_entry_for_every_spelling(self, index, key):
        assert index.get_details(key) is index.get_details(SLACK)

    def test_alias_resolves(self, index):
        assert index.get_details("api").type == HTTP

    def test_unknown_returns_none(self, index):
        assert index.get_details("n8n-nodes-base.nope") is None

    def test_parameters_loaded_lazily(self, index):
        entry = index.lookup(SLACK)
        assert entry.parameters is None
        details = index.get_details(SLACK)
        assert [p.name for p in details.parameters] == ["channelId", "text", "channelName"]
        post = [p.name for p in details.parameters if p.visible_for("message", "post")]
        assert post == ["channelId", "text"]

    def test_parameters_empty_when_source_has_none(self, index):
        assert index.get_details(MANUAL).parameters == []


class TestSchemasAndOperations:
    def test_operation_schema(self, index):
        schema = index.get_operation_schema("slack", "message", "post")
        assert schema.to_dict() == {
            "resource": "message",
            "operation": "post",
            "outputSchema": {"type": "object", "properties": {"ts": {"type": "string"}}},
        }

    def test_only_latest_schema_version_is_consulted(self, index):
        assert index.get_operation_schema("slack", "message", "delete") is None

    def test_operation_without_resource(self, index):
        assert index.get_operation_schema("slack", None, "post") is None

    def test_no_schema_folder(self, index):
        assert index.get_operation_schema(HTTP, "any", "get") is None
        assert index.get_operation_schema("nope", "message", "post") is None

    def test_resources_and_operations(self, index):
        resources = {r.value: [op.value for op in r.operations] for r in index.get_resources_and_operations(SLACK)}
        assert resources == {"channel": ["create"], "message": ["post", "delete"]}

    def test_resources_derived_from_schema_folder(self, corpus):
        entries = scan_corpus(corpus)
        slack = next(e for e in entries if e.type == SLACK)
        slack.resources = None
        idx = CapabilityIndex.from_entries(entries, corpus_root=corpus)
        (resource,) = idx.get_resources_and_operations(SLACK)
        assert resource.value == "message"
        assert [op.value for op in resource.operations] == ["post"]

    def test_no_resources(self, index):
        assert index.get_resources_and_operations(HTTP) is None
        assert index.get_resources_and_operations("nope") is None


class TestCategoriesAndCredentials:
    def test_triggers(self, index):
        assert [s.type for s in index.get_trigger_types()] == [MANUAL, SLACK_TRIGGER]

    def test_by_category(self, index):
        assert [s.type for s in index.get_by_category("trigger")] == [MANUAL, SLACK_TRIGGER]
        assert [s.type for s in index.get_by_category("input")] == [SHEETS]
        assert index.get_by_category("unknown") == []

    def test_categories_sorted(self, index):
        assert index.categories() == ["input", "output", "transform", "trigger"]

    def test_credential_info(self, index):
        info = index.get_credential_info("slack")
        assert info["credentials"] == [
            {"name": "slackApi", "required": True},
            {"name": "slackOAuth2Api", "required": True},
        ]
        assert "slackApi, slackOAuth2Api" in info["instructions"]
        assert "Click on the Slack node" in info["instructions"]

    def test_no_credentials(self, index):
        info = index.get_credential_info(MANUAL)
        assert info["credentials"] == []
        assert info["instructions"] == "This node does not require credentials."


# ---------------------------------------------------------------------------
# Snapshot lifecycle
# ---------------------------------------------------------------------------


class TestSnapshot:
    def test_round_trip(self, corpus, index):
        meta = index.write_snapshot()
        assert meta["node_count"] == 7
        assert len(meta["fingerprint"]) == 64

        reloaded = CapabilityIndex(corpus)
        assert reloaded.lookup(SLACK) is not None
        assert set(reloaded.nodes) == set(index.nodes)
        assert reloaded.aliases == index.aliases
        assert reloaded.lookup(SLACK).to_dict() == index.lookup(SLACK).to_dict()
        assert reloaded.get_details(SLACK).parameters[0].name == "channelId"

    def test_fingerprint_mismatch_warns_and_loads(self, corpus, index, caplog):
        index.write_snapshot()
        snapshot = corpus / "node-index.json"
        data = json.loads(snapshot.read_text(encoding="utf-8"))
        data["nodes"][SLACK]["description"] = "Edited by hand"
        snapshot.write_text(json.dumps(data), encoding="utf-8")

        with caplog.at_level(logging.WARNING, logger="n8n_dev_agent.knowledge.index"):
            reloaded = CapabilityIndex(corpus)
            entry = reloaded.lookup(SLACK)
        assert "Fingerprint mismatch" in caplog.text
        assert entry.description == "Edited by hand"

    def test_custom_snapshot_path(self, corpus, tmp_path):
        target = tmp_path / "out" / "snap.json"
        CapabilityIndex(corpus, snapshot_path=target).rebuild()
        assert target.exists()
        assert (tmp_path / "out" / "node-index.meta.json").exists()
        assert not (corpus / "node-index.json").exists()
        assert CapabilityIndex(corpus, snapshot_path=target).lookup(SHEETS) is not None


class TestMinimalIndex:
    def test_manifest_only_without_snapshot(self, corpus):
        idx = CapabilityIndex(corpus)
        assert list(idx.nodes) == []  # not loaded yet
        entry = idx.lookup(HTTP)
        assert entry is not None
        assert list(idx.nodes) == [HTTP]
        assert entry.confidence["type"] == "manifest"
        assert idx.lookup("httprequest") is entry

    def test_minimal_scan_reads_no_source(self, corpus):
        (entry,) = minimal_scan(corpus)
        assert entry.display_name == "HttpRequest"
        assert entry.credentials == []

    def test_empty_corpus(self, tmp_path):
        idx = CapabilityIndex(tmp_path)
        assert idx.search("slack") == []
        assert idx.get_details("slack") is None
