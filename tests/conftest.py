"""Shared fixtures: a small on-disk n8n source corpus and scripted engines."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from n8n_dev_agent.reasoning import EngineResponse, ReasoningEngine, ToolCall

SLACK_NODE = """
import type { IExecuteFunctions, INodeType, INodeTypeDescription } from 'n8n-workflow';
import { NodeConnectionTypes } from 'n8n-workflow';
import { messageFields } from './MessageDescription';

export class Slack implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'Slack',
\t\tname: 'slack',
\t\ticon: 'file:slack.svg',
\t\tgroup: ['output'],
\t\tversion: [1, 2, 2.1],
\t\tsubtitle: '={{$parameter["operation"] + ": " + $parameter["resource"]}}',
\t\tdescription: 'Consume Slack API',
\t\tdefaults: {
\t\t\tname: 'Slack',
\t\t},
\t\tinputs: [NodeConnectionTypes.Main],
\t\toutputs: [NodeConnectionTypes.Main],
\t\tcredentials: [
\t\t\t{
\t\t\t\tname: 'slackApi',
\t\t\t\trequired: true,
\t\t\t\tdisplayOptions: { show: { authentication: ['accessToken'] } },
\t\t\t},
\t\t\t{
\t\t\t\tname: 'slackOAuth2Api',
\t\t\t\trequired: true,
\t\t\t},
\t\t],
\t\tproperties: [
\t\t\t{
\t\t\t\tdisplayName: 'Resource',
\t\t\t\tname: 'resource',
\t\t\t\ttype: 'options',
\t\t\t\tnoDataExpression: true,
\t\t\t\toptions: [
\t\t\t\t\t{ name: 'Channel', value: 'channel' },
\t\t\t\t\t{ name: 'Message', value: 'message' },
\t\t\t\t],
\t\t\t\tdefault: 'message',
\t\t\t},
\t\t\t{
\t\t\t\tdisplayName: 'Operation',
\t\t\t\tname: 'operation',
\t\t\t\ttype: 'options',
\t\t\t\tdisplayOptions: { show: { resource: ['message'] } },
\t\t\t\toptions: [
\t\t\t\t\t{ name: 'Send', value: 'post', action: 'Send a message' },
\t\t\t\t\t{ name: 'Delete', value: 'delete', action: 'Delete a message' },
\t\t\t\t],
\t\t\t\tdefault: 'post',
\t\t\t},
\t\t\t{
\t\t\t\tdisplayName: 'Operation',
\t\t\t\tname: 'operation',
\t\t\t\ttype: 'options',
\t\t\t\tdisplayOptions: { show: { resource: ['channel'] } },
\t\t\t\toptions: [
\t\t\t\t\t{ name: 'Create', value: 'create', action: 'Create a channel' },
\t\t\t\t],
\t\t\t\tdefault: 'create',
\t\t\t},
\t\t\t...messageFields,
\t\t],
\t};

\tasync execute(this: IExecuteFunctions): Promise<INodeExecutionData[][]> {
\t\tconst items = this.getInputData();
\t\treturn [items];
\t}
}
"""

SLACK_TRIGGER_NODE = """
export class SlackTrigger implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'Slack Trigger',
\t\tname: 'slackTrigger',
\t\tgroup: ['trigger'],
\t\tversion: 1,
\t\tdescription: 'Handle Slack events via webhooks',
\t\tdefaults: { name: 'Slack Trigger' },
\t\tinputs: [],
\t\toutputs: [NodeConnectionTypes.Main],
\t\tcredentials: [{ name: 'slackApi', required: true }],
\t\twebhooks: [{ name: 'default', httpMethod: 'POST', path: 'webhook' }],
\t\tproperties: [],
\t};
}
"""

SLACK_MESSAGE_DESCRIPTION = """
import type { INodeProperties } from 'n8n-workflow';

export const messageFields: INodeProperties[] = [
\t{
\t\tdisplayName: 'Channel',
\t\tname: 'channelId',
\t\ttype: 'string',
\t\trequired: true,
\t\tdefault: '',
\t\tdisplayOptions: { show: { resource: ['message'], operation: ['post'] } },
\t\tdescription: 'The channel to send the message to',
\t},
\t{
\t\tdisplayName: 'Text',
\t\tname: 'text',
\t\ttype: 'string',
\t\tdefault: '',
\t\tdisplayOptions: { show: { resource: ['message'], operation: ['post'] } },
\t},
\t{
\t\tdisplayName: 'Channel Name',
\t\tname: 'channelName',
\t\ttype: 'string',
\t\tdefault: '',
\t\tdisplayOptions: { show: { resource: ['channel'], operation: ['create'] } },
\t},
];
"""

MANUAL_TRIGGER_NODE = """
export class ManualTrigger implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'Manual Trigger',
\t\tname: 'manualTrigger',
\t\tgroup: ['trigger'],
\t\tversion: 1,
\t\tdescription: 'Runs the flow on clicking a button in n8n',
\t\tdefaults: { name: "When clicking 'Execute workflow'" },
\t\tinputs: [],
\t\toutputs: [NodeConnectionTypes.Main],
\t\tproperties: [],
\t};
}
"""

GOOGLE_SHEETS_NODE = """
export class GoogleSheets extends VersionedNodeType {
\tconstructor() {
\t\tconst baseDescription: INodeTypeBaseDescription = {
\t\t\tdisplayName: 'Google Sheets',
\t\t\tname: 'googleSheets',
\t\t\ticon: 'file:googleSheets.svg',
\t\t\tgroup: ['input', 'output'],
\t\t\tdefaultVersion: 4.5,
\t\t\tdescription: 'Read, update and write data to Google Sheets',
\t\t};
\t\tconst nodeVersions: IVersionedNodeType['nodeVersions'] = {
\t\t\t1: new GoogleSheetsV1(baseDescription),
\t\t\t4.5: new GoogleSheetsV2(baseDescription),
\t\t};
\t\tsuper(nodeVersions, baseDescription);
\t}
}
"""

GOOGLE_SHEETS_V2_NODE = """
export class GoogleSheetsV2 implements INodeType {
\tdescription: INodeTypeDescription;

\tconstructor(baseDescription: INodeTypeBaseDescription) {
\t\tthis.description = {
\t\t\t...baseDescription,
\t\t\tversion: [3, 4, 4.1, 4.5],
\t\t\tcredentials: [{ name: 'googleSheetsOAuth2Api', required: true }],
\t\t\tproperties: [
\t\t\t\t{
\t\t\t\t\tdisplayName: 'Resource',
\t\t\t\t\tname: 'resource',
\t\t\t\t\ttype: 'options',
\t\t\t\t\toptions: [{ name: 'Sheet Within Document', value: 'sheet' }],
\t\t\t\t\tdefault: 'sheet',
\t\t\t\t},
\t\t\t],
\t\t};
\t}
}
"""

HTTP_REQUEST_NODE = """
export class HttpRequest implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'HTTP Request',
\t\tname: 'httpRequest',
\t\tgroup: ['output'],
\t\tversion: 4.2,
\t\tdescription: 'Makes an HTTP request and returns the response data',
\t\tdefaults: { name: 'HTTP Request' },
\t\tinputs: ['main'],
\t\toutputs: ['main'],
\t\tproperties: [],
\t};
}
"""

EMBEDDINGS_NODE = """
export class EmbeddingsOpenAi implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'Embeddings OpenAI',
\t\tname: 'embeddingsOpenAi',
\t\tgroup: ['transform'],
\t\tversion: [1, 1.1, 1.2],
\t\tdescription: 'Use Embeddings OpenAI',
\t\tdefaults: { name: 'Embeddings OpenAI' },
\t\tinputs: [],
\t\toutputs: [NodeConnectionTypes.AiEmbedding],
\t\tcredentials: [{ name: 'openAiApi', required: true }],
\t\tproperties: [],
\t};
}
"""

BROKEN_NODE = "export const description = ((((( 'unterminated"


def _write(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")


def make_corpus(root: Path) -> Path:
    """Lay out a miniature n8n checkout under root and return root."""
    base = root / "packages" / "nodes-base" / "nodes"
    _write(base / "Slack" / "Slack.node.ts", SLACK_NODE)
    _write(base / "Slack" / "SlackTrigger.node.ts", SLACK_TRIGGER_NODE)
    _write(base / "Slack" / "MessageDescription.ts", SLACK_MESSAGE_DESCRIPTION)
    _write(
        base / "Slack" / "__schema__" / "v2.2.0" / "message" / "post.json",
        json.dumps({"type": "object", "properties": {"ts": {"type": "string"}}}),
    )
    _write(base / "Slack" / "__schema__" / "v2.1.0" / "message" / "delete.json", "{}")
    _write(base / "ManualTrigger" / "ManualTrigger.node.ts", MANUAL_TRIGGER_NODE)
    _write(base / "Google" / "Sheet" / "GoogleSheets.node.ts", GOOGLE_SHEETS_NODE)
    _write(base / "Google" / "Sheet" / "v2" / "GoogleSheetsV2.node.ts", GOOGLE_SHEETS_V2_NODE)
    _write(base / "HttpRequest" / "HttpRequest.node.ts", HTTP_REQUEST_NODE)
    _write(
        base / "HttpRequest" / "HttpRequest.node.json",
        json.dumps({"node": "n8n-nodes-base.httpRequest", "nodeVersion": "1.0", "alias": ["API", "Fetch"]}),
    )
    _write(base / "Broken" / "Broken.node.ts", BROKEN_NODE)
    _write(base / "test" / "Fake" / "Fake.node.ts", MANUAL_TRIGGER_NODE)

    langchain = root / "packages" / "nodes-langchain" / "nodes"
    _write(langchain / "embeddings" / "EmbeddingsOpenAI" / "EmbeddingsOpenAi.node.ts", EMBEDDINGS_NODE)
    return root


@pytest.fixture
def corpus(tmp_path: Path) -> Path:
    return make_corpus(tmp_path / "n8n")


@pytest.fixture
def index(corpus: Path):
    from n8n_dev_agent.knowledge import CapabilityIndex

    idx = CapabilityIndex(corpus)
    idx.rebuild(write=False)
    return idx


class ScriptedEngine(ReasoningEngine):
    """ReasoningEngine that replays a fixed list of responses.

    complete() and stream() both consume the script; summary calls (tools=None)
    read from summary_responses instead so forced-summary paths can be scripted
    separately. An Exception in a script raises instead of returning.
    """

    def __init__(
        self,
        responses: list[EngineResponse | Exception],
        summary_responses: list[EngineResponse | Exception] | None = None,
    ) -> None:
        self.responses = list(responses)
        self.summary_responses = list(summary_responses or [])
        self.calls: list[dict] = []

    @property
    def model_id(self) -> str:
        return "scripted/test"

    async def complete(self, messages, system=None, tools=None, temperature=0.3) -> EngineResponse:
        self.calls.append({"messages": list(messages), "system": system, "tools": tools})
        script = self.responses if tools else self.summary_responses
        if not script:
            return EngineResponse(content=None)
        item = script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def tool_call(name: str, arguments: dict | None = None, call_id: str = "call_1") -> EngineResponse:
    return EngineResponse(
        content=None,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments or {})],
        stop_reason="tool_use",
    )


def text(content: str) -> EngineResponse:
    return EngineResponse(content=content)
