"""Agent loop: tool round trips, streaming, forced summary and fallbacks."""

from __future__ import annotations

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from conftest import ScriptedEngine, make_corpus, text, tool_call

from n8n_dev_agent.agent.connections import NodeClassifier
from n8n_dev_agent.agent.graph import (
    FALLBACK_EMPTY_SUMMARY,
    FALLBACK_NO_RESPONSE,
    FALLBACK_SUMMARY_FAILED,
    AgentRunner,
    AgentSettings,
    trigger_types_from_index,
)
from n8n_dev_agent.agent.prompts import SUMMARY_SYSTEM_PROMPT
from n8n_dev_agent.agent.status import StatusType
from n8n_dev_agent.agent.validator import WorkflowDraft, validate_draft
from n8n_dev_agent.client.config import Settings
from n8n_dev_agent.knowledge import CapabilityIndex

SEARCH = tool_call("search_nodes", {"query": "slack"})


def _broken_create() -> dict:
    return {
        "name": "Notify",
        "nodes": [
            {"name": "Trigger", "type": "n8n-nodes-base.manualTrigger", "parameters": {}},
            {"name": "Slack", "type": "n8n-nodes-base.slack", "parameters": {}},
        ],
        "connections": {},
    }


@pytest.fixture
def client():
    mock = AsyncMock()
    mock.settings = Settings(api_key="test-key", endpoint="http://n8n.local:5678")
    return mock


def _runner(engine, index, client, **settings) -> AgentRunner:
    return AgentRunner(engine, index, client, settings=AgentSettings(**settings))


def _drain(queue) -> list:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


class TestRun:
    @pytest.mark.asyncio
    async def test_plain_answer(self, index, client):
        engine = ScriptedEngine([text("Hello! What should we automate?")])
        runner = _runner(engine, index, client)
        assert await runner.run("hi") == "Hello! What should we automate?"
        assert len(engine.calls) == 1
        assert engine.calls[0]["tools"]

    @pytest.mark.asyncio
    async def test_tool_round_trip(self, index, client):
        engine = ScriptedEngine([SEARCH, text("Slack is n8n-nodes-base.slack")])
        runner = _runner(engine, index, client)

        answer = await runner.run("which node posts to slack?")

        assert answer == "Slack is n8n-nodes-base.slack"
        second_turn = engine.calls[1]["messages"]
        assert [m.role for m in second_turn] == ["user", "assistant", "tool_result"]
        assert second_turn[-1].tool_call_id == "call_1"
        assert json.loads(second_turn[-1].content)[0]["type"] == "n8n-nodes-base.slack"

    @pytest.mark.asyncio
    async def test_tool_calls_run_in_order(self, index, client):
        from n8n_dev_agent.reasoning import EngineResponse, ToolCall

        both = EngineResponse(
            content=None,
            tool_calls=[
                ToolCall(id="a", name="search_nodes", arguments={"query": "slack"}),
                ToolCall(id="b", name="get_node_details", arguments={"nodeType": "slack"}),
            ],
        )
        engine = ScriptedEngine([both, text("done")])
        await _runner(engine, index, client).run("go")
        results = engine.calls[1]["messages"][-2:]
        assert [(m.tool_call_id, m.tool_name) for m in results] == [("a", "search_nodes"), ("b", "get_node_details")]

    @pytest.mark.asyncio
    async def test_forced_summary_after_silent_tools(self, index, client):
        engine = ScriptedEngine([SEARCH], summary_responses=[text("I looked up the Slack node for you.")])
        runner = _runner(engine, index, client)

        answer = await runner.run("find slack")

        assert answer == "I looked up the Slack node for you."
        summary_call = engine.calls[-1]
        assert summary_call["tools"] is None
        assert summary_call["system"] == SUMMARY_SYSTEM_PROMPT
        prompt = summary_call["messages"][0].content
        assert 'The user asked: "find slack"' in prompt
        assert "You made 1 tool calls" in prompt
        assert "search_nodes completed" in prompt

    @pytest.mark.asyncio
    async def test_empty_summary_falls_back(self, index, client):
        engine = ScriptedEngine([SEARCH], summary_responses=[text("   ")])
        assert await _runner(engine, index, client).run("find slack") == FALLBACK_EMPTY_SUMMARY

    @pytest.mark.asyncio
    async def test_failed_summary_falls_back(self, index, client):
        engine = ScriptedEngine([SEARCH], summary_responses=[RuntimeError("rate limited")])
        assert await _runner(engine, index, client).run("find slack") == FALLBACK_SUMMARY_FAILED

    @pytest.mark.asyncio
    async def test_no_tools_no_text(self, index, client):
        engine = ScriptedEngine([text("")])
        assert await _runner(engine, index, client).run("hi") == FALLBACK_NO_RESPONSE
        assert len(engine.calls) == 1

    @pytest.mark.asyncio
    async def test_recursion_limit_still_answers(self, index, client):
        engine = ScriptedEngine([SEARCH] * 20, summary_responses=[text("Partial results so far.")])
        runner = _runner(engine, index, client, recursion_limit=4)
        answer = await runner.run("loop forever")
        assert answer == "Partial results so far."
        assert len(engine.calls) < 20

    @pytest.mark.asyncio
    async def test_model_error_reported_and_raised(self, index, client):
        engine = ScriptedEngine([RuntimeError("model down")])
        runner = _runner(engine, index, client)
        queue = runner.status.subscribe()
        with pytest.raises(RuntimeError, match="model down"):
            await runner.run("hi")
        events = _drain(queue)
        assert events[-1].type is StatusType.ERROR
        assert events[-1].message == "Error: model down"


class TestStreaming:
    @pytest.mark.asyncio
    async def test_tokens_forwarded(self, index, client):
        engine = ScriptedEngine([SEARCH, text("Use the Slack node.")])
        tokens: list[str] = []
        answer = await _runner(engine, index, client).run_streaming("slack?", on_token=tokens.append)
        assert tokens == ["Use the Slack node."]
        assert answer == "Use the Slack node."

    @pytest.mark.asyncio
    async def test_text_before_tools_is_kept(self, index, client):
        from n8n_dev_agent.reasoning import EngineResponse, ToolCall

        preface = EngineResponse(
            content="Let me check. ",
            tool_calls=[ToolCall(id="a", name="search_nodes", arguments={"query": "slack"})],
        )
        engine = ScriptedEngine([preface, text("Found it.")])
        tokens: list[str] = []
        answer = await _runner(engine, index, client).run_streaming("slack?", on_token=tokens.append)
        assert answer == "Let me check. Found it."
        assert tokens == ["Let me check. ", "Found it."]

    @pytest.mark.asyncio
    async def test_fallback_is_streamed(self, index, client):
        engine = ScriptedEngine([SEARCH], summary_responses=[text("Summary.")])
        tokens: list[str] = []
        answer = await _runner(engine, index, client).run_streaming("slack?", on_token=tokens.append)
        assert answer == "Summary."
        assert tokens == ["Summary."]

    @pytest.mark.asyncio
    async def test_status_sequence(self, index, client):
        engine = ScriptedEngine([SEARCH, text("Done.")])
        runner = _runner(engine, index, client)
        queue = runner.status.subscribe()
        await runner.run_streaming("slack?")
        assert [e.type for e in _drain(queue)] == [
            StatusType.THINKING,
            StatusType.TOOL_CALL,
            StatusType.TOOL_RESULT,
            StatusType.RESPONDING,
            StatusType.COMPLETE,
        ]


class TestSessions:
    @pytest.mark.asyncio
    async def test_history_carried_between_turns(self, index, client):
        engine = ScriptedEngine([text("First."), text("Second.")])
        runner = _runner(engine, index, client)
        session = runner.session("abc")
        await runner.run("one", session=session)
        await runner.run("two", session=runner.session("abc"))
        assert [m.content for m in engine.calls[1]["messages"]] == ["one", "First.", "two"]

    @pytest.mark.asyncio
    async def test_explicit_history_wins(self, index, client):
        engine = ScriptedEngine([text("ok")])
        runner = _runner(engine, index, client)
        history = [
            {"role": "user", "content": "earlier"},
            {"role": "system", "content": "ignored"},
            {"role": "assistant", "content": ""},
            {"role": "assistant", "content": "reply"},
        ]
        await runner.run("now", history=history)
        assert [m.content for m in engine.calls[0]["messages"]] == ["earlier", "reply", "now"]

    def test_sessions_keyed_by_id(self, index, client):
        runner = _runner(ScriptedEngine([]), index, client)
        assert runner.session("a") is runner.session("a")
        assert runner.session("a") is not runner.session("b")
        assert runner.session() is not runner.session()
        first = runner.session("a")
        runner.reset_session("a")
        assert runner.session("a") is not first

    @pytest.mark.asyncio
    async def test_validation_failures_span_turns(self, index, client):
        create = tool_call("create_workflow", _broken_create())
        engine = ScriptedEngine([
            create, text("Retrying."),
            create, text("Retrying again."),
            create, text("Giving up."),
        ])
        runner = _runner(engine, index, client)
        session = runner.session("s")
        await runner.run("build it", session=session)
        await runner.run("try again", session=session)
        assert session.validation_failures == 2
        await runner.run("once more", session=session)
        give_up = engine.calls[-1]["messages"][-1]
        assert give_up.content.startswith("FATAL ERROR: Unable to create a valid workflow after 3 attempts.")
        assert session.validation_failures == 0
        client.create_workflow.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_replace_engine(self, index, client):
        runner = _runner(ScriptedEngine([text("old")]), index, client)
        runner.replace_engine(ScriptedEngine([text("new")]))
        assert await runner.run("hi") == "new"

    def test_least_recently_used_session_evicted(self, index, client):
        runner = _runner(ScriptedEngine([]), index, client, max_sessions=2)
        a = runner.session("a")
        b = runner.session("b")
        assert runner.session("a") is a
        runner.session("c")
        assert runner.session("a") is a
        assert runner.session("b") is not b

    def test_session_count_bounded(self, index, client):
        runner = _runner(ScriptedEngine([]), index, client, max_sessions=3)
        for i in range(50):
            runner.session(f"s{i}")
        assert len(runner._sessions) == 3
        assert list(runner._sessions) == ["s47", "s48", "s49"]

    @pytest.mark.asyncio
    async def test_concurrent_turns_on_one_session_run_in_turn(self, index, client):
        engine = ScriptedEngine([text("First."), text("Second.")])
        runner = _runner(engine, index, client)
        session = runner.session("shared")
        await asyncio.gather(
            runner.run("one", session=session),
            runner.run_streaming("two", session=session),
        )
        assert [m.content for m in engine.calls[1]["messages"]] == ["one", "First.", "two"]
        assert [m.content for m in session.messages] == ["one", "First.", "two", "Second."]


WAIT_NODE = """
export class Wait implements INodeType {
\tdescription: INodeTypeDescription = {
\t\tdisplayName: 'Wait',
\t\tname: 'wait',
\t\tgroup: ['organization'],
\t\tversion: [1, 1.1],
\t\tdescription: 'Wait before continue with execution',
\t\tdefaults: { name: 'Wait' },
\t\tinputs: [NodeConnectionTypes.Main],
\t\toutputs: [NodeConnectionTypes.Main],
\t\twebhooks: [{ name: 'default', httpMethod: 'GET', path: '' }],
\t\tproperties: [],
\t};

\tasync webhook(this: IWebhookFunctions): Promise<IWebhookResponseData> {
\t\treturn { workflowData: [] };
\t}
}
"""


class TestTriggerTypes:
    @pytest.fixture
    def wait_index(self, tmp_path):
        root = make_corpus(tmp_path / "n8n")
        wait = root / "packages" / "nodes-base" / "nodes" / "Wait" / "Wait.node.ts"
        wait.parent.mkdir(parents=True)
        wait.write_text(WAIT_NODE, encoding="utf-8")
        idx = CapabilityIndex(root)
        idx.rebuild(write=False)
        return idx

    def test_only_trigger_category(self, wait_index):
        assert wait_index.lookup("n8n-nodes-base.wait").is_trigger
        types = trigger_types_from_index(wait_index)
        assert "n8n-nodes-base.wait" not in types
        assert {"n8n-nodes-base.slackTrigger", "n8n-nodes-base.manualTrigger"} <= types

    def test_webhook_capable_node_can_end_a_chain(self, wait_index):
        classifier = NodeClassifier(trigger_types=trigger_types_from_index(wait_index))
        draft = WorkflowDraft.from_payload({
            "name": "Pause",
            "nodes": [
                {"name": "Schedule", "type": "n8n-nodes-base.scheduleTrigger", "parameters": {}},
                {"name": "Wait", "type": "n8n-nodes-base.wait", "parameters": {}},
            ],
            "connections": {"Schedule": {"main": [[{"node": "Wait", "type": "main", "index": 0}]]}},
        })
        assert validate_draft(draft, classifier) == []
