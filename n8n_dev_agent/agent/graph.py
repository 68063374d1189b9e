"""Agent loop: a two-node LangGraph that alternates model turns and tool calls.

Graph topology:

    START ──► agent ──(tool calls?)──► tools ──► agent ── … ──► END

  agent  one model round trip with the full tool catalogue. Text deltas are
         pushed through the LangGraph custom stream writer as
         {"type": "token", "content": …} so AgentRunner can forward them.
  tools  executes the requested tool calls sequentially, in submission
         order, and appends one tool_result message per call.

recursion_limit (AGENT_RECURSION_LIMIT, default 50) bounds the number of
super-steps. Hitting it ends the run with whatever text was produced.

AgentRunner wraps the compiled graph and guarantees a non-empty answer:

  1. text produced by the model, else
  2. a forced summary (tools disabled) built from the short-form tool log
     when at least one tool ran, else
  3. a static fallback string.

Status events (thinking, responding, complete, error) are published on the
runner's StatusBroadcaster; tool_call / tool_result come from execute_tool().
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from collections.abc import Callable
from pathlib import Path
from typing import Any

from langchain_core.runnables import RunnableConfig
from langgraph.config import get_stream_writer
from langgraph.errors import GraphRecursionError
from langgraph.graph import END, START, StateGraph
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from n8n_dev_agent.agent.connections import NodeClassifier, load_rules
from n8n_dev_agent.agent.prompts import SUMMARY_SYSTEM_PROMPT, SYSTEM_PROMPT, forced_summary_prompt
from n8n_dev_agent.agent.session import MAX_VALIDATION_FAILURES, AgentSession, ToolContext
from n8n_dev_agent.agent.state import AgentState
from n8n_dev_agent.agent.status import DEFAULT_QUEUE_SIZE, StatusBroadcaster, StatusType
from n8n_dev_agent.agent.tools import TOOL_DEFS, execute_tool
from n8n_dev_agent.client import N8nClient, Settings
from n8n_dev_agent.knowledge import CapabilityIndex
from n8n_dev_agent.knowledge.index import DEFAULT_CORPUS_ROOT
from n8n_dev_agent.reasoning import (
    Message,
    ReasoningEngine,
    ReasoningSettings,
    create_engine,
    settings_from_store,
)
from n8n_dev_agent.settings_store import SettingsStore

logger = logging.getLogger("n8n_dev_agent.agent.graph")

DEFAULT_MAX_SESSIONS = 256

FALLBACK_EMPTY_SUMMARY = (
    "I completed researching your request but encountered an issue generating a summary. "
    "The tool calls were successful - please check the workflow list or try asking again."
)
FALLBACK_SUMMARY_FAILED = (
    "I completed processing your request but had trouble generating a summary. "
    "Please check if any workflows were created or try asking again."
)
FALLBACK_NO_RESPONSE = (
    "I apologize, but I wasn't able to generate a response. Could you please try asking again?"
)


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class AgentSettings(BaseSettings):
    """Settings for the agent loop.

    Environment variables:
      AGENT_RECURSION_LIMIT          max graph super-steps per run (default: 50)
      AGENT_TEMPERATURE              model temperature for the loop (default: 0.3)
      AGENT_MAX_VALIDATION_FAILURES  rejected drafts before giving up (default: 3)
      AGENT_STATUS_QUEUE_SIZE        per-subscriber status buffer (default: 100)
      AGENT_MAX_SESSIONS             keyed conversations kept in memory (default: 256)
      N8N_NODES_CACHE                node source corpus root
      N8N_NODE_INDEX                 snapshot path override
      N8N_CONNECTION_RULES           JSON file replacing the connection rule table
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    recursion_limit: int = Field(default=50, validation_alias="AGENT_RECURSION_LIMIT")
    temperature: float = Field(default=0.3, validation_alias="AGENT_TEMPERATURE")
    max_validation_failures: int = Field(
        default=MAX_VALIDATION_FAILURES, validation_alias="AGENT_MAX_VALIDATION_FAILURES"
    )
    status_queue_size: int = Field(default=DEFAULT_QUEUE_SIZE, validation_alias="AGENT_STATUS_QUEUE_SIZE")
    max_sessions: int = Field(default=DEFAULT_MAX_SESSIONS, ge=1, validation_alias="AGENT_MAX_SESSIONS")
    corpus_root: Path = Field(default=DEFAULT_CORPUS_ROOT, validation_alias="N8N_NODES_CACHE")
    snapshot_path: Path | None = Field(default=None, validation_alias="N8N_NODE_INDEX")
    rules_file: Path | None = Field(default=None, validation_alias="N8N_CONNECTION_RULES")

    @field_validator("snapshot_path", "rules_file", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> object:
        return v or None

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))


# ---------------------------------------------------------------------------
# Graph nodes
# ---------------------------------------------------------------------------


def _make_agent_node(engine: ReasoningEngine, temperature: float):
    async def agent_node(state: AgentState) -> dict:
        writer = get_stream_writer()

        def on_text(delta: str) -> None:
            if delta:
                writer({"type": "token", "content": delta})

        response = await engine.stream(
            state["messages"],
            on_text=on_text,
            system=SYSTEM_PROMPT,
            tools=TOOL_DEFS,
            temperature=temperature,
        )
        logger.debug(
            "[agent] stop=%s tool_calls=%s",
            response.stop_reason,
            [c.name for c in response.tool_calls],
        )
        message = Message(
            role="assistant",
            content=response.content,
            tool_calls=response.tool_calls or None,
        )
        update: dict[str, Any] = {"messages": [message], "model_calls": 1}
        if not response.has_tool_calls:
            update["final_text"] = response.content or ""
        return update

    return agent_node


def _make_tools_node():
    async def tools_node(state: AgentState, config: RunnableConfig) -> dict:
        ctx: ToolContext = config["configurable"]["tool_context"]
        last = state["messages"][-1]
        results: list[Message] = []
        for call in last.tool_calls or []:
            result = await execute_tool(ctx, call.name, call.arguments)
            results.append(
                Message(
                    role="tool_result",
                    content=result.summary,
                    tool_call_id=call.id,
                    tool_name=call.name,
                )
            )
        return {"messages": results}

    return tools_node


def _route_after_agent(state: AgentState) -> str:
    messages = state.get("messages") or []
    if messages and messages[-1].role == "assistant" and messages[-1].tool_calls:
        return "tools"
    return END


def build_graph(engine: ReasoningEngine, temperature: float = 0.3):
    """Construct and compile the agent ⇄ tools graph."""
    builder = StateGraph(AgentState)

    builder.add_node("agent", _make_agent_node(engine, temperature))
    builder.add_node("tools", _make_tools_node())

    builder.add_edge(START, "agent")
    builder.add_conditional_edges(
        "agent",
        _route_after_agent,
        {"tools": "tools", END: END},
    )
    builder.add_edge("tools", "agent")

    return builder.compile()


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


def _to_messages(history: list[dict[str, Any]] | list[Message] | None) -> list[Message]:
    messages: list[Message] = []
    for item in history or []:
        if isinstance(item, Message):
            messages.append(item)
            continue
        role = item.get("role", "user")
        content = item.get("content") or ""
        if role not in ("user", "assistant") or not content:
            continue
        messages.append(Message(role=role, content=content))
    return messages


class AgentRunner:
    """Runs one user turn through the graph and always returns non-empty text.

    Sessions are keyed by an optional caller-supplied id so the validation
    failure counter survives across turns of one conversation. Without an id
    every call gets a fresh session. At most settings.max_sessions keyed
    sessions are kept; the least recently used one is dropped first. Turns on
    the same session run one at a time.
    """

    def __init__(
        self,
        engine: ReasoningEngine,
        index: CapabilityIndex,
        client: N8nClient,
        settings: AgentSettings | None = None,
        status: StatusBroadcaster | None = None,
        classifier: NodeClassifier | None = None,
    ) -> None:
        self.engine = engine
        self.index = index
        self.client = client
        self.settings = settings or AgentSettings()
        self.status = status or StatusBroadcaster(self.settings.status_queue_size)
        self.classifier = classifier or NodeClassifier(load_rules(self.settings.rules_file))
        self.graph = build_graph(engine, self.settings.temperature)
        self._sessions: OrderedDict[str, AgentSession] = OrderedDict()

    def replace_engine(self, engine: ReasoningEngine) -> None:
        """Swap the reasoning engine (after a settings change) and recompile the graph."""
        self.engine = engine
        self.graph = build_graph(engine, self.settings.temperature)
        logger.info("Reasoning engine replaced: %s", engine.model_id)

    def session(self, session_id: str | None = None) -> AgentSession:
        if session_id is None:
            return AgentSession()
        session = self._sessions.get(session_id)
        if session is not None:
            self._sessions.move_to_end(session_id)
            return session
        session = self._sessions[session_id] = AgentSession()
        while len(self._sessions) > self.settings.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Session %r evicted (limit %d)", evicted, self.settings.max_sessions)
        return session

    def reset_session(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    async def run(
        self,
        message: str,
        history: list[dict[str, Any]] | None = None,
        session: AgentSession | None = None,
    ) -> str:
        """Run one turn and return the final answer."""
        session = session or AgentSession()
        async with session.lock:
            final_state, streamed, exhausted = await self._drive(message, history, session, on_token=None)
            text = final_state.get("final_text") or ""
            if exhausted and not text.strip():
                text = streamed
            return await self._finish(message, session, text, on_token=None)

    async def run_streaming(
        self,
        message: str,
        history: list[dict[str, Any]] | None = None,
        on_token: Callable[[str], None] | None = None,
        session: AgentSession | None = None,
    ) -> str:
        """Run one turn, forwarding every text delta to on_token; returns the full text."""
        session = session or AgentSession()
        async with session.lock:
            _, streamed, _ = await self._drive(message, history, session, on_token=on_token)
            return await self._finish(message, session, streamed, on_token=on_token)

    async def _drive(
        self,
        message: str,
        history: list[dict[str, Any]] | None,
        session: AgentSession,
        on_token: Callable[[str], None] | None,
    ) -> tuple[dict[str, Any], str, bool]:
        session.start_turn()
        prior = _to_messages(history) if history is not None else list(session.messages)
        initial: AgentState = {
            "messages": [*prior, Message(role="user", content=message)],
            "model_calls": 0,
            "final_text": "",
        }
        ctx = ToolContext(
            index=self.index,
            client=self.client,
            session=session,
            status=self.status,
            classifier=self.classifier,
            max_validation_failures=self.settings.max_validation_failures,
        )
        config = {
            "recursion_limit": self.settings.recursion_limit,
            "configurable": {"tool_context": ctx},
        }

        logger.info("Agent run started (%s): %r", self.engine.model_id, message[:80])
        self.status.emit(StatusType.THINKING, "Analyzing your request...")

        final_state: dict[str, Any] = dict(initial)
        chunks: list[str] = []
        responding = False
        exhausted = False
        try:
            async for mode, chunk in self.graph.astream(
                initial,
                config=config,
                stream_mode=["custom", "values"],
            ):
                if mode == "values":
                    final_state = chunk
                    continue
                if not isinstance(chunk, dict) or chunk.get("type") != "token":
                    continue
                delta = chunk.get("content") or ""
                if not delta:
                    continue
                if not responding and session.tool_call_count > 0:
                    responding = True
                    self.status.emit(StatusType.RESPONDING, "Generating response...")
                chunks.append(delta)
                if on_token is not None:
                    on_token(delta)
        except GraphRecursionError:
            exhausted = True
            logger.warning(
                "Recursion limit %d reached after %d tool calls; ending run with partial output",
                self.settings.recursion_limit,
                session.tool_call_count,
            )
        except Exception as e:
            logger.exception("Agent run failed")
            self.status.emit(StatusType.ERROR, f"Error: {e}")
            raise

        return final_state, "".join(chunks), exhausted

    async def _finish(
        self,
        message: str,
        session: AgentSession,
        text: str,
        on_token: Callable[[str], None] | None,
    ) -> str:
        if not text.strip():
            if session.tool_call_count > 0:
                logger.info("No final text after %d tool calls; forcing summary", session.tool_call_count)
                text = await self._forced_summary(message, session)
            else:
                logger.warning("Model produced neither text nor tool calls")
                text = FALLBACK_NO_RESPONSE
            if on_token is not None:
                on_token(text)

        session.messages.append(Message(role="user", content=message))
        session.messages.append(Message(role="assistant", content=text))
        self.status.emit(StatusType.COMPLETE, "Response ready")
        logger.info("Agent run complete: %d tool calls, %d chars", session.tool_call_count, len(text))
        return text

    async def _forced_summary(self, message: str, session: AgentSession) -> str:
        self.status.emit(StatusType.RESPONDING, "Generating summary...")
        prompt = forced_summary_prompt(
            message,
            session.tool_call_count,
            [outcome.result for outcome in session.tool_log],
        )
        try:
            response = await self.engine.complete(
                [Message(role="user", content=prompt)],
                system=SUMMARY_SYSTEM_PROMPT,
                tools=None,
                temperature=self.settings.temperature,
            )
        except Exception:
            logger.exception("Forced summary request failed")
            return FALLBACK_SUMMARY_FAILED
        text = (response.content or "").strip()
        return text or FALLBACK_EMPTY_SUMMARY


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def trigger_types_from_index(index: CapabilityIndex) -> set[str]:
    """Type ids the index files under the "trigger" category.

    NodeTypeEntry.is_trigger is not used: it is also set for regular nodes
    that merely implement a webhook method (Wait, Respond to Webhook), which
    sit mid-chain or at its end.
    """
    return {summary.type for summary in index.get_by_category("trigger")}


async def create_agent(
    settings: AgentSettings | None = None,
    reasoning_settings: ReasoningSettings | None = None,
    store: SettingsStore | None = None,
    engine: ReasoningEngine | None = None,
) -> tuple[AgentRunner, N8nClient]:
    """Wire index, runtime client, engine and classifier into an AgentRunner.

    Connection and engine settings resolve with precedence settings store >
    environment. Returns (runner, client) so the caller owns client shutdown.
    """
    settings = settings or AgentSettings()

    client = N8nClient(await Settings.resolve(store))
    if not client.settings.is_configured:
        logger.warning("n8n connection not configured; workflow tools will fail until POST /settings")

    if engine is None:
        engine = create_engine(await settings_from_store(store, reasoning_settings))

    index = CapabilityIndex(settings.corpus_root, settings.snapshot_path)
    classifier = NodeClassifier(
        load_rules(settings.rules_file),
        trigger_types=trigger_types_from_index(index),
    )
    runner = AgentRunner(engine, index, client, settings=settings, classifier=classifier)
    logger.info(
        "Agent ready: engine=%s nodes=%d recursion_limit=%d",
        engine.model_id, len(index.nodes), settings.recursion_limit,
    )
    return runner, client
