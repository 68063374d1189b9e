"""LLM abstraction layer: model-agnostic reasoning engine.

The orchestration loop talks to a ReasoningEngine and never to a provider SDK
directly. Each engine supports two call styles:

  complete()  one request, one EngineResponse (text and/or tool calls)
  stream()    same request, but text deltas are pushed to a caller-supplied
              sink as they arrive; the assembled EngineResponse is returned
              at the end so tool calls can still be executed

ReasoningSettings reads provider/model/keys from the environment. Values kept
in the persisted settings store override the environment via
settings_from_store().
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

if TYPE_CHECKING:
    from n8n_dev_agent.settings_store import SettingsStore

logger = logging.getLogger("n8n_dev_agent.reasoning")

TokenSink = Callable[[str], None]


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


@dataclass
class Message:
    """A single message in a conversation.

    role values:
      "user"        human turn
      "assistant"   LLM turn (may include tool_calls)
      "tool_result" result of a tool call, sent back to the LLM
    """

    role: str  # "user" | "assistant" | "tool_result"
    content: str | None = None

    # Set on role="assistant" when the LLM requested tool calls:
    tool_calls: list[ToolCall] | None = None

    # Set on role="tool_result":
    tool_call_id: str | None = None
    tool_name: str | None = None


@dataclass
class ToolCall:
    """A tool call requested by the LLM."""

    id: str
    name: str
    arguments: dict[str, Any]


@dataclass
class ToolDef:
    """Definition of a tool the LLM may call.

    parameters follows JSON Schema format:
        {"type": "object", "properties": {...}, "required": [...]}
    """

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass
class EngineResponse:
    """Response from the reasoning engine.

    Either content is set (text reply) or tool_calls is non-empty (tool use),
    or both.
    """

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: str = "end_turn"  # "end_turn" | "tool_use" | "max_tokens"

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


# ---------------------------------------------------------------------------
# Abstract interface
# ---------------------------------------------------------------------------


class ReasoningEngine(ABC):
    """Abstract base class for any LLM provider."""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        """Send a conversation to the LLM and return its response.

        Args:
            messages:    Conversation history (user/assistant/tool_result turns).
            system:      Optional system prompt injected before the conversation.
            tools:       Tools the LLM may call. Pass None to disable tool use.
            temperature: Sampling temperature (0.0–1.0).
        """
        ...

    async def stream(
        self,
        messages: list[Message],
        on_text: TokenSink,
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        """Like complete(), but pushes text deltas to on_text as they arrive.

        The base implementation makes a single complete() call and emits the
        whole text as one delta. Providers with native streaming override it.
        """
        response = await self.complete(messages, system=system, tools=tools, temperature=temperature)
        if response.content:
            on_text(response.content)
        return response

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Provider/model string for logging, e.g. 'anthropic/claude-sonnet-4-6'."""
        ...


# ---------------------------------------------------------------------------
# Claude (Anthropic) implementation
# ---------------------------------------------------------------------------


class ClaudeEngine(ReasoningEngine):
    """Reasoning engine backed by Anthropic's Claude API.

    Requires: pip install 'n8n-dev-agent[claude]'
    """

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-6") -> None:
        try:
            import anthropic as _anthropic
            self._anthropic = _anthropic
        except ImportError:
            raise ImportError(
                "The 'anthropic' package is required for ClaudeEngine. "
                "Install it with: pip install 'n8n-dev-agent[claude]'"
            )
        if not api_key:
            raise ValueError(
                "ANTHROPIC_API_KEY is required for ClaudeEngine. "
                "Set it in your environment, .env file, or via POST /settings."
            )
        self._client = self._anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        logger.info("ClaudeEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"anthropic/{self._model}"

    def _request(
        self,
        messages: list[Message],
        system: str | None,
        tools: list[ToolDef] | None,
        temperature: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_anthropic_messages(messages),
            "max_tokens": 8192,
            "temperature": temperature,
        }
        if system:
            kwargs["system"] = system
        if tools:
            kwargs["tools"] = [
                {"name": t.name, "description": t.description, "input_schema": t.parameters}
                for t in tools
            ]
        return kwargs

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        kwargs = self._request(messages, system, tools, temperature)
        logger.debug("ClaudeEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.messages.create(**kwargs)
        return _from_anthropic_content(response.content, response.stop_reason)

    async def stream(
        self,
        messages: list[Message],
        on_text: TokenSink,
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        kwargs = self._request(messages, system, tools, temperature)
        logger.debug("ClaudeEngine.stream: %d messages, %d tools", len(messages), len(tools or []))
        async with self._client.messages.stream(**kwargs) as stream:
            async for text in stream.text_stream:
                if text:
                    on_text(text)
            final = await stream.get_final_message()
        return _from_anthropic_content(final.content, final.stop_reason)


def _from_anthropic_content(blocks: list[Any], stop_reason: str | None) -> EngineResponse:
    tool_calls: list[ToolCall] = []
    texts: list[str] = []
    for block in blocks:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=block.input))
    return EngineResponse(
        content="".join(texts) or None,
        tool_calls=tool_calls,
        stop_reason=stop_reason or "end_turn",
    )


def _to_anthropic_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert internal Message list to Anthropic API format.

    Consecutive tool results are batched into one user message; assistant
    tool calls become "tool_use" content blocks.
    """
    result: list[dict[str, Any]] = []
    i = 0

    while i < len(messages):
        m = messages[i]

        if m.role == "tool_result":
            blocks: list[dict[str, Any]] = []
            while i < len(messages) and messages[i].role == "tool_result":
                tr = messages[i]
                blocks.append({
                    "type": "tool_result",
                    "tool_use_id": tr.tool_call_id,
                    "content": tr.content or "",
                })
                i += 1
            result.append({"role": "user", "content": blocks})

        elif m.role == "assistant" and m.tool_calls:
            content: list[dict[str, Any]] = []
            if m.content:
                content.append({"type": "text", "text": m.content})
            for tc in m.tool_calls:
                content.append({"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments})
            result.append({"role": "assistant", "content": content})
            i += 1

        else:
            result.append({"role": m.role, "content": m.content or ""})
            i += 1

    return result


# ---------------------------------------------------------------------------
# OpenAI implementation
# ---------------------------------------------------------------------------


class OpenAIEngine(ReasoningEngine):
    """Reasoning engine backed by the OpenAI chat completions API.

    Requires: pip install 'n8n-dev-agent[openai]'
    """

    def __init__(self, api_key: str, model: str = "gpt-4o") -> None:
        try:
            import openai as _openai
            self._openai = _openai
        except ImportError:
            raise ImportError(
                "The 'openai' package is required for OpenAIEngine. "
                "Install it with: pip install 'n8n-dev-agent[openai]'"
            )
        if not api_key:
            raise ValueError(
                "OPENAI_API_KEY is required for OpenAIEngine. "
                "Set it in your environment, .env file, or via POST /settings."
            )
        self._client = self._openai.AsyncOpenAI(api_key=api_key)
        self._model = model
        logger.info("OpenAIEngine initialized: %s", model)

    @property
    def model_id(self) -> str:
        return f"openai/{self._model}"

    def _request(
        self,
        messages: list[Message],
        system: str | None,
        tools: list[ToolDef] | None,
        temperature: float,
    ) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self._model,
            "messages": _to_openai_messages(messages, system),
            "temperature": temperature,
        }
        if tools:
            kwargs["tools"] = [
                {
                    "type": "function",
                    "function": {"name": t.name, "description": t.description, "parameters": t.parameters},
                }
                for t in tools
            ]
            kwargs["tool_choice"] = "auto"
        return kwargs

    async def complete(
        self,
        messages: list[Message],
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        kwargs = self._request(messages, system, tools, temperature)
        logger.debug("OpenAIEngine.complete: %d messages, %d tools", len(messages), len(tools or []))
        response = await self._client.chat.completions.create(**kwargs)
        msg = response.choices[0].message

        tool_calls = [
            ToolCall(id=tc.id, name=tc.function.name, arguments=_parse_arguments(tc.function.arguments))
            for tc in (msg.tool_calls or [])
        ]
        return EngineResponse(
            content=msg.content,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
        )

    async def stream(
        self,
        messages: list[Message],
        on_text: TokenSink,
        system: str | None = None,
        tools: list[ToolDef] | None = None,
        temperature: float = 0.3,
    ) -> EngineResponse:
        kwargs = self._request(messages, system, tools, temperature)
        kwargs["stream"] = True
        logger.debug("OpenAIEngine.stream: %d messages, %d tools", len(messages), len(tools or []))

        texts: list[str] = []
        # index -> {"id", "name", "arguments"} accumulated across deltas
        partial_calls: dict[int, dict[str, str]] = {}

        stream = await self._client.chat.completions.create(**kwargs)
        async for chunk in stream:
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                texts.append(delta.content)
                on_text(delta.content)
            for tc in delta.tool_calls or []:
                slot = partial_calls.setdefault(tc.index, {"id": "", "name": "", "arguments": ""})
                if tc.id:
                    slot["id"] = tc.id
                if tc.function is not None:
                    if tc.function.name:
                        slot["name"] += tc.function.name
                    if tc.function.arguments:
                        slot["arguments"] += tc.function.arguments

        tool_calls = [
            ToolCall(id=slot["id"], name=slot["name"], arguments=_parse_arguments(slot["arguments"]))
            for _, slot in sorted(partial_calls.items())
        ]
        return EngineResponse(
            content="".join(texts) or None,
            tool_calls=tool_calls,
            stop_reason="tool_use" if tool_calls else "end_turn",
        )


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON: %.200s", raw)
        return {}
    return parsed if isinstance(parsed, dict) else {}


def _to_openai_messages(messages: list[Message], system: str | None) -> list[dict[str, Any]]:
    """Convert internal Message list to OpenAI API format."""
    result: list[dict[str, Any]] = []

    if system:
        result.append({"role": "system", "content": system})

    for m in messages:
        if m.role == "tool_result":
            result.append({"role": "tool", "tool_call_id": m.tool_call_id, "content": m.content or ""})
        elif m.role == "assistant" and m.tool_calls:
            result.append({
                "role": "assistant",
                "content": m.content,
                "tool_calls": [
                    {
                        "id": tc.id,
                        "type": "function",
                        "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                    }
                    for tc in m.tool_calls
                ],
            })
        else:
            result.append({"role": m.role, "content": m.content or ""})

    return result


# ---------------------------------------------------------------------------
# Reasoning engine settings
# ---------------------------------------------------------------------------


class ReasoningSettings(BaseSettings):
    """Settings for the swappable reasoning engine.

    Environment variables:
      REASONING_ENGINE      "claude" | "openai" (default: "claude")
      REASONING_MODEL       model name override; unset = provider default
      ANTHROPIC_API_KEY     required when provider is "claude"
      OPENAI_API_KEY        required when provider is "openai"
      REASONING_TEMPERATURE sampling temperature 0.0–1.0 (default: 0.3)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    provider: str = Field(default="claude", validation_alias="REASONING_ENGINE")
    model: str | None = Field(default=None, validation_alias="REASONING_MODEL")
    anthropic_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="ANTHROPIC_API_KEY",
        repr=False,
    )
    openai_api_key: SecretStr = Field(
        default=SecretStr(""),
        validation_alias="OPENAI_API_KEY",
        repr=False,
    )
    temperature: float = Field(default=0.3, validation_alias="REASONING_TEMPERATURE")

    @field_validator("provider", mode="before")
    @classmethod
    def lowercase_provider(cls, v: object) -> str:
        return str(v).lower()

    @field_validator("model", mode="before")
    @classmethod
    def empty_str_to_none(cls, v: object) -> str | None:
        if not v:
            return None
        return str(v)

    @field_validator("temperature")
    @classmethod
    def clamp_temperature(cls, v: float) -> float:
        return max(0.0, min(1.0, v))

    @classmethod
    def from_env(cls) -> ReasoningSettings:
        return cls()


# Settings-store keys that override ReasoningSettings fields.
_STORE_OVERRIDES: dict[str, str] = {
    "REASONING_ENGINE": "provider",
    "REASONING_MODEL": "model",
    "ANTHROPIC_API_KEY": "anthropic_api_key",
    "OPENAI_API_KEY": "openai_api_key",
}


async def settings_from_store(
    store: SettingsStore | None,
    base: ReasoningSettings | None = None,
) -> ReasoningSettings:
    """Return ReasoningSettings with persisted store values taking precedence over env."""
    base = base or ReasoningSettings.from_env()
    if store is None:
        return base

    overrides: dict[str, Any] = {}
    for key, field_name in _STORE_OVERRIDES.items():
        value = await store.get(key)
        if not value:
            continue
        if field_name.endswith("_api_key"):
            overrides[field_name] = SecretStr(value)
        elif field_name == "provider":
            overrides[field_name] = value.lower()
        else:
            overrides[field_name] = value
    if not overrides:
        return base
    logger.debug("Reasoning settings overridden from store: %s", sorted(overrides))
    return base.model_copy(update=overrides)


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def create_engine(settings: ReasoningSettings) -> ReasoningEngine:
    """Instantiate the configured reasoning engine from ReasoningSettings."""
    match settings.provider:
        case "claude" | "anthropic":
            return ClaudeEngine(
                api_key=settings.anthropic_api_key.get_secret_value(),
                model=settings.model or "claude-sonnet-4-6",
            )
        case "openai" | "gpt":
            return OpenAIEngine(
                api_key=settings.openai_api_key.get_secret_value(),
                model=settings.model or "gpt-4o",
            )
        case _:
            raise ValueError(
                f"Unknown reasoning engine provider: {settings.provider!r}. "
                f"Valid options: 'claude', 'openai'"
            )
