"""State carried through the agent graph.

Each node receives the full state and returns a partial dict. messages uses
append semantics through its reducer; every other field is last-writer-wins
except model_calls, which accumulates.
"""

from __future__ import annotations

from typing import Annotated, TypedDict

from n8n_dev_agent.reasoning import Message


def _append_messages(existing: list[Message], incoming: list[Message] | None) -> list[Message]:
    """Append new messages to the existing message history."""
    return (existing or []) + (incoming or [])


def _sum_int(existing: int, incoming: int) -> int:
    return (existing or 0) + (incoming or 0)


class AgentState(TypedDict, total=False):
    # Conversation so far: prior history, the new user turn, then every
    # assistant / tool_result message produced by this run.
    messages: Annotated[list[Message], _append_messages]

    # Number of model round trips in this run.
    model_calls: Annotated[int, _sum_int]

    # Text of the last assistant message that requested no tools.
    final_text: str
