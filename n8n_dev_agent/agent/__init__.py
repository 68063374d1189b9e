"""n8n workflow builder co-pilot agent.

Entry points:
    build_graph(engine, temperature=0.3) → CompiledGraph
    create_agent(settings, reasoning_settings, store) → (AgentRunner, N8nClient)

Building blocks:
    validate_draft         connection graph validator (pure)
    merge_workflow_update  update-merge policy for existing workflows
    execute_tool           tool dispatcher with status events
    StatusBroadcaster      non-blocking status fan-out
"""

from n8n_dev_agent.agent.connections import (
    ClassificationRule,
    ConnectionKind,
    NodeClassifier,
    NodeRole,
    load_rules,
)
from n8n_dev_agent.agent.graph import AgentRunner, AgentSettings, build_graph, create_agent
from n8n_dev_agent.agent.merge import merge_workflow_update
from n8n_dev_agent.agent.session import AgentSession, ToolContext
from n8n_dev_agent.agent.status import StatusBroadcaster, StatusEvent, StatusType
from n8n_dev_agent.agent.tools import TOOL_DEFS, ToolResult, execute_tool
from n8n_dev_agent.agent.validator import (
    DefectKind,
    ValidationDefect,
    WorkflowDraft,
    validate_draft,
)

__all__ = [
    "AgentRunner",
    "AgentSession",
    "AgentSettings",
    "ClassificationRule",
    "ConnectionKind",
    "DefectKind",
    "NodeClassifier",
    "NodeRole",
    "StatusBroadcaster",
    "StatusEvent",
    "StatusType",
    "TOOL_DEFS",
    "ToolContext",
    "ToolResult",
    "ValidationDefect",
    "WorkflowDraft",
    "build_graph",
    "create_agent",
    "execute_tool",
    "load_rules",
    "merge_workflow_update",
    "validate_draft",
]
