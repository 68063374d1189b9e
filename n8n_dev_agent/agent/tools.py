"""Tool catalogue for the n8n workflow agent.

Each tool is a pydantic argument model plus an async implementation that
returns the text handed back to the model. execute_tool() is the single
entry point used by the graph:

  - arguments are validated against the tool's model (camelCase aliases,
    matching the JSON schema the model sees)
  - a tool_call status event is published before, and tool_result
    ("Tool X completed in Nms") or error ("Tool X failed: ...") after
  - upstream failures never escape: they come back as an "ERROR: ..." result
    so the model can decide what to do next
  - every call is recorded in the session's short-form tool log

create_workflow and update_workflow run the connection validator before
anything is sent to n8n; see _check_draft() for the failure ceiling.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Literal

import httpx
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

from n8n_dev_agent.agent.merge import merge_workflow_update
from n8n_dev_agent.agent.session import ToolContext
from n8n_dev_agent.agent.status import StatusType
from n8n_dev_agent.agent.validator import (
    DefectKind,
    WorkflowDraft,
    format_defects,
    format_give_up,
    format_invalid_type,
    validate_draft,
)
from n8n_dev_agent.client import RuntimeNotConfiguredError
from n8n_dev_agent.reasoning import ToolDef

logger = logging.getLogger("n8n_dev_agent.agent.tools")

DETAIL_PARAMETER_LIMIT = 20
OPTION_LIMIT = 10
TRIGGER_LIST_LIMIT = 30

CREDENTIAL_NOTE = (
    "⚠️ This node requires credentials. After creating the workflow, the user must "
    "configure credentials in the n8n UI."
)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class _Args(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SearchNodesArgs(_Args):
    query: str = Field(description="Search term (node name, alias, or description keyword)")
    limit: int = Field(5, ge=1, le=50, description="Max results (default: 5)")


class GetNodeDetailsArgs(_Args):
    node_type: str = Field(
        alias="nodeType",
        description="The exact node type (e.g., 'n8n-nodes-base.gmail') or common name (e.g., 'gmail')",
    )


class GetNodeParametersArgs(_Args):
    node_type: str = Field(alias="nodeType", description="The exact node type (e.g., 'n8n-nodes-base.gmail')")
    resource: str | None = Field(None, description="The resource (e.g., 'message', 'channel')")
    operation: str | None = Field(None, description="The operation (e.g., 'send', 'get', 'create')")


class GetNodeOutputSchemaArgs(_Args):
    node_type: str = Field(alias="nodeType", description="The exact node type")
    resource: str | None = Field(None, description="The resource")
    operation: str | None = Field(None, description="The operation")


class ListTriggerNodesArgs(_Args):
    pass


class ListNodesByCategoryArgs(_Args):
    category: str = Field(description="Category tag, e.g. 'trigger', 'transform', 'input', 'output'")


class GetNodeCredentialsArgs(_Args):
    node_type: str = Field(alias="nodeType", description="The exact node type or common name")


class ListWorkflowsArgs(_Args):
    active: bool | None = Field(None, description="Filter by active status")
    name: str | None = Field(None, description="Filter by name (partial match)")


class WorkflowIdArgs(_Args):
    workflow_id: str = Field(alias="workflowId", description="The ID of the workflow")


class CreateWorkflowArgs(_Args):
    name: str = Field(description="The name of the new workflow")
    nodes: list[dict[str, Any]] = Field(description="Array of n8n node objects")
    connections: dict[str, Any] = Field(
        default_factory=dict,
        description="Connections object - EVERY node must be connected in sequence!",
    )
    settings: dict[str, Any] | None = Field(None, description="Workflow settings (default: {})")


class UpdateWorkflowArgs(_Args):
    workflow_id: str = Field(alias="workflowId", description="The ID of the workflow to update")
    updates: dict[str, Any] = Field(
        description="The COMPLETE updated workflow object with name, nodes, connections, and settings",
    )


class ExecuteWorkflowArgs(_Args):
    workflow_id: str = Field(alias="workflowId", description="The ID of the workflow to execute")
    data: dict[str, Any] | None = Field(None, description="Input data for execution")


class ListExecutionsArgs(_Args):
    workflow_id: str | None = Field(None, alias="workflowId", description="Filter by workflow ID")
    status: Literal["success", "error", "running", "waiting", "canceled"] | None = Field(
        None, description="Filter by status",
    )
    limit: int | None = Field(None, ge=1, le=250, description="Limit results")


class ExecutionIdArgs(_Args):
    execution_id: str = Field(alias="executionId", description="The ID of the execution")


class ManageVariableArgs(_Args):
    action: Literal["create", "update", "delete"]
    id: str | None = Field(None, description="Variable ID (required for update/delete)")
    key: str | None = Field(
        None,
        validation_alias=AliasChoices("key", "name"),
        description="Variable name",
    )
    value: str | None = Field(None, description="Variable value")


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    args: type[_Args]


TOOL_SPECS: list[ToolSpec] = [
    ToolSpec(
        "search_nodes",
        "Search for n8n nodes by name, description, or common aliases.\n"
        "Returns a compact list with: type (exact identifier needed for workflows), displayName, "
        "description, and credential requirements.\n"
        "ALWAYS use this first to find the correct node type before creating workflows.\n"
        'Examples: search for "gmail", "http", "slack", "webhook", "schedule", "database"',
        SearchNodesArgs,
    ),
    ToolSpec(
        "get_node_details",
        "Get detailed information about a specific node type including resources and operations, "
        "parameters with their types, credential requirements, options and defaults.\n"
        "Use this BEFORE creating or updating a node to understand its exact configuration.",
        GetNodeDetailsArgs,
    ),
    ToolSpec(
        "get_node_parameters",
        "Get the specific parameters needed for a node's resource/operation combination.\n"
        "For example: Gmail node with resource='message' and operation='send' needs: sendTo, subject, message, etc.",
        GetNodeParametersArgs,
    ),
    ToolSpec(
        "get_node_output_schema",
        "Get the JSON schema of what a node operation returns.\n"
        "Use this when you need to understand the output format to connect it to other nodes or use expressions.",
        GetNodeOutputSchemaArgs,
    ),
    ToolSpec(
        "list_trigger_nodes",
        "Get all available trigger nodes that can start workflows (webhooks, schedules, app triggers, etc.)",
        ListTriggerNodesArgs,
    ),
    ToolSpec(
        "list_nodes_by_category",
        "List the node types tagged with a category (e.g. 'trigger', 'transform', 'input', 'output').",
        ListNodesByCategoryArgs,
    ),
    ToolSpec(
        "get_node_credentials",
        "Get the credential types a node needs and the instructions to give the user for configuring them.",
        GetNodeCredentialsArgs,
    ),
    ToolSpec(
        "list_workflows",
        "List all workflows in the user's n8n instance with optional filters.",
        ListWorkflowsArgs,
    ),
    ToolSpec(
        "get_workflow",
        "Get the complete JSON structure of a specific workflow (nodes, connections, settings).\n"
        "ALWAYS call this before updating a workflow to get current node IDs and credentials.",
        WorkflowIdArgs,
    ),
    ToolSpec(
        "create_workflow",
        "Create a new n8n workflow. ALL nodes MUST be connected!\n\n"
        "Connection requirements:\n"
        '1. Standard nodes use "main" connections\n'
        "2. LangChain nodes use special types:\n"
        '   - Text Splitter → Document Loader: use "ai_textSplitter"\n'
        '   - Document Loader → Vector Store: use "ai_document"\n'
        '   - Embeddings → Vector Store: use "ai_embedding"\n'
        '   - Memory → AI Agent: use "ai_memory"\n'
        '   - Tools → AI Agent: use "ai_tool"\n'
        '   - Chat Model → AI Agent/Chain: use "ai_languageModel"\n'
        '   - Output Parser → AI Agent/Chain: use "ai_outputParser"\n\n'
        "Connection format:\n"
        '{"SourceNodeName": {"main": [[{"node": "TargetNode", "type": "main", "index": 0}]]}}\n\n'
        "Node structure: type (exact node type, e.g. \"n8n-nodes-base.gmail\"), typeVersion, name, "
        "position [x, y], parameters.",
        CreateWorkflowArgs,
    ),
    ToolSpec(
        "update_workflow",
        "Update an existing workflow.\n"
        "1. ALWAYS call 'get_workflow' first to get the current state\n"
        "2. Preserve ALL existing node properties (id, credentials, position, etc.)\n"
        "3. Only modify what needs to change\n"
        "4. Send the COMPLETE workflow object back",
        UpdateWorkflowArgs,
    ),
    ToolSpec("delete_workflow", "Delete a workflow by ID.", WorkflowIdArgs),
    ToolSpec(
        "activate_workflow",
        "Enable a workflow so it runs automatically based on its triggers.",
        WorkflowIdArgs,
    ),
    ToolSpec("deactivate_workflow", "Disable a workflow.", WorkflowIdArgs),
    ToolSpec("execute_workflow", "Trigger a manual execution of a workflow.", ExecuteWorkflowArgs),
    ToolSpec("list_executions", "List recent workflow executions with optional filters.", ListExecutionsArgs),
    ToolSpec("get_execution", "Get details for a specific execution including node outputs.", ExecutionIdArgs),
    ToolSpec("retry_execution", "Retry a failed execution.", ExecutionIdArgs),
    ToolSpec(
        "manage_variable",
        "Create, update, or delete environment variables in n8n.",
        ManageVariableArgs,
    ),
]

_SPECS_BY_NAME: dict[str, ToolSpec] = {s.name: s for s in TOOL_SPECS}


def _schema(model: type[_Args]) -> dict[str, Any]:
    schema = model.model_json_schema(by_alias=True)
    schema.pop("title", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)
    schema.setdefault("properties", {})
    schema.setdefault("required", [])
    return schema


TOOL_DEFS: list[ToolDef] = [
    ToolDef(name=s.name, description=s.description, parameters=_schema(s.args)) for s in TOOL_SPECS
]


# ---------------------------------------------------------------------------
# ToolResult envelope
# ---------------------------------------------------------------------------


@dataclass
class ToolResult:
    """Outcome of one tool call.

    summary is the text returned to the model. ok is False for argument
    errors and upstream failures (summary then starts with "ERROR:").
    Validation rejections are ok=True: the tool worked, the draft did not.
    """

    ok: bool
    summary: str
    error: dict | None = None


def short_outcome(tool_name: str, text: str) -> str:
    """One-line record of a tool result for the forced-summary prompt."""
    if "Workflow created successfully" in text:
        return text[:500]
    if "ERROR:" in text:
        return f"{tool_name} failed: {text[:200]}"
    return f"{tool_name} completed"


def _friendly(tool_name: str, args: dict[str, Any]) -> str:
    match tool_name:
        case "search_nodes":
            return f'Searching for nodes: "{args.get("query", "")}"'
        case "get_node_details":
            return f"Getting details for: {args.get('nodeType', '')}"
        case "get_node_parameters":
            return f"Fetching parameters for: {args.get('nodeType', '')}"
        case "create_workflow":
            return f'Creating workflow: "{args.get("name", "")}"'
        case "update_workflow":
            return "Updating workflow..."
        case "list_workflows":
            return "Listing workflows..."
        case "get_workflow":
            return "Fetching workflow details..."
        case _:
            return f"Calling tool: {tool_name}"


def _dumps(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Knowledge tools
# ---------------------------------------------------------------------------


def _search_nodes(ctx: ToolContext, args: SearchNodesArgs) -> str:
    results = ctx.index.search(args.query, limit=args.limit)
    if not results:
        return f'No nodes found matching "{args.query}". Try a different search term.'
    return _dumps([r.to_dict() for r in results])


def _get_node_details(ctx: ToolContext, args: GetNodeDetailsArgs) -> str:
    entry = ctx.index.get_details(args.node_type)
    if entry is None:
        return f'Node "{args.node_type}" not found. Use search_nodes to find the correct type.'
    response: dict[str, Any] = {
        "type": entry.type,
        "displayName": entry.display_name,
        "version": entry.to_dict()["version"],
        "isTrigger": entry.is_trigger,
    }
    if entry.credentials:
        response["credentials"] = [c.to_dict() for c in entry.credentials]
        response["credentialNote"] = CREDENTIAL_NOTE
    resources = ctx.index.get_resources_and_operations(entry.type)
    if resources:
        response["resources"] = [r.to_dict() for r in resources]
    if entry.parameters:
        response["parameters"] = [p.to_dict() for p in entry.parameters[:DETAIL_PARAMETER_LIMIT]]
    return _dumps(response)


def _get_node_parameters(ctx: ToolContext, args: GetNodeParametersArgs) -> str:
    entry = ctx.index.get_details(args.node_type)
    if entry is None:
        return f'Node "{args.node_type}" not found.'
    params = [p for p in entry.parameters or [] if p.visible_for(args.resource, args.operation)]
    return _dumps({
        "nodeType": entry.type,
        "resource": args.resource,
        "operation": args.operation,
        "parameters": [
            {
                "name": p.name,
                "displayName": p.display_name,
                "type": p.type,
                "required": p.required,
                "default": p.default,
                "description": p.description,
                "options": p.options[:OPTION_LIMIT] if p.options else None,
            }
            for p in params
        ],
    })


def _get_node_output_schema(ctx: ToolContext, args: GetNodeOutputSchemaArgs) -> str:
    schema = ctx.index.get_operation_schema(args.node_type, args.resource, args.operation)
    if schema is None:
        return (
            f"No output schema available for {args.node_type} {args.resource or ''} {args.operation or ''}. "
            "The output format depends on the external service's response."
        )
    return _dumps(schema.to_dict())


def _list_trigger_nodes(ctx: ToolContext) -> str:
    return _dumps([s.to_dict() for s in ctx.index.get_trigger_types()[:TRIGGER_LIST_LIMIT]])


def _list_nodes_by_category(ctx: ToolContext, args: ListNodesByCategoryArgs) -> str:
    nodes = ctx.index.get_by_category(args.category)
    if not nodes:
        available = ", ".join(ctx.index.categories()) or "none"
        return f'No nodes found in category "{args.category}". Available categories: {available}'
    return _dumps([s.to_dict() for s in nodes])


def _get_node_credentials(ctx: ToolContext, args: GetNodeCredentialsArgs) -> str:
    info = ctx.index.get_credential_info(args.node_type)
    if info is None:
        return f'Node "{args.node_type}" not found. Use search_nodes to find the correct type.'
    return _dumps(info)


# ---------------------------------------------------------------------------
# Workflow tools
# ---------------------------------------------------------------------------


def _check_draft(ctx: ToolContext, draft: WorkflowDraft) -> str | None:
    """Return a rejection message for an invalid draft, or None when it may be submitted.

    Each rejection counts toward the session's failure ceiling; reaching it
    returns the give-up message and resets the counter. A valid draft also
    resets the counter. Malformed type ids are rejected without counting.
    """
    defects = validate_draft(draft, ctx.classifier)
    session = ctx.session
    invalid = next((d for d in defects if d.kind is DefectKind.INVALID_TYPE), None)
    if invalid is not None:
        node_type = next((n.type for n in draft.nodes if n.name == invalid.nodes[0]), "")
        return format_invalid_type(invalid, node_type)

    if not defects:
        session.validation_failures = 0
        return None

    session.validation_failures += 1
    logger.error(
        "Validation failed for %r (attempt %d/%d):\n%s",
        draft.name, session.validation_failures, ctx.max_validation_failures,
        "\n".join(d.message for d in defects),
    )
    if session.validation_failures >= ctx.max_validation_failures:
        session.validation_failures = 0
        return format_give_up(defects, ctx.max_validation_failures)
    return format_defects(defects, ctx.classifier.rules)


def _credential_lines(ctx: ToolContext, draft: WorkflowDraft) -> list[str]:
    lines: list[str] = []
    for node in draft.nodes:
        entry = ctx.index.lookup(node.type)
        if entry is not None and entry.credentials:
            lines.append(f"{node.name} ({' or '.join(c.name for c in entry.credentials)})")
    return lines


async def _create_workflow(ctx: ToolContext, args: CreateWorkflowArgs) -> str:
    draft = WorkflowDraft.from_payload({
        "name": args.name,
        "nodes": args.nodes,
        "connections": args.connections,
        "settings": args.settings or {},
    })
    logger.info("create_workflow %r: %d node(s)", draft.name, len(draft.nodes))
    rejection = _check_draft(ctx, draft)
    if rejection is not None:
        return rejection

    result = await ctx.client.create_workflow(draft.to_payload())
    workflow_id = result.get("id") if isinstance(result, dict) else None
    text = (
        "✅ Workflow created successfully!\n"
        f"- ID: {workflow_id}\n"
        f"- URL: {ctx.n8n_base_url}/workflow/{workflow_id}"
    )
    needs = _credential_lines(ctx, draft)
    if needs:
        text += (
            "\n\n⚠️ CREDENTIALS REQUIRED:\n"
            "The following nodes need credentials configured in the n8n UI:\n"
            + "\n".join(f"• {n}" for n in needs)
            + "\n\nInstructions for user: Open the workflow in n8n, click on each node listed above, "
            "and select or create the appropriate credentials."
        )
    return text


async def _update_workflow(ctx: ToolContext, args: UpdateWorkflowArgs) -> str:
    current = await ctx.client.get_workflow(args.workflow_id)
    payload = merge_workflow_update(current, args.updates)
    draft = WorkflowDraft.from_payload(payload)
    rejection = _check_draft(ctx, draft)
    if rejection is not None:
        return rejection
    payload["connections"] = draft.connections
    await ctx.client.update_workflow(args.workflow_id, payload)
    return f"Workflow {args.workflow_id} updated successfully."


async def _list_workflows(ctx: ToolContext, args: ListWorkflowsArgs) -> str:
    workflows = await ctx.client.list_workflows(active=args.active, name=args.name)
    return json.dumps([{"id": w.get("id"), "name": w.get("name"), "active": w.get("active")} for w in workflows])


async def _execute_workflow(ctx: ToolContext, args: ExecuteWorkflowArgs) -> str:
    result = await ctx.client.execute_workflow(args.workflow_id, args.data)
    execution_id = (result.get("executionId") if isinstance(result, dict) else None) or "unknown"
    return f"Workflow {args.workflow_id} execution started. Execution ID: {execution_id}."


async def _list_executions(ctx: ToolContext, args: ListExecutionsArgs) -> str:
    result = await ctx.client.list_executions(workflowId=args.workflow_id, status=args.status, limit=args.limit)
    return json.dumps(result, default=str)


async def _manage_variable(ctx: ToolContext, args: ManageVariableArgs) -> str:
    match args.action:
        case "create":
            if not args.key or args.value is None:
                return "Variable name and value are required for create."
            result = await ctx.client.create_variable(args.key, args.value)
            variable_id = (result.get("id") if isinstance(result, dict) else None) or "unknown"
            return f"Variable created successfully with ID: {variable_id}"
        case "update":
            if not args.id:
                return "Variable ID is required for update."
            await ctx.client.update_variable(args.id, key=args.key, value=args.value)
            return f"Variable {args.id} updated successfully."
        case "delete":
            if not args.id:
                return "Variable ID is required for delete."
            await ctx.client.delete_variable(args.id)
            return f"Variable {args.id} deleted successfully."
    return "Invalid action"


async def _dispatch(ctx: ToolContext, name: str, args: _Args) -> str:
    client = ctx.client
    match args:
        case SearchNodesArgs():
            return _search_nodes(ctx, args)
        case GetNodeDetailsArgs():
            return _get_node_details(ctx, args)
        case GetNodeParametersArgs():
            return _get_node_parameters(ctx, args)
        case GetNodeOutputSchemaArgs():
            return _get_node_output_schema(ctx, args)
        case ListTriggerNodesArgs():
            return _list_trigger_nodes(ctx)
        case ListNodesByCategoryArgs():
            return _list_nodes_by_category(ctx, args)
        case GetNodeCredentialsArgs():
            return _get_node_credentials(ctx, args)
        case ListWorkflowsArgs():
            return await _list_workflows(ctx, args)
        case CreateWorkflowArgs():
            return await _create_workflow(ctx, args)
        case UpdateWorkflowArgs():
            return await _update_workflow(ctx, args)
        case ExecuteWorkflowArgs():
            return await _execute_workflow(ctx, args)
        case ListExecutionsArgs():
            return await _list_executions(ctx, args)
        case ManageVariableArgs():
            return await _manage_variable(ctx, args)
        case ExecutionIdArgs() if name == "get_execution":
            return json.dumps(await client.get_execution(args.execution_id), default=str)
        case ExecutionIdArgs() if name == "retry_execution":
            await client.retry_execution(args.execution_id, load_workflow=True)
            return f"Execution {args.execution_id} retry triggered."
        case WorkflowIdArgs() if name == "get_workflow":
            return json.dumps(await client.get_workflow(args.workflow_id), default=str)
        case WorkflowIdArgs() if name == "delete_workflow":
            await client.delete_workflow(args.workflow_id)
            return f"Workflow {args.workflow_id} deleted successfully."
        case WorkflowIdArgs() if name == "activate_workflow":
            await client.activate_workflow(args.workflow_id)
            return f"Workflow {args.workflow_id} activated successfully."
        case WorkflowIdArgs() if name == "deactivate_workflow":
            await client.deactivate_workflow(args.workflow_id)
            return f"Workflow {args.workflow_id} deactivated successfully."
    raise ValueError(f"No implementation for tool {name!r}")


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


def _upstream_detail(e: Exception) -> str:
    if isinstance(e, httpx.HTTPStatusError):
        return f"HTTP {e.response.status_code}: {e.response.text[:500]}"
    return str(e) or type(e).__name__


async def execute_tool(ctx: ToolContext, tool_name: str, arguments: dict[str, Any]) -> ToolResult:
    """Run one tool call. Never raises for tool-level failures."""
    arguments = arguments or {}
    status = ctx.status
    status.emit(StatusType.TOOL_CALL, _friendly(tool_name, arguments), tool_name=tool_name, tool_args=arguments)
    started = time.monotonic()

    spec = _SPECS_BY_NAME.get(tool_name)
    if spec is None:
        logger.warning("Unknown tool requested: %r", tool_name)
        result = ToolResult(
            ok=False,
            summary=f"ERROR: Unknown tool {tool_name!r}. Check the available tools.",
            error={"type": "UnknownTool", "message": tool_name},
        )
        status.emit(StatusType.ERROR, f"Tool {tool_name} failed: unknown tool", tool_name=tool_name)
        ctx.session.record(tool_name, short_outcome(tool_name, result.summary))
        return result

    try:
        args = spec.args.model_validate(arguments)
        text = await _dispatch(ctx, tool_name, args)
        result = ToolResult(ok=True, summary=text)
    except ValidationError as e:
        logger.warning("Tool %s called with wrong arguments %s: %s", tool_name, arguments, e)
        result = ToolResult(
            ok=False,
            summary=f"ERROR: Wrong arguments for {tool_name}: {e}",
            error={"type": "ValidationError", "message": str(e)},
        )
    except (httpx.HTTPError, RuntimeNotConfiguredError) as e:
        detail = _upstream_detail(e)
        logger.warning("Tool %s failed: %s", tool_name, detail)
        result = ToolResult(
            ok=False,
            summary=f"ERROR: {tool_name} failed: {detail}",
            error={"type": type(e).__name__, "message": detail},
        )
    except Exception as e:
        logger.exception("Tool %s raised unexpectedly", tool_name)
        result = ToolResult(
            ok=False,
            summary=f"ERROR: {tool_name} failed: {e}",
            error={"type": type(e).__name__, "message": str(e)},
        )

    elapsed_ms = int((time.monotonic() - started) * 1000)
    if result.ok:
        status.emit(StatusType.TOOL_RESULT, f"Tool {tool_name} completed in {elapsed_ms}ms", tool_name=tool_name)
        logger.debug("Tool %s ok in %dms: %s", tool_name, elapsed_ms, result.summary[:150])
    else:
        status.emit(StatusType.ERROR, f"Tool {tool_name} failed: {result.error['message']}", tool_name=tool_name)
    ctx.session.record(tool_name, short_outcome(tool_name, result.summary))
    return result
