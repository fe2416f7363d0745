"""Tools the executor agent can call.

Base tools wrap single catalog node types; when a workflow is loaded every
billable node becomes a ``workflow_node_<id>`` tool as well.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from workflow_agent_orchestrator.core.deadline import Deadline
from workflow_agent_orchestrator.core.errors import BillingError, NotFoundError
from workflow_agent_orchestrator.llm.provider import ToolSpec
from workflow_agent_orchestrator.storage.workflows import WorkflowStore
from workflow_agent_orchestrator.workflow.catalog import TOOL_DESCRIPTIONS
from workflow_agent_orchestrator.workflow.executor import GraphExecutor
from workflow_agent_orchestrator.workflow.models import BILLABLE_TYPES, Node, Workflow

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ToolContext:
    session_id: str
    account_id: str | None
    deadline: Deadline


ToolHandler = Callable[[dict[str, Any], ToolContext], dict[str, Any]]
# Maps tool arguments to (node config, bindings).
ArgBuilder = Callable[[dict[str, Any]], tuple[dict[str, Any], dict[str, Any]]]


@dataclass(frozen=True, slots=True)
class AgentTool:
    spec: ToolSpec
    handler: ToolHandler

    @property
    def name(self) -> str:
        return self.spec.name


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, AgentTool] = {}

    def register(self, tool: AgentTool) -> None:
        self._tools[tool.name] = tool

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def names(self) -> list[str]:
        return list(self._tools)

    def specs(self) -> list[ToolSpec]:
        return [t.spec for t in self._tools.values()]

    def invoke(self, name: str, arguments: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        """Run a tool.

        Raises:
            NotFoundError: No tool is registered under ``name``.
            OrchestratorError: The tool's node or workflow failed.
            ValueError: The arguments don't form a valid node config.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise NotFoundError(f"Unknown tool: {name}")
        logger.info("Invoking tool", extra={"tool": name, "session_id": context.session_id})
        return tool.handler(arguments, context)


def _node_tool(
    executor: GraphExecutor, node_type: str, output_key: str, build: ArgBuilder
) -> ToolHandler:
    def handler(arguments: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        config, bindings = build(arguments)
        node = Node.model_validate({"id": f"tool-{node_type}", "config": {**config, "type": node_type}})
        outcome = executor.execute_node(
            node, bindings, ctx.session_id, account_id=ctx.account_id, deadline=ctx.deadline
        )
        return {"result": outcome.bindings.get(output_key)}

    return handler


def _text_processor_args(args: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    config = {"prompt": str(args.get("prompt", ""))}
    if args.get("system_prompt"):
        config["system_prompt"] = str(args["system_prompt"])
    return config, {}


def _image_args(args: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    config = {k: args[k] for k in ("prompt", "model", "style", "size") if args.get(k)}
    return config, {}


def _video_args(args: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    config = {k: args[k] for k in ("prompt", "effects", "duration") if args.get(k)}
    return config, {}


def _analyzer_args(args: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    config = {"input_field": "text"}
    if args.get("analysis_type"):
        config["analysis_type"] = str(args["analysis_type"])
    return config, {"text": args.get("text", "")}


_BASE_TOOLS: dict[str, tuple[str, ArgBuilder]] = {
    "llm": ("llm_response", _text_processor_args),
    "image_generator": ("generated_image", _image_args),
    "video_generator": ("generated_video", _video_args),
    "text_analyzer": ("analysis", _analyzer_args),
}

WORKFLOW_EXECUTOR_SPEC = ToolSpec(
    name="workflow_executor",
    description="Run a saved workflow by id with the given input and return its output.",
    parameters={
        "type": "object",
        "properties": {
            "workflow_id": {"type": "string"},
            "input": {"type": "object", "description": "Input bindings for the workflow"},
        },
        "required": ["workflow_id"],
    },
)


def build_tool_registry(
    executor: GraphExecutor,
    workflows: WorkflowStore | None = None,
    workflow: Workflow | None = None,
) -> ToolRegistry:
    """Assemble the tools available to one agent run."""
    registry = ToolRegistry()
    catalog = executor.catalog

    for node_type, (output_key, build) in _BASE_TOOLS.items():
        if catalog.supports(node_type):
            registry.register(
                AgentTool(TOOL_DESCRIPTIONS[node_type], _node_tool(executor, node_type, output_key, build))
            )

    if workflows is not None:

        def run_workflow(arguments: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
            workflow_id = str(arguments.get("workflow_id", ""))
            target = workflows.get(workflow_id)
            if target is None:
                raise NotFoundError(f"Workflow not found: {workflow_id}")
            payload = arguments.get("input")
            result = executor.run(
                target,
                payload if isinstance(payload, dict) else {},
                ctx.session_id,
                account_id=ctx.account_id,
                deadline=ctx.deadline,
            )
            # Billing failures end the turn here too, as they do for node tools.
            if isinstance(result.failure, BillingError):
                raise result.failure
            return result.to_json()

        registry.register(AgentTool(WORKFLOW_EXECUTOR_SPEC, run_workflow))

    if workflow is not None:
        for node in workflow.nodes:
            if node.type in BILLABLE_TYPES and catalog.supports(node.type):
                registry.register(AgentTool(catalog.describe_node(node), _workflow_node_tool(executor, node)))

    return registry


def _workflow_node_tool(executor: GraphExecutor, node: Node) -> ToolHandler:
    output_key = getattr(node.config, "output_key", None)

    def handler(arguments: dict[str, Any], ctx: ToolContext) -> dict[str, Any]:
        outcome = executor.execute_node(
            node, dict(arguments), ctx.session_id, account_id=ctx.account_id, deadline=ctx.deadline
        )
        return {"result": outcome.bindings.get(output_key) if output_key else outcome.text}

    return handler
