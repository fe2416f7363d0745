"""Node catalog: the behaviour of every node type.

``NodeCatalog.execute`` turns (node type, config, bindings) into a
:class:`NodeOutcome`. Pure node types (input, output, conditional, loop) are
handled here; billable types delegate to a registered :class:`Capability`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from workflow_agent_orchestrator.billing.costs import ModelCostRegistry
from workflow_agent_orchestrator.core.errors import UnsupportedNodeType
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.llm.provider import ToolSpec
from workflow_agent_orchestrator.workflow.capabilities import Capability
from workflow_agent_orchestrator.workflow.models import (
    BILLABLE_TYPES,
    NODE_TYPES,
    ConditionalNodeConfig,
    ImageGeneratorNodeConfig,
    LLMNodeConfig,
    LoopNodeConfig,
    Node,
    TextAnalyzerNodeConfig,
    VideoGeneratorNodeConfig,
    parse_node_config,
)
from workflow_agent_orchestrator.workflow.templates import (
    interpolate,
    interpolate_deep,
    lookup,
    placeholders,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class NodeOutcome:
    """Result of executing one node.

    ``next_node_ids`` is None when the executor should follow the node's
    outbound connections, and an explicit (possibly empty) tuple when the node
    chose where to go (conditional).
    """

    bindings: dict[str, Any]
    text: str = ""
    usage: TokenUsage | None = None
    cost: int = 0
    next_node_ids: tuple[str, ...] | None = None
    loop_continue: bool | None = None
    terminal: bool = False


@dataclass(frozen=True, slots=True)
class BillingQuote:
    model: str
    input_text: str
    flat: bool


TOOL_DESCRIPTIONS: dict[str, ToolSpec] = {
    "llm": ToolSpec(
        name="text_processor",
        description="Generate or transform text with a language model.",
        parameters={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "Instructions and input text"},
                "system_prompt": {"type": "string", "description": "Optional system prompt"},
            },
            "required": ["prompt"],
        },
    ),
    "image_generator": ToolSpec(
        name="image_generator",
        description="Generate an image from a text prompt.",
        parameters={
            "type": "object",
            "properties": {
                "prompt": {"type": "string", "description": "What the image should show"},
                "model": {"type": "string", "description": "Image model id"},
                "style": {"type": "string"},
                "size": {"type": "string"},
            },
            "required": ["prompt"],
        },
    ),
    "video_generator": ToolSpec(
        name="video_generator",
        description="Generate a short video (or apply video effects) from a text prompt.",
        parameters={
            "type": "object",
            "properties": {
                "prompt": {"type": "string"},
                "effects": {"type": "array", "items": {"type": "string"}},
                "duration": {"type": "integer", "minimum": 1, "maximum": 60},
            },
            "required": ["prompt"],
        },
    ),
    "text_analyzer": ToolSpec(
        name="text_analyzer",
        description="Analyse text (sentiment, summary, keywords, entities).",
        parameters={
            "type": "object",
            "properties": {
                "text": {"type": "string", "description": "Text to analyse"},
                "analysis_type": {"type": "string", "description": "e.g. sentiment, summary"},
            },
            "required": ["text"],
        },
    ),
}


def is_truthy(value: Any) -> bool:
    return bool(value)


class NodeCatalog:
    """Dispatch table from node type to behaviour."""

    def __init__(
        self,
        capabilities: Mapping[str, Capability] | None = None,
        costs: ModelCostRegistry | None = None,
        default_model: str = "gpt-4o-mini",
    ) -> None:
        self._capabilities: dict[str, Capability] = dict(capabilities or {})
        self.costs = costs or ModelCostRegistry()
        self.default_model = default_model
        self._handlers: dict[str, Callable[[Any, dict[str, Any]], NodeOutcome]] = {
            "input": self._run_input,
            "output": self._run_output,
            "llm": self._run_llm,
            "image_generator": self._run_generation,
            "video_generator": self._run_generation,
            "text_analyzer": self._run_text_analyzer,
            "conditional": self._run_conditional,
            "loop": self._run_loop,
        }

    def register(self, node_type: str, capability: Capability) -> None:
        if node_type not in BILLABLE_TYPES:
            raise UnsupportedNodeType(node_type)
        self._capabilities[node_type] = capability

    def supports(self, node_type: str) -> bool:
        if node_type not in NODE_TYPES:
            return False
        return node_type not in BILLABLE_TYPES or node_type in self._capabilities

    def execute(self, node_type: str, config: Any, bindings: Mapping[str, Any]) -> NodeOutcome:
        """Run one node.

        Args:
            node_type: One of the catalog's node types.
            config: Typed config or a raw mapping for ``node_type``.
            bindings: Current variable bindings (not modified).

        Returns:
            The node's outcome, with a fresh bindings mapping.

        Raises:
            UnsupportedNodeType: Unknown type or no capability registered for it.
            InvalidNodeConfig: The config doesn't validate.
            CapabilityError: The capability call failed.
        """
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnsupportedNodeType(node_type)
        typed = parse_node_config(node_type, config)
        return handler(typed, dict(bindings))

    def quote(self, node_type: str, config: Any, bindings: Mapping[str, Any]) -> BillingQuote | None:
        """What a billable node would be charged on; None for free node types."""
        if node_type not in BILLABLE_TYPES:
            return None
        cfg = self.prepare(node_type, config, bindings)
        if isinstance(cfg, LLMNodeConfig):
            return BillingQuote(
                model=cfg.model or self.default_model,
                input_text=f"{cfg.system_prompt}\n{cfg.prompt}",
                flat=False,
            )
        if isinstance(cfg, (ImageGeneratorNodeConfig, VideoGeneratorNodeConfig)):
            return BillingQuote(model=cfg.model, input_text=cfg.prompt, flat=True)
        text = lookup(cfg.input_field, bindings, "")
        return BillingQuote(
            model=cfg.model or self.default_model,
            input_text=f"{cfg.analysis_type}\n{text}",
            flat=False,
        )

    def prepare(self, node_type: str, config: Any, bindings: Mapping[str, Any]) -> Any:
        """Validate ``config`` and interpolate its templated fields."""
        cfg = parse_node_config(node_type, config)
        if isinstance(cfg, LLMNodeConfig):
            return cfg.model_copy(
                update={
                    "prompt": interpolate(cfg.prompt, bindings),
                    "system_prompt": interpolate(cfg.system_prompt, bindings),
                }
            )
        if isinstance(cfg, ImageGeneratorNodeConfig):
            update = {"prompt": interpolate(cfg.prompt, bindings)}
            if cfg.style:
                update["style"] = interpolate(cfg.style, bindings)
            return cfg.model_copy(update=update)
        if isinstance(cfg, VideoGeneratorNodeConfig):
            return cfg.model_copy(
                update={
                    "prompt": interpolate(cfg.prompt, bindings),
                    "effects": interpolate_deep(cfg.effects, bindings),
                }
            )
        return cfg

    def tool_specs(self) -> list[ToolSpec]:
        """Descriptions of the node types that have a capability registered."""
        return [TOOL_DESCRIPTIONS[t] for t in TOOL_DESCRIPTIONS if t in self._capabilities]

    def describe_node(self, node: Node) -> ToolSpec:
        """Tool description for running one workflow node in isolation.

        The parameters are the placeholders its templates reference.
        """
        names: list[str] = []
        for field in ("prompt", "system_prompt", "style"):
            template = getattr(node.config, field, None)
            if isinstance(template, str):
                names += [p.split(".")[0] for p in placeholders(template)]
        if isinstance(node.config, TextAnalyzerNodeConfig):
            names.append(node.config.input_field.split(".")[0])
        unique = list(dict.fromkeys(names))
        return ToolSpec(
            name=f"workflow_node_{node.id}",
            description=f"Run the {node.type} node {node.id!r} of the loaded workflow.",
            parameters={
                "type": "object",
                "properties": {n: {"type": "string"} for n in unique},
                "required": unique,
            },
        )

    def _capability(self, node_type: str) -> Capability:
        capability = self._capabilities.get(node_type)
        if capability is None:
            raise UnsupportedNodeType(node_type)
        return capability

    def _run_input(self, cfg: Any, bindings: dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(bindings=bindings)

    def _run_output(self, cfg: Any, bindings: dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(bindings=bindings, terminal=True)

    def _run_llm(self, cfg: LLMNodeConfig, bindings: dict[str, Any]) -> NodeOutcome:
        capability = self._capability("llm")
        prepared = self.prepare("llm", cfg, bindings)
        result = capability.invoke(prepared, bindings)
        return NodeOutcome(
            bindings={**bindings, cfg.output_key: result.value},
            text=result.text,
            usage=result.usage,
        )

    def _run_generation(self, cfg: Any, bindings: dict[str, Any]) -> NodeOutcome:
        capability = self._capability(cfg.type)
        prepared = self.prepare(cfg.type, cfg, bindings)
        cost = self.costs.flat_cost(prepared.model)
        result = capability.invoke(prepared, bindings)
        value = result.value if isinstance(result.value, dict) else {"url": result.value}
        value = {**value, "cost": cost}
        logger.debug("Generation node finished", extra={"model": prepared.model, "cost": cost})
        return NodeOutcome(
            bindings={**bindings, cfg.output_key: value},
            text=result.text,
            usage=result.usage,
            cost=cost,
        )

    def _run_text_analyzer(self, cfg: TextAnalyzerNodeConfig, bindings: dict[str, Any]) -> NodeOutcome:
        capability = self._capability("text_analyzer")
        result = capability.invoke(cfg, bindings)
        return NodeOutcome(
            bindings={**bindings, cfg.output_key: result.value},
            text=result.text,
            usage=result.usage,
        )

    def _run_conditional(self, cfg: ConditionalNodeConfig, bindings: dict[str, Any]) -> NodeOutcome:
        value = is_truthy(lookup(cfg.condition, bindings))
        branch = cfg.true_branch if value else cfg.false_branch
        return NodeOutcome(
            bindings=bindings,
            text=str(value).lower(),
            next_node_ids=(branch,) if branch else (),
        )

    def _run_loop(self, cfg: LoopNodeConfig, bindings: dict[str, Any]) -> NodeOutcome:
        return NodeOutcome(
            bindings=bindings,
            loop_continue=is_truthy(lookup(cfg.condition, bindings)),
        )
