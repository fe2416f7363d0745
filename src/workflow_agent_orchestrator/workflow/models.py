"""Workflow definitions: typed node configs, nodes and the workflow graph.

Node configs are a tagged union keyed by ``type``. Structural checks (unique
ids, dangling references, cycles) run when a workflow is constructed; the
runnability check (exactly one input node) runs when it is saved or executed.
"""

from __future__ import annotations

import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator

from workflow_agent_orchestrator.core.errors import InvalidNodeConfig, InvalidWorkflow, NoInputNode

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."
DEFAULT_IMAGE_MODEL = "fal-ai/flux/schnell"
DEFAULT_VIDEO_MODEL = "video-effects"


class InputNodeConfig(BaseModel):
    type: Literal["input"] = "input"


class OutputNodeConfig(BaseModel):
    type: Literal["output"] = "output"


class LLMNodeConfig(BaseModel):
    type: Literal["llm"] = "llm"
    prompt: str = Field(min_length=1)
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    max_tokens: int | None = Field(default=None, gt=0)
    output_key: str = "llm_response"


class ImageGeneratorNodeConfig(BaseModel):
    type: Literal["image_generator"] = "image_generator"
    prompt: str = Field(min_length=1)
    model: str = DEFAULT_IMAGE_MODEL
    style: str | None = None
    size: str | None = None
    output_key: str = "generated_image"


class VideoGeneratorNodeConfig(BaseModel):
    type: Literal["video_generator"] = "video_generator"
    prompt: str = Field(min_length=1)
    model: str = DEFAULT_VIDEO_MODEL
    effects: list[str] = Field(default_factory=list)
    duration: int = Field(default=5, gt=0, le=60)
    output_key: str = "generated_video"


class TextAnalyzerNodeConfig(BaseModel):
    type: Literal["text_analyzer"] = "text_analyzer"
    input_field: str = "text"
    analysis_type: str = "sentiment"
    model: str | None = None
    output_key: str = "analysis"


class ConditionalNodeConfig(BaseModel):
    type: Literal["conditional"] = "conditional"
    condition: str = Field(min_length=1)
    true_branch: str | None = None
    false_branch: str | None = None


class LoopNodeConfig(BaseModel):
    type: Literal["loop"] = "loop"
    condition: str = Field(min_length=1)
    body: list[str] = Field(default_factory=list)
    max_iterations: int = Field(default=10, gt=0)
    output_key: str = "loop"


NodeConfig = Annotated[
    Union[
        InputNodeConfig,
        OutputNodeConfig,
        LLMNodeConfig,
        ImageGeneratorNodeConfig,
        VideoGeneratorNodeConfig,
        TextAnalyzerNodeConfig,
        ConditionalNodeConfig,
        LoopNodeConfig,
    ],
    Field(discriminator="type"),
]

NODE_TYPES: tuple[str, ...] = (
    "input",
    "output",
    "llm",
    "image_generator",
    "video_generator",
    "text_analyzer",
    "conditional",
    "loop",
)

BILLABLE_TYPES = frozenset({"llm", "image_generator", "video_generator", "text_analyzer"})

# Loop bodies run node by node without following their outbound connections.
LOOP_BODY_TYPES = BILLABLE_TYPES

_config_adapter: TypeAdapter[Any] = TypeAdapter(NodeConfig)


def parse_node_config(node_type: str, raw: Any) -> Any:
    """Validate a raw mapping (or an already-typed config) as the variant for ``node_type``.

    Raises:
        InvalidNodeConfig: The config is missing required fields, has invalid
            values, or belongs to a different node type.
    """
    if isinstance(raw, BaseModel):
        if getattr(raw, "type", None) != node_type:
            raise InvalidNodeConfig(node_type, f"config is for {getattr(raw, 'type', '?')!r} nodes")
        return raw
    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise InvalidNodeConfig(node_type, "config must be a mapping")
    try:
        return _config_adapter.validate_python({**raw, "type": node_type})
    except ValidationError as e:
        errors = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'config'}: {err['msg']}" for err in e.errors()
        )
        raise InvalidNodeConfig(node_type, errors) from e


class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class Connections(BaseModel):
    targets: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)


class Node(BaseModel):
    id: str = Field(min_length=1)
    config: NodeConfig
    position: Position = Field(default_factory=Position)
    connections: Connections = Field(default_factory=Connections)

    @model_validator(mode="before")
    @classmethod
    def _accept_editor_shape(cls, data: Any) -> Any:
        # The editor stores {"type", "data", "connections": {"source", "target"}}.
        if not isinstance(data, dict) or "config" in data or "type" not in data:
            return data
        normalized = dict(data)
        node_type = normalized.pop("type")
        config = dict(normalized.pop("data", None) or {})
        config["type"] = node_type
        normalized["config"] = config
        conns = normalized.get("connections")
        if isinstance(conns, dict) and ("target" in conns or "source" in conns):
            normalized["connections"] = {
                "targets": conns.get("target") or [],
                "sources": conns.get("source") or [],
            }
        return normalized

    @property
    def type(self) -> str:
        return self.config.type

    def edges(self) -> list[str]:
        """Every node id this node can hand control to."""
        out = list(self.connections.targets)
        if isinstance(self.config, ConditionalNodeConfig):
            out += [b for b in (self.config.true_branch, self.config.false_branch) if b]
        elif isinstance(self.config, LoopNodeConfig):
            out += self.config.body
        return out


class WorkflowSettings(BaseModel):
    max_execution_time: float = Field(default=300.0, gt=0)
    auto_execute: bool = False
    require_confirmation: bool = False


class Workflow(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = "Untitled workflow"
    description: str = ""
    owner_id: str | None = None
    nodes: list[Node] = Field(default_factory=list)
    settings: WorkflowSettings = Field(default_factory=WorkflowSettings)
    created_at: str | None = None
    updated_at: str | None = None

    @model_validator(mode="after")
    def _check_structure(self) -> Workflow:
        ids = [n.id for n in self.nodes]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValueError(f"duplicate node ids: {', '.join(duplicates)}")

        known = set(ids)
        for node in self.nodes:
            missing = [t for t in node.edges() if t not in known]
            if missing:
                raise ValueError(f"node {node.id!r} references unknown nodes: {', '.join(missing)}")

        types = {n.id: n.type for n in self.nodes}
        for node in self.nodes:
            if isinstance(node.config, LoopNodeConfig):
                bad = [b for b in node.config.body if types[b] not in LOOP_BODY_TYPES]
                if bad:
                    raise ValueError(
                        f"loop {node.id!r} body may only contain processing nodes, got: {', '.join(bad)}"
                    )

        cycle = _find_cycle(self.nodes)
        if cycle:
            raise ValueError(f"cycle detected: {' -> '.join(cycle)}")
        return self

    @classmethod
    def load(cls, data: Any) -> Workflow:
        """Validate a raw workflow definition.

        Raises:
            InvalidWorkflow: The definition doesn't validate.
        """
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise InvalidWorkflow(_format_errors(e)) from e

    def node(self, node_id: str) -> Node:
        for node in self.nodes:
            if node.id == node_id:
                return node
        raise KeyError(node_id)

    def find_root(self) -> Node:
        """Return the unique input node.

        Raises:
            NoInputNode: There is no input node, or more than one.
        """
        roots = [n for n in self.nodes if n.type == "input"]
        if len(roots) != 1:
            raise NoInputNode(self.id, len(roots))
        return roots[0]


def _find_cycle(nodes: list[Node]) -> list[str] | None:
    graph = {n.id: n.edges() for n in nodes}
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node_id: str) -> list[str] | None:
        visiting.add(node_id)
        path.append(node_id)
        for nxt in graph.get(node_id, []):
            if nxt in visiting:
                return path[path.index(nxt):] + [nxt]
            if nxt not in done:
                found = visit(nxt)
                if found:
                    return found
        visiting.discard(node_id)
        done.add(node_id)
        path.pop()
        return None

    for node_id in graph:
        if node_id not in done:
            found = visit(node_id)
            if found:
                return found
    return None


def _format_errors(e: ValidationError) -> str:
    parts = []
    for err in e.errors():
        loc = ".".join(str(p) for p in err["loc"])
        msg = err["msg"].removeprefix("Value error, ")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
