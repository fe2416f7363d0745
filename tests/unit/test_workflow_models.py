"""Unit tests for workflow definitions and their structural checks."""

from __future__ import annotations

from typing import Any

import pytest

from workflow_agent_orchestrator.core.errors import InvalidNodeConfig, InvalidWorkflow, NoInputNode
from workflow_agent_orchestrator.workflow.models import (
    ConditionalNodeConfig,
    LLMNodeConfig,
    Workflow,
    parse_node_config,
)


def _node(node_id: str, node_type: str, targets: list[str] | None = None, **data: Any) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data, "connections": {"target": targets or []}}


def test_editor_shape_is_normalized(linear_definition: dict[str, Any]) -> None:
    workflow = Workflow.load(linear_definition)

    llm = workflow.node("llm")
    assert isinstance(llm.config, LLMNodeConfig)
    assert llm.config.prompt == "Summarise: {{text}}"
    assert llm.config.output_key == "llm_response"
    assert llm.connections.targets == ["out"]
    assert llm.connections.sources == ["in"]
    assert workflow.find_root().id == "in"


def test_duplicate_ids_are_rejected() -> None:
    with pytest.raises(InvalidWorkflow, match="duplicate node ids: a"):
        Workflow.load({"nodes": [_node("a", "input"), _node("a", "output")]})


def test_dangling_references_are_rejected() -> None:
    nodes = [_node("in", "input", ["ghost"]), _node("out", "output")]
    with pytest.raises(InvalidWorkflow, match="unknown nodes: ghost"):
        Workflow.load({"nodes": nodes})


def test_branch_references_are_checked_too() -> None:
    nodes = [
        _node("in", "input", ["check"]),
        _node("check", "conditional", condition="ok", true_branch="out", false_branch="nowhere"),
        _node("out", "output"),
    ]
    with pytest.raises(InvalidWorkflow, match="nowhere"):
        Workflow.load({"nodes": nodes})


def test_cycles_are_rejected() -> None:
    nodes = [
        _node("in", "input", ["a"]),
        _node("a", "llm", ["b"], prompt="x"),
        _node("b", "llm", ["a"], prompt="y"),
    ]
    with pytest.raises(InvalidWorkflow, match="cycle detected"):
        Workflow.load({"nodes": nodes})


def test_loop_body_must_hold_processing_nodes() -> None:
    nodes = [
        _node("in", "input", ["loop"]),
        _node("loop", "loop", ["out"], condition="more", body=["out"]),
        _node("out", "output"),
    ]
    with pytest.raises(InvalidWorkflow, match="loop 'loop' body"):
        Workflow.load({"nodes": nodes})


def test_invalid_node_config_surfaces_as_invalid_workflow() -> None:
    with pytest.raises(InvalidWorkflow, match="prompt"):
        Workflow.load({"nodes": [_node("in", "input", ["llm"]), _node("llm", "llm")]})


def test_unknown_node_type_is_rejected() -> None:
    with pytest.raises(InvalidWorkflow):
        Workflow.load({"nodes": [_node("in", "input"), _node("x", "teleporter")]})


@pytest.mark.parametrize("input_nodes", [0, 2])
def test_find_root_requires_exactly_one_input(input_nodes: int) -> None:
    nodes = [_node(f"in{i}", "input") for i in range(input_nodes)] + [_node("out", "output")]
    workflow = Workflow.load({"id": "wf", "nodes": nodes})

    with pytest.raises(NoInputNode) as excinfo:
        workflow.find_root()
    assert excinfo.value.found == input_nodes
    assert isinstance(excinfo.value, InvalidWorkflow)


def test_parse_node_config() -> None:
    cfg = parse_node_config("conditional", {"condition": "approved", "true_branch": "yes"})
    assert isinstance(cfg, ConditionalNodeConfig)
    assert cfg.false_branch is None

    with pytest.raises(InvalidNodeConfig, match="temperature"):
        parse_node_config("llm", {"prompt": "hi", "temperature": 5})
    with pytest.raises(InvalidNodeConfig, match="mapping"):
        parse_node_config("llm", "prompt")
    with pytest.raises(InvalidNodeConfig, match="'conditional'"):
        parse_node_config("llm", cfg)
