"""Planner/executor/coordinator agent loop."""

from workflow_agent_orchestrator.agents.coordinator import AgentCoordinator, AgentRunResult
from workflow_agent_orchestrator.agents.state import AgentState, ControlNode, Decision

__all__ = [
    "AgentCoordinator",
    "AgentRunResult",
    "AgentState",
    "ControlNode",
    "Decision",
]
