from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from workflow_agent_orchestrator.core.errors import IllegalTransitionError


class ControlNode(str, Enum):
    PLANNER = "planner"
    EXECUTOR = "executor"
    COORDINATOR = "coordinator"
    END = "end"


class Decision(str, Enum):
    CONTINUE = "continue"
    REPLAN = "replan"
    END = "end"


# Any live node may jump straight to END (deadline, cycle cap).
ALLOWED_TRANSITIONS: dict[ControlNode, set[ControlNode]] = {
    ControlNode.PLANNER: {ControlNode.EXECUTOR, ControlNode.END},
    ControlNode.EXECUTOR: {ControlNode.COORDINATOR, ControlNode.END},
    ControlNode.COORDINATOR: {ControlNode.EXECUTOR, ControlNode.PLANNER, ControlNode.END},
    ControlNode.END: set(),
}

DECISION_TARGETS: dict[Decision, ControlNode] = {
    Decision.CONTINUE: ControlNode.EXECUTOR,
    Decision.REPLAN: ControlNode.PLANNER,
    Decision.END: ControlNode.END,
}


@dataclass
class AgentState:
    """Mutable state of one planner/executor/coordinator run."""

    session_id: str
    active_node: ControlNode = ControlNode.PLANNER
    messages: list[dict[str, Any]] = field(default_factory=list)
    workflow_data: dict[str, Any] = field(default_factory=dict)
    execution_context: dict[str, Any] = field(default_factory=dict)
    cycles: int = 0

    def add_message(self, message: dict[str, Any]) -> None:
        self.messages.append(message)

    def move_to(self, nxt: ControlNode) -> None:
        if nxt not in ALLOWED_TRANSITIONS[self.active_node]:
            raise IllegalTransitionError(
                f"Illegal agent transition: {self.active_node.value} -> {nxt.value}"
            )
        if nxt is ControlNode.EXECUTOR:
            self.cycles += 1
        self.active_node = nxt

    @property
    def finished(self) -> bool:
        return self.active_node is ControlNode.END
