from __future__ import annotations

from enum import Enum

from workflow_agent_orchestrator.core.errors import IllegalTransitionError


class ExecutionStatus(str, Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: dict[ExecutionStatus, set[ExecutionStatus]] = {
    ExecutionStatus.CREATED: {ExecutionStatus.RUNNING, ExecutionStatus.FAILED},
    ExecutionStatus.RUNNING: {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED},
    ExecutionStatus.COMPLETED: set(),
    ExecutionStatus.FAILED: set(),
}

TERMINAL_STATES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})


def transition(current: ExecutionStatus, nxt: ExecutionStatus) -> ExecutionStatus:
    """Return ``nxt`` if the move is allowed, otherwise raise."""
    allowed = ALLOWED_TRANSITIONS.get(current, set())
    if nxt not in allowed:
        raise IllegalTransitionError(f"Illegal transition: {current.value} -> {nxt.value}")
    return nxt
