"""Core package initialization."""

from workflow_agent_orchestrator.core.config import OrchestratorConfig

__all__ = [
    "OrchestratorConfig",
]
