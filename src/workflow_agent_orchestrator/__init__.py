"""Workflow Agent Orchestrator.

Runs node-graph workflows (LLM, image/video generation, text analysis,
conditionals, loops) and a planner/executor/coordinator chat agent, billing
every external call through a reserve-then-settle token ledger.
"""

__version__ = "0.1.0"

from workflow_agent_orchestrator.core.config import OrchestratorConfig
from workflow_agent_orchestrator.core.orchestrator import Orchestrator

__all__ = ["__version__", "Orchestrator", "OrchestratorConfig"]
