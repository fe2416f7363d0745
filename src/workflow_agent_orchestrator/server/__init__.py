"""REST server package."""

from workflow_agent_orchestrator.server.app import create_app

__all__ = ["create_app"]
