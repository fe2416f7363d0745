"""LLM package initialization."""

from workflow_agent_orchestrator.llm.factory import LLMFactory
from workflow_agent_orchestrator.llm.provider import (
    Completion,
    LLMProvider,
    ResponseSchema,
    ToolCall,
    ToolSpec,
)

__all__ = [
    "Completion",
    "LLMFactory",
    "LLMProvider",
    "ResponseSchema",
    "ToolCall",
    "ToolSpec",
]
