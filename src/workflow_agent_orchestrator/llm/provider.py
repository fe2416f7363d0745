"""Abstract base class for reasoning providers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from workflow_agent_orchestrator.core.usage import TokenUsage


@dataclass(frozen=True, slots=True)
class ToolSpec:
    """A function the model may call: name, description and JSON-schema parameters."""

    name: str
    description: str
    parameters: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ResponseSchema:
    """A JSON schema the model's reply must conform to."""

    name: str
    schema: dict[str, Any]


@dataclass(frozen=True, slots=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""


@dataclass(frozen=True, slots=True)
class Completion:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: TokenUsage | None = None
    model: str = ""


class LLMProvider(ABC):
    """Abstract base class for reasoning providers.

    This interface allows pluggable LLM backends. Messages use the chat
    completions shape (``role``/``content`` dicts, plus ``tool_calls`` and
    ``tool_call_id`` for tool turns).
    """

    model: str

    @abstractmethod
    def complete(
        self,
        system_prompt: str,
        messages: list[dict[str, Any]],
        tools: list[ToolSpec] | None = None,
        response_schema: ResponseSchema | None = None,
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> Completion:
        """Generate a completion.

        Args:
            system_prompt: System instructions prepended to the conversation.
            messages: Conversation messages.
            tools: Functions the model may call.
            response_schema: Constrain the reply to this JSON schema.
            model: Override the provider's default model.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.

        Returns:
            The completion text, any tool calls and provider-reported usage.

        Raises:
            CapabilityError: If the provider call fails.
        """

    def generate(self, prompt: str, system_prompt: str = "You are a helpful assistant.", **kwargs: Any) -> str:
        """Single-turn convenience wrapper returning only the text."""
        return self.complete(system_prompt, [{"role": "user", "content": prompt}], **kwargs).text
