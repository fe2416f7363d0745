"""OpenAI-compatible reasoning provider (OpenAI, xAI)."""

import json
import logging
from typing import Any

from openai import OpenAI, OpenAIError

from workflow_agent_orchestrator.core.config import LLMConfig
from workflow_agent_orchestrator.core.errors import CapabilityError
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.llm.provider import (
    Completion,
    LLMProvider,
    ResponseSchema,
    ToolCall,
    ToolSpec,
)

logger = logging.getLogger(__name__)

DEFAULT_BASE_URLS: dict[str, str] = {
    "xai": "https://api.x.ai/v1",
}


class OpenAIProvider(LLMProvider):
    """Chat completions provider for any OpenAI-compatible endpoint."""

    def __init__(self, config: LLMConfig, client: OpenAI | None = None) -> None:
        """Initialize the provider.

        Args:
            config: LLM configuration.
            client: Pre-built client (tests inject a fake here).

        Raises:
            ValueError: If no API key is configured and no client is given.
        """
        self.config = config
        self.model = config.model
        self.temperature = config.temperature

        if client is not None:
            self.client = client
        else:
            if not config.api_key:
                raise ValueError(f"API key is required for the {config.provider} provider")
            self.client = OpenAI(
                api_key=config.api_key,
                base_url=config.base_url or DEFAULT_BASE_URLS.get(config.provider),
                timeout=config.request_timeout,
                max_retries=config.max_retries,
            )

        logger.info(
            "LLM provider initialized",
            extra={"provider": config.provider, "model": self.model},
        )

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
        model_name = model or self.model
        temp = temperature if temperature is not None else self.temperature

        request: dict[str, Any] = {
            "model": model_name,
            "messages": [{"role": "system", "content": system_prompt}, *messages],
            "temperature": temp,
        }
        if max_tokens is not None:
            request["max_tokens"] = max_tokens
        if tools:
            request["tools"] = [_tool_to_openai(t) for t in tools]
        if response_schema is not None:
            request["response_format"] = {
                "type": "json_schema",
                "json_schema": {
                    "name": response_schema.name,
                    "schema": response_schema.schema,
                    "strict": True,
                },
            }

        logger.debug(
            "Requesting completion",
            extra={"model": model_name, "messages": len(messages), "tools": len(tools or [])},
        )

        try:
            response = self.client.chat.completions.create(**request)
        except OpenAIError as e:
            raise CapabilityError("llm", str(e)) from e

        if not response.choices:
            raise CapabilityError("llm", "provider returned no choices")

        message = response.choices[0].message
        text = message.content or ""
        tool_calls = [
            ToolCall(
                id=tc.id,
                name=tc.function.name,
                arguments=_parse_arguments(tc.function.arguments),
                raw_arguments=tc.function.arguments or "",
            )
            for tc in (message.tool_calls or [])
        ]

        usage = None
        if response.usage is not None:
            usage = TokenUsage(
                input_tokens=response.usage.prompt_tokens,
                output_tokens=response.usage.completion_tokens,
            )

        logger.debug(
            "Completion received",
            extra={"model": model_name, "characters": len(text), "tool_calls": len(tool_calls)},
        )
        return Completion(text=text, tool_calls=tool_calls, usage=usage, model=model_name)


def _tool_to_openai(tool: ToolSpec) -> dict[str, Any]:
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _parse_arguments(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("Tool call arguments are not valid JSON", extra={"arguments": raw[:200]})
        return {}
    return parsed if isinstance(parsed, dict) else {}
