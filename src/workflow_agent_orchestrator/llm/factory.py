"""Factory for creating reasoning providers from configuration."""

import logging
from collections.abc import Callable

from workflow_agent_orchestrator.core.config import LLMConfig
from workflow_agent_orchestrator.llm.openai_provider import OpenAIProvider
from workflow_agent_orchestrator.llm.provider import LLMProvider

logger = logging.getLogger(__name__)

# xAI serves the OpenAI wire protocol; only the base URL differs.
PROVIDERS: dict[str, Callable[[LLMConfig], LLMProvider]] = {
    "openai": OpenAIProvider,
    "xai": OpenAIProvider,
}


class LLMFactory:
    """Builds the configured provider."""

    @staticmethod
    def create(config: LLMConfig) -> LLMProvider:
        """Create the provider named by ``config.provider``.

        Raises:
            ValueError: Unknown provider, or the provider rejected the config
                (e.g. a missing API key).
        """
        builder = PROVIDERS.get(config.provider)
        if builder is None:
            raise ValueError(f"Unsupported LLM provider: {config.provider}")

        provider = builder(config)
        logger.debug(
            "LLM provider selected",
            extra={"provider": config.provider, "model": provider.model},
        )
        return provider
