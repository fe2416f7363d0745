"""Capability adapters: the external work behind billable node types.

A capability receives an already-interpolated node config plus the current
bindings and returns a :class:`CapabilityResult`. Provider failures surface as
:class:`CapabilityError`; any retrying happens here, never in the catalog.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Literal, Protocol

import requests

from workflow_agent_orchestrator.core.config import GenerationConfig
from workflow_agent_orchestrator.core.errors import CapabilityError
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.llm.provider import LLMProvider, ResponseSchema
from workflow_agent_orchestrator.workflow.templates import lookup

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CapabilityResult:
    value: Any
    text: str = ""
    usage: TokenUsage | None = None
    model: str | None = None


class Capability(Protocol):
    def invoke(self, config: Any, bindings: Mapping[str, Any]) -> CapabilityResult: ...


class LLMCapability:
    """Single-turn completion for ``llm`` nodes."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider

    def invoke(self, config: Any, bindings: Mapping[str, Any]) -> CapabilityResult:
        model = config.model or self.provider.model
        completion = self.provider.complete(
            config.system_prompt,
            [{"role": "user", "content": config.prompt}],
            model=model,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
        )
        return CapabilityResult(
            value=completion.text,
            text=completion.text,
            usage=completion.usage,
            model=model,
        )


ANALYSIS_SCHEMA = ResponseSchema(
    name="text_analysis",
    schema={
        "type": "object",
        "properties": {
            "summary": {"type": "string"},
            "label": {"type": "string"},
            "score": {"type": "number"},
            "keywords": {"type": "array", "items": {"type": "string"}},
        },
        "required": ["summary", "label", "score", "keywords"],
        "additionalProperties": False,
    },
)

ANALYSIS_SYSTEM_PROMPT = (
    "You are a text analysis engine. Perform the requested analysis and reply "
    "with JSON only. 'label' is the headline result (e.g. positive/negative/neutral "
    "for sentiment), 'score' is your confidence between 0 and 1."
)


class TextAnalysisCapability:
    """Structured analysis (sentiment, summary, keywords, ...) of one binding."""

    def __init__(self, provider: LLMProvider) -> None:
        self.provider = provider

    def invoke(self, config: Any, bindings: Mapping[str, Any]) -> CapabilityResult:
        text = lookup(config.input_field, bindings)
        if text is None:
            raise CapabilityError("text_analyzer", f"no value bound to {config.input_field!r}")
        if not isinstance(text, str):
            text = json.dumps(text, ensure_ascii=False, default=str)

        model = config.model or self.provider.model
        prompt = f"Analysis type: {config.analysis_type}\n\nText:\n{text}"
        completion = self.provider.complete(
            ANALYSIS_SYSTEM_PROMPT,
            [{"role": "user", "content": prompt}],
            response_schema=ANALYSIS_SCHEMA,
            model=model,
        )

        try:
            parsed = json.loads(completion.text)
        except json.JSONDecodeError:
            parsed = None
        if not isinstance(parsed, dict):
            logger.warning("Analysis reply was not JSON; keeping raw text", extra={"model": model})
            parsed = {"summary": completion.text}

        analysis = {"analysis_type": config.analysis_type, **parsed}
        return CapabilityResult(
            value=analysis,
            text=completion.text,
            usage=completion.usage,
            model=model,
        )


class HttpGenerationCapability:
    """Image or video generation through an HTTP generation service."""

    def __init__(
        self,
        config: GenerationConfig,
        kind: Literal["image", "video"],
        session: requests.Session | None = None,
        sleep: Any = time.sleep,
    ) -> None:
        self.config = config
        self.kind = kind
        self._sleep = sleep
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": "workflow-agent-orchestrator"})
        if config.api_key:
            self._session.headers.update({"Authorization": f"Bearer {config.api_key}"})

    @property
    def name(self) -> str:
        return f"{self.kind}_generator"

    def _url(self) -> str:
        if not self.config.base_url:
            raise CapabilityError(self.name, "generation backend is not configured")
        path = self.config.image_path if self.kind == "image" else self.config.video_path
        return f"{self.config.base_url.rstrip('/')}/{path.lstrip('/')}"

    def _payload(self, config: Any) -> dict[str, Any]:
        payload: dict[str, Any] = {"prompt": config.prompt, "model": config.model}
        if self.kind == "image":
            if config.style:
                payload["style"] = config.style
            if config.size:
                payload["size"] = config.size
        else:
            payload["effects"] = list(config.effects)
            payload["duration"] = config.duration
        return payload

    def invoke(self, config: Any, bindings: Mapping[str, Any]) -> CapabilityResult:
        url = self._url()
        payload = self._payload(config)
        attempts = self.config.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                resp = self._session.post(url, json=payload, timeout=self.config.timeout)
            except (requests.ConnectionError, requests.Timeout) as e:
                if attempt < attempts:
                    self._backoff(attempt, str(e))
                    continue
                raise CapabilityError(self.name, str(e)) from e

            if resp.status_code >= 500 and attempt < attempts:
                self._backoff(attempt, f"HTTP {resp.status_code}")
                continue

            try:
                resp.raise_for_status()
            except requests.HTTPError as e:
                raise CapabilityError(self.name, _error_message(resp)) from e
            break

        try:
            data: dict[str, Any] = resp.json()
        except ValueError as e:
            raise CapabilityError(self.name, "response was not JSON") from e

        media_url = _extract_url(data)
        if not media_url:
            raise CapabilityError(self.name, "response did not include a media URL")

        logger.info(
            "Generated media",
            extra={"capability": self.name, "model": config.model, "attempts": attempt},
        )
        value = {"url": media_url, "prompt": config.prompt, "model": config.model}
        return CapabilityResult(value=value, text=media_url, model=config.model)

    def _backoff(self, attempt: int, reason: str) -> None:
        delay = min(0.5 * 2 ** (attempt - 1), 5.0)
        logger.warning(
            "Generation request failed; retrying",
            extra={"capability": self.name, "attempt": attempt, "reason": reason, "delay": delay},
        )
        self._sleep(delay)


def _extract_url(data: Any) -> str | None:
    if not isinstance(data, dict):
        return None
    for key in ("url", "image_url", "video_url"):
        value = data.get(key)
        if isinstance(value, str) and value:
            return value
    for key in ("images", "videos"):
        items = data.get(key)
        if isinstance(items, list) and items and isinstance(items[0], dict):
            value = items[0].get("url")
            if isinstance(value, str) and value:
                return value
    return None


def _error_message(resp: requests.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("error", "message", "detail"):
            message = body.get(key)
            if isinstance(message, str) and message.strip():
                return f"HTTP {resp.status_code}: {message}"
    return f"HTTP {resp.status_code}"
