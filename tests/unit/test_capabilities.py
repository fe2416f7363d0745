"""Unit tests for capability adapters."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import Mock

import pytest
import requests
from conftest import ScriptedProvider

from workflow_agent_orchestrator.core.config import GenerationConfig
from workflow_agent_orchestrator.core.errors import CapabilityError
from workflow_agent_orchestrator.workflow.capabilities import (
    HttpGenerationCapability,
    LLMCapability,
    TextAnalysisCapability,
)
from workflow_agent_orchestrator.workflow.models import (
    ImageGeneratorNodeConfig,
    LLMNodeConfig,
    TextAnalyzerNodeConfig,
    VideoGeneratorNodeConfig,
)


def _http_response(status: int, body: Any) -> Mock:
    resp = Mock()
    resp.status_code = status
    resp.json.return_value = body
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status} error")
    else:
        resp.raise_for_status.return_value = None
    return resp


def test_llm_capability_uses_node_model_or_provider_default() -> None:
    provider = ScriptedProvider(["first", "second"])
    capability = LLMCapability(provider)

    result = capability.invoke(LLMNodeConfig(prompt="hi", model="gpt-4o", max_tokens=20), {})
    assert result.value == "first"
    assert result.model == "gpt-4o"
    assert provider.calls[0]["messages"] == [{"role": "user", "content": "hi"}]

    assert capability.invoke(LLMNodeConfig(prompt="again"), {}).model == "gpt-4o-mini"


def test_text_analysis_returns_structured_result() -> None:
    reply = json.dumps({"summary": "upbeat", "label": "positive", "score": 0.9, "keywords": ["great"]})
    provider = ScriptedProvider([reply, "not json at all"])
    capability = TextAnalysisCapability(provider)
    config = TextAnalyzerNodeConfig(input_field="review.body")

    result = capability.invoke(config, {"review": {"body": "Great product"}})

    assert result.value["analysis_type"] == "sentiment"
    assert result.value["label"] == "positive"
    assert "Great product" in provider.calls[0]["messages"][0]["content"]
    assert provider.calls[0]["response_schema"] == "text_analysis"

    fallback = capability.invoke(config, {"review": {"body": "meh"}})
    assert fallback.value == {"analysis_type": "sentiment", "summary": "not json at all"}


def test_text_analysis_requires_a_bound_input() -> None:
    capability = TextAnalysisCapability(ScriptedProvider())
    with pytest.raises(CapabilityError, match="no value bound to 'text'"):
        capability.invoke(TextAnalyzerNodeConfig(), {})


def test_image_generation_posts_and_extracts_the_url() -> None:
    session = Mock()
    session.headers = {}
    session.post.return_value = _http_response(200, {"images": [{"url": "https://cdn.example/owl.png"}]})
    config = GenerationConfig(base_url="https://gen.example/", api_key="secret")
    capability = HttpGenerationCapability(config, "image", session=session)

    result = capability.invoke(ImageGeneratorNodeConfig(prompt="an owl", size="512x512"), {})

    assert result.value == {
        "url": "https://cdn.example/owl.png",
        "prompt": "an owl",
        "model": "fal-ai/flux/schnell",
    }
    args, kwargs = session.post.call_args
    assert args[0] == "https://gen.example/api/generate"
    assert kwargs["json"] == {"prompt": "an owl", "model": "fal-ai/flux/schnell", "size": "512x512"}
    assert session.headers["Authorization"] == "Bearer secret"


def test_video_generation_retries_transient_failures() -> None:
    session = Mock()
    session.headers = {}
    session.post.side_effect = [
        requests.ConnectionError("reset"),
        _http_response(503, {}),
        _http_response(200, {"video_url": "https://cdn.example/clip.mp4"}),
    ]
    sleeps: list[float] = []
    config = GenerationConfig(base_url="https://gen.example", max_retries=2)
    capability = HttpGenerationCapability(config, "video", session=session, sleep=sleeps.append)

    result = capability.invoke(VideoGeneratorNodeConfig(prompt="waves", effects=["slowmo"]), {})

    assert result.text == "https://cdn.example/clip.mp4"
    assert sleeps == [0.5, 1.0]
    assert session.post.call_args.args[0] == "https://gen.example/api/video-effects/generate"
    assert session.post.call_args.kwargs["json"]["effects"] == ["slowmo"]


def test_generation_errors_are_capability_errors() -> None:
    session = Mock()
    session.headers = {}
    session.post.return_value = _http_response(400, {"error": "prompt rejected"})
    capability = HttpGenerationCapability(GenerationConfig(base_url="https://gen.example"), "image", session=session)

    with pytest.raises(CapabilityError, match="HTTP 400: prompt rejected"):
        capability.invoke(ImageGeneratorNodeConfig(prompt="x"), {})

    unconfigured = HttpGenerationCapability(GenerationConfig(), "image", session=session)
    with pytest.raises(CapabilityError, match="not configured"):
        unconfigured.invoke(ImageGeneratorNodeConfig(prompt="x"), {})
