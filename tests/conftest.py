"""Test configuration and fixtures."""

from __future__ import annotations

import os
import time
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from workflow_agent_orchestrator.billing.costs import ModelCostRegistry
from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.billing.store import BalanceStore, TransactionStore
from workflow_agent_orchestrator.core.config import (
    BillingConfig,
    LLMConfig,
    OrchestratorConfig,
    StateConfig,
)
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.llm.provider import (
    Completion,
    LLMProvider,
    ResponseSchema,
    ToolSpec,
)
from workflow_agent_orchestrator.storage.conversations import ConversationStore
from workflow_agent_orchestrator.storage.records import ExecutionRecordStore
from workflow_agent_orchestrator.storage.workflows import WorkflowStore
from workflow_agent_orchestrator.workflow.capabilities import CapabilityResult
from workflow_agent_orchestrator.workflow.catalog import NodeCatalog
from workflow_agent_orchestrator.workflow.executor import GraphExecutor


class ScriptedProvider(LLMProvider):
    """Reasoning provider that replays canned completions in order."""

    def __init__(self, replies: list[Completion | str] | None = None, model: str = "gpt-4o-mini") -> None:
        self.model = model
        self.replies = list(replies or [])
        self.calls: list[dict[str, Any]] = []

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
        self.calls.append(
            {
                "system_prompt": system_prompt,
                "messages": list(messages),
                "tools": [t.name for t in tools or []],
                "response_schema": response_schema.name if response_schema else None,
                "model": model,
            }
        )
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, str):
            return Completion(text=reply, usage=TokenUsage(input_tokens=40, output_tokens=10))
        return reply


class RecordingCapability:
    """Capability double: records calls and returns scripted values."""

    def __init__(
        self,
        values: list[Any] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
        usage: TokenUsage | None = TokenUsage(input_tokens=12, output_tokens=30),
    ) -> None:
        self.values = list(values or [])
        self.delay = delay
        self.error = error
        self.usage = usage
        self.calls: list[tuple[Any, dict[str, Any]]] = []

    def invoke(self, config: Any, bindings: Mapping[str, Any]) -> CapabilityResult:
        self.calls.append((config, dict(bindings)))
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        value = self.values.pop(0) if self.values else f"echo: {config.prompt}"
        return CapabilityResult(value=value, text=str(value), usage=self.usage)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Keep a developer's .env and ORCHESTRATOR_* variables out of the tests."""
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ):
        if key.startswith("ORCHESTRATOR_"):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Provide a temporary state directory."""
    state_dir = tmp_path / ".state"
    state_dir.mkdir()
    return state_dir


@pytest.fixture
def state_config(temp_state_dir: Path) -> StateConfig:
    """Provide a test state configuration."""
    return StateConfig(storage_path=temp_state_dir)


@pytest.fixture
def orchestrator_config(state_config: StateConfig) -> OrchestratorConfig:
    """Provide a test orchestrator configuration."""
    return OrchestratorConfig(
        log_level="DEBUG",
        log_format="text",
        llm=LLMConfig(provider="openai", api_key=None, model="gpt-4o-mini"),
        state=state_config,
    )


@pytest.fixture
def balances(state_config: StateConfig) -> BalanceStore:
    return BalanceStore(state_config.balances_file)


@pytest.fixture
def transactions(state_config: StateConfig) -> TransactionStore:
    return TransactionStore(state_config.transactions_file)


@pytest.fixture
def ledger(balances: BalanceStore, transactions: TransactionStore) -> TokenLedger:
    return TokenLedger(balances, transactions, ModelCostRegistry(), BillingConfig())


@pytest.fixture
def records(state_config: StateConfig) -> ExecutionRecordStore:
    return ExecutionRecordStore(state_config.executions_file)


@pytest.fixture
def workflow_store(state_config: StateConfig) -> WorkflowStore:
    return WorkflowStore(state_config.workflows_dir)


@pytest.fixture
def conversations(state_config: StateConfig) -> ConversationStore:
    return ConversationStore(state_config.conversations_file)


@pytest.fixture
def llm_capability() -> RecordingCapability:
    return RecordingCapability()


@pytest.fixture
def catalog(llm_capability: RecordingCapability) -> NodeCatalog:
    return NodeCatalog({"llm": llm_capability})


@pytest.fixture
def executor(
    catalog: NodeCatalog, records: ExecutionRecordStore, ledger: TokenLedger
) -> GraphExecutor:
    return GraphExecutor(catalog, records, ledger)


@pytest.fixture
def linear_definition() -> dict[str, Any]:
    """input -> llm -> output, in the editor's node shape."""
    return {
        "id": "linear",
        "name": "Linear",
        "nodes": [
            {"id": "in", "type": "input", "data": {}, "connections": {"target": ["llm"]}},
            {
                "id": "llm",
                "type": "llm",
                "data": {"prompt": "Summarise: {{text}}"},
                "connections": {"source": ["in"], "target": ["out"]},
            },
            {"id": "out", "type": "output", "data": {}, "connections": {"source": ["llm"]}},
        ],
    }
