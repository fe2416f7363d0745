"""Main orchestrator implementation."""

import logging
import uuid
from typing import Any

import requests

from workflow_agent_orchestrator.agents.coordinator import AgentCoordinator, AgentRunResult
from workflow_agent_orchestrator.billing.costs import ModelCostRegistry
from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.billing.store import BalanceStore, TransactionStore
from workflow_agent_orchestrator.core.config import OrchestratorConfig
from workflow_agent_orchestrator.core.errors import ConfigurationError, NotFoundError
from workflow_agent_orchestrator.llm.factory import LLMFactory
from workflow_agent_orchestrator.llm.provider import LLMProvider
from workflow_agent_orchestrator.storage.conversations import ConversationStore
from workflow_agent_orchestrator.storage.records import ExecutionRecordStore
from workflow_agent_orchestrator.storage.workflows import WorkflowStore
from workflow_agent_orchestrator.workflow.capabilities import (
    Capability,
    HttpGenerationCapability,
    LLMCapability,
    TextAnalysisCapability,
)
from workflow_agent_orchestrator.workflow.catalog import NodeCatalog
from workflow_agent_orchestrator.workflow.executor import ExecutionResult, GraphExecutor

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 20


class Orchestrator:
    """Entry point tying the executor, the agent loop, billing and persistence together.

    Requests carrying a workflow id run that workflow through the graph
    executor; everything else goes to the agent coordinator.
    """

    def __init__(
        self,
        config: OrchestratorConfig | None = None,
        provider: LLMProvider | None = None,
        http_session: requests.Session | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            config: Configuration object. If None, loads from environment.
            provider: Reasoning provider. If None, one is created from the LLM
                config when an API key is available.
            http_session: Session for the generation backend.
        """
        self.config = config or OrchestratorConfig()
        self.config.setup_logging()

        logger.info("Initializing Workflow Agent Orchestrator")

        self.provider: LLMProvider | None = provider or self._create_provider()

        state = self.config.state
        self.records = ExecutionRecordStore(state.executions_file)
        self.workflows = WorkflowStore(state.workflows_dir)
        self.conversations = ConversationStore(state.conversations_file)
        self.balances = BalanceStore(state.balances_file)
        self.transactions = TransactionStore(state.transactions_file)

        self.costs = ModelCostRegistry.from_file(self.config.billing.cost_table_path)
        self.ledger: TokenLedger | None = None
        if self.config.billing.enabled:
            self.ledger = TokenLedger(self.balances, self.transactions, self.costs, self.config.billing)

        self.catalog = NodeCatalog(
            self._capabilities(http_session),
            costs=self.costs,
            default_model=self.provider.model if self.provider else self.config.llm.model,
        )
        self.executor = GraphExecutor(self.catalog, self.records, self.ledger, self.config.execution)

        self.coordinator: AgentCoordinator | None = None
        if self.provider is not None:
            self.coordinator = AgentCoordinator(
                self.provider,
                self.executor,
                self.records,
                conversations=self.conversations,
                workflows=self.workflows,
                ledger=self.ledger,
                config=self.config.agent,
            )

        logger.info("Orchestrator initialized successfully")

    def _create_provider(self) -> LLMProvider | None:
        if not self.config.llm.api_key:
            logger.warning(
                "No LLM API key configured; llm, text_analyzer nodes and chat are disabled",
                extra={"provider": self.config.llm.provider},
            )
            return None
        return LLMFactory.create(self.config.llm)

    def _capabilities(self, http_session: requests.Session | None) -> dict[str, Capability]:
        capabilities: dict[str, Capability] = {}
        if self.provider is not None:
            capabilities["llm"] = LLMCapability(self.provider)
            capabilities["text_analyzer"] = TextAnalysisCapability(self.provider)
        if self.config.generation.base_url:
            capabilities["image_generator"] = HttpGenerationCapability(
                self.config.generation, "image", session=http_session
            )
            capabilities["video_generator"] = HttpGenerationCapability(
                self.config.generation, "video", session=http_session
            )
        return capabilities

    def run_workflow(
        self,
        workflow_id: str,
        input: dict[str, Any],
        session_id: str | None = None,
        account_id: str | None = None,
    ) -> ExecutionResult:
        """Load a saved workflow and execute it.

        Raises:
            NotFoundError: No workflow with this id.
            NoInputNode: The workflow has no unique input node.
        """
        workflow = self.workflows.get(workflow_id)
        if workflow is None:
            raise NotFoundError(f"Workflow not found: {workflow_id}")
        return self.executor.run(workflow, input, session_id or str(uuid.uuid4()), account_id)

    def chat(
        self,
        message: str,
        session_id: str | None = None,
        account_id: str | None = None,
        workflow_id: str | None = None,
    ) -> AgentRunResult:
        """Run one chat turn through the agent coordinator.

        Raises:
            ConfigurationError: No reasoning provider is configured.
            NotFoundError: ``workflow_id`` doesn't name a saved workflow.
        """
        if self.coordinator is None:
            raise ConfigurationError("Chat requires an LLM API key (ORCHESTRATOR_LLM_API_KEY)")

        workflow = None
        if workflow_id:
            workflow = self.workflows.get(workflow_id)
            if workflow is None:
                raise NotFoundError(f"Workflow not found: {workflow_id}")

        session_id = session_id or str(uuid.uuid4())
        history = [
            {"role": m.role, "content": m.content}
            for m in self.conversations.history(session_id, limit=HISTORY_LIMIT)
        ]
        return self.coordinator.run(
            message,
            session_id,
            account_id=account_id,
            workflow=workflow,
            history=history,
        )

    def handle(
        self,
        payload: dict[str, Any],
        session_id: str | None = None,
        account_id: str | None = None,
        workflow_id: str | None = None,
    ) -> dict[str, Any]:
        """Route a request: workflow execution when a workflow id is given, chat otherwise."""
        if workflow_id:
            return self.run_workflow(workflow_id, payload, session_id, account_id).to_json()
        message = payload.get("message")
        if not isinstance(message, str) or not message.strip():
            raise ValueError("payload must include a non-empty 'message' when no workflow id is given")
        return self.chat(message, session_id, account_id).to_json()
