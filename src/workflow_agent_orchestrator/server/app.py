"""FastAPI app factory.

Endpoints are thin wrappers over the :class:`Orchestrator`; orchestration
errors are mapped to HTTP status codes here and nowhere else.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, HTTPException, Response
from fastapi.middleware.cors import CORSMiddleware

from workflow_agent_orchestrator import __version__
from workflow_agent_orchestrator.billing.models import Balance, BillingTransaction
from workflow_agent_orchestrator.core.errors import (
    CapabilityError,
    ConfigurationError,
    InsufficientBalance,
    InvalidWorkflow,
    NotFoundError,
    OrchestratorError,
    ReconciliationShortfall,
)
from workflow_agent_orchestrator.core.orchestrator import Orchestrator
from workflow_agent_orchestrator.server.models import (
    BalanceResponse,
    ChatRequest,
    ChatResponse,
    ExecuteRequest,
    ExecutionResponse,
    GrantRequest,
    WorkflowSummary,
)
from workflow_agent_orchestrator.storage.conversations import ConversationMessage
from workflow_agent_orchestrator.storage.records import ExecutionRecord
from workflow_agent_orchestrator.workflow.models import Workflow

logger = logging.getLogger(__name__)


def _http_error(e: OrchestratorError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidWorkflow):
        return HTTPException(status_code=422, detail=str(e))
    if isinstance(e, (InsufficientBalance, ReconciliationShortfall)):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, ConfigurationError):
        return HTTPException(status_code=503, detail=str(e))
    if isinstance(e, CapabilityError):
        return HTTPException(status_code=502, detail=str(e))
    logger.error("Unhandled orchestration error", extra={"error": str(e)})
    return HTTPException(status_code=500, detail=str(e))


def _to_balance(balance: Balance) -> BalanceResponse:
    return BalanceResponse(
        account_id=balance.account_id,
        renewable=balance.renewable,
        permanent=balance.permanent,
        total=balance.total,
    )


def create_app(orchestrator: Orchestrator | None = None) -> FastAPI:
    orch = orchestrator or Orchestrator()

    app = FastAPI(
        title="Workflow Agent Orchestrator",
        version=__version__,
        description="REST API for workflow execution, agent chat and token billing.",
        openapi_url="/api/openapi.json",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
    )
    app.state.orchestrator = orch

    app.add_middleware(
        CORSMiddleware,
        allow_origins=orch.config.server.parsed_cors_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/v1/health")
    def health() -> dict[str, Any]:
        return {
            "status": "ok",
            "chat_enabled": orch.coordinator is not None,
            "billing_enabled": orch.ledger is not None,
        }

    @app.get("/api/v1/workflows", response_model=list[WorkflowSummary])
    def list_workflows() -> list[WorkflowSummary]:
        return [
            WorkflowSummary(
                id=w.id,
                name=w.name,
                description=w.description,
                node_count=len(w.nodes),
                updated_at=w.updated_at,
            )
            for w in orch.workflows.list()
        ]

    @app.post("/api/v1/workflows", status_code=201)
    def save_workflow(definition: dict[str, Any]) -> dict[str, Any]:
        try:
            workflow = orch.workflows.save(Workflow.load(definition))
        except OrchestratorError as e:
            raise _http_error(e) from e
        return workflow.model_dump(mode="json")

    @app.get("/api/v1/workflows/{workflow_id}")
    def get_workflow(workflow_id: str) -> dict[str, Any]:
        try:
            workflow = orch.workflows.get(workflow_id)
        except OrchestratorError as e:
            raise _http_error(e) from e
        if workflow is None:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return workflow.model_dump(mode="json")

    @app.delete("/api/v1/workflows/{workflow_id}", status_code=204)
    def delete_workflow(workflow_id: str) -> Response:
        try:
            deleted = orch.workflows.delete(workflow_id)
        except OrchestratorError as e:
            raise _http_error(e) from e
        if not deleted:
            raise HTTPException(status_code=404, detail="Workflow not found")
        return Response(status_code=204)

    @app.post("/api/v1/workflows/{workflow_id}/execute", response_model=ExecutionResponse)
    def execute_workflow(workflow_id: str, req: ExecuteRequest) -> ExecutionResponse:
        try:
            result = orch.run_workflow(
                workflow_id, req.input, session_id=req.session_id, account_id=req.account_id
            )
        except OrchestratorError as e:
            raise _http_error(e) from e
        return ExecutionResponse.model_validate(result.to_json())

    @app.get("/api/v1/executions", response_model=list[ExecutionRecord])
    def list_executions(
        session_id: str | None = None,
        workflow_id: str | None = None,
        limit: int = 50,
    ) -> list[ExecutionRecord]:
        return orch.records.list(session_id=session_id, workflow_id=workflow_id, limit=limit)

    @app.get("/api/v1/executions/{execution_id}", response_model=ExecutionRecord)
    def get_execution(execution_id: str) -> ExecutionRecord:
        record = orch.records.get(execution_id)
        if record is None:
            raise HTTPException(status_code=404, detail="Execution not found")
        return record

    @app.post("/api/v1/chat", response_model=ChatResponse)
    def chat(req: ChatRequest) -> ChatResponse:
        try:
            result = orch.chat(
                req.message,
                session_id=req.session_id,
                account_id=req.account_id,
                workflow_id=req.workflow_id,
            )
        except OrchestratorError as e:
            raise _http_error(e) from e
        return ChatResponse.model_validate(result.to_json())

    @app.get("/api/v1/conversations/{session_id}", response_model=list[ConversationMessage])
    def conversation(session_id: str, limit: int | None = None) -> list[ConversationMessage]:
        return orch.conversations.history(session_id, limit=limit)

    @app.get("/api/v1/balances/{account_id}", response_model=BalanceResponse)
    def get_balance(account_id: str) -> BalanceResponse:
        return _to_balance(orch.balances.get_balance(account_id))

    @app.post("/api/v1/balances/{account_id}/grant", response_model=BalanceResponse)
    def grant(account_id: str, req: GrantRequest) -> BalanceResponse:
        balance = orch.balances.grant(account_id, renewable=req.renewable, permanent=req.permanent)
        logger.info(
            "Granted billing units",
            extra={"account_id": account_id, "renewable": req.renewable, "permanent": req.permanent},
        )
        return _to_balance(balance)

    @app.get("/api/v1/transactions", response_model=list[BillingTransaction])
    def list_transactions(
        account_id: str | None = None,
        session_id: str | None = None,
    ) -> list[BillingTransaction]:
        return orch.transactions.list(account_id=account_id, session_id=session_id)

    return app
