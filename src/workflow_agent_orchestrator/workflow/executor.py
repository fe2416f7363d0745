"""Graph executor: walks a workflow from its input node to its outputs.

Bindings are threaded forward depth-first along outbound connections. Each
node runs at most once per execution (loop bodies excepted), a conditional
continues only into its chosen branch, and an output node ends its branch.
Billable nodes are charged through the ledger when an account is given.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.core.config import ExecutionConfig
from workflow_agent_orchestrator.core.deadline import Deadline
from workflow_agent_orchestrator.core.errors import OrchestratorError, PersistenceError
from workflow_agent_orchestrator.core.usage import TokenCounter
from workflow_agent_orchestrator.storage.records import (
    ExecutionKind,
    ExecutionRecordStore,
    NodeLog,
)
from workflow_agent_orchestrator.workflow.catalog import NodeCatalog, NodeOutcome
from workflow_agent_orchestrator.workflow.models import LoopNodeConfig, Node, Workflow
from workflow_agent_orchestrator.workflow.state_machine import ExecutionStatus

logger = logging.getLogger(__name__)


@dataclass
class ExecutionContext:
    session_id: str
    account_id: str | None
    deadline: Deadline
    bindings: dict[str, Any]
    execution_id: str | None = None
    tokens: TokenCounter = field(default_factory=TokenCounter)
    model_costs: int = 0
    charged_units: int = 0
    visited: list[str] = field(default_factory=list)
    transactions: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    execution_id: str
    status: ExecutionStatus
    output: dict[str, Any]
    error: str | None = None
    token_usage: dict[str, int] = field(default_factory=dict)
    model_costs: int = 0
    charged_units: int = 0
    visited: list[str] = field(default_factory=list)
    # The orchestration error behind a failed result; not part of the JSON view.
    failure: OrchestratorError | None = field(default=None, repr=False, compare=False)

    @property
    def succeeded(self) -> bool:
        return self.status is ExecutionStatus.COMPLETED

    def to_json(self) -> dict[str, Any]:
        return {
            "execution_id": self.execution_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "token_usage": self.token_usage,
            "model_costs": self.model_costs,
            "charged_units": self.charged_units,
            "visited": self.visited,
        }


def _summarize(value: Any, limit: int = 500) -> Any:
    if isinstance(value, str) and len(value) > limit:
        return value[:limit] + "…"
    return value


def _captured(node: Node, outcome: NodeOutcome) -> Any:
    """What a node contributed, for its node log."""
    if outcome.loop_continue is not None:
        return {"continue": outcome.loop_continue}
    if outcome.next_node_ids is not None:
        return {"next": list(outcome.next_node_ids)}
    output_key = getattr(node.config, "output_key", None)
    if output_key and output_key in outcome.bindings:
        value = outcome.bindings[output_key]
        return _summarize(value if isinstance(value, str) else json.dumps(value, default=str))
    if outcome.text:
        return _summarize(outcome.text)
    return {"bindings": sorted(outcome.bindings)}


class GraphExecutor:
    """Run workflows and single nodes."""

    def __init__(
        self,
        catalog: NodeCatalog,
        records: ExecutionRecordStore,
        ledger: TokenLedger | None = None,
        config: ExecutionConfig | None = None,
    ) -> None:
        self.catalog = catalog
        self.records = records
        self.ledger = ledger
        self.config = config or ExecutionConfig()

    def _deadline_for(self, workflow: Workflow, outer: Deadline | None = None) -> Deadline:
        settings = workflow.settings
        if "max_execution_time" in settings.model_fields_set:
            own = Deadline(settings.max_execution_time)
        else:
            own = Deadline(self.config.default_max_execution_time)
        return own if outer is None else Deadline.earliest(own, outer)

    def run(
        self,
        workflow: Workflow,
        input: dict[str, Any],
        session_id: str,
        account_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> ExecutionResult:
        """Execute ``workflow`` against ``input``.

        Orchestration failures (bad node config, capability errors, billing
        errors, timeouts) are recorded on the execution and returned as a
        failed result carrying the error as ``failure``. A caller running
        under its own budget passes ``deadline``; the run then stops at
        whichever of the two budgets ends first.

        Raises:
            NoInputNode: The workflow has no unique input node; no record is created.
            PersistenceError: The execution record couldn't be created or its
                status couldn't be written.
        """
        root = workflow.find_root()

        record = self.records.create(
            session_id=session_id,
            kind=ExecutionKind.WORKFLOW,
            input=input,
            workflow_id=workflow.id,
        )
        self.records.update(record.id, status=ExecutionStatus.RUNNING)

        ctx = ExecutionContext(
            session_id=session_id,
            account_id=account_id,
            deadline=self._deadline_for(workflow, deadline),
            bindings=dict(input),
            execution_id=record.id,
        )
        logger.info(
            "Workflow execution started",
            extra={"execution_id": record.id, "workflow_id": workflow.id, "session_id": session_id},
        )

        try:
            self._visit(workflow, root, ctx)
        except OrchestratorError as e:
            logger.warning(
                "Workflow execution failed",
                extra={"execution_id": record.id, "workflow_id": workflow.id, "error": str(e)},
            )
            self._finish(ctx, ExecutionStatus.FAILED, error=str(e))
            return self._result(ctx, ExecutionStatus.FAILED, error=str(e), failure=e)
        except Exception as e:
            logger.exception("Unexpected error during workflow execution", extra={"execution_id": record.id})
            self._finish(ctx, ExecutionStatus.FAILED, error=f"Unexpected error: {e}")
            raise

        self._finish(ctx, ExecutionStatus.COMPLETED)
        logger.info(
            "Workflow execution completed",
            extra={
                "execution_id": record.id,
                "workflow_id": workflow.id,
                "nodes": len(ctx.visited),
                "charged_units": ctx.charged_units,
            },
        )
        return self._result(ctx, ExecutionStatus.COMPLETED)

    def execute_node(
        self,
        node: Node,
        bindings: dict[str, Any],
        session_id: str,
        account_id: str | None = None,
        deadline: Deadline | None = None,
    ) -> NodeOutcome:
        """Run a single node outside any workflow walk (billing still applies)."""
        ctx = ExecutionContext(
            session_id=session_id,
            account_id=account_id,
            deadline=deadline or Deadline(self.config.default_max_execution_time),
            bindings=dict(bindings),
        )
        return self._invoke(node, ctx)

    def _visit(self, workflow: Workflow, node: Node, ctx: ExecutionContext) -> None:
        if node.id in ctx.visited:
            return
        ctx.deadline.check(f"workflow {workflow.id}")

        outcome = self._execute(node, ctx)
        if outcome.terminal:
            return
        if isinstance(node.config, LoopNodeConfig):
            self._run_loop(workflow, node, node.config, bool(outcome.loop_continue), ctx)

        next_ids = outcome.next_node_ids
        if next_ids is None:
            next_ids = tuple(node.connections.targets)
        for next_id in next_ids:
            self._visit(workflow, workflow.node(next_id), ctx)

    def _run_loop(
        self,
        workflow: Workflow,
        node: Node,
        cfg: LoopNodeConfig,
        should_continue: bool,
        ctx: ExecutionContext,
    ) -> None:
        limit = min(cfg.max_iterations, self.config.loop_iteration_ceiling)
        iterations = 0
        while should_continue and iterations < limit:
            ctx.deadline.check(f"loop {node.id}")
            for body_id in cfg.body:
                self._execute(workflow.node(body_id), ctx)
            iterations += 1
            should_continue = bool(self.catalog.execute("loop", cfg, ctx.bindings).loop_continue)

        if should_continue:
            logger.warning(
                "Loop stopped at iteration limit",
                extra={"execution_id": ctx.execution_id, "node_id": node.id, "limit": limit},
            )
        ctx.bindings = {
            **ctx.bindings,
            cfg.output_key: {"iterations": iterations, "truncated": should_continue},
        }

    def _execute(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        if node.id not in ctx.visited:
            ctx.visited.append(node.id)
        self._log(ctx, node, "started")
        started = time.monotonic()
        try:
            outcome = self._invoke(node, ctx)
        except OrchestratorError as e:
            self._log(ctx, node, "failed", error=str(e), started=started)
            raise

        ctx.bindings = outcome.bindings
        ctx.tokens.add(outcome.usage)
        ctx.model_costs += outcome.cost
        self._log(ctx, node, "completed", output=_captured(node, outcome), started=started)
        return outcome

    def _invoke(self, node: Node, ctx: ExecutionContext) -> NodeOutcome:
        quote = self.catalog.quote(node.type, node.config, ctx.bindings)
        if quote is None:
            return self.catalog.execute(node.type, node.config, ctx.bindings)

        bindings = ctx.bindings

        def call() -> NodeOutcome:
            return ctx.deadline.run(
                f"node {node.id}", self.catalog.execute, node.type, node.config, bindings
            )

        if self.ledger is None or ctx.account_id is None:
            return call()

        outcome, transaction = self.ledger.charge_for(
            ctx.account_id,
            ctx.session_id,
            quote.model,
            quote.input_text,
            call,
            flat=quote.flat,
            operation=f"node:{node.type}",
        )
        ctx.charged_units += transaction.actual_charge_amount or 0
        ctx.transactions.append(transaction.id)
        return outcome

    def _log(
        self,
        ctx: ExecutionContext,
        node: Node,
        status: str,
        output: Any = None,
        error: str | None = None,
        started: float | None = None,
    ) -> None:
        if ctx.execution_id is None:
            return
        entry = NodeLog(
            node_id=node.id,
            node_type=node.type,
            status=status,
            at=datetime.now(tz=UTC).isoformat(),
            output=output,
            error=error,
            duration_ms=(time.monotonic() - started) * 1000 if started is not None else None,
        )
        try:
            self.records.append_node_log(ctx.execution_id, entry)
        except (PersistenceError, KeyError) as e:
            logger.warning(
                "Unable to record node log",
                extra={"execution_id": ctx.execution_id, "node_id": node.id, "error": str(e)},
            )

    def _finish(self, ctx: ExecutionContext, status: ExecutionStatus, error: str | None = None) -> None:
        if ctx.execution_id is None:
            return
        self.records.update(
            ctx.execution_id,
            status=status,
            output=ctx.bindings if status is ExecutionStatus.COMPLETED else None,
            error=error,
            token_usage=ctx.tokens.to_json(),
            model_costs=ctx.model_costs,
            charged_units=ctx.charged_units,
        )

    def _result(
        self,
        ctx: ExecutionContext,
        status: ExecutionStatus,
        error: str | None = None,
        failure: OrchestratorError | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            execution_id=ctx.execution_id or "",
            status=status,
            output=ctx.bindings,
            error=error,
            token_usage=ctx.tokens.to_json(),
            model_costs=ctx.model_costs,
            charged_units=ctx.charged_units,
            visited=list(ctx.visited),
            failure=failure,
        )
