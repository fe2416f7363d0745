"""Unit tests for the graph executor."""

from __future__ import annotations

import time
from typing import Any

import pytest
from conftest import RecordingCapability

from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.billing.models import TransactionStatus
from workflow_agent_orchestrator.billing.store import BalanceStore, TransactionStore
from workflow_agent_orchestrator.core.config import ExecutionConfig
from workflow_agent_orchestrator.core.deadline import Deadline
from workflow_agent_orchestrator.core.errors import (
    CapabilityError,
    ExecutionTimeout,
    InsufficientBalance,
    NoInputNode,
    PersistenceError,
    ReconciliationShortfall,
)
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.storage.records import ExecutionRecordStore
from workflow_agent_orchestrator.workflow.catalog import NodeCatalog
from workflow_agent_orchestrator.workflow.executor import GraphExecutor
from workflow_agent_orchestrator.workflow.models import Workflow
from workflow_agent_orchestrator.workflow.state_machine import ExecutionStatus


def _node(node_id: str, node_type: str, targets: list[str] | None = None, **data: Any) -> dict[str, Any]:
    return {"id": node_id, "type": node_type, "data": data, "connections": {"target": targets or []}}


def test_linear_workflow_threads_bindings(
    executor: GraphExecutor,
    records: ExecutionRecordStore,
    llm_capability: RecordingCapability,
    linear_definition: dict[str, Any],
) -> None:
    workflow = Workflow.load(linear_definition)

    result = executor.run(workflow, {"text": "quarterly report"}, session_id="s1")

    assert result.succeeded
    assert result.output == {
        "text": "quarterly report",
        "llm_response": "echo: Summarise: quarterly report",
    }
    assert result.visited == ["in", "llm", "out"]
    assert result.token_usage == {"input": 12, "output": 30}
    assert result.charged_units == 0

    record = records.get(result.execution_id)
    assert record is not None
    assert record.status is ExecutionStatus.COMPLETED
    assert record.output == result.output
    assert record.started_at is not None and record.completed_at is not None
    assert [(log.node_id, log.status) for log in record.node_logs] == [
        ("in", "started"),
        ("in", "completed"),
        ("llm", "started"),
        ("llm", "completed"),
        ("out", "started"),
        ("out", "completed"),
    ]


def test_conditional_follows_only_the_chosen_branch(executor: GraphExecutor) -> None:
    workflow = Workflow.load(
        {
            "nodes": [
                _node("in", "input", ["check"]),
                _node("check", "conditional", condition="approved", true_branch="yes", false_branch="no"),
                _node("yes", "llm", ["out"], prompt="approve", output_key="decision"),
                _node("no", "llm", ["out"], prompt="reject", output_key="decision"),
                _node("out", "output"),
            ]
        }
    )

    approved = executor.run(workflow, {"approved": True}, session_id="s1")
    assert approved.output["decision"] == "echo: approve"
    assert "no" not in approved.visited

    # An absent key counts as false.
    rejected = executor.run(workflow, {}, session_id="s1")
    assert rejected.output["decision"] == "echo: reject"
    assert rejected.visited == ["in", "check", "no", "out"]


def test_sibling_targets_see_earlier_siblings_and_diamonds_run_once(
    executor: GraphExecutor, llm_capability: RecordingCapability
) -> None:
    workflow = Workflow.load(
        {
            "nodes": [
                _node("in", "input", ["a", "b"]),
                _node("a", "llm", ["join"], prompt="first", output_key="a"),
                _node("b", "llm", ["join"], prompt="second sees {{a}}", output_key="b"),
                _node("join", "llm", ["out"], prompt="{{a}} + {{b}}", output_key="joined"),
                _node("out", "output"),
            ]
        }
    )

    result = executor.run(workflow, {}, session_id="s1")

    assert result.succeeded
    assert result.visited == ["in", "a", "join", "out", "b"]
    assert result.output["b"] == "echo: second sees echo: first"
    assert len(llm_capability.calls) == 3


def test_loop_runs_body_until_condition_is_false(records: ExecutionRecordStore) -> None:
    capability = RecordingCapability(values=["again", ""])
    executor = GraphExecutor(NodeCatalog({"llm": capability}), records)
    workflow = Workflow.load(
        {
            "nodes": [
                _node("in", "input", ["loop"]),
                _node("loop", "loop", ["out"], condition="more", body=["step"], output_key="rounds"),
                _node("step", "llm", prompt="refine", output_key="more"),
                _node("out", "output"),
            ]
        }
    )

    result = executor.run(workflow, {"more": True}, session_id="s1")

    assert result.succeeded
    assert len(capability.calls) == 2
    assert result.output["rounds"] == {"iterations": 2, "truncated": False}
    assert result.visited == ["in", "loop", "step", "out"]


def test_loop_is_bounded_by_the_iteration_ceiling(records: ExecutionRecordStore) -> None:
    capability = RecordingCapability(values=["yes"] * 20)
    executor = GraphExecutor(
        NodeCatalog({"llm": capability}), records, config=ExecutionConfig(loop_iteration_ceiling=3)
    )
    workflow = Workflow.load(
        {
            "nodes": [
                _node("in", "input", ["loop"]),
                _node("loop", "loop", condition="more", body=["step"], max_iterations=50),
                _node("step", "llm", prompt="again", output_key="more"),
            ]
        }
    )

    result = executor.run(workflow, {"more": True}, session_id="s1")

    assert result.output["loop"] == {"iterations": 3, "truncated": True}
    assert len(capability.calls) == 3


def test_capability_failure_marks_execution_failed(
    records: ExecutionRecordStore, linear_definition: dict[str, Any]
) -> None:
    capability = RecordingCapability(error=CapabilityError("llm", "rate limited"))
    executor = GraphExecutor(NodeCatalog({"llm": capability}), records)

    result = executor.run(Workflow.load(linear_definition), {"text": "x"}, session_id="s1")

    assert result.status is ExecutionStatus.FAILED
    assert result.error == "llm failed: rate limited"
    record = records.get(result.execution_id)
    assert record is not None
    assert record.status is ExecutionStatus.FAILED
    assert record.node_logs[-1].status == "failed"


def test_missing_input_node_creates_no_record(
    executor: GraphExecutor, records: ExecutionRecordStore
) -> None:
    workflow = Workflow.load({"nodes": [_node("out", "output")]})
    with pytest.raises(NoInputNode):
        executor.run(workflow, {}, session_id="s1")
    assert records.list() == []


def test_billable_nodes_are_charged_to_the_account(
    executor: GraphExecutor,
    balances: BalanceStore,
    transactions: TransactionStore,
    linear_definition: dict[str, Any],
) -> None:
    balances.grant("acct", renewable=5, permanent=5)

    result = executor.run(Workflow.load(linear_definition), {"text": "hi"}, session_id="s1", account_id="acct")

    assert result.succeeded
    [tx] = transactions.list(account_id="acct")
    assert tx.operation == "node:llm"
    assert tx.status in (TransactionStatus.COMPLETED, TransactionStatus.ADJUSTED)
    assert result.charged_units == tx.actual_charge_amount == 1
    assert balances.get_balance("acct").total == 9


def test_insufficient_balance_fails_without_calling_the_capability(
    executor: GraphExecutor,
    llm_capability: RecordingCapability,
    transactions: TransactionStore,
    linear_definition: dict[str, Any],
) -> None:
    result = executor.run(Workflow.load(linear_definition), {"text": "hi"}, session_id="s1", account_id="broke")

    assert result.status is ExecutionStatus.FAILED
    assert "Insufficient balance" in (result.error or "")
    assert isinstance(result.failure, InsufficientBalance)
    assert llm_capability.calls == []
    assert transactions.list() == []


def test_timed_out_node_refunds_its_reservation(
    records: ExecutionRecordStore,
    ledger: TokenLedger,
    balances: BalanceStore,
    transactions: TransactionStore,
    linear_definition: dict[str, Any],
) -> None:
    balances.grant("acct", renewable=3)
    executor = GraphExecutor(NodeCatalog({"llm": RecordingCapability(delay=1.0)}), records, ledger)
    workflow = Workflow.load({**linear_definition, "settings": {"max_execution_time": 0.1}})

    result = executor.run(workflow, {"text": "slow"}, session_id="s1", account_id="acct")

    assert result.status is ExecutionStatus.FAILED
    assert "timed out" in (result.error or "")
    [tx] = transactions.list()
    assert tx.status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 3


def test_node_log_failures_do_not_abort_the_run(
    executor: GraphExecutor,
    records: ExecutionRecordStore,
    linear_definition: dict[str, Any],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def unwritable(*_args: object) -> None:
        raise PersistenceError("disk full")

    monkeypatch.setattr(records, "append_node_log", unwritable)

    result = executor.run(Workflow.load(linear_definition), {"text": "x"}, session_id="s1")

    assert result.succeeded
    record = records.get(result.execution_id)
    assert record is not None
    assert record.status is ExecutionStatus.COMPLETED
    assert record.node_logs == []


def test_reconciliation_shortfall_fails_the_run_and_refunds(
    records: ExecutionRecordStore,
    ledger: TokenLedger,
    balances: BalanceStore,
    transactions: TransactionStore,
    linear_definition: dict[str, Any],
) -> None:
    balances.grant("acct", renewable=1)
    verbose = RecordingCapability(usage=TokenUsage(input_tokens=90_000, output_tokens=90_000))
    executor = GraphExecutor(NodeCatalog({"llm": verbose}), records, ledger)

    result = executor.run(Workflow.load(linear_definition), {"text": "hi"}, session_id="s1", account_id="acct")

    assert result.status is ExecutionStatus.FAILED
    assert isinstance(result.failure, ReconciliationShortfall)
    assert "Insufficient balance to reconcile" in (result.error or "")
    record = records.get(result.execution_id)
    assert record is not None and record.status is ExecutionStatus.FAILED
    [tx] = transactions.list()
    assert tx.status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 1


def test_caller_deadline_bounds_the_run(records: ExecutionRecordStore, linear_definition: dict[str, Any]) -> None:
    executor = GraphExecutor(NodeCatalog({"llm": RecordingCapability(delay=1.0)}), records)

    started = time.monotonic()
    result = executor.run(Workflow.load(linear_definition), {"text": "x"}, session_id="s1", deadline=Deadline(0.1))

    assert time.monotonic() - started < 0.9
    assert result.status is ExecutionStatus.FAILED
    assert isinstance(result.failure, ExecutionTimeout)


def test_node_logs_capture_each_nodes_contribution(
    executor: GraphExecutor, records: ExecutionRecordStore, linear_definition: dict[str, Any]
) -> None:
    result = executor.run(Workflow.load(linear_definition), {"text": "notes"}, session_id="s1")

    record = records.get(result.execution_id)
    assert record is not None
    completed = {log.node_id: log.output for log in record.node_logs if log.status == "completed"}
    assert completed == {
        "in": {"bindings": ["text"]},
        "llm": "echo: Summarise: notes",
        "out": {"bindings": ["llm_response", "text"]},
    }
