"""Unit tests for the token ledger: reserve, settle, refund."""

from __future__ import annotations

import time

import pytest

from workflow_agent_orchestrator.billing.costs import CostKind
from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.billing.models import TransactionStatus, check_transition
from workflow_agent_orchestrator.billing.store import BalanceStore, StaleBalance, TransactionStore
from workflow_agent_orchestrator.core.deadline import Deadline
from workflow_agent_orchestrator.core.errors import (
    BillingError,
    ExecutionTimeout,
    IllegalTransitionError,
    InsufficientBalance,
    PersistenceError,
    ReconciliationShortfall,
    TransactionNotPending,
    UnknownTransaction,
)
from workflow_agent_orchestrator.core.usage import TokenUsage
from workflow_agent_orchestrator.llm.provider import Completion


def test_reserve_takes_renewable_first(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=4, permanent=10)

    tx = ledger.reserve("acct", "s1", 10, "gpt-4o-mini")

    assert (tx.renewable_portion, tx.permanent_portion) == (4, 6)
    assert tx.status is TransactionStatus.PENDING
    balance = balances.get_balance("acct")
    assert (balance.renewable, balance.permanent) == (0, 4)


def test_reserve_boundary(ledger: TokenLedger, balances: BalanceStore, transactions: TransactionStore) -> None:
    balances.grant("exact", renewable=2, permanent=3)
    balances.grant("short", renewable=2, permanent=3)

    ledger.reserve("exact", "s1", 5, "gpt-4o-mini")
    assert balances.get_balance("exact").total == 0

    with pytest.raises(InsufficientBalance) as excinfo:
        ledger.reserve("short", "s1", 6, "gpt-4o-mini")
    assert (excinfo.value.required, excinfo.value.available) == (6, 5)
    assert balances.get_balance("short").total == 5
    assert transactions.list(account_id="short") == []


def test_settle_below_reservation_credits_renewable(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=4, permanent=10)
    tx = ledger.reserve("acct", "s1", 10, "gpt-4o-mini")

    settled = ledger.settle(tx.id, 7)

    assert settled.status is TransactionStatus.ADJUSTED
    assert settled.adjustment_amount == -3
    assert settled.actual_charge_amount == 7
    assert settled.completed_at is not None
    balance = balances.get_balance("acct")
    assert (balance.renewable, balance.permanent) == (3, 4)


def test_settle_exact_amount_completes(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=10)
    tx = ledger.reserve("acct", "s1", 6, "gpt-4o-mini")

    settled = ledger.settle(tx.id, 6)

    assert settled.status is TransactionStatus.COMPLETED
    assert settled.adjustment_amount == 0
    assert balances.get_balance("acct").total == 4


def test_settle_above_reservation_debits_the_difference(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=10)
    tx = ledger.reserve("acct", "s1", 4, "gpt-4o-mini")

    settled = ledger.settle(tx.id, 7)

    assert settled.status is TransactionStatus.ADJUSTED
    assert settled.adjustment_amount == 3
    assert balances.get_balance("acct").total == 3


def test_shortfall_refunds_the_reservation(
    ledger: TokenLedger, balances: BalanceStore, transactions: TransactionStore
) -> None:
    balances.grant("acct", renewable=10)
    tx = ledger.reserve("acct", "s1", 10, "gpt-4o-mini")

    with pytest.raises(ReconciliationShortfall) as excinfo:
        ledger.settle(tx.id, 12)

    assert excinfo.value.available == 0
    assert transactions.get(tx.id).status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 10


def test_refund_round_trip_and_double_refund(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=2, permanent=3)
    tx = ledger.reserve("acct", "s1", 5, "gpt-4o-mini")

    refunded = ledger.refund(tx.id)

    assert refunded.status is TransactionStatus.REFUNDED
    balance = balances.get_balance("acct")
    assert balance.total == 5
    assert (balance.renewable, balance.permanent) == (5, 0)

    with pytest.raises(TransactionNotPending):
        ledger.refund(tx.id)
    with pytest.raises(TransactionNotPending):
        ledger.settle(tx.id, 1)
    assert balances.get_balance("acct").total == 5


def test_unknown_transaction(ledger: TokenLedger) -> None:
    with pytest.raises(UnknownTransaction):
        ledger.refund("nope")


def test_pre_charge_uses_the_estimate(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=100)

    tx = ledger.pre_charge("acct", "s1", "Summarise the meeting notes", "gpt-4o")
    assert tx.pre_charge_amount == 2
    assert tx.metering is CostKind.TOKEN

    flat = ledger.pre_charge("acct", "s1", "a red fox", "fal-ai/flux/dev", flat=True)
    assert flat.pre_charge_amount == 10
    assert flat.metering is CostKind.FLAT


def test_charge_for_settles_on_success(ledger: TokenLedger, balances: BalanceStore) -> None:
    balances.grant("acct", renewable=10)

    def call() -> Completion:
        return Completion(text="done", usage=TokenUsage(input_tokens=4000, output_tokens=2500))

    completion, tx = ledger.charge_for("acct", "s1", "gpt-4o-mini", "x" * 4000, call)

    assert completion.text == "done"
    assert tx.actual_charge_amount == 3
    assert tx.usage is not None and tx.usage["calculation_method"] == "actual"
    assert balances.get_balance("acct").total == 7


def test_charge_for_refunds_when_the_call_fails(
    ledger: TokenLedger, balances: BalanceStore, transactions: TransactionStore
) -> None:
    balances.grant("acct", renewable=10)

    def call() -> Completion:
        raise RuntimeError("provider exploded")

    with pytest.raises(RuntimeError):
        ledger.charge_for("acct", "s1", "gpt-4o-mini", "hello", call)

    [tx] = transactions.list()
    assert tx.status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 10


def test_timeout_leaves_the_transaction_refunded(
    ledger: TokenLedger, balances: BalanceStore, transactions: TransactionStore
) -> None:
    balances.grant("acct", renewable=10)
    deadline = Deadline(0.05)

    def slow() -> Completion:
        time.sleep(0.5)
        return Completion(text="too late")

    with pytest.raises(ExecutionTimeout):
        ledger.charge_for("acct", "s1", "gpt-4o-mini", "hello", lambda: deadline.run("slow", slow))

    [tx] = transactions.list()
    assert tx.status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 10


def test_debit_gives_up_when_the_balance_keeps_changing(
    balances: BalanceStore, transactions: TransactionStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    balances.grant("acct", renewable=10)
    ledger = TokenLedger(balances, transactions)

    def always_stale(*_args: object, **_kwargs: object) -> None:
        raise StaleBalance("acct")

    monkeypatch.setattr(balances, "debit", always_stale)

    with pytest.raises(BillingError, match="gave up after 3 attempts"):
        ledger.reserve("acct", "s1", 1, "gpt-4o-mini")
    assert transactions.list() == []


def test_balance_store_compare_and_debit(balances: BalanceStore) -> None:
    balances.grant("acct", renewable=5)
    observed = balances.get_balance("acct")
    balances.grant("acct", permanent=1)

    with pytest.raises(StaleBalance):
        balances.debit("acct", 1, 0, expected=observed)
    with pytest.raises(InsufficientBalance):
        balances.debit("acct", 6, 0)
    assert balances.debit("acct", 5, 1).total == 0


def test_terminal_transactions_cannot_transition() -> None:
    check_transition(TransactionStatus.PENDING, TransactionStatus.ADJUSTED)
    with pytest.raises(IllegalTransitionError):
        check_transition(TransactionStatus.REFUNDED, TransactionStatus.COMPLETED)


def test_charge_for_refunds_when_settlement_fails(
    ledger: TokenLedger,
    balances: BalanceStore,
    transactions: TransactionStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    balances.grant("acct", renewable=1000)
    real_debit = balances.debit
    debits: list[int] = []

    def stale_after_reservation(*args: object, **kwargs: object) -> object:
        debits.append(1)
        if len(debits) > 1:
            raise StaleBalance("acct")
        return real_debit(*args, **kwargs)  # type: ignore[arg-type]

    monkeypatch.setattr(balances, "debit", stale_after_reservation)

    def call() -> Completion:
        return Completion(text="long", usage=TokenUsage(input_tokens=90_000, output_tokens=90_000))

    with pytest.raises(BillingError, match="gave up"):
        ledger.charge_for("acct", "s1", "gpt-4o-mini", "hello", call)

    [tx] = transactions.list()
    assert tx.status is TransactionStatus.REFUNDED
    assert balances.get_balance("acct").total == 1000


def test_failed_status_write_undoes_the_adjustment(
    ledger: TokenLedger,
    balances: BalanceStore,
    transactions: TransactionStore,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    balances.grant("acct", renewable=20)
    tx = ledger.reserve("acct", "s1", 10, "gpt-4o-mini")

    def broken_update(*_args: object, **_kwargs: object) -> None:
        raise PersistenceError("disk full")

    with monkeypatch.context() as m:
        m.setattr(transactions, "update", broken_update)
        with pytest.raises(PersistenceError):
            ledger.settle(tx.id, 7)

    assert transactions.get(tx.id).status is TransactionStatus.PENDING
    assert balances.get_balance("acct").total == 10

    ledger.refund(tx.id)
    assert balances.get_balance("acct").total == 20
