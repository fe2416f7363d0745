"""Token ledger: reserve before an expensive call, reconcile afterwards.

Every reservation ends in exactly one terminal state: ``completed`` or
``adjusted`` after a successful call, ``refunded`` otherwise.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol, TypeVar

from workflow_agent_orchestrator.billing.costs import (
    CalculationMethod,
    CostKind,
    ModelCostRegistry,
    UsageBreakdown,
    calculate_usage,
    pre_estimate_cost,
)
from workflow_agent_orchestrator.billing.models import (
    BillingTransaction,
    TransactionStatus,
    check_transition,
)
from workflow_agent_orchestrator.billing.store import BalanceStore, StaleBalance, TransactionStore
from workflow_agent_orchestrator.core.config import BillingConfig
from workflow_agent_orchestrator.core.errors import (
    BillingError,
    InsufficientBalance,
    OrchestratorError,
    PersistenceError,
    ReconciliationShortfall,
    TransactionNotPending,
)
from workflow_agent_orchestrator.core.usage import TokenUsage

logger = logging.getLogger(__name__)


class Metered(Protocol):
    """Anything a billed call returns: its output text and reported usage."""

    @property
    def text(self) -> str: ...

    @property
    def usage(self) -> TokenUsage | None: ...


R = TypeVar("R", bound=Metered)


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class TokenLedger:
    """Reserve/settle/refund billing units against an account balance."""

    def __init__(
        self,
        balances: BalanceStore,
        transactions: TransactionStore,
        costs: ModelCostRegistry | None = None,
        config: BillingConfig | None = None,
    ) -> None:
        self.balances = balances
        self.transactions = transactions
        self.costs = costs or ModelCostRegistry()
        self.config = config or BillingConfig()
        # Serialises terminal transitions so a transaction can't be settled and refunded twice.
        self._settle_lock = threading.RLock()

    def estimate(self, input_text: str, model: str, *, flat: bool = False) -> int:
        """Worst-case cost of calling ``model`` with ``input_text``."""
        if flat:
            return self.costs.flat_cost(model)
        return pre_estimate_cost(
            input_text,
            self.costs.policy_for(model),
            output_multiple=self.config.output_multiple,
            safety_factor=self.config.safety_factor,
        )

    def pre_charge(
        self,
        account_id: str,
        session_id: str,
        input_text: str,
        model: str,
        *,
        flat: bool = False,
        operation: str = "completion",
    ) -> BillingTransaction:
        """Estimate the worst-case cost and reserve it.

        Raises:
            InsufficientBalance: The account can't cover the estimate. Nothing is charged.
        """
        amount = self.estimate(input_text, model, flat=flat)
        return self.reserve(
            account_id,
            session_id,
            amount,
            model,
            operation=operation,
            metering=CostKind.FLAT if flat else CostKind.TOKEN,
        )

    def reserve(
        self,
        account_id: str,
        session_id: str,
        amount: int,
        model: str,
        *,
        operation: str = "completion",
        metering: CostKind = CostKind.TOKEN,
    ) -> BillingTransaction:
        """Debit ``amount`` (renewable first) and record a pending transaction.

        Raises:
            InsufficientBalance: ``renewable + permanent < amount``. Nothing is charged.
            BillingError: The balance kept changing underneath us.
        """
        if amount < 0:
            raise ValueError("reservation amount must be non-negative")

        renewable, permanent = self._debit(account_id, amount)

        transaction = BillingTransaction(
            id=str(uuid.uuid4()),
            account_id=account_id,
            session_id=session_id,
            model=model,
            operation=operation,
            metering=metering,
            pre_charge_amount=amount,
            renewable_portion=renewable,
            permanent_portion=permanent,
            created_at=_utc_iso_now(),
        )
        try:
            self.transactions.create(transaction)
        except PersistenceError:
            # No record means nobody could ever refund this; give the units back now.
            self.balances.credit(account_id, amount)
            raise

        logger.info(
            "Reserved billing units",
            extra={
                "transaction_id": transaction.id,
                "account_id": account_id,
                "session_id": session_id,
                "model": model,
                "amount": amount,
                "renewable": renewable,
                "permanent": permanent,
            },
        )
        return transaction

    def finalize(
        self,
        transaction_id: str,
        input_text: str,
        output_text: str,
        usage: TokenUsage | None = None,
    ) -> BillingTransaction:
        """Compute the realised cost of a call and settle its reservation."""
        transaction = self.transactions.get(transaction_id)
        if transaction.metering is CostKind.FLAT:
            cost = self.costs.flat_cost(transaction.model)
            breakdown = UsageBreakdown(0, 0, cost, transaction.model, CalculationMethod.ACTUAL)
        else:
            breakdown = calculate_usage(
                transaction.model,
                self.costs.policy_for(transaction.model),
                input_text,
                output_text,
                usage,
            )
        return self.settle(transaction_id, breakdown.cost, breakdown)

    def settle(
        self,
        transaction_id: str,
        actual_cost: int,
        usage: UsageBreakdown | None = None,
    ) -> BillingTransaction:
        """Reconcile a pending reservation against the actual cost.

        Raises:
            TransactionNotPending: The transaction already reached a terminal state.
            ReconciliationShortfall: The extra cost couldn't be debited; the
                reservation has been refunded in full.
        """
        with self._settle_lock:
            transaction = self._pending(transaction_id)
            adjustment = actual_cost - transaction.pre_charge_amount

            if adjustment > 0:
                try:
                    self._debit(transaction.account_id, adjustment)
                except InsufficientBalance as e:
                    self.refund(transaction_id)
                    raise ReconciliationShortfall(
                        transaction_id=transaction_id,
                        actual_cost=actual_cost,
                        pre_charged=transaction.pre_charge_amount,
                        available=e.available,
                    ) from e
            elif adjustment < 0:
                self.balances.credit(transaction.account_id, -adjustment)

            status = TransactionStatus.COMPLETED if adjustment == 0 else TransactionStatus.ADJUSTED
            check_transition(transaction.status, status)
            try:
                updated = self.transactions.update(
                    transaction_id,
                    actual_charge_amount=actual_cost,
                    adjustment_amount=adjustment,
                    status=status,
                    usage=usage.to_json() if usage is not None else None,
                    completed_at=_utc_iso_now(),
                )
            except BaseException:
                # The transaction is still pending; undo the adjustment so a later
                # refund of the full reservation leaves the balance exact.
                self._reverse_adjustment(transaction.account_id, adjustment)
                raise

        logger.info(
            "Usage recorded",
            extra={
                "transaction_id": transaction_id,
                "account_id": transaction.account_id,
                "session_id": transaction.session_id,
                "model": transaction.model,
                "operation": transaction.operation,
                "pre_charge_amount": transaction.pre_charge_amount,
                "actual_cost": actual_cost,
                "adjustment": adjustment,
                "calculation_method": usage.calculation_method.value if usage else None,
            },
        )
        return updated

    def refund(self, transaction_id: str) -> BillingTransaction:
        """Return the full reservation to the renewable pool.

        Raises:
            TransactionNotPending: The transaction already reached a terminal state.
        """
        with self._settle_lock:
            transaction = self._pending(transaction_id)
            check_transition(transaction.status, TransactionStatus.REFUNDED)
            self.balances.credit(transaction.account_id, transaction.pre_charge_amount)
            updated = self.transactions.update(
                transaction_id,
                status=TransactionStatus.REFUNDED,
                completed_at=_utc_iso_now(),
            )

        logger.info(
            "Refunded reservation",
            extra={
                "transaction_id": transaction_id,
                "account_id": transaction.account_id,
                "amount": transaction.pre_charge_amount,
            },
        )
        return updated

    def charge_for(
        self,
        account_id: str,
        session_id: str,
        model: str,
        input_text: str,
        call: Callable[[], R],
        *,
        flat: bool = False,
        operation: str = "completion",
    ) -> tuple[R, BillingTransaction]:
        """Reserve, run ``call``, then settle.

        The reservation is refunded if ``call`` fails in any way, and also if
        settling it fails before the transaction reached a terminal state.

        Returns:
            The call's result and the settled transaction.
        """
        transaction = self.pre_charge(
            account_id, session_id, input_text, model, flat=flat, operation=operation
        )
        try:
            result = call()
        except BaseException:
            self.refund(transaction.id)
            raise

        try:
            settled = self.finalize(transaction.id, input_text, result.text, result.usage)
        except ReconciliationShortfall:
            raise
        except BaseException:
            self._refund_if_pending(transaction.id)
            raise
        return result, settled

    def _refund_if_pending(self, transaction_id: str) -> None:
        try:
            if self.transactions.get(transaction_id).is_pending:
                self.refund(transaction_id)
        except OrchestratorError:
            logger.exception(
                "Unable to refund reservation after a failed settlement",
                extra={"transaction_id": transaction_id},
            )

    def _reverse_adjustment(self, account_id: str, adjustment: int) -> None:
        try:
            if adjustment > 0:
                self.balances.credit(account_id, adjustment)
            elif adjustment < 0:
                self._debit(account_id, -adjustment)
        except OrchestratorError:
            logger.exception(
                "Unable to reverse settlement adjustment",
                extra={"account_id": account_id, "adjustment": adjustment},
            )

    def _pending(self, transaction_id: str) -> BillingTransaction:
        transaction = self.transactions.get(transaction_id)
        if not transaction.is_pending:
            raise TransactionNotPending(transaction_id, transaction.status.value)
        return transaction

    def _debit(self, account_id: str, amount: int) -> tuple[int, int]:
        """Compare-and-debit ``amount`` renewable-first, retrying on concurrent changes."""
        attempts = self.config.debit_attempts
        for attempt in range(1, attempts + 1):
            balance = self.balances.get_balance(account_id)
            if balance.total < amount:
                raise InsufficientBalance(
                    account_id=account_id, required=amount, available=balance.total
                )
            renewable, permanent = balance.split(amount)
            try:
                self.balances.debit(account_id, renewable, permanent, expected=balance)
            except StaleBalance:
                logger.info(
                    "Balance changed during debit; retrying",
                    extra={"account_id": account_id, "attempt": attempt},
                )
                continue
            return renewable, permanent

        raise BillingError(
            f"Balance for account {account_id!r} kept changing; gave up after {attempts} attempts"
        )
