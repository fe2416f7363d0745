"""Billing records: balances and reservation transactions."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from workflow_agent_orchestrator.billing.costs import CostKind
from workflow_agent_orchestrator.core.errors import IllegalTransitionError


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    ADJUSTED = "adjusted"
    REFUNDED = "refunded"


ALLOWED_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.PENDING: {
        TransactionStatus.COMPLETED,
        TransactionStatus.ADJUSTED,
        TransactionStatus.REFUNDED,
    },
    TransactionStatus.COMPLETED: set(),
    TransactionStatus.ADJUSTED: set(),
    TransactionStatus.REFUNDED: set(),
}


def check_transition(current: TransactionStatus, nxt: TransactionStatus) -> None:
    if nxt not in ALLOWED_TRANSITIONS[current]:
        raise IllegalTransitionError(f"Illegal transaction transition: {current.value} -> {nxt.value}")


class Balance(BaseModel):
    """Spendable billing units for one account."""

    account_id: str
    renewable: int = Field(default=0, ge=0)
    permanent: int = Field(default=0, ge=0)
    updated_at: str | None = None

    @property
    def total(self) -> int:
        return self.renewable + self.permanent

    def split(self, amount: int) -> tuple[int, int]:
        """Split ``amount`` into (renewable, permanent) portions, renewable first."""
        from_renewable = min(self.renewable, amount)
        return from_renewable, max(0, amount - from_renewable)


class BillingTransaction(BaseModel):
    id: str
    account_id: str
    session_id: str
    model: str
    operation: str = "completion"
    metering: CostKind = CostKind.TOKEN
    pre_charge_amount: int = Field(ge=0)
    renewable_portion: int = Field(default=0, ge=0)
    permanent_portion: int = Field(default=0, ge=0)
    actual_charge_amount: int | None = None
    adjustment_amount: int | None = None
    status: TransactionStatus = TransactionStatus.PENDING
    usage: dict[str, Any] | None = None
    created_at: str
    completed_at: str | None = None

    @property
    def is_pending(self) -> bool:
        return self.status is TransactionStatus.PENDING
