"""Token billing: cost registry, balance/transaction stores and the ledger."""

from workflow_agent_orchestrator.billing.costs import (
    CostKind,
    CostPolicy,
    ModelCostRegistry,
    estimate_tokens,
)
from workflow_agent_orchestrator.billing.ledger import TokenLedger
from workflow_agent_orchestrator.billing.models import Balance, BillingTransaction, TransactionStatus
from workflow_agent_orchestrator.billing.store import BalanceStore, TransactionStore

__all__ = [
    "Balance",
    "BalanceStore",
    "BillingTransaction",
    "CostKind",
    "CostPolicy",
    "ModelCostRegistry",
    "TokenLedger",
    "TransactionStatus",
    "TransactionStore",
    "estimate_tokens",
]
