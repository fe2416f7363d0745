"""Error taxonomy shared by the catalog, executor, ledger and coordinator.

Transports (server, CLI) map these to status codes / exit codes; the core never
formats user-facing responses itself.
"""

from __future__ import annotations

from dataclasses import dataclass


class OrchestratorError(Exception):
    """Base class for every error raised by the orchestration core."""


class ConfigurationError(OrchestratorError):
    """Required configuration (API keys, backends) is missing or invalid."""


class IllegalTransitionError(OrchestratorError, ValueError):
    pass


class NotFoundError(OrchestratorError, LookupError):
    pass


class InvalidWorkflow(OrchestratorError):
    """A workflow definition is structurally unusable."""


class NoInputNode(InvalidWorkflow):
    def __init__(self, workflow_id: str, found: int) -> None:
        self.workflow_id = workflow_id
        self.found = found
        if found == 0:
            reason = "no input node found"
        else:
            reason = f"{found} input nodes found, expected exactly one"
        super().__init__(f"Workflow {workflow_id!r}: {reason}")


class UnsupportedNodeType(OrchestratorError):
    def __init__(self, node_type: str) -> None:
        self.node_type = node_type
        super().__init__(f"Unsupported node type: {node_type}")


class InvalidNodeConfig(OrchestratorError):
    def __init__(self, node_type: str, reason: str) -> None:
        self.node_type = node_type
        self.reason = reason
        super().__init__(f"Invalid configuration for {node_type} node: {reason}")


class CapabilityError(OrchestratorError):
    """A capability (LLM, generation backend, analyser) failed.

    The provider's reason is kept verbatim; the original exception is chained.
    """

    def __init__(self, capability: str, reason: str) -> None:
        self.capability = capability
        self.reason = reason
        super().__init__(f"{capability} failed: {reason}")


class ExecutionTimeout(CapabilityError):
    def __init__(self, capability: str, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(capability, f"timed out after {seconds:.1f}s")


class BillingError(OrchestratorError):
    pass


@dataclass(frozen=True, slots=True)
class InsufficientBalance(BillingError):
    """Raised when a reservation (or debit) exceeds the available balance.

    Nothing has been charged when this is raised.
    """

    account_id: str
    required: int
    available: int

    def __str__(self) -> str:
        return (
            f"Insufficient balance for account {self.account_id!r}: "
            f"need {self.required}, have {self.available}"
        )


@dataclass(frozen=True, slots=True)
class ReconciliationShortfall(BillingError):
    """The actual cost exceeded the reservation and the difference could not be debited.

    The reservation has already been refunded in full when this is raised.
    """

    transaction_id: str
    actual_cost: int
    pre_charged: int
    available: int

    def __str__(self) -> str:
        return (
            f"Insufficient balance to reconcile transaction {self.transaction_id}: "
            f"need {self.actual_cost - self.pre_charged} more, have {self.available}"
        )


class TransactionNotPending(BillingError):
    def __init__(self, transaction_id: str, status: str) -> None:
        self.transaction_id = transaction_id
        self.status = status
        super().__init__(f"Transaction {transaction_id} is {status}, expected pending")


class UnknownTransaction(BillingError, NotFoundError):
    def __init__(self, transaction_id: str) -> None:
        self.transaction_id = transaction_id
        super().__init__(f"Transaction not found: {transaction_id}")


class PersistenceError(OrchestratorError):
    pass
