"""JSON-file balance and transaction stores.

Both stores hold their whole dataset in a single file guarded by a lock. A
file that no longer decodes raises ``PersistenceError`` rather than reading as
empty, so a damaged ledger is never overwritten. The
balance store's ``debit`` is the only way units leave an account and is a
single locked compare-and-write: it checks the balance the caller observed is
still current before writing.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from workflow_agent_orchestrator.billing.models import Balance, BillingTransaction
from workflow_agent_orchestrator.core.errors import (
    InsufficientBalance,
    PersistenceError,
    UnknownTransaction,
)
from workflow_agent_orchestrator.storage.jsonfile import read_json, write_json


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class StaleBalance(Exception):
    """The balance changed between the caller's read and its debit."""


@dataclass
class BalanceStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> dict[str, Balance]:
        raw = read_json(self.path, {}, strict=True)
        if not isinstance(raw, dict):
            raise PersistenceError(f"Corrupt balance file {self.path}: expected a JSON object")
        return {k: Balance.model_validate({"account_id": k, **v}) for k, v in raw.items()}

    def _save_unlocked(self, balances: dict[str, Balance]) -> None:
        payload = {k: b.model_dump(mode="json", exclude={"account_id"}) for k, b in balances.items()}
        write_json(self.path, payload)

    def get_balance(self, account_id: str) -> Balance:
        with self._lock:
            return self._load_unlocked().get(account_id) or Balance(account_id=account_id)

    def list(self) -> list[Balance]:
        with self._lock:
            return list(self._load_unlocked().values())

    def debit(
        self,
        account_id: str,
        renewable: int,
        permanent: int,
        *,
        expected: Balance | None = None,
    ) -> Balance:
        """Remove units from both pools in one locked write.

        Args:
            account_id: Account to debit.
            renewable: Units to take from the renewable pool.
            permanent: Units to take from the permanent pool.
            expected: The balance the caller based its split on. If given and
                the stored balance differs, nothing is written.

        Raises:
            StaleBalance: ``expected`` no longer matches the stored balance.
            InsufficientBalance: Either pool can't cover its portion.
        """
        if renewable < 0 or permanent < 0:
            raise ValueError("debit amounts must be non-negative")

        with self._lock:
            balances = self._load_unlocked()
            current = balances.get(account_id) or Balance(account_id=account_id)
            if expected is not None and (
                current.renewable != expected.renewable or current.permanent != expected.permanent
            ):
                raise StaleBalance(account_id)
            if current.renewable < renewable or current.permanent < permanent:
                raise InsufficientBalance(
                    account_id=account_id,
                    required=renewable + permanent,
                    available=current.total,
                )
            updated = current.model_copy(
                update={
                    "renewable": current.renewable - renewable,
                    "permanent": current.permanent - permanent,
                    "updated_at": _utc_iso_now(),
                }
            )
            balances[account_id] = updated
            self._save_unlocked(balances)
            return updated

    def credit(self, account_id: str, amount: int) -> Balance:
        """Return units to the renewable pool."""
        return self.grant(account_id, renewable=amount)

    def grant(self, account_id: str, renewable: int = 0, permanent: int = 0) -> Balance:
        if renewable < 0 or permanent < 0:
            raise ValueError("grant amounts must be non-negative")
        with self._lock:
            balances = self._load_unlocked()
            current = balances.get(account_id) or Balance(account_id=account_id)
            updated = current.model_copy(
                update={
                    "renewable": current.renewable + renewable,
                    "permanent": current.permanent + permanent,
                    "updated_at": _utc_iso_now(),
                }
            )
            balances[account_id] = updated
            self._save_unlocked(balances)
            return updated


@dataclass
class TransactionStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[BillingTransaction]:
        raw = read_json(self.path, [], strict=True)
        if not isinstance(raw, list):
            raise PersistenceError(f"Corrupt transaction file {self.path}: expected a JSON array")
        return [BillingTransaction.model_validate(item) for item in raw]

    def _save_unlocked(self, transactions: list[BillingTransaction]) -> None:
        write_json(self.path, [t.model_dump(mode="json") for t in transactions])

    def create(self, transaction: BillingTransaction) -> BillingTransaction:
        with self._lock:
            transactions = self._load_unlocked()
            transactions.append(transaction)
            self._save_unlocked(transactions)
            return transaction

    def get(self, transaction_id: str) -> BillingTransaction:
        with self._lock:
            for tx in self._load_unlocked():
                if tx.id == transaction_id:
                    return tx
        raise UnknownTransaction(transaction_id)

    def update(self, transaction_id: str, **updates: object) -> BillingTransaction:
        with self._lock:
            transactions = self._load_unlocked()
            for idx, tx in enumerate(transactions):
                if tx.id != transaction_id:
                    continue
                merged = tx.model_copy(update=updates)
                transactions[idx] = merged
                self._save_unlocked(transactions)
                return merged
        raise UnknownTransaction(transaction_id)

    def list(
        self,
        account_id: str | None = None,
        session_id: str | None = None,
    ) -> list[BillingTransaction]:
        with self._lock:
            transactions = self._load_unlocked()
        if account_id is not None:
            transactions = [t for t in transactions if t.account_id == account_id]
        if session_id is not None:
            transactions = [t for t in transactions if t.session_id == session_id]
        return transactions
