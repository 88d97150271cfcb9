import logging
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import AccessGateError
from .models import EntryType, LedgerEntry, LedgerHistoryResponse, UserBalance
from .storage import InMemoryStorage, utcnow

logger = logging.getLogger(__name__)


class BalanceLedger:
    """Append-only balance ledger. A user's balance is the sum of their entries."""

    def __init__(self, storage: InMemoryStorage, currency: str = "NGN"):
        self.storage = storage
        self.currency = currency

    def credit(self, user_id: UUID, amount: Decimal, reason: str,
               idempotency_key: str, metadata: Optional[dict] = None) -> LedgerEntry:
        if amount <= 0:
            raise AccessGateError(f"Credit amount must be positive, got {amount}")
        return self._append(user_id, EntryType.CREDIT, amount, reason, idempotency_key, metadata)

    def debit(self, user_id: UUID, amount: Decimal, reason: str,
              idempotency_key: str, metadata: Optional[dict] = None) -> LedgerEntry:
        if amount <= 0:
            raise AccessGateError(f"Debit amount must be positive, got {amount}")
        return self._append(user_id, EntryType.DEBIT, -amount, reason, idempotency_key, metadata)

    def _append(self, user_id: UUID, entry_type: EntryType, amount: Decimal, reason: str,
                idempotency_key: str, metadata: Optional[dict]) -> LedgerEntry:
        with self.storage.transaction():
            existing = self._check_idempotency(idempotency_key)
            if existing:
                return existing

            current_balance = self.get_balance(user_id)
            entry_data = {
                "id": uuid4(),
                "user_id": user_id,
                "entry_type": entry_type,
                "amount": amount,
                "currency": self.currency,
                "balance_after": current_balance.current_balance + amount,
                "reason": reason,
                "idempotency_key": idempotency_key,
                "created_at": utcnow(),
                "metadata": metadata or {},
            }
            self.storage.ledger_entries[entry_data["id"]] = entry_data
            self.storage.idempotency_index[idempotency_key] = entry_data["id"]

        logger.info("Ledger %s %s for user %s (%s)", entry_type.value, amount, user_id, reason)
        return LedgerEntry(**entry_data)

    def get_balance(self, user_id: UUID) -> UserBalance:
        with self.storage.reading():
            entries = [
                e for e in self.storage.ledger_entries.values()
                if e["user_id"] == user_id and e["currency"] == self.currency
            ]

        total_balance = sum((e["amount"] for e in entries), Decimal("0.00"))
        last_entry = max(entries, key=lambda e: e["created_at"]) if entries else None

        return UserBalance(
            user_id=user_id,
            currency=self.currency,
            current_balance=total_balance,
            total_entries=len(entries),
            last_transaction_at=last_entry["created_at"] if last_entry else None
        )

    def get_ledger_history(self, user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        with self.storage.reading():
            all_entries = [
                LedgerEntry(**e) for e in self.storage.ledger_entries.values()
                if e["user_id"] == user_id
            ]
        all_entries.sort(key=lambda e: e.created_at, reverse=True)
        paginated = all_entries[offset:offset + limit]

        return LedgerHistoryResponse(
            user_id=user_id,
            entries=paginated,
            total_count=len(all_entries),
            current_balance=self.get_balance(user_id).current_balance
        )

    def entries_with_key_prefix(self, user_id: UUID, prefix: str) -> list[LedgerEntry]:
        with self.storage.reading():
            return [
                LedgerEntry(**e) for e in self.storage.ledger_entries.values()
                if e["user_id"] == user_id and e["idempotency_key"].startswith(prefix)
            ]

    def _check_idempotency(self, idempotency_key: str) -> Optional[LedgerEntry]:
        entry_id = self.storage.idempotency_index.get(idempotency_key)
        if entry_id:
            entry_data = self.storage.ledger_entries.get(entry_id)
            if entry_data:
                return LedgerEntry(**entry_data)
        return None
