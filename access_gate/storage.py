import copy
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional
from uuid import UUID, uuid4

from pydantic import ValidationError

from .errors import (
    AccessGateError,
    AlreadyPendingError,
    ConcurrencyConflictError,
    RecordNotFoundError,
    ReferralNotFoundError,
)
from .models import CreditStatus, PurchaseRecord, PurchaseStatus, UserGateState, normalize_status


REFERRER_ID = UUID("550e8400-e29b-41d4-a716-446655440000")
REFERRED_ID = UUID("660e8400-e29b-41d4-a716-446655440001")
OPERATOR_ID = UUID("770e8400-e29b-41d4-a716-446655440002")
SEED_REFERRAL_ID = UUID("11111111-1111-1111-1111-111111111111")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryStorage:
    _TABLES = (
        "users", "gate_states", "purchases", "referrals", "ledger_entries",
        "idempotency_index", "access_codes", "audit_logs", "failed_side_effects",
    )

    def __init__(self, seed: bool = True):
        self.users: dict[UUID, dict] = {}
        self.gate_states: dict[UUID, UserGateState] = {}
        self.purchases: dict[UUID, dict] = {}
        self.referrals: dict[UUID, dict] = {}
        self.ledger_entries: dict[UUID, dict] = {}
        self.idempotency_index: dict[str, UUID] = {}
        self.access_codes: list[dict] = []
        self.audit_logs: list[dict] = []
        self.failed_side_effects: list[dict] = []
        self._lock = threading.RLock()
        self._depth = 0
        if seed:
            self._seed_data()

    def _seed_data(self):
        now = utcnow()
        self.users[REFERRER_ID] = {
            "id": REFERRER_ID, "email": "referrer@example.com",
            "name": "John Referrer", "is_operator": False, "created_at": now,
        }
        self.users[REFERRED_ID] = {
            "id": REFERRED_ID, "email": "referred@example.com",
            "name": "Jane Referred", "is_operator": False, "created_at": now,
        }
        self.users[OPERATOR_ID] = {
            "id": OPERATOR_ID, "email": "ops@example.com",
            "name": "Ops Desk", "is_operator": True, "created_at": now,
        }
        self.referrals[SEED_REFERRAL_ID] = {
            "id": SEED_REFERRAL_ID, "referrer_id": REFERRER_ID,
            "new_user_id": REFERRED_ID, "credit_status": CreditStatus.PENDING,
            "amount_given": None, "manually_credited": False, "is_duplicate": False,
            "notes": None,
            "created_at": now, "confirmed_at": None,
        }

    @contextmanager
    def transaction(self) -> Iterator["InMemoryStorage"]:
        """Serialize a unit of work and roll every table back if it raises.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            outermost = self._depth == 0
            snapshot = self._snapshot() if outermost else None
            self._depth += 1
            try:
                yield self
            except BaseException:
                if outermost:
                    self._restore(snapshot)
                raise
            finally:
                self._depth -= 1

    @contextmanager
    def reading(self) -> Iterator["InMemoryStorage"]:
        with self._lock:
            yield self

    def _snapshot(self) -> dict:
        return {name: copy.deepcopy(getattr(self, name)) for name in self._TABLES}

    def _restore(self, snapshot: dict) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    # Purchases

    def get_purchase(self, record_id: UUID) -> dict:
        with self._lock:
            data = self.purchases.get(record_id)
            if not data:
                raise RecordNotFoundError(f"Purchase {record_id} not found")
            return dict(data)

    def purchases_for_user(self, user_id: UUID) -> list[dict]:
        with self._lock:
            rows = [dict(p) for p in self.purchases.values() if p["user_id"] == user_id]
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return rows

    def insert_purchase_if_none_open(self, data: dict) -> dict:
        with self.transaction():
            for existing in self.purchases.values():
                if existing["user_id"] == data["user_id"] and existing["status"] == PurchaseStatus.PENDING:
                    raise AlreadyPendingError(data["user_id"], existing["id"])
            self.purchases[data["id"]] = dict(data)
            return dict(data)

    def load_purchase(self, data: dict) -> dict:
        """Import a row from an older schema, normalizing its status.

        The row must form a valid purchase record, and a pending row is
        refused when the user already has an open purchase.
        """
        row = dict(data)
        row["status"] = normalize_status(row.get("status"))
        try:
            row = PurchaseRecord(**row).model_dump()
        except ValidationError as e:
            raise AccessGateError(f"Invalid legacy purchase {data.get('id')}: {e}") from e

        with self.transaction():
            if row["status"] == PurchaseStatus.PENDING:
                for existing in self.purchases.values():
                    if (existing["user_id"] == row["user_id"] and existing["id"] != row["id"]
                            and existing["status"] == PurchaseStatus.PENDING):
                        raise AlreadyPendingError(row["user_id"], existing["id"])
            self.purchases[row["id"]] = row
        return dict(row)

    def compare_and_set_purchase(
        self,
        record_id: UUID,
        expected_status: PurchaseStatus,
        expected_version: int,
        changes: dict,
    ) -> dict:
        with self.transaction():
            current = self.purchases.get(record_id)
            if not current:
                raise RecordNotFoundError(f"Purchase {record_id} not found")
            if current["status"] != expected_status or current["version"] != expected_version:
                raise ConcurrencyConflictError(
                    f"Purchase {record_id} is {current['status'].value} v{current['version']}, "
                    f"expected {expected_status.value} v{expected_version}"
                )
            current.update(changes)
            current["version"] = expected_version + 1
            return dict(current)

    def update_purchase(self, record_id: UUID, changes: dict) -> dict:
        with self.transaction():
            current = self.purchases.get(record_id)
            if not current:
                raise RecordNotFoundError(f"Purchase {record_id} not found")
            current.update(changes)
            return dict(current)

    # Gate state

    def get_gate_state(self, user_id: UUID) -> UserGateState:
        with self._lock:
            return self.gate_states.get(user_id) or UserGateState.cleared(user_id)

    def set_gate_state(self, state: UserGateState) -> UserGateState:
        with self.transaction():
            self.gate_states[state.user_id] = state
            return state

    # Referrals

    def get_referral(self, link_id: UUID) -> dict:
        with self._lock:
            data = self.referrals.get(link_id)
            if not data:
                raise ReferralNotFoundError(f"Referral {link_id} not found")
            return dict(data)

    def referrals_for_new_user(self, new_user_id: UUID) -> list[dict]:
        with self._lock:
            rows = [dict(r) for r in self.referrals.values() if r["new_user_id"] == new_user_id]
        rows.sort(key=lambda r: r["created_at"])
        return rows

    def insert_referral(self, data: dict) -> dict:
        with self.transaction():
            self.referrals[data["id"]] = dict(data)
            return dict(data)

    def compare_and_set_referral(self, link_id: UUID, expected_status: CreditStatus, changes: dict) -> dict:
        with self.transaction():
            current = self.referrals.get(link_id)
            if not current:
                raise ReferralNotFoundError(f"Referral {link_id} not found")
            if current["credit_status"] != expected_status:
                raise ConcurrencyConflictError(
                    f"Referral {link_id} is {current['credit_status'].value}, expected {expected_status.value}"
                )
            current.update(changes)
            return dict(current)

    def update_referral(self, link_id: UUID, changes: dict) -> dict:
        with self.transaction():
            current = self.referrals.get(link_id)
            if not current:
                raise ReferralNotFoundError(f"Referral {link_id} not found")
            current.update(changes)
            return dict(current)

    # Audit trail and reconciliation

    def append_audit(self, actor_id: Optional[UUID], action_type: str, details: dict) -> dict:
        entry = {
            "id": uuid4(), "actor_id": actor_id, "action_type": action_type,
            "details": details, "created_at": utcnow(),
        }
        with self.transaction():
            self.audit_logs.append(entry)
        return entry

    def record_failed_side_effect(self, kind: str, subject_id: UUID, error: str) -> None:
        with self._lock:
            self.failed_side_effects.append({
                "kind": kind, "subject_id": subject_id,
                "error": error, "recorded_at": utcnow(),
            })

    def drain_failed_side_effects(self, kind: str) -> list[dict]:
        with self._lock:
            matching = [f for f in self.failed_side_effects if f["kind"] == kind]
            self.failed_side_effects = [f for f in self.failed_side_effects if f["kind"] != kind]
            return matching
