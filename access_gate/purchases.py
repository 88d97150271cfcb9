import logging
from typing import Iterable, Optional, Union
from uuid import UUID, uuid4

from .disposition import DispositionEngine
from .errors import AccessGateError, InvalidTransitionError
from .models import PurchaseRecord, PurchaseStatus, TransitionEvent
from .notifier import RealtimeNotifier
from .storage import InMemoryStorage, utcnow

logger = logging.getLogger(__name__)

StatusFilter = Union[PurchaseStatus, Iterable[PurchaseStatus], None]


class PurchaseStore:
    def __init__(self, storage: InMemoryStorage, engine: DispositionEngine, notifier: RealtimeNotifier):
        self.storage = storage
        self.engine = engine
        self.notifier = notifier

    def submit(self, user_id: UUID, proof: str) -> PurchaseRecord:
        if not proof or not proof.strip():
            raise AccessGateError("A proof of payment reference is required")

        now = utcnow()
        record_data = {
            "id": uuid4(),
            "user_id": user_id,
            "submitted_proof": proof.strip(),
            "status": PurchaseStatus.PENDING,
            "issued_code": None,
            "code_version": None,
            "acknowledged": False,
            "last_action": None,
            "disposed_by": None,
            "version": 1,
            "created_at": now,
            "last_transition_at": now,
        }

        with self.storage.transaction():
            self.storage.insert_purchase_if_none_open(record_data)
            self.storage.append_audit(user_id, "purchase_submitted", {"payment_id": str(record_data["id"])})

        record = PurchaseRecord(**record_data)
        logger.info("Purchase %s submitted by %s", record.id, user_id)

        self.notifier.publish(TransitionEvent(
            record_id=record.id,
            record_version=record.version,
            user_id=user_id,
            new_status=record.status,
            occurred_at=now,
        ))
        self._notify_operators(user_id, record.id)
        return record

    def get(self, record_id: UUID) -> PurchaseRecord:
        return PurchaseRecord(**self.storage.get_purchase(record_id))

    def latest_for_user(self, user_id: UUID, status_filter: StatusFilter = None) -> Optional[PurchaseRecord]:
        records = self.list_for_user(user_id, status_filter)
        return records[0] if records else None

    def list_for_user(self, user_id: UUID, status_filter: StatusFilter = None) -> list[PurchaseRecord]:
        wanted = _as_status_set(status_filter)
        return [
            PurchaseRecord(**row) for row in self.storage.purchases_for_user(user_id)
            if wanted is None or row["status"] in wanted
        ]

    def list_by_status(self, status_filter: StatusFilter = None) -> list[PurchaseRecord]:
        wanted = _as_status_set(status_filter)
        with self.storage.reading():
            rows = [dict(p) for p in self.storage.purchases.values()
                    if wanted is None or p["status"] in wanted]
        rows.sort(key=lambda p: p["created_at"], reverse=True)
        return [PurchaseRecord(**row) for row in rows]

    def cancel(self, record_id: UUID, by_user_id: UUID) -> PurchaseRecord:
        return self.engine.cancel_by_owner(record_id, by_user_id)

    def acknowledge(self, record_id: UUID, by_user_id: UUID,
                    seen_version: Optional[int] = None) -> PurchaseRecord:
        """Mark a terminal status as seen by its owner.

        If the client saw an older version than the one stored, the newer
        status stays unacknowledged so it surfaces again.
        """
        with self.storage.transaction():
            record = self.get(record_id)
            if record.user_id != by_user_id:
                raise InvalidTransitionError(f"User {by_user_id} does not own purchase {record_id}")
            if not record.status.is_terminal:
                raise InvalidTransitionError(f"Purchase {record_id} has no decision to acknowledge yet")
            if record.acknowledged:
                return record
            if seen_version is not None and seen_version != record.version:
                return record
            return PurchaseRecord(**self.storage.update_purchase(record_id, {"acknowledged": True}))

    def unacknowledged_for_user(self, user_id: UUID) -> list[PurchaseRecord]:
        return [r for r in self.list_for_user(user_id) if r.status.is_terminal and not r.acknowledged]

    def _notify_operators(self, user_id: UUID, record_id: UUID) -> None:
        with self.storage.reading():
            user = self.storage.users.get(user_id) or {}
            operator_ids = [u["id"] for u in self.storage.users.values() if u.get("is_operator")]
        for operator_id in operator_ids:
            self.notifier.notify(
                operator_id,
                "New payment received",
                f"{user.get('name') or 'A user'} has submitted a payment for approval",
                f"/admin/payments/{record_id}",
            )


def _as_status_set(status_filter: StatusFilter) -> Optional[set]:
    if status_filter is None:
        return None
    if isinstance(status_filter, PurchaseStatus):
        return {status_filter}
    return set(status_filter)
