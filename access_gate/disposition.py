"""
Operator disposition of access-code purchases.

This is the only place a purchase leaves PENDING or APPROVED and the only
writer of issued codes and user gate state. Every transition is checked
against TRANSITIONS and committed with a compare-and-swap on the record's
status and version, so concurrent operators (or an operator racing the
owner's cancel) can never both win.
"""

import logging
from typing import Optional
from uuid import UUID

from .codes import AccessCodePolicy, IssuedCode
from .errors import ConcurrencyConflictError, InvalidTransitionError
from .models import (
    DispositionAction,
    PurchaseRecord,
    PurchaseStatus,
    TransitionEvent,
    UserGateState,
)
from .notifier import RealtimeNotifier
from .referrals import FAILED_CREDIT_KIND, ReferralCreditTrigger
from .storage import InMemoryStorage, utcnow

logger = logging.getLogger(__name__)


TRANSITIONS: dict[tuple[PurchaseStatus, DispositionAction], PurchaseStatus] = {
    (PurchaseStatus.PENDING, DispositionAction.APPROVE): PurchaseStatus.APPROVED,
    (PurchaseStatus.PENDING, DispositionAction.REJECT): PurchaseStatus.REJECTED,
    (PurchaseStatus.PENDING, DispositionAction.CANCEL): PurchaseStatus.CANCELLED,
    (PurchaseStatus.APPROVED, DispositionAction.REVOKE): PurchaseStatus.CANCELLED,
}

RESULTING_STATUS: dict[DispositionAction, PurchaseStatus] = {
    action: target for (_, action), target in TRANSITIONS.items()
}

AUDIT_ACTIONS = {
    DispositionAction.APPROVE: "payment_approved",
    DispositionAction.REJECT: "payment_rejected",
    DispositionAction.CANCEL: "purchase_cancelled",
    DispositionAction.REVOKE: "code_revoked",
}

USER_NOTICES = {
    DispositionAction.APPROVE: (
        "Access code approved", "Your payment was verified and your access code is ready.", "/dashboard",
    ),
    DispositionAction.REJECT: (
        "Payment rejected", "We could not verify your payment. You can submit a new one.", "/buy-code",
    ),
    DispositionAction.CANCEL: (
        "Purchase cancelled", "Your access code purchase was cancelled.", "/buy-code",
    ),
    DispositionAction.REVOKE: (
        "Access code revoked",
        "Your access code has been revoked. Contact support if you believe this is an error.",
        "/buy-code",
    ),
}


class DispositionEngine:
    def __init__(
        self,
        storage: InMemoryStorage,
        referrals: ReferralCreditTrigger,
        notifier: RealtimeNotifier,
        code_policy: AccessCodePolicy,
    ):
        self.storage = storage
        self.referrals = referrals
        self.notifier = notifier
        self.code_policy = code_policy

    def disposition(
        self,
        record_id: UUID,
        action: DispositionAction,
        operator_id: UUID,
        issued_code_override: Optional[str] = None,
    ) -> PurchaseRecord:
        """Apply an operator decision to a purchase.

        Repeating an action that already produced the record's current state
        returns the committed record without re-running any side effect.
        """
        return self._apply(record_id, action, operator_id, issued_code_override, allow_replay=True)

    def cancel_by_owner(self, record_id: UUID, user_id: UUID) -> PurchaseRecord:
        record = self._load(record_id)
        if record.user_id != user_id:
            raise InvalidTransitionError(f"User {user_id} does not own purchase {record_id}")
        return self._apply(record_id, DispositionAction.CANCEL, user_id, None, allow_replay=False)

    def _apply(
        self,
        record_id: UUID,
        action: DispositionAction,
        actor_id: UUID,
        issued_code_override: Optional[str],
        allow_replay: bool,
    ) -> PurchaseRecord:
        record = self._load(record_id)
        committed = None

        # One re-read after a lost compare-and-swap; the second pass either
        # sees the winner's state as a replay or rejects the transition.
        for attempt in range(2):
            target = self._resolve(record, action, allow_replay)
            if target is None:
                logger.debug("Replay of %s on %s ignored", action.value, record_id)
                return record
            try:
                committed = self._commit(record, action, target, actor_id, issued_code_override)
                break
            except ConcurrencyConflictError:
                if attempt:
                    raise
                logger.info("Lost race on purchase %s, re-reading", record_id)
                record = self._load(record_id)

        logger.info(
            "Purchase %s %s -> %s by %s",
            record_id, record.status.value, committed.status.value, actor_id,
        )
        self._after_commit(record, committed, action)
        return committed

    def _resolve(self, record: PurchaseRecord, action: DispositionAction,
                 allow_replay: bool) -> Optional[PurchaseStatus]:
        target = TRANSITIONS.get((record.status, action))
        if target is not None:
            return target
        already_applied = (
            record.status == RESULTING_STATUS[action]
            and record.last_action in (action, None)
        )
        if allow_replay and already_applied:
            return None
        raise InvalidTransitionError(
            f"Cannot {action.value.lower()} purchase {record.id} in {record.status.value} state"
        )

    def _commit(
        self,
        record: PurchaseRecord,
        action: DispositionAction,
        target: PurchaseStatus,
        actor_id: UUID,
        issued_code_override: Optional[str],
    ) -> PurchaseRecord:
        now = utcnow()
        changes = {
            "status": target,
            "last_action": action,
            "disposed_by": actor_id,
            "acknowledged": False,
            "last_transition_at": now,
        }

        with self.storage.transaction():
            if action == DispositionAction.APPROVE:
                issued = (
                    IssuedCode(code=issued_code_override) if issued_code_override
                    else self.code_policy.issue(record)
                )
                changes["issued_code"] = issued.code
                changes["code_version"] = issued.version
            elif action == DispositionAction.REVOKE:
                changes["issued_code"] = None

            updated = PurchaseRecord(**self.storage.compare_and_set_purchase(
                record.id, record.status, record.version, changes,
            ))

            if action == DispositionAction.APPROVE:
                self.storage.set_gate_state(
                    UserGateState.holding(updated.user_id, updated.issued_code, updated.id, now)
                )
            elif action == DispositionAction.REVOKE:
                gate = self.storage.get_gate_state(updated.user_id)
                if gate.source_record_id == updated.id:
                    self.storage.set_gate_state(self._fallback_gate(updated.user_id, now))

            details = {"payment_id": str(updated.id), "user_id": str(updated.user_id)}
            if action == DispositionAction.APPROVE:
                details["code_version"] = updated.code_version
            elif action == DispositionAction.REVOKE:
                details["revoked_code_version"] = record.code_version
            self.storage.append_audit(actor_id, AUDIT_ACTIONS[action], details)

        return updated

    def _fallback_gate(self, user_id: UUID, now) -> UserGateState:
        """Gate backed by the user's most recent approval still standing, if any."""
        approved = [
            row for row in self.storage.purchases_for_user(user_id)
            if row["status"] == PurchaseStatus.APPROVED
        ]
        if not approved:
            return UserGateState.cleared(user_id, now)
        latest = max(approved, key=lambda row: row["last_transition_at"])
        return UserGateState.holding(user_id, latest["issued_code"], latest["id"], now)

    def _after_commit(self, previous: PurchaseRecord, committed: PurchaseRecord,
                      action: DispositionAction) -> None:
        if action == DispositionAction.APPROVE:
            self._release_referral(committed.user_id)

        try:
            self.notifier.publish(TransitionEvent(
                record_id=committed.id,
                record_version=committed.version,
                user_id=committed.user_id,
                previous_status=previous.status,
                new_status=committed.status,
                action=action,
                occurred_at=committed.last_transition_at,
            ))
        except Exception:
            logger.warning("Realtime publish failed for purchase %s", committed.id, exc_info=True)

        title, body, cta_ref = USER_NOTICES[action]
        self.notifier.notify(committed.user_id, title, body, cta_ref)

    def _release_referral(self, user_id: UUID) -> None:
        try:
            self.referrals.try_credit(user_id)
        except Exception as e:
            logger.exception("Referral credit failed for user %s; queued for reconciliation", user_id)
            self.storage.record_failed_side_effect(FAILED_CREDIT_KIND, user_id, str(e))

    def _load(self, record_id: UUID) -> PurchaseRecord:
        return PurchaseRecord(**self.storage.get_purchase(record_id))
