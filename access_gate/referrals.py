import logging
from collections import defaultdict
from decimal import Decimal
from typing import Optional
from uuid import UUID, uuid4

from .errors import ConcurrencyConflictError, ReferralCreditError
from .ledger import BalanceLedger
from .models import (
    CreditStatus,
    DuplicateReferral,
    ReferralCountMismatch,
    ReferralCreditResult,
    ReferralLink,
    ReferralRepairReport,
)
from .storage import InMemoryStorage, utcnow

logger = logging.getLogger(__name__)

REFERRAL_KEY_PREFIX = "referral:"
FAILED_CREDIT_KIND = "referral_credit"


class ReferralCreditTrigger:
    def __init__(self, storage: InMemoryStorage, ledger: BalanceLedger, bonus: Decimal):
        self.storage = storage
        self.ledger = ledger
        self.bonus = bonus

    def register_link(self, referrer_id: UUID, new_user_id: UUID) -> ReferralLink:
        if referrer_id == new_user_id:
            raise ReferralCreditError("A user cannot refer themselves")

        with self.storage.transaction():
            for existing in self.storage.referrals_for_new_user(new_user_id):
                if not existing["is_duplicate"]:
                    raise ReferralCreditError(
                        f"User {new_user_id} was already referred by {existing['referrer_id']}"
                    )
            link_data = {
                "id": uuid4(),
                "referrer_id": referrer_id,
                "new_user_id": new_user_id,
                "credit_status": CreditStatus.PENDING,
                "amount_given": None,
                "manually_credited": False,
                "is_duplicate": False,
                "notes": None,
                "created_at": utcnow(),
                "confirmed_at": None,
            }
            self.storage.insert_referral(link_data)

        return ReferralLink(**link_data)

    def get_link(self, link_id: UUID) -> ReferralLink:
        return ReferralLink(**self.storage.get_referral(link_id))

    def pending_link_for(self, new_user_id: UUID) -> Optional[ReferralLink]:
        for row in self.storage.referrals_for_new_user(new_user_id):
            link = ReferralLink(**row)
            if link.can_credit():
                return link
        return None

    def try_credit(self, new_user_id: UUID) -> ReferralCreditResult:
        """Release the referral bonus owed for new_user_id, at most once."""
        link = self.pending_link_for(new_user_id)
        if link is None:
            return ReferralCreditResult(credited=False, message="No pending referral for user")
        return self._confirm(link, actor_id=None, manual=False, notes=None)

    def manual_credit(self, link_id: UUID, operator_id: UUID, notes: str) -> ReferralCreditResult:
        if not notes or not notes.strip():
            raise ReferralCreditError("Notes are required for a manual credit")

        link = self.get_link(link_id)
        if not link.can_credit():
            return ReferralCreditResult(link=link, credited=False, message="Referral already credited")
        return self._confirm(link, actor_id=operator_id, manual=True, notes=notes.strip())

    def _confirm(self, link: ReferralLink, actor_id: Optional[UUID], manual: bool,
                 notes: Optional[str]) -> ReferralCreditResult:
        now = utcnow()
        changes = {
            "credit_status": CreditStatus.CONFIRMED,
            "amount_given": self.bonus,
            "confirmed_at": now,
        }
        if manual:
            changes["manually_credited"] = True
            changes["notes"] = notes

        with self.storage.transaction():
            try:
                updated = self.storage.compare_and_set_referral(link.id, CreditStatus.PENDING, changes)
            except ConcurrencyConflictError:
                current = self.get_link(link.id)
                return ReferralCreditResult(link=current, credited=False, message="Referral already credited")

            entry = self.ledger.credit(
                link.referrer_id,
                self.bonus,
                reason="Referral Bonus (Manual)" if manual else "Referral Bonus",
                idempotency_key=f"{REFERRAL_KEY_PREFIX}{link.id}",
                metadata={
                    "referral_id": str(link.id),
                    "new_user_id": str(link.new_user_id),
                    "operator_id": str(actor_id) if actor_id else None,
                    "notes": notes,
                },
            )
            self.storage.append_audit(
                actor_id,
                "referral_manual_credit" if manual else "referral_confirmed",
                {"referral_id": str(link.id), "referrer_id": str(link.referrer_id),
                 "amount": str(self.bonus)},
            )

        logger.info(
            "Referral %s credited %s to %s%s",
            link.id, self.bonus, link.referrer_id, " (manual)" if manual else "",
        )
        return ReferralCreditResult(
            link=ReferralLink(**updated), credited=True, ledger_entry=entry,
            message="Referral credited successfully",
        )

    def reconcile_failed_credits(self) -> list[ReferralCreditResult]:
        """Retry referral credits whose automatic attempt failed after an approval."""
        results = []
        for failure in self.storage.drain_failed_side_effects(FAILED_CREDIT_KIND):
            try:
                results.append(self.try_credit(failure["subject_id"]))
            except Exception as e:
                logger.exception("Referral credit retry failed for %s", failure["subject_id"])
                self.storage.record_failed_side_effect(FAILED_CREDIT_KIND, failure["subject_id"], str(e))
        return results

    def repair(self, operator_id: UUID, dry_run: bool = True) -> ReferralRepairReport:
        report = ReferralRepairReport(dry_run=dry_run)

        with self.storage.transaction():
            links = sorted(
                (ReferralLink(**r) for r in self.storage.referrals.values()),
                key=lambda l: l.created_at,
            )

            originals: dict[UUID, ReferralLink] = {}
            for link in links:
                original = originals.get(link.new_user_id)
                if original is None:
                    originals[link.new_user_id] = link
                    continue
                report.duplicates.append(DuplicateReferral(
                    new_user_id=link.new_user_id, duplicate_id=link.id, original_id=original.id,
                ))
                if not dry_run and not link.is_duplicate:
                    self.storage.update_referral(link.id, {
                        "is_duplicate": True,
                        "notes": "Duplicate referral - marked by repair",
                    })

            credited = defaultdict(list)
            for link in links:
                if link.credit_status == CreditStatus.CONFIRMED:
                    credited[link.referrer_id].append(link)
            referrers = {l.referrer_id for l in links}

            for referrer_id in referrers:
                entries = self.ledger.entries_with_key_prefix(referrer_id, REFERRAL_KEY_PREFIX)
                credited_amount = sum((l.amount_given or Decimal("0") for l in credited[referrer_id]), Decimal("0"))
                ledger_amount = sum((e.amount for e in entries), Decimal("0"))
                if len(entries) != len(credited[referrer_id]) or ledger_amount != credited_amount:
                    report.mismatches.append(ReferralCountMismatch(
                        referrer_id=referrer_id,
                        credited_links=len(credited[referrer_id]),
                        ledger_credits=len(entries),
                        credited_amount=credited_amount,
                        ledger_amount=ledger_amount,
                    ))

            # Confirmed links whose bonus never reached the ledger.
            for referrer_id, confirmed in credited.items():
                for link in confirmed:
                    key = f"{REFERRAL_KEY_PREFIX}{link.id}"
                    if self.ledger.entries_with_key_prefix(referrer_id, key):
                        continue
                    report.missing_credits.append(link.id)
                    if not dry_run:
                        self.ledger.credit(
                            referrer_id,
                            link.amount_given or self.bonus,
                            reason="Referral Bonus (Repair)",
                            idempotency_key=key,
                            metadata={"referral_id": str(link.id), "operator_id": str(operator_id)},
                        )

            if not dry_run:
                self.storage.append_audit(operator_id, "referral_repair", {
                    "duplicates": len(report.duplicates),
                    "mismatches": len(report.mismatches),
                    "credits_posted": len(report.missing_credits),
                })

        logger.info(
            "Referral repair (dry_run=%s): %d duplicates, %d mismatches, %d missing credits",
            dry_run, len(report.duplicates), len(report.mismatches), len(report.missing_credits),
        )
        return report
