"""
Unit Tests for the Referral Credit Trigger

Tests cover:
1. Crediting on first approval, at most once
2. Manual operator credit
3. Concurrent release attempts
4. Link registration rules
5. Duplicate and count repair
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from decimal import Decimal
from threading import Barrier
from uuid import uuid4

import pytest

from access_gate.errors import ReferralCreditError, ReferralNotFoundError
from access_gate.models import CreditStatus, DispositionAction
from access_gate.referrals import REFERRAL_KEY_PREFIX
from access_gate.storage import OPERATOR_ID, REFERRED_ID, REFERRER_ID, SEED_REFERRAL_ID, utcnow


def approve_purchase(service, user_id):
    record = service.purchases.submit(user_id, f"proofs/{uuid4()}.jpg")
    return service.engine.disposition(record.id, DispositionAction.APPROVE, OPERATOR_ID)


class TestTryCredit:
    """Tests for the automatic credit released on approval."""

    def test_no_pending_link(self, service):
        """Test a user nobody referred."""
        result = service.referrals.try_credit(REFERRER_ID)

        assert result.credited is False
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("0")

    def test_credit_once(self, service):
        """Test that the bonus lands on the referrer exactly once."""
        first = service.referrals.try_credit(REFERRED_ID)
        second = service.referrals.try_credit(REFERRED_ID)

        assert first.credited is True
        assert first.ledger_entry.amount == Decimal("5000.00")
        assert first.link.credit_status == CreditStatus.CONFIRMED
        assert first.link.amount_given == Decimal("5000.00")
        assert second.credited is False
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_credit_audited(self, service):
        """Test that an automatic credit is logged."""
        service.referrals.try_credit(REFERRED_ID)

        entries = service.audit_log("referral_confirmed")
        assert len(entries) == 1
        assert entries[0].details["referral_id"] == str(SEED_REFERRAL_ID)

    def test_approval_releases_credit(self, service):
        """Test that approving the referred user's first purchase pays the referrer."""
        approve_purchase(service, REFERRED_ID)

        link = service.referrals.get_link(SEED_REFERRAL_ID)
        assert link.credit_status == CreditStatus.CONFIRMED
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_second_approval_does_not_pay_again(self, service):
        """Test that a later purchase by the same user earns nothing more."""
        approve_purchase(service, REFERRED_ID)
        approve_purchase(service, REFERRED_ID)

        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_revoke_keeps_credit(self, service):
        """Test that revoking the code does not claw back the bonus."""
        approved = approve_purchase(service, REFERRED_ID)
        service.engine.disposition(approved.id, DispositionAction.REVOKE, OPERATOR_ID)

        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_concurrent_credit_pays_once(self, service):
        """Test that racing release attempts credit a single bonus."""
        barrier = Barrier(4)

        def release(_):
            barrier.wait()
            return service.referrals.try_credit(REFERRED_ID)

        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(release, range(4)))

        assert sum(1 for r in results if r.credited) == 1
        assert service.ledger.get_balance(REFERRER_ID).total_entries == 1


class TestManualCredit:
    """Tests for operator-initiated credits."""

    def test_manual_credit(self, service):
        """Test that an operator can release a pending credit with notes."""
        result = service.referrals.manual_credit(SEED_REFERRAL_ID, OPERATOR_ID, "  Paid offline  ")

        assert result.credited is True
        assert result.link.manually_credited is True
        assert result.link.notes == "Paid offline"
        assert result.ledger_entry.reason == "Referral Bonus (Manual)"
        assert len(service.audit_log("referral_manual_credit")) == 1

    def test_manual_after_automatic_is_noop(self, service):
        """Test that a credited link cannot be credited again by hand."""
        service.referrals.try_credit(REFERRED_ID)

        result = service.referrals.manual_credit(SEED_REFERRAL_ID, OPERATOR_ID, "again")

        assert result.credited is False
        assert result.link.manually_credited is False
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_automatic_after_manual_is_noop(self, service):
        """Test that approval after a manual credit pays nothing more."""
        service.referrals.manual_credit(SEED_REFERRAL_ID, OPERATOR_ID, "Paid offline")

        approve_purchase(service, REFERRED_ID)

        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")

    def test_notes_required(self, service):
        """Test that a manual credit must be explained."""
        with pytest.raises(ReferralCreditError):
            service.referrals.manual_credit(SEED_REFERRAL_ID, OPERATOR_ID, "   ")

    def test_unknown_link(self, service):
        """Test crediting a link that does not exist."""
        with pytest.raises(ReferralNotFoundError):
            service.referrals.manual_credit(uuid4(), OPERATOR_ID, "notes")


class TestRegisterLink:
    """Tests for recording who referred whom."""

    def test_register_new_link(self, service):
        """Test registering a referral for an unreferred user."""
        new_user = uuid4()

        link = service.referrals.register_link(REFERRER_ID, new_user)

        assert link.credit_status == CreditStatus.PENDING
        assert service.referrals.pending_link_for(new_user).id == link.id

    def test_self_referral_rejected(self, service):
        """Test that a user cannot refer themselves."""
        with pytest.raises(ReferralCreditError):
            service.referrals.register_link(REFERRER_ID, REFERRER_ID)

    def test_second_referrer_rejected(self, service):
        """Test that a user can only be referred once."""
        with pytest.raises(ReferralCreditError):
            service.referrals.register_link(OPERATOR_ID, REFERRED_ID)


class TestReconcile:
    """Tests for retrying credits that failed after an approval."""

    def test_failed_credit_retried(self, service, monkeypatch):
        """Test that a queued failure is paid on reconciliation."""
        original = service.referrals.try_credit

        def broken(new_user_id):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(service.referrals, "try_credit", broken)
        approve_purchase(service, REFERRED_ID)
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("0")

        monkeypatch.setattr(service.referrals, "try_credit", original)
        results = service.referrals.reconcile_failed_credits()

        assert [r.credited for r in results] == [True]
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")
        assert service.referrals.reconcile_failed_credits() == []


class TestRepair:
    """Tests for the duplicate and count repair job."""

    def _add_duplicate(self, service):
        duplicate_id = uuid4()
        service.storage.insert_referral({
            "id": duplicate_id, "referrer_id": OPERATOR_ID, "new_user_id": REFERRED_ID,
            "credit_status": CreditStatus.PENDING, "amount_given": None,
            "manually_credited": False, "is_duplicate": False, "notes": None,
            "created_at": utcnow() + timedelta(seconds=1), "confirmed_at": None,
        })
        return duplicate_id

    def test_dry_run_reports_without_changes(self, service):
        """Test that a dry run finds duplicates but writes nothing."""
        duplicate_id = self._add_duplicate(service)

        report = service.referrals.repair(OPERATOR_ID, dry_run=True)

        assert report.dry_run is True
        assert [d.duplicate_id for d in report.duplicates] == [duplicate_id]
        assert report.duplicates[0].original_id == SEED_REFERRAL_ID
        assert service.referrals.get_link(duplicate_id).is_duplicate is False
        assert service.audit_log("referral_repair") == []

    def test_repair_marks_duplicates(self, service):
        """Test that a real run stops duplicates from ever being credited."""
        duplicate_id = self._add_duplicate(service)

        service.referrals.repair(OPERATOR_ID, dry_run=False)
        approve_purchase(service, REFERRED_ID)

        assert service.referrals.get_link(duplicate_id).is_duplicate is True
        assert service.ledger.get_balance(OPERATOR_ID).current_balance == Decimal("0")
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000.00")
        assert len(service.audit_log("referral_repair")) == 1

    def test_mismatch_reported(self, service):
        """Test that a referral credit with no confirmed link is flagged."""
        service.ledger.credit(
            REFERRER_ID, Decimal("5000.00"), reason="Referral Bonus",
            idempotency_key=f"{REFERRAL_KEY_PREFIX}{uuid4()}",
        )

        report = service.referrals.repair(OPERATOR_ID)

        assert len(report.mismatches) == 1
        mismatch = report.mismatches[0]
        assert mismatch.referrer_id == REFERRER_ID
        assert mismatch.credited_links == 0
        assert mismatch.ledger_credits == 1

    def _confirm_without_credit(self, service):
        return service.storage.update_referral(SEED_REFERRAL_ID, {
            "credit_status": CreditStatus.CONFIRMED,
            "amount_given": Decimal("5000.00"),
            "confirmed_at": utcnow(),
        })

    def test_dry_run_reports_missing_credit(self, service):
        """Test that a confirmed link with no ledger credit is reported only."""
        self._confirm_without_credit(service)

        report = service.referrals.repair(OPERATOR_ID, dry_run=True)

        assert report.missing_credits == [SEED_REFERRAL_ID]
        assert report.mismatches[0].credited_links == 1
        assert report.mismatches[0].ledger_credits == 0
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("0")

    def test_repair_posts_missing_credit(self, service):
        """Test that a real run pays a confirmed link its missing bonus once."""
        self._confirm_without_credit(service)

        report = service.referrals.repair(OPERATOR_ID, dry_run=False)
        second = service.referrals.repair(OPERATOR_ID, dry_run=False)

        assert report.missing_credits == [SEED_REFERRAL_ID]
        assert second.missing_credits == []
        assert second.mismatches == []
        balance = service.ledger.get_balance(REFERRER_ID)
        assert balance.current_balance == Decimal("5000.00")
        assert balance.total_entries == 1

    def test_consistent_state_reports_nothing(self, service):
        """Test a clean run after a normal credit."""
        service.referrals.try_credit(REFERRED_ID)

        report = service.referrals.repair(OPERATOR_ID)

        assert report.duplicates == []
        assert report.mismatches == []
        assert report.missing_credits == []
