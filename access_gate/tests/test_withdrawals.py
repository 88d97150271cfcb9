"""
Unit Tests for the Withdrawal Gate

Tests cover:
1. Authorization order: code issued, code matches, balance covers amount
2. Withdrawals debit the ledger only when authorized
3. Amount bounds
"""

from decimal import Decimal

import pytest

from access_gate.errors import AccessGateError, WithdrawalDeniedError
from access_gate.models import DenialReason, DispositionAction, EntryType, WithdrawalRequest
from access_gate.storage import OPERATOR_ID, REFERRED_ID, REFERRER_ID


def give_code(service, user_id):
    record = service.purchases.submit(user_id, "proofs/receipt.jpg")
    return service.engine.disposition(record.id, DispositionAction.APPROVE, OPERATOR_ID)


def fund(service, user_id, amount):
    return service.ledger.credit(user_id, Decimal(amount), reason="Test funding", idempotency_key=f"fund:{user_id}")


def withdrawal(user_id, amount, code="ABC123"):
    return WithdrawalRequest(
        user_id=user_id,
        amount=Decimal(amount),
        account_number="0123456789",
        account_name="John Referrer",
        bank="Access Bank",
        access_code=code,
    )


class TestAuthorize:
    """Tests for the withdrawal authorization check."""

    def test_no_code_issued(self, service):
        """Test that a user without a code is sent to buy one."""
        fund(service, REFERRER_ID, "5000")

        decision = service.withdrawals.authorize(REFERRER_ID, "ABC123", Decimal("1000"))

        assert decision.authorized is False
        assert decision.reason == DenialReason.NO_CODE_ISSUED
        assert decision.redirect == "/buy-code"

    def test_code_mismatch(self, service):
        """Test that a wrong code is rejected."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")

        decision = service.withdrawals.authorize(REFERRER_ID, "WRONG1", Decimal("1000"))

        assert decision.reason == DenialReason.CODE_MISMATCH
        assert decision.redirect == "/buy-code"

    def test_code_comparison_is_case_sensitive(self, service):
        """Test that codes must match exactly."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")

        decision = service.withdrawals.authorize(REFERRER_ID, "abc123", Decimal("1000"))

        assert decision.reason == DenialReason.CODE_MISMATCH

    def test_insufficient_balance(self, service):
        """Test that the balance check comes after the code checks."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "500")

        decision = service.withdrawals.authorize(REFERRER_ID, "ABC123", Decimal("1000"))

        assert decision.reason == DenialReason.INSUFFICIENT_BALANCE
        assert decision.redirect is None

    def test_code_checked_before_balance(self, service):
        """Test that a wrong code is reported even with no balance."""
        give_code(service, REFERRER_ID)

        decision = service.withdrawals.authorize(REFERRER_ID, "WRONG1", Decimal("1000000"))

        assert decision.reason == DenialReason.CODE_MISMATCH

    def test_authorized(self, service):
        """Test a withdrawal that passes every check."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")

        decision = service.withdrawals.authorize(REFERRER_ID, "ABC123", Decimal("5000"))

        assert decision.authorized is True
        assert decision.reason is None

    def test_revoked_code_denied(self, service):
        """Test that revoking the code closes the gate."""
        approved = give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")
        service.engine.disposition(approved.id, DispositionAction.REVOKE, OPERATOR_ID)

        decision = service.withdrawals.authorize(REFERRER_ID, "ABC123", Decimal("1000"))

        assert decision.reason == DenialReason.NO_CODE_ISSUED

    def test_rotated_code_does_not_change_issued_code(self, service):
        """Test that a user keeps the code they were issued after rotation."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")
        service.codes.set_code("NEWCODE9", OPERATOR_ID)

        assert service.withdrawals.authorize(REFERRER_ID, "ABC123", Decimal("1000")).authorized is True
        assert service.withdrawals.authorize(REFERRER_ID, "NEWCODE9", Decimal("1000")).authorized is False


class TestWithdraw:
    """Tests for moving money out."""

    def test_withdraw_debits_ledger(self, service):
        """Test that an authorized withdrawal debits the balance."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "5000")

        response = service.withdrawals.withdraw(withdrawal(REFERRER_ID, "2000"))

        assert response.transaction_id.startswith("WD-")
        assert response.ledger_entry.entry_type == EntryType.DEBIT
        assert response.ledger_entry.amount == Decimal("-2000")
        assert response.new_balance == Decimal("3000")
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("3000")
        assert len(service.audit_log("withdrawal_processed")) == 1

    def test_denied_withdraw_leaves_balance(self, service):
        """Test that a denied withdrawal moves no money."""
        fund(service, REFERRER_ID, "5000")

        with pytest.raises(WithdrawalDeniedError) as exc_info:
            service.withdrawals.withdraw(withdrawal(REFERRER_ID, "2000"))

        assert exc_info.value.reason == DenialReason.NO_CODE_ISSUED
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("5000")
        assert service.audit_log("withdrawal_processed") == []

    def test_cannot_overdraw(self, service):
        """Test that two withdrawals cannot spend the same balance."""
        give_code(service, REFERRER_ID)
        fund(service, REFERRER_ID, "3000")
        service.withdrawals.withdraw(withdrawal(REFERRER_ID, "2000"))

        with pytest.raises(WithdrawalDeniedError) as exc_info:
            service.withdrawals.withdraw(withdrawal(REFERRER_ID, "2000"))

        assert exc_info.value.reason == DenialReason.INSUFFICIENT_BALANCE
        assert service.ledger.get_balance(REFERRER_ID).current_balance == Decimal("1000")

    @pytest.mark.parametrize("amount", ["999.99", "10000000.01"])
    def test_amount_bounds(self, service, amount):
        """Test that amounts outside the configured range are refused."""
        give_code(service, REFERRED_ID)
        fund(service, REFERRED_ID, "20000000")

        with pytest.raises(AccessGateError):
            service.withdrawals.withdraw(withdrawal(REFERRED_ID, amount))

    def test_account_number_format(self):
        """Test that account numbers must be ten digits."""
        with pytest.raises(ValueError):
            WithdrawalRequest(
                user_id=REFERRER_ID, amount=Decimal("1000"), account_number="12345",
                account_name="John Referrer", bank="Access Bank", access_code="ABC123",
            )
