import logging
import secrets
import time
from decimal import Decimal
from uuid import UUID

from .config import Settings
from .errors import AccessGateError, WithdrawalDeniedError
from .ledger import BalanceLedger
from .models import DenialReason, WithdrawalDecision, WithdrawalRequest, WithdrawalResponse
from .storage import InMemoryStorage

logger = logging.getLogger(__name__)


class WithdrawalGate:
    def __init__(self, storage: InMemoryStorage, ledger: BalanceLedger, settings: Settings):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings

    def authorize(self, user_id: UUID, supplied_code: str, amount: Decimal) -> WithdrawalDecision:
        """Check, in order: a code was issued, it matches exactly, the balance covers amount.

        Authorization does not reserve funds. Callers that move money must
        re-check inside the transaction that debits (see ``withdraw``).
        """
        with self.storage.reading():
            gate = self.storage.get_gate_state(user_id)
            if gate.access_code is None:
                return WithdrawalDecision.deny(DenialReason.NO_CODE_ISSUED)
            if supplied_code != gate.access_code:
                return WithdrawalDecision.deny(DenialReason.CODE_MISMATCH)
            if amount > self.ledger.get_balance(user_id).current_balance:
                return WithdrawalDecision.deny(DenialReason.INSUFFICIENT_BALANCE)
        return WithdrawalDecision.allow()

    def withdraw(self, request: WithdrawalRequest) -> WithdrawalResponse:
        if not self.settings.min_withdrawal <= request.amount <= self.settings.max_withdrawal:
            raise AccessGateError(
                f"Amount must be between {self.settings.min_withdrawal} and {self.settings.max_withdrawal}"
            )

        transaction_id = f"WD-{int(time.time() * 1000)}-{secrets.token_hex(4)}"

        with self.storage.transaction():
            decision = self.authorize(request.user_id, request.access_code, request.amount)
            if not decision.authorized:
                logger.warning("Withdrawal denied for %s: %s", request.user_id, decision.reason.value)
                raise WithdrawalDeniedError(decision.reason)

            entry = self.ledger.debit(
                request.user_id,
                request.amount,
                reason="Withdrawal",
                idempotency_key=transaction_id,
                metadata={
                    "account_number": request.account_number,
                    "account_name": request.account_name,
                    "bank": request.bank,
                },
            )
            self.storage.append_audit(request.user_id, "withdrawal_processed", {
                "transaction_id": transaction_id,
                "amount": str(request.amount),
            })

        logger.info("Withdrawal %s processed for %s", transaction_id, request.user_id)
        return WithdrawalResponse(
            transaction_id=transaction_id,
            ledger_entry=entry,
            new_balance=entry.balance_after,
            message="Withdrawal processed successfully",
        )
