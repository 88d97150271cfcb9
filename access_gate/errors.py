from typing import Optional
from uuid import UUID


class AccessGateError(Exception):
    pass


class RecordNotFoundError(AccessGateError):
    pass


class ReferralNotFoundError(AccessGateError):
    pass


class InvalidTransitionError(AccessGateError):
    pass


class AlreadyPendingError(AccessGateError):
    def __init__(self, user_id: UUID, record_id: UUID):
        super().__init__(f"User {user_id} already has pending purchase {record_id}")
        self.user_id = user_id
        self.record_id = record_id


class ConcurrencyConflictError(AccessGateError):
    """Lost a compare-and-swap race. Re-read current state before retrying."""


class ReferralCreditError(AccessGateError):
    pass


class WithdrawalDeniedError(AccessGateError):
    def __init__(self, reason, message: Optional[str] = None):
        super().__init__(message or f"Withdrawal denied: {reason.value}")
        self.reason = reason
