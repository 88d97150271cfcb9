from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID
from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


class PurchaseStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"

    @property
    def is_terminal(self) -> bool:
        return self is not PurchaseStatus.PENDING


class DispositionAction(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"
    CANCEL = "CANCEL"
    REVOKE = "REVOKE"


class CreditStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"


class EntryType(str, Enum):
    CREDIT = "CREDIT"
    DEBIT = "DEBIT"


class DenialReason(str, Enum):
    NO_CODE_ISSUED = "NO_CODE_ISSUED"
    CODE_MISMATCH = "CODE_MISMATCH"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"


def normalize_status(value):
    # Rows written before the status column existed carry no status and
    # were only ever pending review.
    if value is None or value == "":
        return PurchaseStatus.PENDING
    if isinstance(value, str):
        return value.upper()
    return value


class PurchaseRecord(BaseModel):
    id: UUID
    user_id: UUID
    submitted_proof: str
    status: PurchaseStatus = PurchaseStatus.PENDING
    issued_code: Optional[str] = None
    code_version: Optional[int] = None
    acknowledged: bool = False
    last_action: Optional[DispositionAction] = None
    disposed_by: Optional[UUID] = None
    version: int = 1
    created_at: datetime
    last_transition_at: datetime

    model_config = ConfigDict(from_attributes=True)

    @field_validator("status", mode="before")
    @classmethod
    def _normalize_status(cls, value):
        return normalize_status(value)

    @model_validator(mode="after")
    def _issued_code_only_when_approved(self) -> "PurchaseRecord":
        if (self.issued_code is not None) != (self.status == PurchaseStatus.APPROVED):
            raise ValueError(
                f"issued_code must be set iff status is APPROVED (status={self.status.value})"
            )
        return self


class UserGateState(BaseModel):
    user_id: UUID
    access_code: Optional[str] = None
    has_purchased: bool = False
    source_record_id: Optional[UUID] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(frozen=True, from_attributes=True)

    @model_validator(mode="after")
    def _has_purchased_mirrors_code(self) -> "UserGateState":
        if self.has_purchased != (self.access_code is not None):
            raise ValueError("has_purchased must mirror access_code")
        if (self.source_record_id is None) != (self.access_code is None):
            raise ValueError("source_record_id must be set iff a code is held")
        return self

    @classmethod
    def holding(cls, user_id: UUID, code: str, record_id: UUID, at: datetime) -> "UserGateState":
        return cls(user_id=user_id, access_code=code, has_purchased=True,
                   source_record_id=record_id, updated_at=at)

    @classmethod
    def cleared(cls, user_id: UUID, at: Optional[datetime] = None) -> "UserGateState":
        return cls(user_id=user_id, updated_at=at)


class ReferralLink(BaseModel):
    id: UUID
    referrer_id: UUID
    new_user_id: UUID
    credit_status: CreditStatus = CreditStatus.PENDING
    amount_given: Optional[Decimal] = None
    manually_credited: bool = False
    is_duplicate: bool = False
    notes: Optional[str] = None
    created_at: datetime
    confirmed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

    def can_credit(self) -> bool:
        return (
            self.credit_status == CreditStatus.PENDING
            and self.amount_given is None
            and not self.is_duplicate
        )


class LedgerEntry(BaseModel):
    id: UUID
    user_id: UUID
    entry_type: EntryType
    amount: Decimal
    currency: str = "NGN"
    balance_after: Decimal
    reason: str
    idempotency_key: str
    created_at: datetime
    metadata: dict = Field(default_factory=dict)

    model_config = ConfigDict(from_attributes=True)


class UserBalance(BaseModel):
    user_id: UUID
    currency: str
    current_balance: Decimal
    total_entries: int
    last_transaction_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class LedgerHistoryResponse(BaseModel):
    user_id: UUID
    entries: list[LedgerEntry]
    total_count: int
    current_balance: Decimal


class AccessCodeSetting(BaseModel):
    version: int
    code: str
    set_by: Optional[UUID] = None
    set_at: datetime


class AuditLogEntry(BaseModel):
    id: UUID
    actor_id: Optional[UUID] = None
    action_type: str
    details: dict = Field(default_factory=dict)
    created_at: datetime


class TransitionEvent(BaseModel):
    position: int = 0
    record_id: UUID
    record_version: int
    user_id: UUID
    previous_status: Optional[PurchaseStatus] = None
    new_status: PurchaseStatus
    action: Optional[DispositionAction] = None
    occurred_at: datetime


# Requests

class SubmitPurchaseRequest(BaseModel):
    user_id: UUID
    proof: str = Field(..., min_length=1, description="Opaque reference returned by proof storage")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "660e8400-e29b-41d4-a716-446655440001",
            "proof": "proofs/660e8400/receipt-0001.jpg",
        }
    })


class OwnerActionRequest(BaseModel):
    user_id: UUID


class DispositionRequest(BaseModel):
    action: DispositionAction
    operator_id: UUID
    issued_code: Optional[str] = Field(default=None, min_length=1)


class WithdrawalAuthorizeRequest(BaseModel):
    user_id: UUID
    access_code: str
    amount: Decimal = Field(..., gt=0)


class WithdrawalRequest(BaseModel):
    user_id: UUID
    amount: Decimal = Field(..., gt=0)
    account_number: str = Field(..., pattern=r"^[0-9]{10}$")
    account_name: str = Field(..., min_length=1)
    bank: str = Field(..., min_length=1)
    access_code: str

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "660e8400-e29b-41d4-a716-446655440001",
            "amount": 2500.00,
            "account_number": "0123456789",
            "account_name": "Jane Referred",
            "bank": "Access Bank",
            "access_code": "RPC2242535",
        }
    })


class ManualCreditRequest(BaseModel):
    operator_id: UUID
    notes: str = Field(..., description="Why the operator is crediting by hand")

    @field_validator("notes")
    @classmethod
    def _notes_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("notes are required for a manual credit")
        return value.strip()


class ReferralRepairRequest(BaseModel):
    operator_id: UUID
    dry_run: bool = True


class AccessCodeUpdateRequest(BaseModel):
    code: str = Field(..., min_length=4)
    operator_id: UUID


# Responses

class PurchaseResponse(BaseModel):
    record: PurchaseRecord
    gate: Optional[UserGateState] = None
    message: str


class WithdrawalDecision(BaseModel):
    authorized: bool
    reason: Optional[DenialReason] = None
    redirect: Optional[str] = None

    @classmethod
    def allow(cls) -> "WithdrawalDecision":
        return cls(authorized=True)

    @classmethod
    def deny(cls, reason: DenialReason) -> "WithdrawalDecision":
        redirect = None
        if reason in (DenialReason.NO_CODE_ISSUED, DenialReason.CODE_MISMATCH):
            redirect = "/buy-code"
        return cls(authorized=False, reason=reason, redirect=redirect)


class WithdrawalResponse(BaseModel):
    transaction_id: str
    ledger_entry: LedgerEntry
    new_balance: Decimal
    message: str


class ReferralCreditResult(BaseModel):
    link: Optional[ReferralLink] = None
    credited: bool
    ledger_entry: Optional[LedgerEntry] = None
    message: str


class DuplicateReferral(BaseModel):
    new_user_id: UUID
    duplicate_id: UUID
    original_id: UUID


class ReferralCountMismatch(BaseModel):
    referrer_id: UUID
    credited_links: int
    ledger_credits: int
    credited_amount: Decimal
    ledger_amount: Decimal


class ReferralRepairReport(BaseModel):
    dry_run: bool
    duplicates: list[DuplicateReferral] = Field(default_factory=list)
    mismatches: list[ReferralCountMismatch] = Field(default_factory=list)
    missing_credits: list[UUID] = Field(default_factory=list)


class EventFeedResponse(BaseModel):
    user_id: UUID
    events: list[TransitionEvent]
