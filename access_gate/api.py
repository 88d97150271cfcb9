from typing import Optional
from uuid import UUID
from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    AccessGateError, AlreadyPendingError, ConcurrencyConflictError,
    InvalidTransitionError, RecordNotFoundError, ReferralNotFoundError,
    WithdrawalDeniedError,
)
from .models import (
    AccessCodeSetting, AccessCodeUpdateRequest, DenialReason, DispositionRequest,
    EventFeedResponse, LedgerHistoryResponse, ManualCreditRequest, OwnerActionRequest,
    PurchaseRecord, PurchaseResponse, PurchaseStatus, ReferralCreditResult,
    ReferralRepairReport, ReferralRepairRequest, SubmitPurchaseRequest, UserBalance, UserGateState,
    WithdrawalAuthorizeRequest, WithdrawalDecision, WithdrawalRequest, WithdrawalResponse,
)
from .service import AccessGateService

app = FastAPI(
    title="Access Gate API",
    description="Access-code purchase review, code issuance and withdrawal gating",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

gate_service = AccessGateService()


def _purchase_errors(e: AccessGateError) -> HTTPException:
    if isinstance(e, RecordNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (InvalidTransitionError, AlreadyPendingError, ConcurrencyConflictError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "access-gate"}


@app.post("/purchases", response_model=PurchaseResponse, status_code=status.HTTP_201_CREATED, tags=["Purchases"])
def submit_purchase(request: SubmitPurchaseRequest) -> PurchaseResponse:
    try:
        record = gate_service.purchases.submit(request.user_id, request.proof)
    except AccessGateError as e:
        raise _purchase_errors(e)
    return PurchaseResponse(record=record, message="Purchase submitted for review")


@app.get("/purchases/{record_id}", response_model=PurchaseRecord, tags=["Purchases"])
def get_purchase(record_id: UUID) -> PurchaseRecord:
    try:
        return gate_service.purchases.get(record_id)
    except RecordNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Purchase {record_id} not found")


@app.post("/purchases/{record_id}/cancel", response_model=PurchaseResponse, tags=["Purchases"])
def cancel_purchase(record_id: UUID, request: OwnerActionRequest) -> PurchaseResponse:
    try:
        record = gate_service.purchases.cancel(record_id, request.user_id)
    except AccessGateError as e:
        raise _purchase_errors(e)
    return PurchaseResponse(record=record, message="Purchase cancelled")


@app.post("/purchases/{record_id}/acknowledge", response_model=PurchaseRecord, tags=["Purchases"])
def acknowledge_purchase(record_id: UUID, request: OwnerActionRequest,
                         seen_version: Optional[int] = None) -> PurchaseRecord:
    try:
        return gate_service.purchases.acknowledge(record_id, request.user_id, seen_version)
    except AccessGateError as e:
        raise _purchase_errors(e)


@app.post("/purchases/{record_id}/disposition", response_model=PurchaseResponse, tags=["Admin"])
def dispose_purchase(record_id: UUID, request: DispositionRequest) -> PurchaseResponse:
    try:
        record = gate_service.engine.disposition(
            record_id, request.action, request.operator_id, request.issued_code,
        )
    except AccessGateError as e:
        raise _purchase_errors(e)
    return PurchaseResponse(
        record=record,
        gate=gate_service.gate_state(record.user_id),
        message=f"Purchase {record.status.value.lower()}",
    )


@app.get("/admin/purchases", response_model=list[PurchaseRecord], tags=["Admin"])
def list_purchases(status_filter: Optional[PurchaseStatus] = Query(default=None, alias="status")) -> list[PurchaseRecord]:
    return gate_service.purchases.list_by_status(status_filter)


@app.get("/users/{user_id}/gate", response_model=UserGateState, tags=["Users"])
def get_gate_state(user_id: UUID) -> UserGateState:
    return gate_service.gate_state(user_id)


@app.get("/users/{user_id}/purchases/latest", response_model=PurchaseRecord, tags=["Users"])
def get_latest_purchase(user_id: UUID,
                        status_filter: Optional[PurchaseStatus] = Query(default=None, alias="status")) -> PurchaseRecord:
    record = gate_service.purchases.latest_for_user(user_id, status_filter)
    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No purchases for user {user_id}")
    return record


@app.get("/users/{user_id}/purchases/unacknowledged", response_model=list[PurchaseRecord], tags=["Users"])
def get_unacknowledged(user_id: UUID) -> list[PurchaseRecord]:
    return gate_service.purchases.unacknowledged_for_user(user_id)


@app.get("/users/{user_id}/events", response_model=EventFeedResponse, tags=["Users"])
def get_user_events(user_id: UUID, after_position: int = 0) -> EventFeedResponse:
    return EventFeedResponse(
        user_id=user_id,
        events=gate_service.notifier.events_for_user(user_id, after_position),
    )


@app.post("/withdrawals/authorize", response_model=WithdrawalDecision, tags=["Withdrawals"])
def authorize_withdrawal(request: WithdrawalAuthorizeRequest) -> WithdrawalDecision:
    return gate_service.withdrawals.authorize(request.user_id, request.access_code, request.amount)


@app.post("/withdrawals", response_model=WithdrawalResponse, tags=["Withdrawals"])
def create_withdrawal(request: WithdrawalRequest) -> WithdrawalResponse:
    try:
        return gate_service.withdrawals.withdraw(request)
    except WithdrawalDeniedError as e:
        decision = WithdrawalDecision.deny(e.reason)
        code = (status.HTTP_400_BAD_REQUEST if e.reason == DenialReason.INSUFFICIENT_BALANCE
                else status.HTTP_403_FORBIDDEN)
        raise HTTPException(status_code=code, detail=decision.model_dump(mode="json"))
    except AccessGateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/referrals/{link_id}/manual-credit", response_model=ReferralCreditResult, tags=["Admin"])
def manual_credit_referral(link_id: UUID, request: ManualCreditRequest) -> ReferralCreditResult:
    try:
        return gate_service.referrals.manual_credit(link_id, request.operator_id, request.notes)
    except ReferralNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Referral {link_id} not found")
    except AccessGateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/admin/referrals/repair", response_model=ReferralRepairReport, tags=["Admin"])
def repair_referrals(request: ReferralRepairRequest) -> ReferralRepairReport:
    return gate_service.referrals.repair(request.operator_id, request.dry_run)


@app.get("/admin/settings/access-code", response_model=AccessCodeSetting, tags=["Admin"])
def get_access_code() -> AccessCodeSetting:
    current = gate_service.codes.current()
    if current is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No access code configured")
    return current


@app.put("/admin/settings/access-code", response_model=AccessCodeSetting, tags=["Admin"])
def set_access_code(request: AccessCodeUpdateRequest) -> AccessCodeSetting:
    try:
        return gate_service.codes.set_code(request.code, request.operator_id)
    except AccessGateError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
def get_user_balance(user_id: UUID) -> UserBalance:
    return gate_service.ledger.get_balance(user_id)


@app.get("/users/{user_id}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
def get_user_ledger(user_id: UUID, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
    return gate_service.ledger.get_ledger_history(user_id, limit, offset)


if __name__ == "__main__":
    import logging
    import uvicorn
    logging.basicConfig(level=gate_service.settings.log_level)
    uvicorn.run(app, host="0.0.0.0", port=8000)
