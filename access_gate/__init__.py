"""
Access-Code Gate Service

This module provides:
- Access-code purchase records: submit → pending → approved / rejected / cancelled
- Operator disposition with one transition table and compare-and-swap commits
- Revocation of issued codes and the per-user gate state they back
- At-most-once referral bonus release on first approval
- Withdrawal authorization against the user's issued code
- A realtime change feed for purchase status
"""

from .models import (
    DenialReason,
    DispositionAction,
    PurchaseRecord,
    PurchaseStatus,
    ReferralLink,
    UserGateState,
)
from .service import AccessGateService

__all__ = [
    "DenialReason",
    "DispositionAction",
    "PurchaseRecord",
    "PurchaseStatus",
    "ReferralLink",
    "UserGateState",
    "AccessGateService",
]
