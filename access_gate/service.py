from typing import Optional
from uuid import UUID

from .codes import AccessCodePolicy, AccessCodeSettings, GlobalCodePolicy
from .config import Settings, get_settings
from .disposition import DispositionEngine
from .ledger import BalanceLedger
from .models import AuditLogEntry, UserGateState
from .notifier import NotificationTransport, RealtimeNotifier
from .purchases import PurchaseStore
from .referrals import ReferralCreditTrigger
from .storage import InMemoryStorage
from .withdrawals import WithdrawalGate


class AccessGateService:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        storage: Optional[InMemoryStorage] = None,
        code_policy: Optional[AccessCodePolicy] = None,
        transport: Optional[NotificationTransport] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage or InMemoryStorage()
        self.ledger = BalanceLedger(self.storage, self.settings.currency)
        self.codes = AccessCodeSettings(self.storage, self.settings.initial_access_code)
        self.notifier = RealtimeNotifier(self.settings.event_buffer_size, transport)
        self.referrals = ReferralCreditTrigger(self.storage, self.ledger, self.settings.referral_bonus)
        self.engine = DispositionEngine(
            self.storage,
            self.referrals,
            self.notifier,
            code_policy or GlobalCodePolicy(self.codes),
        )
        self.purchases = PurchaseStore(self.storage, self.engine, self.notifier)
        self.withdrawals = WithdrawalGate(self.storage, self.ledger, self.settings)

    def gate_state(self, user_id: UUID) -> UserGateState:
        return self.storage.get_gate_state(user_id)

    def audit_log(self, action_type: Optional[str] = None) -> list[AuditLogEntry]:
        with self.storage.reading():
            return [
                AuditLogEntry(**e) for e in self.storage.audit_logs
                if action_type is None or e["action_type"] == action_type
            ]
