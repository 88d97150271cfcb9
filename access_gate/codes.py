"""
Access-code issuance.

The operator-configured code is versioned: every change appends a new
version, and approvals stamp the code and version they were issued with onto
the purchase record, so history stays accurate after the code is rotated.
"""

import logging
import secrets
import string
from dataclasses import dataclass
from typing import Optional, Protocol
from uuid import UUID

from .errors import AccessGateError
from .models import AccessCodeSetting, PurchaseRecord
from .storage import InMemoryStorage, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedCode:
    code: str
    version: Optional[int] = None


class AccessCodePolicy(Protocol):
    def issue(self, record: PurchaseRecord) -> IssuedCode: ...


class AccessCodeSettings:
    def __init__(self, storage: InMemoryStorage, initial_code: Optional[str] = None):
        self.storage = storage
        if initial_code:
            with self.storage.transaction():
                if not self.storage.access_codes:
                    self.storage.access_codes.append({
                        "version": 1, "code": initial_code, "set_by": None, "set_at": utcnow(),
                    })

    def current(self) -> Optional[AccessCodeSetting]:
        with self.storage.reading():
            if not self.storage.access_codes:
                return None
            return AccessCodeSetting(**self.storage.access_codes[-1])

    def history(self) -> list[AccessCodeSetting]:
        with self.storage.reading():
            return [AccessCodeSetting(**v) for v in self.storage.access_codes]

    def set_code(self, code: str, operator_id: UUID) -> AccessCodeSetting:
        code = code.strip()
        if not code:
            raise AccessGateError("Access code cannot be blank")

        with self.storage.transaction():
            latest = self.storage.access_codes[-1] if self.storage.access_codes else None
            if latest and latest["code"] == code:
                return AccessCodeSetting(**latest)
            setting = {
                "version": (latest["version"] + 1) if latest else 1,
                "code": code,
                "set_by": operator_id,
                "set_at": utcnow(),
            }
            self.storage.access_codes.append(setting)
            self.storage.append_audit(operator_id, "access_code_updated", {
                "version": setting["version"],
                "previous_version": latest["version"] if latest else None,
            })

        logger.info("Access code rotated to version %s by %s", setting["version"], operator_id)
        return AccessCodeSetting(**setting)


class GlobalCodePolicy:
    """Issue whatever code the operators currently have configured."""

    def __init__(self, settings: AccessCodeSettings):
        self.settings = settings

    def issue(self, record: PurchaseRecord) -> IssuedCode:
        current = self.settings.current()
        if current is None:
            raise AccessGateError("No access code configured; set one before approving purchases")
        return IssuedCode(code=current.code, version=current.version)


class GeneratedCodePolicy:
    """Issue a fresh random code per approval."""

    ALPHABET = string.ascii_uppercase + string.digits

    def __init__(self, prefix: str = "RPC", length: int = 7):
        if length < 4:
            raise ValueError("Generated codes need at least 4 random characters")
        self.prefix = prefix
        self.length = length

    def issue(self, record: PurchaseRecord) -> IssuedCode:
        body = "".join(secrets.choice(self.ALPHABET) for _ in range(self.length))
        return IssuedCode(code=f"{self.prefix}{body}")
