from decimal import Decimal

import pytest

from access_gate.config import Settings
from access_gate.service import AccessGateService


class RecordingTransport:
    def __init__(self):
        self.sent = []

    def send(self, user_id, title, body, cta_ref=None):
        self.sent.append({"user_id": user_id, "title": title, "body": body, "cta_ref": cta_ref})


@pytest.fixture
def settings():
    return Settings(
        initial_access_code="ABC123",
        referral_bonus=Decimal("5000.00"),
        min_withdrawal=Decimal("1000.00"),
        max_withdrawal=Decimal("10000000.00"),
    )


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def service(settings, transport):
    return AccessGateService(settings=settings, transport=transport)
