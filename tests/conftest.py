from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from entitlement_engine.billing.verifier import compute_signature
from entitlement_engine.config import DEFAULT_TIER_CATALOG_PATH, Settings
from entitlement_engine.database import build_engine, build_session_factory, create_schema
from entitlement_engine.entitlements.loader import TierCatalogLoader
from entitlement_engine.models.account import Account, AccountStatus, PaymentStatus
from entitlement_engine.models.external_subscription import ExternalSubscription
from entitlement_engine.platform.security_log import Severity

SANDBOX_SECRET = "whsec_sandbox_test"
PRODUCTION_SECRET = "whsec_production_test"

T0 = datetime(2025, 2, 1, 12, 0, tzinfo=timezone.utc)

TEST_SETTINGS = Settings(
    webhook_secret_sandbox=SANDBOX_SECRET,
    webhook_secret_production=PRODUCTION_SECRET,
    database_url="sqlite://",
    max_webhook_payload_bytes=4096,
    admin_api_token="admin-token",
)


class FixedClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class RecordingSink:
    """Security sink double that keeps every event in memory."""

    def __init__(self):
        self.events = []

    def __call__(self, event_type, severity=Severity.INFO, account_id=None, details=None):
        self.events.append({
            "event_type": event_type,
            "severity": severity,
            "account_id": account_id,
            "details": dict(details or {}),
        })

    def of_type(self, event_type):
        return [e for e in self.events if e["event_type"] == event_type]


class _FakeRedis:
    def __init__(self):
        self.store = {}
        self.ttls = {}

    def get(self, key):
        return self.store.get(key)

    def setex(self, key, ttl, value):
        self.store[key] = value
        self.ttls[key] = ttl

    def delete(self, key):
        self.store.pop(key, None)

    def ping(self):
        return True


def sign(payload: bytes, secret: str = PRODUCTION_SECRET) -> str:
    return compute_signature(payload, secret)


def event_body(
    event_type: str,
    data: dict,
    created: Optional[datetime] = T0,
    event_id: Optional[str] = "evt_1",
) -> bytes:
    envelope = {"type": event_type, "data": data}
    if event_id is not None:
        envelope["id"] = event_id
    if created is not None:
        envelope["created"] = int(created.timestamp())
    return json.dumps(envelope).encode("utf-8")


def epoch(value: datetime) -> int:
    return int(value.timestamp())


@pytest.fixture
def catalog():
    return TierCatalogLoader(str(DEFAULT_TIER_CATALOG_PATH)).catalog


@pytest.fixture
def engine():
    eng = build_engine("sqlite://")
    create_schema(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def security_sink():
    return RecordingSink()


@pytest.fixture
def make_account(session_factory):
    """Insert an account, optionally linked to a provider subscription."""

    def _make(
        account_id: str = "acct_1",
        status: AccountStatus = AccountStatus.ACTIVE,
        tier: Optional[str] = None,
        subscription_id: Optional[str] = "sub_1",
        customer_id: Optional[str] = "cus_1",
        **fields,
    ) -> Account:
        session = session_factory()
        try:
            account = Account(
                id=account_id,
                subscription_status=status.value,
                subscription_tier=tier,
                payment_status=fields.pop("payment_status", PaymentStatus.NONE).value,
                version=1,
                created_at=T0 - timedelta(days=30),
                updated_at=T0 - timedelta(days=30),
                **fields,
            )
            session.add(account)
            if subscription_id:
                session.add(ExternalSubscription(
                    account_id=account_id,
                    provider_subscription_id=subscription_id,
                    provider_customer_id=customer_id,
                    trust_domain="production",
                    is_active=True,
                    created_at=T0 - timedelta(days=30),
                ))
            session.commit()
            return account
        finally:
            session.close()

    return _make


@pytest.fixture
def load_account(session_factory):
    def _load(account_id: str = "acct_1") -> Optional[Account]:
        session = session_factory()
        try:
            return session.get(Account, account_id)
        finally:
            session.close()

    return _load
