"""
Account subscription state.

The account record is the single point of mutation contention. Writes go
through AccountRepository.compare_and_swap, which guards on `version`.
Accounts are never deleted by this subsystem; all states are soft.
"""

import enum
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import Column, Integer, String, Index

from entitlement_engine.db_base import Base, UTCDateTime, utcnow


class AccountStatus(str, enum.Enum):
    """Subscription status of an account."""
    SETUP_INCOMPLETE = "setup_incomplete"
    ACTIVE_TRIAL = "active_trial"
    EXPIRED_TRIAL = "expired_trial"
    ACTIVE = "active"                          # paid subscriber
    MISSED_PAYMENT = "missed_payment"          # grace
    CANCELED_BUT_ACTIVE = "canceled_but_active"
    CANCELED_AND_INACTIVE = "canceled_and_inactive"
    UNKNOWN = "unknown"


class PaymentStatus(str, enum.Enum):
    NONE = "none"
    PAID = "paid"
    UNPAID = "unpaid"


# Statuses that may carry a non-null subscription_tier. A trial may carry a
# pre-assigned tier override.
TIER_BEARING_STATUSES = frozenset({
    AccountStatus.ACTIVE,
    AccountStatus.CANCELED_BUT_ACTIVE,
    AccountStatus.SETUP_INCOMPLETE,
    AccountStatus.ACTIVE_TRIAL,
})


def parse_status(value: Optional[str]) -> AccountStatus:
    """Map a stored status string to AccountStatus; unrecognized values are UNKNOWN."""
    if value is None:
        return AccountStatus.UNKNOWN
    try:
        return AccountStatus(value)
    except ValueError:
        return AccountStatus.UNKNOWN


@dataclass(frozen=True)
class AccountState:
    """Detached, immutable view of an account used for entitlement computation."""

    account_id: str
    subscription_status: AccountStatus
    subscription_tier: Optional[str] = None
    last_paid_tier: Optional[str] = None
    trial_end_date: Optional[datetime] = None
    subscription_end_date: Optional[datetime] = None
    grace_period_end: Optional[datetime] = None
    payment_status: PaymentStatus = PaymentStatus.NONE


class Account(Base):
    """Authoritative subscription state for one account."""

    __tablename__ = "accounts"

    id = Column(String(255), primary_key=True, default=lambda: str(uuid.uuid4()))
    email = Column(String(320), nullable=True)

    subscription_status = Column(String(50), nullable=False, default=AccountStatus.SETUP_INCOMPLETE.value)
    subscription_tier = Column(String(50), nullable=True)
    last_paid_tier = Column(String(50), nullable=True, comment="Tier held before the last downgrade")
    payment_status = Column(String(20), nullable=False, default=PaymentStatus.NONE.value)

    trial_end_date = Column(UTCDateTime(), nullable=True)
    subscription_end_date = Column(UTCDateTime(), nullable=True)
    grace_period_end = Column(UTCDateTime(), nullable=True)

    # Conditional-write guard and staleness bookkeeping
    version = Column(Integer, nullable=False, default=1)
    last_event_at = Column(UTCDateTime(), nullable=True, comment="Embedded timestamp of last applied event")
    last_event_id = Column(String(255), nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_accounts_status", "subscription_status"),
    )

    @property
    def status(self) -> AccountStatus:
        return parse_status(self.subscription_status)

    def to_state(self) -> AccountState:
        return AccountState(
            account_id=self.id,
            subscription_status=self.status,
            subscription_tier=self.subscription_tier,
            last_paid_tier=self.last_paid_tier,
            trial_end_date=self.trial_end_date,
            subscription_end_date=self.subscription_end_date,
            grace_period_end=self.grace_period_end,
            payment_status=PaymentStatus(self.payment_status or PaymentStatus.NONE.value),
        )

    def __repr__(self) -> str:
        return f"<Account {self.id} status={self.subscription_status} tier={self.subscription_tier} v{self.version}>"
