"""
Link between an account and a billing-provider subscription.

One account has at most one active link. Prior links are superseded
(is_active=False, superseded_at set), never deleted.
"""

import uuid

from sqlalchemy import Boolean, Column, ForeignKey, Index, String

from entitlement_engine.db_base import Base, UTCDateTime, utcnow


class ExternalSubscription(Base):
    __tablename__ = "external_subscriptions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String(255), ForeignKey("accounts.id"), nullable=False, index=True)
    provider_subscription_id = Column(String(255), nullable=False, index=True)
    provider_customer_id = Column(String(255), nullable=True, index=True)
    trust_domain = Column(String(20), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    superseded_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_external_subscriptions_account_active", "account_id", "is_active"),
    )

    def __repr__(self) -> str:
        return (
            f"<ExternalSubscription {self.provider_subscription_id} -> {self.account_id}"
            f" active={self.is_active}>"
        )
