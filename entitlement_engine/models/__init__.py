"""
Database models for account subscription state.
"""

from entitlement_engine.models.account import (
    Account,
    AccountState,
    AccountStatus,
    PaymentStatus,
    TIER_BEARING_STATUSES,
    parse_status,
)
from entitlement_engine.models.external_subscription import ExternalSubscription

__all__ = [
    "Account",
    "AccountState",
    "AccountStatus",
    "PaymentStatus",
    "TIER_BEARING_STATUSES",
    "parse_status",
    "ExternalSubscription",
]
