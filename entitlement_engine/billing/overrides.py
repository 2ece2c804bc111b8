"""
Administrative status overrides.

An operator may set an account's status, tier and trial end directly. The
write goes through the same conditional-write path and tier invariant as
billing events, and is always security-logged.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import sessionmaker

from entitlement_engine.billing.errors import AccountNotFound, PersistenceFailure
from entitlement_engine.billing.reconciler import diff_state, enforce_tier_invariant
from entitlement_engine.billing.repository import AccountRepository
from entitlement_engine.db_base import utcnow
from entitlement_engine.entitlements.models import TierCatalog
from entitlement_engine.models.account import AccountStatus
from entitlement_engine.platform.security_log import (
    SecurityEventType,
    SecuritySink,
    Severity,
    null_security_sink,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OverrideResult:
    account_id: str
    previous_status: AccountStatus
    new_status: AccountStatus
    changed_fields: tuple


class InvalidOverride(ValueError):
    """Override request that cannot be applied as given."""


class UnknownTier(InvalidOverride):
    """Override named a tier that is not in the catalog."""


# Statuses the calculator only grants access for when a tier is set
PAID_STATUSES = (AccountStatus.ACTIVE, AccountStatus.CANCELED_BUT_ACTIVE)


def apply_status_override(
    session_factory: sessionmaker,
    catalog: TierCatalog,
    account_id: str,
    status: AccountStatus,
    tier: Optional[str] = None,
    trial_end_date: Optional[datetime] = None,
    actor: Optional[str] = None,
    reason: Optional[str] = None,
    security_log: Optional[SecuritySink] = None,
    clock: Callable[[], datetime] = utcnow,
) -> OverrideResult:
    """
    Set status (and optionally tier / trial end) for an account.

    Raises:
        AccountNotFound: no such account
        UnknownTier: tier is not defined in the catalog
        InvalidOverride: paid status without a tier and no tier to restore
        PersistenceFailure: another writer changed the account concurrently
    """
    sink = security_log or null_security_sink
    if tier is not None and catalog.get(tier) is None:
        raise UnknownTier(f"Unknown tier: {tier}")

    session = session_factory()
    try:
        repo = AccountRepository(session)
        account = repo.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)

        previous = account.status
        target: Dict[str, Any] = {"subscription_status": status}
        if tier is not None:
            target["subscription_tier"] = catalog.get(tier).name
        elif status in PAID_STATUSES and not account.subscription_tier:
            if not account.last_paid_tier:
                raise InvalidOverride(f"Status {status.value} requires a tier")
            target["subscription_tier"] = account.last_paid_tier
        if trial_end_date is not None:
            target["trial_end_date"] = trial_end_date

        changes = diff_state(account, enforce_tier_invariant(account, target))
        if changes and not repo.compare_and_swap(account, changes, clock()):
            raise PersistenceFailure("Account was modified concurrently", account_id=account_id)
    finally:
        session.close()

    logger.warning("Administrative status override", extra={
        "account_id": account_id,
        "from_status": previous.value,
        "to_status": status.value,
        "actor": actor,
    })
    sink(
        SecurityEventType.ADMIN_OVERRIDE,
        Severity.WARNING,
        account_id,
        {
            "from_status": previous.value,
            "to_status": status.value,
            "changed_fields": sorted(changes),
            "actor": actor,
            "reason": reason,
        },
    )
    return OverrideResult(
        account_id=account_id,
        previous_status=previous,
        new_status=status,
        changed_fields=tuple(sorted(changes)),
    )
