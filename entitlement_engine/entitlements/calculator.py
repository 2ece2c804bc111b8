from __future__ import annotations

import math
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional

from entitlement_engine.models.account import AccountState, AccountStatus

from .models import FEATURE_CAPABILITIES, LIMIT_KEYS, EntitlementSnapshot, Tier, TierCatalog

_DAY = timedelta(days=1)

RESTRICTED_ACCESS_LEVEL = "unknown"


def _days_until(end: Optional[datetime], now: datetime) -> int:
    if end is None or end <= now:
        return 0
    return math.ceil((end - now) / _DAY)


def restrictive_snapshot(account_id: Optional[str], now: Optional[datetime] = None) -> EntitlementSnapshot:
    """Most restrictive entitlement: dashboard view only, zero limits."""
    return EntitlementSnapshot(
        account_id=account_id,
        access_level=RESTRICTED_ACCESS_LEVEL,
        tier=None,
        can_view_dashboard=True,
        evaluated_at=now,
    )


def tier_snapshot(
    account_id: Optional[str],
    tier: Tier,
    access_level: str,
    now: datetime,
    **display,
) -> EntitlementSnapshot:
    """Capabilities and limits read verbatim from the tier, plus display fields."""
    values: Dict[str, object] = {flag: tier.has_feature(key) for key, flag in FEATURE_CAPABILITIES.items()}
    values.update({key: tier.limit(key) for key in LIMIT_KEYS})
    values.update(display)
    return EntitlementSnapshot(
        account_id=account_id,
        access_level=access_level,
        tier=tier.name,
        evaluated_at=now,
        **values,
    )


def _max_limit(a: Optional[int], b: Optional[int]) -> Optional[int]:
    if a is None or b is None:
        return None
    return max(a, b)


def merge_at_least(base: EntitlementSnapshot, floor: EntitlementSnapshot) -> EntitlementSnapshot:
    """Union of capabilities and the larger of each limit (None is unlimited)."""
    changes: Dict[str, object] = {
        flag: getattr(base, flag) or getattr(floor, flag) for flag in FEATURE_CAPABILITIES.values()
    }
    changes.update({key: _max_limit(getattr(base, key), getattr(floor, key)) for key in LIMIT_KEYS})
    changes["tier"] = floor.tier
    return replace(base, **changes)


def effective_status(account: AccountState, now: datetime) -> AccountStatus:
    """Apply time-based expiry the stored status may not reflect yet."""
    status = account.subscription_status
    if status == AccountStatus.ACTIVE_TRIAL and account.trial_end_date is not None and now > account.trial_end_date:
        return AccountStatus.EXPIRED_TRIAL
    if (
        status == AccountStatus.CANCELED_BUT_ACTIVE
        and account.subscription_end_date is not None
        and now > account.subscription_end_date
    ):
        return AccountStatus.CANCELED_AND_INACTIVE
    return status


def _trial_color(days: int) -> str:
    if days <= 1:
        return "red"
    if days <= 3:
        return "yellow"
    return "green"


def _active(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
    tier = catalog.get(account.subscription_tier)
    if tier is None:
        return None
    return tier_snapshot(
        account.account_id, tier, AccountStatus.ACTIVE.value, now,
        status_message="Active Subscription",
        status_color="green",
    )


def _setup_incomplete(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
    display = dict(status_message="Complete Setup to Start Trial", status_color="yellow")
    tier = catalog.get(account.subscription_tier)
    if tier is not None:
        # Setup phase: no inviting users until setup completes
        snapshot = tier_snapshot(account.account_id, tier, AccountStatus.SETUP_INCOMPLETE.value, now, **display)
        return replace(snapshot, can_invite_users=False)
    return EntitlementSnapshot(
        account_id=account.account_id,
        access_level=AccountStatus.SETUP_INCOMPLETE.value,
        tier=None,
        can_view_dashboard=True,
        can_manage_settings=True,
        evaluated_at=now,
        **display,
    )


def _active_trial(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
    tier = catalog.get(account.subscription_tier) or catalog.get(catalog.trial_tier)
    if tier is None:
        return None
    days = _days_until(account.trial_end_date, now)
    message = f"{days} Days Free Trial Remaining" if account.trial_end_date else "Free Trial Active"
    return tier_snapshot(
        account.account_id, tier, AccountStatus.ACTIVE_TRIAL.value, now,
        status_message=message,
        status_color=_trial_color(days) if account.trial_end_date else "green",
        days_remaining=days,
        show_upgrade_prompt=True,
    )


def _free(message: str, status: AccountStatus) -> Callable[..., Optional[EntitlementSnapshot]]:
    def rule(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
        tier = catalog.get(catalog.free_tier)
        if tier is None:
            return None
        return tier_snapshot(
            account.account_id, tier, status.value, now,
            status_message=message,
            status_color="red",
            needs_upgrade=True,
            show_upgrade_prompt=True,
        )
    return rule


def _canceled_but_active(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
    tier = catalog.get(account.subscription_tier) or catalog.get(account.last_paid_tier)
    if tier is None:
        return None
    days = _days_until(account.subscription_end_date, now)
    return tier_snapshot(
        account.account_id, tier, AccountStatus.CANCELED_BUT_ACTIVE.value, now,
        status_message=f"Subscription ends in {days} days",
        status_color="yellow",
        days_remaining=days,
        show_upgrade_prompt=True,
    )


def _unknown(account: AccountState, catalog: TierCatalog, now: datetime) -> Optional[EntitlementSnapshot]:
    return None


STATUS_RULES: Mapping[AccountStatus, Callable[[AccountState, TierCatalog, datetime], Optional[EntitlementSnapshot]]] = {
    AccountStatus.ACTIVE: _active,
    AccountStatus.SETUP_INCOMPLETE: _setup_incomplete,
    AccountStatus.ACTIVE_TRIAL: _active_trial,
    AccountStatus.EXPIRED_TRIAL: _free("Trial Expired. Upgrade Now", AccountStatus.EXPIRED_TRIAL),
    AccountStatus.CANCELED_AND_INACTIVE: _free(
        "Subscription Cancelled and Expired. Upgrade", AccountStatus.CANCELED_AND_INACTIVE
    ),
    AccountStatus.CANCELED_BUT_ACTIVE: _canceled_but_active,
    AccountStatus.MISSED_PAYMENT: _free("Payment Failed. Update Payment Method", AccountStatus.MISSED_PAYMENT),
    AccountStatus.UNKNOWN: _unknown,
}

_missing = set(AccountStatus) - set(STATUS_RULES)
if _missing:
    raise RuntimeError(f"No entitlement rule for statuses: {sorted(s.value for s in _missing)}")


def grace_period_active(account: AccountState, now: datetime) -> bool:
    return account.grace_period_end is not None and now <= account.grace_period_end


def compute(account: Optional[AccountState], catalog: TierCatalog, now: datetime) -> EntitlementSnapshot:
    """
    Derive the entitlement snapshot for an account at `now`. No I/O.

    Precedence: an active account with a tier short-circuits everything;
    otherwise the status rule applies, and an open grace period lifts the
    result to at least the active entitlement. Anything unresolvable is the
    restrictive snapshot.
    """
    if account is None:
        return restrictive_snapshot(None, now)

    status = effective_status(account, now)
    if status == AccountStatus.ACTIVE:
        active = _active(account, catalog, now)
        if active is not None:
            return active

    snapshot = STATUS_RULES[status](account, catalog, now) or restrictive_snapshot(account.account_id, now)

    if grace_period_active(account, now):
        tier = (
            catalog.get(account.subscription_tier)
            or catalog.get(account.last_paid_tier)
            or catalog.get(catalog.default_tier)
        )
        if tier is not None:
            floor = tier_snapshot(account.account_id, tier, status.value, now)
            snapshot = replace(
                merge_at_least(snapshot, floor),
                access_level=status.value,
                status_message="Grace Period Active",
                status_color="yellow",
                grace_period_active=True,
                days_remaining=_days_until(account.grace_period_end, now),
                needs_upgrade=False,
            )
    return snapshot
