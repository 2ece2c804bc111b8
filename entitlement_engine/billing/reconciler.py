"""
State reconciler: applies verified billing events to account state.

FLOW (per event):
1. Unrecognized event types are acknowledged and ignored
2. Locate the account: stored links first, metadata account id as fallback
3. Staleness guard: events older than the last applied one are discarded;
   a redelivery of the last applied event is a duplicate
4. Compute the target state with the handler for the event type
5. Diff against current state; an empty diff only advances the event
   watermark (last_event_at), never updated_at
6. Conditional write on `version`; on a lost race, re-read and retry
7. Security log entry + state-change callback (cache refresh)

AccountNotFound is logged and dropped. Persistence errors surface as
PersistenceFailure; the webhook route decides how to acknowledge them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from entitlement_engine.billing.errors import AccountNotFound, PersistenceFailure
from entitlement_engine.billing.events import (
    BillingEvent,
    CheckoutData,
    EventType,
    InvoiceData,
    SubscriptionData,
)
from entitlement_engine.billing.repository import AccountRepository
from entitlement_engine.billing.tiers import TierResolver
from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.billing.verifier import VerifiedEvent
from entitlement_engine.db_base import utcnow
from entitlement_engine.models.account import (
    TIER_BEARING_STATUSES,
    Account,
    AccountState,
    AccountStatus,
    PaymentStatus,
)
from entitlement_engine.platform.security_log import (
    SecurityEventType,
    SecuritySink,
    Severity,
    null_security_sink,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 3

StateChangeCallback = Callable[[AccountState], None]


class Outcome(str, Enum):
    PROCESSED = "processed"
    UNCHANGED = "unchanged"
    IGNORED = "ignored"
    DUPLICATE = "duplicate"
    STALE = "stale"
    DROPPED = "dropped"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: Outcome
    event_type: str
    account_id: Optional[str] = None
    previous_status: Optional[AccountStatus] = None
    new_status: Optional[AccountStatus] = None
    changes: Mapping[str, Any] = field(default_factory=dict)


# Provider subscription status -> account status. "canceled" is resolved
# against the end date at apply time.
PROVIDER_STATUS_MAP: Mapping[str, AccountStatus] = {
    "active": AccountStatus.ACTIVE,
    "trialing": AccountStatus.ACTIVE_TRIAL,
    "past_due": AccountStatus.MISSED_PAYMENT,
    "incomplete": AccountStatus.MISSED_PAYMENT,
    "unpaid": AccountStatus.MISSED_PAYMENT,
    "canceled": AccountStatus.CANCELED_BUT_ACTIVE,
    "incomplete_expired": AccountStatus.CANCELED_AND_INACTIVE,
}

# Security log event per applied billing event
_TRANSITION_LOG_EVENTS: Mapping[EventType, SecurityEventType] = {
    EventType.SUBSCRIPTION_CREATED: SecurityEventType.SUBSCRIPTION_CREATED,
    EventType.SUBSCRIPTION_UPDATED: SecurityEventType.SUBSCRIPTION_UPDATED,
    EventType.SUBSCRIPTION_DELETED: SecurityEventType.SUBSCRIPTION_DELETED,
    EventType.PAYMENT_FAILED: SecurityEventType.PAYMENT_FAILED,
    EventType.PAYMENT_SUCCEEDED: SecurityEventType.PAYMENT_SUCCEEDED,
    EventType.CHECKOUT_COMPLETED: SecurityEventType.CHECKOUT_COMPLETED,
    EventType.TRIAL_WILL_END: SecurityEventType.TRIAL_WILL_END,
}


@dataclass(frozen=True)
class TransitionContext:
    resolver: TierResolver
    trust_domain: TrustDomain
    occurred_at: datetime
    security_log: SecuritySink

    def resolve_tier(self, price_id: Optional[str]) -> str:
        return self.resolver.resolve(price_id, self.trust_domain)

    @property
    def grace_period_days(self) -> int:
        return self.resolver.catalog.grace_period_days


def canceled_status(end_date: Optional[datetime], at: datetime) -> AccountStatus:
    """canceled_but_active until the paid period ends, then canceled_and_inactive."""
    if end_date is not None and end_date > at:
        return AccountStatus.CANCELED_BUT_ACTIVE
    return AccountStatus.CANCELED_AND_INACTIVE


def _paid_tier(account: Account, price_id: Optional[str], ctx: TransitionContext) -> str:
    """Tier for a paid status: the event's price if sent, else whatever the account already pays for."""
    if price_id:
        return ctx.resolve_tier(price_id)
    return account.subscription_tier or account.last_paid_tier or ctx.resolve_tier(None)


def _subscription_created(account: Account, data: SubscriptionData, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "subscription_status": AccountStatus.ACTIVE,
        "subscription_tier": ctx.resolve_tier(data.price_id),
        "subscription_end_date": data.period_end or account.subscription_end_date,
        "payment_status": PaymentStatus.PAID,
        "grace_period_end": None,
    }


def _subscription_updated(account: Account, data: SubscriptionData, ctx: TransitionContext) -> Dict[str, Any]:
    end_date = data.period_end or account.subscription_end_date
    provider_status = (data.status or "").strip().lower()
    mapped = PROVIDER_STATUS_MAP.get(provider_status)

    if mapped is None:
        current = account.status
        logger.warning("Unmapped provider subscription status", extra={
            "account_id": account.id,
            "provider_status": data.status,
            "current_status": current.value,
        })
        ctx.security_log(
            SecurityEventType.STATUS_UNMAPPED,
            Severity.WARNING,
            account.id,
            {"provider_status": data.status, "current_status": current.value},
        )
        if current != AccountStatus.UNKNOWN:
            # Keep the known-good status; only the period end is trusted.
            return {"subscription_end_date": end_date}
        return {"subscription_status": AccountStatus.UNKNOWN, "subscription_end_date": end_date}

    if mapped == AccountStatus.ACTIVE:
        return {
            "subscription_status": AccountStatus.ACTIVE,
            "subscription_tier": _paid_tier(account, data.price_id, ctx),
            "subscription_end_date": end_date,
            "grace_period_end": None,
        }
    if mapped == AccountStatus.ACTIVE_TRIAL:
        return {
            "subscription_status": AccountStatus.ACTIVE_TRIAL,
            "subscription_tier": ctx.resolve_tier(data.price_id) if data.price_id else account.subscription_tier,
            "trial_end_date": data.trial_end_at or account.trial_end_date,
            "subscription_end_date": end_date,
        }
    if mapped == AccountStatus.MISSED_PAYMENT:
        return {
            "subscription_status": AccountStatus.MISSED_PAYMENT,
            "subscription_tier": None,
            "subscription_end_date": end_date,
        }
    if mapped == AccountStatus.CANCELED_BUT_ACTIVE:
        return {
            "subscription_status": canceled_status(end_date, ctx.occurred_at),
            "subscription_end_date": end_date,
        }
    return {"subscription_status": mapped, "subscription_end_date": end_date}


def _subscription_deleted(account: Account, data: SubscriptionData, ctx: TransitionContext) -> Dict[str, Any]:
    end_date = account.subscription_end_date or data.period_end
    return {
        "subscription_status": canceled_status(end_date, ctx.occurred_at),
        "subscription_end_date": end_date,
    }


def _payment_failed(account: Account, data: InvoiceData, ctx: TransitionContext) -> Dict[str, Any]:
    grace_end = account.grace_period_end
    if account.status != AccountStatus.MISSED_PAYMENT or grace_end is None or grace_end < ctx.occurred_at:
        grace_end = ctx.occurred_at + timedelta(days=ctx.grace_period_days)
    return {
        "subscription_status": AccountStatus.MISSED_PAYMENT,
        "payment_status": PaymentStatus.UNPAID,
        "grace_period_end": grace_end,
    }


def _payment_succeeded(account: Account, data: InvoiceData, ctx: TransitionContext) -> Dict[str, Any]:
    return {
        "subscription_status": AccountStatus.ACTIVE,
        "subscription_tier": _paid_tier(account, data.price_id, ctx),
        "payment_status": PaymentStatus.PAID,
        "grace_period_end": None,
    }


def _checkout_completed(account: Account, data: CheckoutData, ctx: TransitionContext) -> Dict[str, Any]:
    # Linking happens before the diff; no status change on its own.
    return {}


def _trial_will_end(account: Account, data: SubscriptionData, ctx: TransitionContext) -> Dict[str, Any]:
    return {}


TRANSITIONS: Mapping[EventType, Callable[[Account, Any, TransitionContext], Dict[str, Any]]] = {
    EventType.SUBSCRIPTION_CREATED: _subscription_created,
    EventType.SUBSCRIPTION_UPDATED: _subscription_updated,
    EventType.SUBSCRIPTION_DELETED: _subscription_deleted,
    EventType.PAYMENT_FAILED: _payment_failed,
    EventType.PAYMENT_SUCCEEDED: _payment_succeeded,
    EventType.CHECKOUT_COMPLETED: _checkout_completed,
    EventType.TRIAL_WILL_END: _trial_will_end,
}

_missing = set(EventType) - set(TRANSITIONS)
if _missing:
    raise RuntimeError(f"No transition registered for event types: {sorted(t.value for t in _missing)}")


def enforce_tier_invariant(account: Account, target: Dict[str, Any]) -> Dict[str, Any]:
    """
    Only tier-bearing statuses keep subscription_tier; otherwise the tier is
    moved to last_paid_tier.
    """
    status = AccountStatus(target.get("subscription_status", account.status))

    if status in TIER_BEARING_STATUSES:
        tier = target.get("subscription_tier", account.subscription_tier)
        if tier and status in (AccountStatus.ACTIVE, AccountStatus.CANCELED_BUT_ACTIVE):
            target["last_paid_tier"] = tier
        return target

    held = target.get("subscription_tier") or account.subscription_tier
    if held:
        target["last_paid_tier"] = held
    target["subscription_tier"] = None
    return target


def _advances_watermark(account: Account, event: BillingEvent) -> bool:
    if event.created_at is None:
        return False
    return account.last_event_at is None or event.created_at > account.last_event_at


def diff_state(account: Account, target: Mapping[str, Any]) -> Dict[str, Any]:
    changes: Dict[str, Any] = {}
    for key, value in target.items():
        stored = value.value if isinstance(value, Enum) else value
        if getattr(account, key) != stored:
            changes[key] = value
    return changes


class StateReconciler:
    """Applies verified events to accounts with conditional writes."""

    def __init__(
        self,
        session_factory: sessionmaker,
        resolver: TierResolver,
        security_log: Optional[SecuritySink] = None,
        on_state_change: Optional[StateChangeCallback] = None,
        clock: Callable[[], datetime] = utcnow,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self._session_factory = session_factory
        self.resolver = resolver
        self._security_log = security_log or null_security_sink
        self._on_state_change = on_state_change
        self._clock = clock
        self.max_attempts = max_attempts

    def apply(self, verified: VerifiedEvent) -> ReconcileResult:
        event = verified.event
        if not event.is_recognized:
            logger.info("Ignoring unrecognized event type", extra={
                "event_type": event.raw_type,
                "event_id": event.event_id,
            })
            return ReconcileResult(outcome=Outcome.IGNORED, event_type=event.raw_type)

        for attempt in range(1, self.max_attempts + 1):
            session = self._session_factory()
            try:
                result = self._apply_once(AccountRepository(session), verified)
            except AccountNotFound as e:
                logger.warning("No account for billing event, dropping", extra={
                    "event_type": event.raw_type,
                    "event_id": event.event_id,
                    "reference": e.reference,
                })
                self._security_log(
                    SecurityEventType.EVENT_DROPPED,
                    Severity.WARNING,
                    None,
                    {"event_type": event.raw_type, "event_id": event.event_id, "reason": "account_not_found"},
                )
                return ReconcileResult(outcome=Outcome.DROPPED, event_type=event.raw_type)
            except SQLAlchemyError as e:
                session.rollback()
                logger.error("Persistence error while reconciling", extra={
                    "event_type": event.raw_type,
                    "event_id": event.event_id,
                    "error": str(e),
                })
                raise PersistenceFailure(f"Database error: {type(e).__name__}") from e
            finally:
                session.close()

            if result is not None:
                return result
            logger.info("Retrying after conditional write conflict", extra={
                "event_id": event.event_id,
                "attempt": attempt,
            })

        raise PersistenceFailure(f"Conditional write lost {self.max_attempts} times")

    def _locate(self, repo: AccountRepository, event: BillingEvent) -> Account:
        data = event.data
        if isinstance(data, CheckoutData):
            candidates = [lambda: repo.get(data.account_id)]
            reference = data.account_id
        elif isinstance(data, InvoiceData):
            candidates = [
                lambda: repo.find_by_customer(data.customer),
                lambda: repo.find_by_subscription(data.subscription),
                lambda: repo.get(data.account_id),
            ]
            reference = data.subscription or data.customer
        elif event.event_type == EventType.SUBSCRIPTION_CREATED:
            candidates = [
                lambda: repo.find_by_subscription(data.id),
                lambda: repo.get(data.account_id),
                lambda: repo.find_by_customer(data.customer),
            ]
            reference = data.id
        else:
            candidates = [
                lambda: repo.find_by_subscription(data.id),
                lambda: repo.get(data.account_id),
            ]
            reference = data.id

        for lookup in candidates:
            account = lookup()
            if account is not None:
                return account
        raise AccountNotFound(reference)

    def _apply_once(self, repo: AccountRepository, verified: VerifiedEvent) -> Optional[ReconcileResult]:
        """One read-compute-write pass. Returns None when the conditional write lost."""
        event = verified.event
        account = self._locate(repo, event)
        previous = account.status
        base = dict(event_type=event.raw_type, account_id=account.id, previous_status=previous)

        if event.created_at is not None and account.last_event_at is not None:
            if event.created_at < account.last_event_at:
                logger.info("Discarding stale event", extra={
                    "account_id": account.id,
                    "event_id": event.event_id,
                    "event_created": event.created_at.isoformat(),
                    "last_applied": account.last_event_at.isoformat(),
                })
                return ReconcileResult(outcome=Outcome.STALE, new_status=previous, **base)
            if event.created_at == account.last_event_at and event.event_id and event.event_id == account.last_event_id:
                return ReconcileResult(outcome=Outcome.DUPLICATE, new_status=previous, **base)

        now = self._clock()
        ctx = TransitionContext(
            resolver=self.resolver,
            trust_domain=verified.trust_domain,
            occurred_at=event.created_at or now,
            security_log=self._security_log,
        )

        linked = False
        data = event.data
        if isinstance(data, CheckoutData):
            linked = repo.link_subscription(account.id, data.subscription, data.customer, verified.trust_domain, now)
        elif event.event_type == EventType.SUBSCRIPTION_CREATED:
            linked = repo.link_subscription(account.id, data.id, data.customer, verified.trust_domain, now)

        target = enforce_tier_invariant(account, TRANSITIONS[event.event_type](account, data, ctx))
        changes = diff_state(account, target)

        bookkeeping: Dict[str, Any] = {}
        if event.created_at is not None:
            bookkeeping = {"last_event_at": event.created_at, "last_event_id": event.event_id}

        if not changes and not linked:
            if event.event_type != EventType.TRIAL_WILL_END and _advances_watermark(account, event):
                # A newer event confirming current state still moves the staleness watermark.
                if not repo.compare_and_swap(account, bookkeeping, now, touch=False):
                    return None
            else:
                repo.session.rollback()
            outcome = Outcome.PROCESSED if event.event_type == EventType.TRIAL_WILL_END else Outcome.UNCHANGED
            if outcome == Outcome.PROCESSED:
                self._record_transition(event, account.id, verified.trust_domain, previous, previous, {})
            return ReconcileResult(outcome=outcome, new_status=previous, **base)

        if not repo.compare_and_swap(account, {**changes, **bookkeeping}, now):
            return None

        new_status = AccountStatus(changes.get("subscription_status", previous))
        self._record_transition(event, account.id, verified.trust_domain, previous, new_status, changes)
        logger.info("Applied billing event", extra={
            "account_id": account.id,
            "event_type": event.raw_type,
            "event_id": event.event_id,
            "from_status": previous.value,
            "to_status": new_status.value,
        })
        if self._on_state_change is not None and changes:
            self._notify(account)
        return ReconcileResult(outcome=Outcome.PROCESSED, new_status=new_status, changes=changes, **base)

    def _notify(self, account: Account) -> None:
        try:
            self._on_state_change(account.to_state())
        except Exception as e:
            # State is committed; a stale cache entry expires on its own.
            logger.warning("State change callback failed", extra={
                "account_id": account.id,
                "error": str(e),
            })

    def _record_transition(
        self,
        event: BillingEvent,
        account_id: str,
        trust_domain: TrustDomain,
        previous: AccountStatus,
        new_status: AccountStatus,
        changes: Mapping[str, Any],
    ) -> None:
        severity = Severity.HIGH if event.event_type == EventType.PAYMENT_FAILED else Severity.INFO
        self._security_log(
            _TRANSITION_LOG_EVENTS[event.event_type],
            severity,
            account_id,
            {
                "event_id": event.event_id,
                "trust_domain": trust_domain.value,
                "from_status": previous.value,
                "to_status": new_status.value,
                "changed_fields": sorted(changes),
            },
        )
