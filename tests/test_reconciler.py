"""
State reconciler tests.

CRITICAL: These tests verify that:
1. Each billing event produces the transition in the event table
2. Redelivered and out-of-order events never change state twice
3. Concurrent writers are detected through the version guard
4. Events for unknown accounts are dropped, not raised
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select, update

from entitlement_engine.billing.errors import PersistenceFailure
from entitlement_engine.billing.events import parse_event
from entitlement_engine.billing.reconciler import Outcome, StateReconciler, canceled_status
from entitlement_engine.billing.repository import AccountRepository
from entitlement_engine.billing.tiers import TierResolver
from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.billing.verifier import VerifiedEvent
from entitlement_engine.models.account import Account, AccountStatus, PaymentStatus
from entitlement_engine.models.external_subscription import ExternalSubscription
from entitlement_engine.platform.security_log import SecurityEventType, Severity

from tests.conftest import T0, epoch, event_body

PERIOD_END = datetime(2025, 3, 1, tzinfo=timezone.utc)


@pytest.fixture
def state_changes():
    return []


@pytest.fixture
def reconciler(session_factory, catalog, security_sink, clock, state_changes):
    return StateReconciler(
        session_factory,
        TierResolver(catalog),
        security_log=security_sink,
        on_state_change=state_changes.append,
        clock=clock,
    )


def _apply(reconciler, event_type, data, created=T0, event_id="evt_1", domain=TrustDomain.PRODUCTION):
    event = parse_event(event_body(event_type, data, created=created, event_id=event_id))
    return reconciler.apply(VerifiedEvent(event=event, trust_domain=domain))


def _subscription(status=None, price_id="P_PRO_MONTHLY", period_end=PERIOD_END, **extra):
    data = {"id": "sub_1", "customer": "cus_1", "price_id": price_id, "current_period_end": epoch(period_end)}
    if status is not None:
        data["status"] = status
    data.update(extra)
    return data


class TestTransitions:

    def test_subscription_created_activates_with_resolved_tier(
        self, reconciler, make_account, load_account, session_factory, security_sink
    ):
        make_account(status=AccountStatus.SETUP_INCOMPLETE, subscription_id=None)

        result = _apply(reconciler, "subscription.created", _subscription(metadata={"account_id": "acct_1"}))

        assert result.outcome == Outcome.PROCESSED
        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "professional"
        assert account.last_paid_tier == "professional"
        assert account.subscription_end_date == PERIOD_END
        assert account.payment_status == PaymentStatus.PAID.value

        session = session_factory()
        link = session.execute(select(ExternalSubscription)).scalars().one()
        session.close()
        assert link.provider_subscription_id == "sub_1"
        assert link.trust_domain == "production"

        assert security_sink.of_type(SecurityEventType.SUBSCRIPTION_CREATED)[0]["account_id"] == "acct_1"

    def test_sandbox_event_resolves_sandbox_price(self, reconciler, make_account, load_account):
        make_account(status=AccountStatus.SETUP_INCOMPLETE)

        _apply(reconciler, "subscription.created", _subscription(price_id="P_TEST_ENTERPRISE_MONTHLY"),
               domain=TrustDomain.SANDBOX)

        assert load_account().subscription_tier == "enterprise"

    def test_unknown_price_uses_default_tier(self, reconciler, make_account, load_account, caplog):
        make_account(status=AccountStatus.SETUP_INCOMPLETE)

        with caplog.at_level("WARNING"):
            result = _apply(reconciler, "subscription.created", _subscription(price_id="P_UNKNOWN"))

        assert result.outcome == Outcome.PROCESSED
        assert load_account().subscription_tier == "professional"
        assert "Unknown price id" in caplog.text

    def test_updated_active_recomputes_tier(self, reconciler, make_account, load_account):
        make_account(tier="starter")

        _apply(reconciler, "subscription.updated", _subscription("active", price_id="P_ENTERPRISE_MONTHLY"))

        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "enterprise"

    def test_updated_active_without_price_keeps_tier(self, reconciler, make_account, load_account):
        make_account(tier="enterprise")

        result = _apply(reconciler, "subscription.updated", _subscription("active", price_id=None))

        assert result.outcome == Outcome.PROCESSED
        assert load_account().subscription_tier == "enterprise"

    def test_updated_active_without_price_restores_last_paid_tier(self, reconciler, make_account, load_account):
        make_account(status=AccountStatus.MISSED_PAYMENT, last_paid_tier="enterprise")

        _apply(reconciler, "subscription.updated", _subscription("active", price_id=None))

        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "enterprise"

    def test_created_prefers_existing_link_over_metadata(self, reconciler, make_account, load_account):
        make_account(status=AccountStatus.SETUP_INCOMPLETE)
        make_account(account_id="acct_2", status=AccountStatus.SETUP_INCOMPLETE, subscription_id=None)

        _apply(reconciler, "subscription.created", _subscription(metadata={"account_id": "acct_2"}))

        assert load_account("acct_1").status == AccountStatus.ACTIVE
        assert load_account("acct_2").status == AccountStatus.SETUP_INCOMPLETE

    @pytest.mark.parametrize("provider_status", ["past_due", "incomplete"])
    def test_updated_past_due_clears_tier(self, reconciler, make_account, load_account, provider_status):
        make_account(tier="professional")

        _apply(reconciler, "subscription.updated", _subscription(provider_status))

        account = load_account()
        assert account.status == AccountStatus.MISSED_PAYMENT
        assert account.subscription_tier is None
        assert account.last_paid_tier == "professional"

    def test_updated_canceled_before_period_end(self, reconciler, make_account, load_account):
        make_account(tier="professional")

        _apply(reconciler, "subscription.updated", _subscription("canceled"))

        account = load_account()
        assert account.status == AccountStatus.CANCELED_BUT_ACTIVE
        assert account.subscription_tier == "professional"

    def test_updated_canceled_after_period_end(self, reconciler, make_account, load_account):
        make_account(tier="professional")

        _apply(reconciler, "subscription.updated", _subscription("canceled", period_end=T0 - timedelta(days=1)))

        account = load_account()
        assert account.status == AccountStatus.CANCELED_AND_INACTIVE
        assert account.subscription_tier is None
        assert account.last_paid_tier == "professional"

    def test_deleted_keeps_tier_while_period_runs(self, reconciler, make_account, load_account):
        make_account(tier="professional", subscription_end_date=PERIOD_END)

        _apply(reconciler, "subscription.deleted", _subscription("canceled"))

        account = load_account()
        assert account.status == AccountStatus.CANCELED_BUT_ACTIVE
        assert account.subscription_tier == "professional"

    def test_payment_failed_opens_grace_period(self, reconciler, make_account, load_account, security_sink):
        make_account(tier="professional")

        _apply(reconciler, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})

        account = load_account()
        assert account.status == AccountStatus.MISSED_PAYMENT
        assert account.payment_status == PaymentStatus.UNPAID.value
        assert account.grace_period_end == T0 + timedelta(days=7)
        assert account.last_paid_tier == "professional"
        assert security_sink.of_type(SecurityEventType.PAYMENT_FAILED)[0]["severity"] == Severity.HIGH

    def test_repeated_payment_failure_does_not_extend_grace(self, reconciler, make_account, load_account):
        make_account(tier="professional")
        _apply(reconciler, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})

        _apply(reconciler, "invoice.payment_failed", {"id": "in_2", "customer": "cus_1"},
               created=T0 + timedelta(days=2), event_id="evt_2")

        assert load_account().grace_period_end == T0 + timedelta(days=7)

    def test_payment_succeeded_restores_active_and_clears_grace(self, reconciler, make_account, load_account):
        make_account(
            status=AccountStatus.MISSED_PAYMENT,
            last_paid_tier="professional",
            grace_period_end=T0 + timedelta(days=3),
        )

        _apply(reconciler, "invoice.payment_succeeded", {"id": "in_1", "customer": "cus_1"})

        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "professional"
        assert account.grace_period_end is None
        assert account.payment_status == PaymentStatus.PAID.value

    def test_invoice_found_by_subscription_when_customer_unknown(self, reconciler, make_account, load_account):
        make_account(status=AccountStatus.MISSED_PAYMENT, last_paid_tier="starter")

        _apply(reconciler, "invoice.payment_succeeded",
               {"id": "in_1", "customer": "cus_other", "subscription": "sub_1"})

        assert load_account().status == AccountStatus.ACTIVE

    def test_checkout_links_without_status_change(self, reconciler, make_account, load_account, session_factory):
        make_account(status=AccountStatus.SETUP_INCOMPLETE, subscription_id="sub_old")

        result = _apply(reconciler, "checkout.completed", {
            "id": "cs_1", "subscription": "sub_new", "customer": "cus_new", "client_reference_id": "acct_1",
        })

        assert result.outcome == Outcome.PROCESSED
        assert load_account().status == AccountStatus.SETUP_INCOMPLETE

        session = session_factory()
        links = {
            link.provider_subscription_id: link
            for link in session.execute(select(ExternalSubscription)).scalars()
        }
        session.close()
        assert links["sub_new"].is_active is True
        assert links["sub_old"].is_active is False
        assert links["sub_old"].superseded_at == T0

    def test_trial_will_end_is_informational(self, reconciler, make_account, load_account, security_sink):
        make_account(status=AccountStatus.ACTIVE_TRIAL, tier="starter")

        result = _apply(reconciler, "subscription.trial_will_end", _subscription("trialing"))

        assert result.outcome == Outcome.PROCESSED
        account = load_account()
        assert account.status == AccountStatus.ACTIVE_TRIAL
        assert account.version == 1
        assert len(security_sink.of_type(SecurityEventType.TRIAL_WILL_END)) == 1

    def test_unmapped_status_keeps_known_good_state(self, reconciler, make_account, load_account, security_sink):
        make_account(tier="professional")

        _apply(reconciler, "subscription.updated", _subscription("paused"))

        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "professional"
        unmapped = security_sink.of_type(SecurityEventType.STATUS_UNMAPPED)
        assert unmapped[0]["details"]["provider_status"] == "paused"

    def test_unmapped_status_on_unknown_account_stays_unknown(self, reconciler, make_account, load_account):
        make_account(status=AccountStatus.UNKNOWN)

        _apply(reconciler, "subscription.updated", _subscription("paused"))

        assert load_account().status == AccountStatus.UNKNOWN

    def test_state_change_callback_receives_new_state(self, reconciler, make_account, state_changes):
        make_account(tier="professional")

        _apply(reconciler, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})

        assert len(state_changes) == 1
        assert state_changes[0].subscription_status == AccountStatus.MISSED_PAYMENT


class TestOrderingAndIdempotency:

    def test_duplicate_delivery_is_noop(self, reconciler, make_account, load_account):
        make_account(tier="starter")
        data = _subscription("active", price_id="P_ENTERPRISE_MONTHLY")

        first = _apply(reconciler, "subscription.updated", data)
        after_first = load_account()
        second = _apply(reconciler, "subscription.updated", data)
        after_second = load_account()

        assert first.outcome == Outcome.PROCESSED
        assert second.outcome == Outcome.DUPLICATE
        assert after_second.updated_at == after_first.updated_at
        assert after_second.version == after_first.version == 2

    def test_reapplying_same_state_without_version_writes_nothing(self, reconciler, make_account, load_account):
        make_account(tier="starter")
        data = _subscription("active", price_id="P_ENTERPRISE_MONTHLY")

        _apply(reconciler, "subscription.updated", data, created=None, event_id=None)
        second = _apply(reconciler, "subscription.updated", data, created=None, event_id=None)

        assert second.outcome == Outcome.UNCHANGED
        assert load_account().version == 2

    def test_stale_event_is_discarded(self, reconciler, make_account, load_account):
        make_account(tier="professional")
        _apply(reconciler, "subscription.updated", _subscription("canceled"), created=T0, event_id="evt_new")

        result = _apply(reconciler, "subscription.updated", _subscription("active"),
                        created=T0 - timedelta(minutes=5), event_id="evt_old")

        assert result.outcome == Outcome.STALE
        account = load_account()
        assert account.status == AccountStatus.CANCELED_BUT_ACTIVE
        assert account.last_event_id == "evt_new"

    def test_unchanged_newer_event_still_guards_against_older_ones(
        self, reconciler, make_account, load_account, clock
    ):
        make_account(tier="starter")
        assert _apply(reconciler, "subscription.updated", _subscription("active"),
                      created=T0, event_id="evt_a").outcome == Outcome.PROCESSED
        applied = load_account()

        clock.advance(hours=3)
        confirm = _apply(reconciler, "subscription.updated", _subscription("active"),
                         created=T0 + timedelta(hours=2), event_id="evt_b")
        confirmed = load_account()

        assert confirm.outcome == Outcome.UNCHANGED
        assert confirmed.last_event_at == T0 + timedelta(hours=2)
        assert confirmed.last_event_id == "evt_b"
        assert confirmed.updated_at == applied.updated_at

        late = _apply(reconciler, "subscription.updated", _subscription("past_due"),
                      created=T0 + timedelta(hours=1), event_id="evt_c")

        assert late.outcome == Outcome.STALE
        account = load_account()
        assert account.status == AccountStatus.ACTIVE
        assert account.subscription_tier == "professional"
        assert account.last_event_id == "evt_b"

    def test_newer_event_after_older_applies(self, reconciler, make_account, load_account):
        make_account(tier="professional")
        _apply(reconciler, "subscription.updated", _subscription("past_due"), created=T0, event_id="evt_1")

        result = _apply(reconciler, "subscription.updated", _subscription("active"),
                        created=T0 + timedelta(minutes=5), event_id="evt_2")

        assert result.outcome == Outcome.PROCESSED
        assert load_account().status == AccountStatus.ACTIVE


class TestConditionalWrites:

    def test_lost_race_is_retried_with_fresh_state(self, reconciler, make_account, load_account, session_factory,
                                                   monkeypatch):
        make_account(tier="professional")
        original = AccountRepository.compare_and_swap
        calls = []

        def racing_cas(self, account, changes, now):
            if not calls:
                other = session_factory()
                other.execute(update(Account).where(Account.id == account.id).values(version=Account.version + 1))
                other.commit()
                other.close()
            calls.append(account.version)
            return original(self, account, changes, now)

        monkeypatch.setattr(AccountRepository, "compare_and_swap", racing_cas)

        result = _apply(reconciler, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})

        assert result.outcome == Outcome.PROCESSED
        assert calls == [1, 2]
        assert load_account().version == 3

    def test_persistent_conflict_raises(self, reconciler, make_account, monkeypatch):
        make_account(tier="professional")
        monkeypatch.setattr(AccountRepository, "compare_and_swap", lambda self, account, changes, now: False)

        with pytest.raises(PersistenceFailure):
            _apply(reconciler, "invoice.payment_failed", {"id": "in_1", "customer": "cus_1"})


class TestDroppedAndIgnored:

    def test_account_not_found_is_dropped(self, reconciler, security_sink):
        result = _apply(reconciler, "subscription.updated", _subscription("active"))

        assert result.outcome == Outcome.DROPPED
        dropped = security_sink.of_type(SecurityEventType.EVENT_DROPPED)
        assert dropped[0]["details"]["reason"] == "account_not_found"

    def test_unrecognized_event_is_ignored(self, reconciler, make_account, load_account):
        make_account(tier="professional")

        result = _apply(reconciler, "customer.created", {"id": "cus_1"})

        assert result.outcome == Outcome.IGNORED
        assert load_account().version == 1


def test_canceled_status_boundary():
    end = T0
    assert canceled_status(end, T0 - timedelta(seconds=1)) == AccountStatus.CANCELED_BUT_ACTIVE
    assert canceled_status(end, T0) == AccountStatus.CANCELED_AND_INACTIVE
    assert canceled_status(None, T0) == AccountStatus.CANCELED_AND_INACTIVE
