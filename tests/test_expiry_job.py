from datetime import timedelta
from unittest.mock import Mock

import pytest

from entitlement_engine.billing.repository import AccountRepository
from entitlement_engine.jobs.expire_subscriptions import SubscriptionExpiryJob, expiry_changes
from entitlement_engine.models.account import AccountStatus

from tests.conftest import T0


@pytest.fixture
def callback():
    return Mock()


@pytest.fixture
def job(session_factory, security_sink, callback, clock):
    return SubscriptionExpiryJob(
        session_factory,
        security_log=security_sink,
        on_state_change=callback,
        clock=clock,
    )


class TestExpiryJob:

    def test_lapsed_trial_becomes_expired_trial(self, job, make_account, load_account, security_sink, callback):
        make_account(status=AccountStatus.ACTIVE_TRIAL, tier="starter", trial_end_date=T0 - timedelta(days=1))

        results = job.run()

        assert results["accounts_checked"] == 1
        assert results["accounts_updated"] == 1
        assert results["errors"] == []
        account = load_account()
        assert account.status == AccountStatus.EXPIRED_TRIAL
        assert account.subscription_tier is None
        assert account.last_paid_tier == "starter"
        assert account.version == 2

        entries = security_sink.of_type("status_expired")
        assert len(entries) == 1
        assert entries[0]["details"]["from_status"] == "active_trial"
        assert entries[0]["details"]["to_status"] == "expired_trial"
        state = callback.call_args[0][0]
        assert state.subscription_status == AccountStatus.EXPIRED_TRIAL

    def test_lapsed_cancellation_becomes_inactive(self, job, make_account, load_account):
        make_account(
            status=AccountStatus.CANCELED_BUT_ACTIVE, tier="professional",
            subscription_end_date=T0 - timedelta(hours=1),
        )

        job.run()

        account = load_account()
        assert account.status == AccountStatus.CANCELED_AND_INACTIVE
        assert account.last_paid_tier == "professional"
        assert account.subscription_tier is None

    def test_lapsed_grace_period_is_cleared(self, job, make_account, load_account):
        make_account(
            status=AccountStatus.MISSED_PAYMENT, last_paid_tier="professional",
            grace_period_end=T0 - timedelta(minutes=1),
        )

        results = job.run()

        assert results["accounts_updated"] == 1
        account = load_account()
        assert account.grace_period_end is None
        assert account.status == AccountStatus.MISSED_PAYMENT
        assert account.last_paid_tier == "professional"

    def test_accounts_not_yet_due_are_untouched(self, job, make_account, load_account, callback):
        make_account(status=AccountStatus.ACTIVE_TRIAL, tier="starter", trial_end_date=T0 + timedelta(days=2))
        make_account(account_id="acct_2", subscription_id="sub_2", customer_id="cus_2", tier="professional")

        results = job.run()

        assert results["accounts_checked"] == 0
        assert results["accounts_updated"] == 0
        assert load_account().version == 1
        callback.assert_not_called()

    def test_lost_conditional_write_is_counted(self, job, make_account, load_account, monkeypatch, security_sink):
        make_account(status=AccountStatus.ACTIVE_TRIAL, trial_end_date=T0 - timedelta(days=1))
        monkeypatch.setattr(AccountRepository, "compare_and_swap", lambda self, account, changes, now: False)

        results = job.run()

        assert results["conflicts"] == 1
        assert results["accounts_updated"] == 0
        assert load_account().status == AccountStatus.ACTIVE_TRIAL
        assert security_sink.events == []

    def test_callback_failure_does_not_abort_pass(self, job, make_account, load_account, callback):
        make_account(status=AccountStatus.ACTIVE_TRIAL, trial_end_date=T0 - timedelta(days=1))
        make_account(
            account_id="acct_2", subscription_id="sub_2", customer_id="cus_2",
            status=AccountStatus.ACTIVE_TRIAL, trial_end_date=T0 - timedelta(days=1),
        )
        callback.side_effect = RuntimeError("cache down")

        results = job.run()

        assert results["accounts_updated"] == 2
        assert load_account("acct_2").status == AccountStatus.EXPIRED_TRIAL


def test_expiry_changes_empty_for_current_account(make_account, session_factory):
    make_account(tier="professional")
    session = session_factory()
    try:
        account = AccountRepository(session).get("acct_1")
        assert expiry_changes(account, T0) == {}
    finally:
        session.close()
