"""
Subscription expiry job.

Persists the time-derived transitions that entitlement computation already
applies on read:
- active_trial past its trial end -> expired_trial
- canceled_but_active past its end date -> canceled_and_inactive
- lapsed grace periods are cleared

Runs periodically via cron or `run_forever`. Each account is written with the
same conditional write as billing events, so a concurrent webhook wins.
"""

import logging
import os
import sys
import time
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from entitlement_engine.billing.reconciler import StateChangeCallback, diff_state, enforce_tier_invariant
from entitlement_engine.billing.repository import AccountRepository
from entitlement_engine.config import Settings, configure_logging
from entitlement_engine.database import build_engine, build_session_factory, create_schema
from entitlement_engine.db_base import utcnow
from entitlement_engine.entitlements.cache import build_snapshot_cache
from entitlement_engine.entitlements.loader import TierCatalogLoader
from entitlement_engine.entitlements.service import EntitlementService
from entitlement_engine.models.account import Account, AccountStatus
from entitlement_engine.platform.security_log import (
    SecurityEventType,
    SecuritySink,
    SecurityLogger,
    Severity,
    null_security_sink,
)

logger = logging.getLogger(__name__)


def expiry_changes(account: Account, now: datetime) -> Dict[str, Any]:
    """Target fields for an account whose stored state has lapsed at `now`."""
    target: Dict[str, Any] = {}
    status = account.status
    if status == AccountStatus.ACTIVE_TRIAL and account.trial_end_date and account.trial_end_date < now:
        target["subscription_status"] = AccountStatus.EXPIRED_TRIAL
    elif (
        status == AccountStatus.CANCELED_BUT_ACTIVE
        and account.subscription_end_date
        and account.subscription_end_date < now
    ):
        target["subscription_status"] = AccountStatus.CANCELED_AND_INACTIVE
    if account.grace_period_end is not None and account.grace_period_end < now:
        target["grace_period_end"] = None
    if not target:
        return {}
    return diff_state(account, enforce_tier_invariant(account, target))


class SubscriptionExpiryJob:
    """
    Applies lapsed trial, cancellation and grace period transitions.

    Should run every few minutes; entitlement reads are already correct in
    between, this only brings stored status in line.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        security_log: Optional[SecuritySink] = None,
        on_state_change: Optional[StateChangeCallback] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: int = 500,
    ):
        self._session_factory = session_factory
        self._security_log = security_log or null_security_sink
        self._on_state_change = on_state_change
        self._clock = clock
        self.batch_size = batch_size

    def run(self) -> dict:
        """
        Execute one expiry pass.

        Returns:
            Summary of the pass
        """
        now = self._clock()
        logger.info("Starting subscription expiry job")

        results = {
            "started_at": now.isoformat(),
            "accounts_checked": 0,
            "accounts_updated": 0,
            "conflicts": 0,
            "errors": [],
        }

        session = self._session_factory()
        try:
            repo = AccountRepository(session)
            due = repo.list_due_for_expiry(now, limit=self.batch_size)
            results["accounts_checked"] = len(due)

            for account in due:
                try:
                    self._expire(repo, account, now, results)
                except SQLAlchemyError as e:
                    session.rollback()
                    error_msg = f"Failed to expire account {account.id}: {e}"
                    logger.error(error_msg, extra={"account_id": account.id})
                    results["errors"].append(error_msg)
        except SQLAlchemyError as e:
            logger.error("Expiry job failed", extra={"error": str(e)})
            results["errors"].append(str(e))
        finally:
            session.close()

        results["completed_at"] = self._clock().isoformat()
        logger.info("Subscription expiry completed", extra={
            "accounts_checked": results["accounts_checked"],
            "accounts_updated": results["accounts_updated"],
            "conflicts": results["conflicts"],
            "error_count": len(results["errors"]),
        })
        return results

    def _expire(self, repo: AccountRepository, account: Account, now: datetime, results: dict) -> None:
        account_id = account.id
        previous = account.status
        changes = expiry_changes(account, now)
        if not changes:
            return

        if not repo.compare_and_swap(account, changes, now):
            # A webhook updated the account; the next pass re-evaluates it.
            results["conflicts"] += 1
            return

        results["accounts_updated"] += 1
        new_status = AccountStatus(changes.get("subscription_status", previous))
        self._security_log(
            SecurityEventType.STATUS_EXPIRED,
            Severity.INFO,
            account_id,
            {
                "from_status": previous.value,
                "to_status": new_status.value,
                "changed_fields": sorted(changes),
            },
        )
        if self._on_state_change is not None:
            try:
                self._on_state_change(account.to_state())
            except Exception as e:
                logger.warning("State change callback failed", extra={
                    "account_id": account_id,
                    "error": str(e),
                })


def run_forever(job: SubscriptionExpiryJob, interval_seconds: int = 300) -> None:
    while True:
        job.run()
        time.sleep(interval_seconds)


def main():
    """Main entry point for the expiry job. Set EXPIRY_INTERVAL_SECONDS to loop."""
    settings = Settings.from_env()
    configure_logging(settings.log_level)

    engine = build_engine(settings.database_url)
    create_schema(engine)
    session_factory = build_session_factory(engine)
    entitlement_service = EntitlementService(
        session_factory=session_factory,
        catalog=TierCatalogLoader(settings.tier_catalog_path),
        cache=build_snapshot_cache(
            settings.redis_url,
            ttl_seconds=settings.snapshot_ttl_seconds,
            timeout_seconds=settings.cache_timeout_seconds,
        ),
    )
    job = SubscriptionExpiryJob(
        session_factory,
        security_log=SecurityLogger(session_factory),
        on_state_change=entitlement_service.refresh,
    )

    interval = os.getenv("EXPIRY_INTERVAL_SECONDS")
    try:
        if interval:
            run_forever(job, int(interval))
        else:
            results = job.run()
            if results["errors"]:
                sys.exit(1)
    except SQLAlchemyError as e:
        logger.error("Subscription expiry job failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
