"""
Account persistence.

Every account mutation is a conditional write guarded on the `version`
column, so concurrent duplicate deliveries cannot overwrite each other.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select, update
from sqlalchemy.orm import Session

from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.models.account import Account, AccountStatus, PaymentStatus
from entitlement_engine.models.external_subscription import ExternalSubscription

logger = logging.getLogger(__name__)


def _column_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class AccountRepository:
    """Reads and conditional writes for Account and ExternalSubscription."""

    def __init__(self, session: Session):
        self.session = session

    def create(self, account_id: str, now: datetime, email: Optional[str] = None) -> Account:
        """Create an account at signup in setup_incomplete."""
        account = Account(
            id=account_id,
            email=email,
            subscription_status=AccountStatus.SETUP_INCOMPLETE.value,
            payment_status=PaymentStatus.NONE.value,
            version=1,
            created_at=now,
            updated_at=now,
        )
        self.session.add(account)
        self.session.commit()
        logger.info("Account created", extra={"account_id": account_id})
        return account

    def get(self, account_id: Optional[str]) -> Optional[Account]:
        if not account_id:
            return None
        return self.session.get(Account, account_id, populate_existing=True)

    def _find_linked(self, *criteria) -> Optional[Account]:
        stmt = (
            select(Account)
            .join(ExternalSubscription, ExternalSubscription.account_id == Account.id)
            .where(*criteria)
            .order_by(ExternalSubscription.is_active.desc(), ExternalSubscription.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return self.session.execute(stmt).scalars().first()

    def find_by_subscription(self, provider_subscription_id: Optional[str]) -> Optional[Account]:
        if not provider_subscription_id:
            return None
        return self._find_linked(ExternalSubscription.provider_subscription_id == provider_subscription_id)

    def find_by_customer(self, provider_customer_id: Optional[str]) -> Optional[Account]:
        if not provider_customer_id:
            return None
        return self._find_linked(ExternalSubscription.provider_customer_id == provider_customer_id)

    def active_link(self, account_id: str) -> Optional[ExternalSubscription]:
        stmt = select(ExternalSubscription).where(
            ExternalSubscription.account_id == account_id,
            ExternalSubscription.is_active.is_(True),
        )
        return self.session.execute(stmt).scalars().first()

    def link_subscription(
        self,
        account_id: str,
        provider_subscription_id: str,
        provider_customer_id: Optional[str],
        trust_domain: TrustDomain,
        now: datetime,
    ) -> bool:
        """
        Make this subscription the account's active link. Does not commit.

        Returns False when the same link is already active (idempotent).
        """
        current = self.active_link(account_id)
        if current is not None and current.provider_subscription_id == provider_subscription_id:
            if provider_customer_id and not current.provider_customer_id:
                current.provider_customer_id = provider_customer_id
                return True
            return False

        if current is not None:
            current.is_active = False
            current.superseded_at = now
            logger.info("Superseding subscription link", extra={
                "account_id": account_id,
                "previous_subscription_id": current.provider_subscription_id,
                "new_subscription_id": provider_subscription_id,
            })

        self.session.add(ExternalSubscription(
            account_id=account_id,
            provider_subscription_id=provider_subscription_id,
            provider_customer_id=provider_customer_id,
            trust_domain=TrustDomain(trust_domain).value,
            is_active=True,
            created_at=now,
        ))
        return True

    def compare_and_swap(self, account: Account, changes: Dict[str, Any], now: datetime, touch: bool = True) -> bool:
        """
        Apply `changes` only if the row still has the version we read.

        With touch=False `updated_at` is left alone (event bookkeeping only).

        Commits on success (including any pending link changes); rolls back and
        returns False when another writer got there first.
        """
        expected_version = account.version
        values = {key: _column_value(value) for key, value in changes.items()}
        values["version"] = expected_version + 1
        if touch:
            values["updated_at"] = now

        stmt = (
            update(Account)
            .where(Account.id == account.id, Account.version == expected_version)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = self.session.execute(stmt)
        if result.rowcount != 1:
            self.session.rollback()
            logger.info("Conditional write lost", extra={
                "account_id": account.id,
                "expected_version": expected_version,
            })
            return False

        self.session.commit()
        self.session.expire(account)
        return True

    def list_due_for_expiry(self, now: datetime, limit: int = 500) -> List[Account]:
        """Accounts whose stored status or grace period has lapsed as of `now`."""
        stmt = (
            select(Account)
            .where(or_(
                and_(
                    Account.subscription_status == AccountStatus.ACTIVE_TRIAL.value,
                    Account.trial_end_date.isnot(None),
                    Account.trial_end_date < now,
                ),
                and_(
                    Account.subscription_status == AccountStatus.CANCELED_BUT_ACTIVE.value,
                    Account.subscription_end_date.isnot(None),
                    Account.subscription_end_date < now,
                ),
                and_(
                    Account.grace_period_end.isnot(None),
                    Account.grace_period_end < now,
                ),
            ))
            .order_by(Account.id)
            .limit(limit)
        )
        return list(self.session.execute(stmt).scalars().all())
