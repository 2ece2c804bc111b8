from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy.orm import sessionmaker

from entitlement_engine.db_base import utcnow
from entitlement_engine.models.account import Account, AccountState, AccountStatus

from .cache import InMemorySnapshotCache, SnapshotCache
from .calculator import compute, restrictive_snapshot
from .loader import TierCatalogLoader
from .models import EntitlementSnapshot, TierCatalog

logger = logging.getLogger(__name__)

CatalogSource = Union[TierCatalog, TierCatalogLoader, Callable[[], TierCatalog]]


class EntitlementService:
    """Cache-first snapshot reads with synchronous refresh on known state changes."""

    def __init__(
        self,
        *,
        session_factory: sessionmaker,
        catalog: CatalogSource,
        cache: Optional[SnapshotCache] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._catalog_source = catalog
        self.cache = cache or InMemorySnapshotCache()
        self._clock = clock

    @property
    def catalog(self) -> TierCatalog:
        source = self._catalog_source
        if isinstance(source, TierCatalog):
            return source
        if isinstance(source, TierCatalogLoader):
            return source.catalog
        return source()

    def load_state(self, account_id: str) -> Optional[AccountState]:
        session = self._session_factory()
        try:
            account = session.get(Account, account_id)
            return account.to_state() if account is not None else None
        finally:
            session.close()

    def compute(self, state: Optional[AccountState]) -> EntitlementSnapshot:
        return compute(state, self.catalog, self._clock())

    def get_snapshot(self, account_id: str) -> EntitlementSnapshot:
        """
        Never raises: on any failure the most restrictive snapshot is returned
        and nothing is cached.
        """
        try:
            cached = self.cache.get(account_id)
            if cached is not None:
                return cached

            state = self.load_state(account_id)
            if state is None:
                logger.info("Entitlement requested for unknown account", extra={"account_id": account_id})
                return restrictive_snapshot(account_id, self._clock())

            snapshot = self.compute(state)
            self.cache.put(account_id, snapshot)
            return snapshot
        except Exception as e:
            logger.error("Entitlement evaluation failed, degrading to restrictive", extra={
                "account_id": account_id,
                "error": str(e),
            }, exc_info=True)
            return restrictive_snapshot(account_id, self._clock())

    def refresh(self, state: AccountState) -> EntitlementSnapshot:
        """Recompute from committed state and overwrite the cache entry."""
        snapshot = self.compute(state)
        self.cache.invalidate(state.account_id, snapshot)
        return snapshot

    def invalidate(self, account_id: str, known_status: Optional[AccountStatus] = None) -> Optional[EntitlementSnapshot]:
        """
        Without a known status the entry is dropped. With one, the snapshot for
        that status is computed and written synchronously.
        """
        if known_status is None:
            self.cache.invalidate(account_id)
            return None

        state = self.load_state(account_id)
        if state is None:
            self.cache.invalidate(account_id)
            return None
        if state.subscription_status != known_status:
            state = replace(state, subscription_status=known_status)
        return self.refresh(state)
