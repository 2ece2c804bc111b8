"""
Price identifier -> tier name resolution.

Sandbox and production price identifiers are distinct; a lookup only ever
consults the catalog entries of the event's own trust domain. An unrecognized
price must not block reconciliation, so resolve() never raises: it falls back
to the catalog's default tier and logs a warning.
"""

import logging
from typing import Callable, Optional, Union

from entitlement_engine.billing.errors import UnknownPriceId
from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.entitlements.models import TierCatalog

logger = logging.getLogger(__name__)

CatalogSource = Union[TierCatalog, Callable[[], TierCatalog]]


class TierResolver:
    """Resolves opaque price identifiers to tier names within a trust domain."""

    def __init__(self, catalog: CatalogSource):
        self._catalog_source = catalog

    @property
    def catalog(self) -> TierCatalog:
        source = self._catalog_source
        return source if isinstance(source, TierCatalog) else source()

    def resolve(self, price_id: Optional[str], trust_domain: Union[TrustDomain, str]) -> str:
        catalog = self.catalog
        try:
            domain = TrustDomain(trust_domain)
            normalized = (price_id or "").strip()
            if not normalized:
                raise UnknownPriceId(price_id, domain.value)
            tier_name = catalog.tier_for_price(normalized, domain)
            if tier_name is None:
                raise UnknownPriceId(normalized, domain.value)
            return tier_name
        except (UnknownPriceId, ValueError) as e:
            logger.warning("Unknown price id, falling back to default tier", extra={
                "price_id": price_id,
                "trust_domain": str(getattr(trust_domain, "value", trust_domain)),
                "default_tier": catalog.default_tier,
                "error": str(e),
            })
            return catalog.default_tier
