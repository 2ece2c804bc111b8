from __future__ import annotations

import json
import logging
from pathlib import Path
from threading import RLock
from typing import Dict, FrozenSet, List, Optional

from entitlement_engine.billing.trust import TrustDomain

from .models import KNOWN_FEATURE_KEYS, LIMIT_KEYS, Tier, TierCatalog

logger = logging.getLogger(__name__)


class TierCatalogLoader:
    """Loads the tier catalog from config/tiers.json with reload support."""

    def __init__(self, config_path: str) -> None:
        self._config_path = Path(config_path)
        self._lock = RLock()
        self._catalog: TierCatalog
        self.reload()

    def reload(self) -> None:
        """Reload catalog from disk; the previous catalog stays live if parsing fails."""
        raw = self._read_config_file()
        parsed = parse_tier_catalog(raw, source=str(self._config_path))
        with self._lock:
            self._catalog = parsed
        logger.info("Loaded tier catalog", extra={
            "path": str(self._config_path),
            "tiers": sorted(parsed.tiers),
        })

    @property
    def catalog(self) -> TierCatalog:
        with self._lock:
            return self._catalog

    def _read_config_file(self) -> dict:
        with self._config_path.open("r", encoding="utf-8") as handle:
            raw = json.load(handle)
        if not isinstance(raw, dict):
            raise ValueError(f"{self._config_path} must contain a top-level object")
        return raw


def _parse_price_ids(tier_name: str, prices_raw: object) -> Dict[TrustDomain, FrozenSet[str]]:
    if prices_raw is None:
        return {}
    if not isinstance(prices_raw, dict):
        raise ValueError(f"tier '{tier_name}' prices must be an object keyed by trust domain")
    prices: Dict[TrustDomain, FrozenSet[str]] = {}
    for domain_key, ids in prices_raw.items():
        try:
            domain = TrustDomain(str(domain_key).strip().lower())
        except ValueError as exc:
            raise ValueError(f"tier '{tier_name}' has unknown trust domain: {domain_key!r}") from exc
        if not isinstance(ids, list):
            raise ValueError(f"tier '{tier_name}' {domain.value} prices must be a list")
        normalized: List[str] = []
        for price_id in ids:
            if not isinstance(price_id, str) or not price_id.strip():
                raise ValueError(f"tier '{tier_name}' has invalid price id: {price_id!r}")
            normalized.append(price_id.strip())
        prices[domain] = frozenset(normalized)
    return prices


def parse_tier_catalog(raw: dict, source: str = "tier catalog") -> TierCatalog:
    tiers_raw = raw.get("tiers")
    if not isinstance(tiers_raw, dict):
        raise ValueError(f"{source} must include an object field named 'tiers'")

    tiers: Dict[str, Tier] = {}
    seen_prices: Dict[tuple, str] = {}
    for tier_name, tier_data in tiers_raw.items():
        if not isinstance(tier_name, str) or not tier_name.strip():
            raise ValueError("each tier name must be a non-empty string")
        if not isinstance(tier_data, dict):
            raise ValueError(f"tier '{tier_name}' must be an object")
        name = tier_name.strip().lower()

        features = tier_data.get("features", [])
        if not isinstance(features, list):
            raise ValueError(f"tier '{name}' features must be a list of feature keys")
        normalized_features: List[str] = []
        for feature_key in features:
            if not isinstance(feature_key, str) or feature_key.strip() not in KNOWN_FEATURE_KEYS:
                raise ValueError(f"tier '{name}' has invalid feature key: {feature_key!r}")
            normalized_features.append(feature_key.strip())

        limits = tier_data.get("limits", {})
        if not isinstance(limits, dict):
            raise ValueError(f"tier '{name}' limits must be an object")
        normalized_limits: Dict[str, Optional[int]] = {}
        for limit_key in LIMIT_KEYS:
            if limit_key not in limits:
                raise ValueError(f"tier '{name}' is missing limit: {limit_key}")
            value = limits[limit_key]
            if value is None:
                normalized_limits[limit_key] = None
                continue
            if isinstance(value, bool) or int(value) < 0:
                raise ValueError(f"tier '{name}' limit {limit_key} must be a non-negative integer or null")
            normalized_limits[limit_key] = int(value)

        prices = _parse_price_ids(name, tier_data.get("prices"))
        for domain, price_ids in prices.items():
            for price_id in price_ids:
                owner = seen_prices.setdefault((domain, price_id), name)
                if owner != name:
                    raise ValueError(
                        f"price id {price_id!r} maps to both '{owner}' and '{name}' in {domain.value}"
                    )

        tiers[name] = Tier(
            name=name,
            display_name=str(tier_data.get("display_name") or name.title()),
            feature_keys=frozenset(normalized_features),
            limits=normalized_limits,
            prices=prices,
        )

    if not tiers:
        raise ValueError(f"{source} must define at least one tier")

    def _named_tier(key: str, default: str) -> str:
        value = str(raw.get(key, default)).strip().lower()
        if value not in tiers:
            raise ValueError(f"{source} {key} '{value}' is not a defined tier")
        return value

    grace_days = raw.get("grace_period_days", 7)
    if isinstance(grace_days, bool) or int(grace_days) < 0:
        raise ValueError(f"{source} grace_period_days must be a non-negative integer")

    return TierCatalog(
        tiers=tiers,
        default_tier=_named_tier("default_tier", "professional"),
        free_tier=_named_tier("free_tier", "free"),
        trial_tier=_named_tier("trial_tier", "starter"),
        grace_period_days=int(grace_days),
    )
