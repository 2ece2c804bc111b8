from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Literal, Mapping, Optional, Tuple

from entitlement_engine.billing.trust import TrustDomain

StatusColor = Literal["green", "yellow", "red", "gray"]

LIMIT_KEYS: Tuple[str, ...] = (
    "max_calendars",
    "max_bookings_per_month",
    "max_team_members",
    "max_contacts",
)

# Catalog feature key -> snapshot capability flag
FEATURE_CAPABILITIES: Mapping[str, str] = MappingProxyType({
    "view_dashboard": "can_view_dashboard",
    "create_bookings": "can_create_bookings",
    "edit_bookings": "can_edit_bookings",
    "manage_settings": "can_manage_settings",
    "whatsapp": "can_access_whatsapp",
    "ai": "can_use_ai",
    "export_data": "can_export_data",
    "invite_users": "can_invite_users",
    "api_access": "can_access_api",
    "white_label": "can_use_white_label",
    "priority_support": "has_priority_support",
    "future_insights": "can_access_future_insights",
    "business_intelligence": "can_access_business_intelligence",
    "performance": "can_access_performance",
    "customer_satisfaction": "can_access_customer_satisfaction",
    "team_members": "can_access_team_members",
})

KNOWN_FEATURE_KEYS: FrozenSet[str] = frozenset(FEATURE_CAPABILITIES)


@dataclass(frozen=True)
class Tier:
    """Immutable catalog entry: limits, feature flags and price identifiers."""

    name: str
    display_name: str
    feature_keys: FrozenSet[str]
    limits: Mapping[str, Optional[int]] = field(default_factory=dict)
    prices: Mapping[TrustDomain, FrozenSet[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "name", self.name.strip().lower())
        object.__setattr__(self, "feature_keys", frozenset(self.feature_keys))
        object.__setattr__(self, "limits", MappingProxyType(dict(self.limits)))
        object.__setattr__(
            self,
            "prices",
            MappingProxyType({domain: frozenset(ids) for domain, ids in self.prices.items()}),
        )

    def has_feature(self, feature_key: str) -> bool:
        return feature_key in self.feature_keys

    def limit(self, key: str) -> Optional[int]:
        """Numeric limit; None means unlimited."""
        return self.limits.get(key)


@dataclass(frozen=True)
class TierCatalog:
    """Read-only tier reference data, loaded once per resolution."""

    tiers: Mapping[str, Tier]
    default_tier: str
    free_tier: str
    trial_tier: str
    grace_period_days: int = 7
    _price_index: Mapping[Tuple[TrustDomain, str], str] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "tiers", MappingProxyType(dict(self.tiers)))
        index: Dict[Tuple[TrustDomain, str], str] = {}
        for tier in self.tiers.values():
            for domain, price_ids in tier.prices.items():
                for price_id in price_ids:
                    index[(domain, price_id)] = tier.name
        object.__setattr__(self, "_price_index", MappingProxyType(index))

    def get(self, name: Optional[str]) -> Optional[Tier]:
        if not name:
            return None
        return self.tiers.get(str(name).strip().lower())

    def tier_for_price(self, price_id: str, trust_domain: TrustDomain) -> Optional[str]:
        """Exact lookup scoped to one trust domain."""
        return self._price_index.get((trust_domain, price_id))


_CAMEL_WORDS = {"ai": "AI", "api": "API", "whatsapp": "WhatsApp"}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(_CAMEL_WORDS.get(part, part.capitalize()) for part in rest)


@dataclass(frozen=True)
class EntitlementSnapshot:
    """Derived, non-persisted capability set plus limits and display status."""

    account_id: Optional[str]
    access_level: str
    tier: Optional[str]

    can_view_dashboard: bool = False
    can_create_bookings: bool = False
    can_edit_bookings: bool = False
    can_manage_settings: bool = False
    can_access_whatsapp: bool = False
    can_use_ai: bool = False
    can_export_data: bool = False
    can_invite_users: bool = False
    can_access_api: bool = False
    can_use_white_label: bool = False
    has_priority_support: bool = False
    can_access_future_insights: bool = False
    can_access_business_intelligence: bool = False
    can_access_performance: bool = False
    can_access_customer_satisfaction: bool = False
    can_access_team_members: bool = False

    max_calendars: Optional[int] = 0
    max_bookings_per_month: Optional[int] = 0
    max_team_members: Optional[int] = 0
    max_contacts: Optional[int] = 0

    status_message: str = "Unknown Status"
    status_color: StatusColor = "gray"
    grace_period_active: bool = False
    days_remaining: int = 0
    needs_upgrade: bool = False
    show_upgrade_prompt: bool = False
    evaluated_at: Optional[datetime] = None

    def capabilities(self) -> Dict[str, bool]:
        return {flag: getattr(self, flag) for flag in FEATURE_CAPABILITIES.values()}

    def limits(self) -> Dict[str, Optional[int]]:
        return {key: getattr(self, key) for key in LIMIT_KEYS}

    def to_dict(self) -> Dict[str, Any]:
        """camelCase wire form consumed by UI and feature gates."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[_camel(f.name)] = value
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "EntitlementSnapshot":
        kwargs: Dict[str, Any] = {}
        for f in fields(cls):
            key = _camel(f.name)
            if key not in raw:
                continue
            value = raw[key]
            if f.name == "evaluated_at" and value is not None:
                value = datetime.fromisoformat(value)
            kwargs[f.name] = value
        return cls(**kwargs)
