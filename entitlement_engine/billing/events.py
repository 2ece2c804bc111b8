"""
Inbound billing event schemas.

Every event is validated against a per-type schema at the boundary, before it
reaches the reconciler. Unrecognized event types only need a valid envelope;
they are acknowledged and ignored.

Envelope: {"id": str?, "type": str, "created": int?, "data": object}
`created` is the provider's embedded event timestamp (epoch seconds) and is
used as the event version by the staleness guard. Provider-style nesting
(`data.object`) and provider event names are accepted as aliases.
"""

import enum
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from entitlement_engine.billing.errors import MalformedEvent


class EventType(str, enum.Enum):
    SUBSCRIPTION_CREATED = "subscription.created"
    SUBSCRIPTION_UPDATED = "subscription.updated"
    SUBSCRIPTION_DELETED = "subscription.deleted"
    PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    CHECKOUT_COMPLETED = "checkout.completed"
    TRIAL_WILL_END = "subscription.trial_will_end"


EVENT_TYPE_ALIASES: Dict[str, EventType] = {
    "customer.subscription.created": EventType.SUBSCRIPTION_CREATED,
    "customer.subscription.updated": EventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": EventType.SUBSCRIPTION_DELETED,
    "customer.subscription.trial_will_end": EventType.TRIAL_WILL_END,
    "checkout.session.completed": EventType.CHECKOUT_COMPLETED,
}


def lookup_event_type(raw_type: str) -> Optional[EventType]:
    try:
        return EventType(raw_type)
    except ValueError:
        return EVENT_TYPE_ALIASES.get(raw_type)


def _epoch_to_datetime(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class EventEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    type: str = Field(..., min_length=1)
    created: Optional[int] = Field(default=None, ge=0)
    data: Dict[str, Any]


class _EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def account_id(self) -> Optional[str]:
        value = self.metadata.get("account_id")
        return value.strip() if value and value.strip() else None


class SubscriptionData(_EventData):
    id: str = Field(..., min_length=1, description="Provider subscription id")
    customer: Optional[str] = None
    status: Optional[str] = None
    price_id: Optional[str] = None
    current_period_end: Optional[int] = Field(default=None, ge=0)
    trial_end: Optional[int] = Field(default=None, ge=0)

    @model_validator(mode="before")
    @classmethod
    def _price_from_items(cls, values: Any) -> Any:
        # Provider shape: items.data[0].price.id
        if isinstance(values, dict) and not values.get("price_id"):
            try:
                values = dict(values)
                values["price_id"] = values["items"]["data"][0]["price"]["id"]
            except (KeyError, IndexError, TypeError):
                pass
        return values

    @property
    def period_end(self) -> Optional[datetime]:
        return _epoch_to_datetime(self.current_period_end)

    @property
    def trial_end_at(self) -> Optional[datetime]:
        return _epoch_to_datetime(self.trial_end)


class InvoiceData(_EventData):
    id: str = Field(..., min_length=1, description="Provider invoice id")
    customer: str = Field(..., min_length=1)
    subscription: Optional[str] = None
    price_id: Optional[str] = None


class CheckoutData(_EventData):
    id: str = Field(..., min_length=1, description="Provider checkout session id")
    subscription: str = Field(..., min_length=1)
    customer: str = Field(..., min_length=1)
    client_reference_id: Optional[str] = None

    @model_validator(mode="after")
    def _require_account_reference(self) -> "CheckoutData":
        if not self.account_id:
            raise ValueError("checkout requires client_reference_id or metadata.account_id")
        return self

    @property
    def account_id(self) -> Optional[str]:
        if self.client_reference_id and self.client_reference_id.strip():
            return self.client_reference_id.strip()
        return super().account_id


EVENT_DATA_MODELS: Dict[EventType, Type[_EventData]] = {
    EventType.SUBSCRIPTION_CREATED: SubscriptionData,
    EventType.SUBSCRIPTION_UPDATED: SubscriptionData,
    EventType.SUBSCRIPTION_DELETED: SubscriptionData,
    EventType.TRIAL_WILL_END: SubscriptionData,
    EventType.PAYMENT_FAILED: InvoiceData,
    EventType.PAYMENT_SUCCEEDED: InvoiceData,
    EventType.CHECKOUT_COMPLETED: CheckoutData,
}

_missing = set(EventType) - set(EVENT_DATA_MODELS)
if _missing:
    raise RuntimeError(f"No schema registered for event types: {sorted(t.value for t in _missing)}")


@dataclass(frozen=True)
class BillingEvent:
    """A schema-validated billing event. event_type is None when unrecognized."""

    raw_type: str
    event_type: Optional[EventType]
    event_id: Optional[str] = None
    created_at: Optional[datetime] = None
    data: Optional[_EventData] = None

    @property
    def is_recognized(self) -> bool:
        return self.event_type is not None


def peek_event_type(body: bytes) -> Optional[str]:
    """Best-effort, untrusted read of `type` for security logging."""
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return None
    if isinstance(raw, dict) and isinstance(raw.get("type"), str):
        return raw["type"][:100]
    return None


def parse_event(body: bytes) -> BillingEvent:
    """Decode and validate a verified payload. Raises MalformedEvent."""
    try:
        raw = json.loads(body)
    except (ValueError, UnicodeDecodeError) as exc:
        raise MalformedEvent("Invalid JSON payload") from exc

    try:
        envelope = EventEnvelope.model_validate(raw)
    except ValidationError as exc:
        raise MalformedEvent(f"Invalid event envelope: {exc.error_count()} error(s)") from exc

    event_type = lookup_event_type(envelope.type)
    created_at = _epoch_to_datetime(envelope.created)
    if event_type is None:
        return BillingEvent(
            raw_type=envelope.type,
            event_type=None,
            event_id=envelope.id,
            created_at=created_at,
        )

    payload = envelope.data
    if isinstance(payload.get("object"), dict):
        payload = payload["object"]

    try:
        data = EVENT_DATA_MODELS[event_type].model_validate(payload)
    except ValidationError as exc:
        raise MalformedEvent(
            f"Invalid {event_type.value} payload: {exc.error_count()} error(s)",
            event_type=event_type.value,
        ) from exc

    return BillingEvent(
        raw_type=envelope.type,
        event_type=event_type,
        event_id=envelope.id,
        created_at=created_at,
        data=data,
    )
