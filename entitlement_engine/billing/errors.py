"""
Billing error hierarchy.

Provides:
- BillingError: base for all reconciliation failures
- SignatureInvalid / NoTrustDomainConfigured / PayloadTooLarge / MalformedEvent:
  boundary failures, surfaced to the provider through the HTTP status
- UnknownPriceId / AccountNotFound / PersistenceFailure / CacheTimeout:
  post-verification failures, absorbed and logged
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for billing event handling."""

    error_code = "BILLING_ERROR"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.error_code, "message": self.message}


class SignatureInvalid(BillingError):
    """No configured trust domain verified the signature."""

    error_code = "SIGNATURE_INVALID"

    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message)


class NoTrustDomainConfigured(BillingError):
    """Neither the sandbox nor the production secret is configured."""

    error_code = "NO_TRUST_DOMAIN_CONFIGURED"

    def __init__(self, message: str = "No webhook secrets configured"):
        super().__init__(message)


class PayloadTooLarge(BillingError):
    """Payload exceeded the configured size bound before verification."""

    error_code = "PAYLOAD_TOO_LARGE"

    def __init__(self, size: int, limit: int):
        self.size = size
        self.limit = limit
        super().__init__(f"Payload of {size} bytes exceeds limit of {limit} bytes")


class MalformedEvent(BillingError):
    """Verified payload does not match the schema for its event type."""

    error_code = "MALFORMED_EVENT"

    def __init__(self, message: str, event_type: Optional[str] = None):
        self.event_type = event_type
        super().__init__(message)

    def to_dict(self) -> dict:
        d = super().to_dict()
        if self.event_type is not None:
            d["event_type"] = self.event_type
        return d


class UnknownPriceId(BillingError):
    """Price identifier has no catalog entry in the event's trust domain."""

    error_code = "UNKNOWN_PRICE_ID"

    def __init__(self, price_id: Optional[str], trust_domain: str):
        self.price_id = price_id
        self.trust_domain = trust_domain
        super().__init__(f"Unknown price id {price_id!r} in {trust_domain} domain")


class AccountNotFound(BillingError):
    """No account is linked to the event's subscription, customer or metadata."""

    error_code = "ACCOUNT_NOT_FOUND"

    def __init__(self, reference: str):
        self.reference = reference
        super().__init__(f"No account linked to {reference}")


class PersistenceFailure(BillingError):
    """Account state could not be written (lost races, database error, timeout)."""

    error_code = "PERSISTENCE_FAILURE"

    def __init__(self, message: str, account_id: Optional[str] = None):
        self.account_id = account_id
        super().__init__(message)


class CacheTimeout(BillingError):
    """Snapshot cache did not answer in time; callers treat it as a miss."""

    error_code = "CACHE_TIMEOUT"

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__(f"Snapshot cache {operation} timed out")
