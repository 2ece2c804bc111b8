"""
Webhook signature verification across trust domains.

SECURITY:
- Payload size is bounded BEFORE any cryptographic work
- The signature is checked against each configured domain in order
  (sandbox first, then production); exactly one must match
- Comparison is constant-time
- Failures write a security log entry with the event type only, never the payload
- No retries here; the billing provider redelivers
"""

import base64
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

from entitlement_engine.billing.errors import NoTrustDomainConfigured, PayloadTooLarge, SignatureInvalid
from entitlement_engine.billing.events import BillingEvent, parse_event, peek_event_type
from entitlement_engine.billing.trust import TrustDomain
from entitlement_engine.platform.security_log import (
    SecurityEventType,
    SecuritySink,
    Severity,
    null_security_sink,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAYLOAD_BYTES = 256 * 1024


@dataclass(frozen=True)
class VerifiedEvent:
    """A schema-validated event plus the trust domain whose secret signed it."""

    event: BillingEvent
    trust_domain: TrustDomain


def compute_signature(payload: bytes, secret: str) -> str:
    """Base64 HMAC-SHA256 of the raw body, as sent in the X-Signature header."""
    digest = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    # Compared as bytes: header values may carry non-ASCII characters.
    expected = compute_signature(payload, secret).encode("ascii")
    return hmac.compare_digest(expected, signature.encode("utf-8"))


class EventVerifier:
    """Authenticates raw webhook bodies against the configured trust domains."""

    def __init__(
        self,
        secrets: Mapping[TrustDomain, Optional[str]],
        max_payload_bytes: int = DEFAULT_MAX_PAYLOAD_BYTES,
        security_log: Optional[SecuritySink] = None,
    ):
        # Preserve caller order; sandbox-first is the configured default.
        self._secrets = [(TrustDomain(domain), secret) for domain, secret in secrets.items() if secret]
        self.max_payload_bytes = max_payload_bytes
        self._security_log = security_log or null_security_sink

    @property
    def configured_domains(self) -> list:
        return [domain for domain, _ in self._secrets]

    def check_size(self, size: int) -> None:
        if size > self.max_payload_bytes:
            logger.warning("Rejected oversized webhook payload", extra={
                "size": size,
                "limit": self.max_payload_bytes,
            })
            self._security_log(
                SecurityEventType.PAYLOAD_REJECTED,
                Severity.HIGH,
                None,
                {"reason": "payload_too_large", "size": size, "limit": self.max_payload_bytes},
            )
            raise PayloadTooLarge(size, self.max_payload_bytes)

    def match_domain(self, payload: bytes, signature: Optional[str]) -> Optional[TrustDomain]:
        """Return the first trust domain whose secret verifies the signature."""
        if not signature:
            return None
        candidate = signature.strip()
        for domain, secret in self._secrets:
            if verify_signature(payload, candidate, secret):
                return domain
        return None

    def verify(self, payload: bytes, signature: Optional[str]) -> VerifiedEvent:
        """
        Verify and parse a webhook body.

        Raises:
            PayloadTooLarge: body exceeds max_payload_bytes
            NoTrustDomainConfigured: neither secret is set
            SignatureInvalid: no configured domain verifies the signature
            MalformedEvent: verified body does not match its event schema
        """
        self.check_size(len(payload))

        if not self._secrets:
            logger.error("No webhook secrets configured")
            raise NoTrustDomainConfigured()

        domain = self.match_domain(payload, signature)
        if domain is None:
            event_type = peek_event_type(payload)
            logger.warning("Webhook signature verification failed", extra={
                "event_type": event_type,
                "signature_present": bool(signature),
                "domains_tried": [d.value for d, _ in self._secrets],
            })
            self._security_log(
                SecurityEventType.VERIFICATION_FAILED,
                Severity.HIGH,
                None,
                {
                    "event_type": event_type,
                    "signature_present": bool(signature),
                    "domains_tried": [d.value for d, _ in self._secrets],
                },
            )
            raise SignatureInvalid()

        event = parse_event(payload)
        logger.info("Webhook verified", extra={
            "event_type": event.raw_type,
            "event_id": event.event_id,
            "trust_domain": domain.value,
        })
        return VerifiedEvent(event=event, trust_domain=domain)
