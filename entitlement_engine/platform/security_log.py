"""
Security log sink for billing webhooks.

CRITICAL REQUIREMENTS:
- The table is append-only (no UPDATE/DELETE from application code)
- Every verification failure and every state transition writes an entry
- Entries carry event type, severity, account id (if known) and timestamp;
  never the raw payload or secrets
- Failed writes fall back to the `security_log.fallback` logger and never
  break the request flow
"""

import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy import JSON, Column, Index, String
from sqlalchemy.orm import sessionmaker

from entitlement_engine.db_base import Base, UTCDateTime, utcnow

logger = logging.getLogger(__name__)
fallback_logger = logging.getLogger("security_log.fallback")

EVENT_PREFIX = "billing."


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    HIGH = "high"


class SecurityEventType(str, Enum):
    """Enumeration of all recorded security events."""
    VERIFICATION_FAILED = "verification_failed"
    PAYLOAD_REJECTED = "payload_rejected"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    PAYMENT_FAILED = "payment_failed"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    CHECKOUT_COMPLETED = "checkout_completed"
    TRIAL_WILL_END = "trial_will_end"
    STATUS_UNMAPPED = "status_unmapped"
    EVENT_DROPPED = "event_dropped"
    STATUS_EXPIRED = "status_expired"
    ADMIN_OVERRIDE = "admin_override"


class SecurityLogEntry(Base):
    """Append-only security log row."""

    __tablename__ = "webhook_security_logs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    event_type = Column(String(100), nullable=False, index=True)
    severity = Column(String(20), nullable=False, default=Severity.INFO.value)
    account_id = Column(String(255), nullable=True, index=True)
    event_data = Column(JSON, nullable=False, default=dict)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_webhook_security_logs_account_created", "account_id", "created_at"),
    )


# Signature shared by every component that emits security events.
SecuritySink = Callable[..., None]


class SecurityLogger:
    """Writes security events in their own short transaction."""

    def __init__(self, session_factory: sessionmaker, clock: Callable = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def record(
        self,
        event_type: SecurityEventType,
        severity: Severity = Severity.INFO,
        account_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        name = EVENT_PREFIX + (event_type.value if isinstance(event_type, SecurityEventType) else str(event_type))
        sev = severity.value if isinstance(severity, Severity) else str(severity)
        entry_id = str(uuid.uuid4())
        now = self._clock()
        event_data = dict(details or {})
        event_data["recorded_at"] = now.isoformat()

        session = self._session_factory()
        try:
            session.add(SecurityLogEntry(
                id=entry_id,
                event_type=name,
                severity=sev,
                account_id=account_id,
                event_data=event_data,
                created_at=now,
            ))
            session.commit()
        except Exception as e:
            session.rollback()
            _write_fallback_log(entry_id, name, sev, account_id, event_data, str(e))
        finally:
            session.close()

    __call__ = record


def _write_fallback_log(
    entry_id: str,
    event_type: str,
    severity: str,
    account_id: Optional[str],
    event_data: dict,
    error_reason: str,
) -> None:
    fallback_logger.error(
        "Security log fallback",
        extra={"security_entry": json.dumps({
            "entry_id": entry_id,
            "event_type": event_type,
            "severity": severity,
            "account_id": account_id,
            "event_data": event_data,
            "fallback_reason": error_reason,
        }, default=str)},
    )


def null_security_sink(event_type, severity=Severity.INFO, account_id=None, details=None) -> None:
    """Sink that only logs; used when no database-backed sink is wired."""
    logger.info(
        "Security event",
        extra={
            "event_type": getattr(event_type, "value", event_type),
            "severity": getattr(severity, "value", severity),
            "account_id": account_id,
        },
    )
