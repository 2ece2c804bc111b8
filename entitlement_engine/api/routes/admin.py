"""
Administrative account status override.

SECURITY:
- Requires X-Admin-Token matching ADMIN_API_TOKEN (constant-time compare)
- Disabled (503) when no admin token is configured
- Every override writes a security log entry
"""

import hmac
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field, field_validator

from entitlement_engine.billing.errors import AccountNotFound, PersistenceFailure
from entitlement_engine.billing.overrides import InvalidOverride, apply_status_override
from entitlement_engine.entitlements.service import EntitlementService
from entitlement_engine.models.account import AccountStatus
from entitlement_engine.platform.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin", tags=["admin"])


class StatusOverrideRequest(BaseModel):
    status: AccountStatus
    tier: Optional[str] = Field(default=None, max_length=50)
    trial_end_date: Optional[datetime] = None
    reason: Optional[str] = Field(default=None, max_length=500)

    @field_validator("trial_end_date")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


def require_admin_token(
    request: Request,
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
) -> str:
    expected = request.app.state.settings.admin_api_token
    if not expected:
        raise ServiceUnavailableError("Administrative API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request", extra={"path": request.url.path})
        raise AuthenticationError("Invalid admin token")
    return "admin"


@router.post("/accounts/{account_id}/status")
def override_account_status(
    account_id: str,
    body: StatusOverrideRequest,
    request: Request,
    actor: str = Depends(require_admin_token),
):
    """
    Set an account's status directly and refresh its cached snapshot with
    the known new status.
    """
    state = request.app.state
    service: EntitlementService = state.entitlement_service

    try:
        result = apply_status_override(
            state.session_factory,
            service.catalog,
            account_id,
            body.status,
            tier=body.tier,
            trial_end_date=body.trial_end_date,
            actor=actor,
            reason=body.reason,
            security_log=state.security_log,
        )
    except AccountNotFound:
        raise NotFoundError("Account", account_id)
    except InvalidOverride as e:
        raise ValidationError(str(e), {"tier": body.tier})
    except PersistenceFailure as e:
        raise ConflictError(e.message, {"account_id": account_id})

    snapshot = service.invalidate(account_id, known_status=result.new_status)
    return {
        "account_id": account_id,
        "previous_status": result.previous_status.value,
        "status": result.new_status.value,
        "changed_fields": list(result.changed_fields),
        "entitlements": snapshot.to_dict() if snapshot is not None else None,
    }
