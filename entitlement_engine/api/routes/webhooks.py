"""
Billing provider webhook endpoint.

SECURITY:
- Every request MUST verify its signature against a configured trust domain
- Payload size is bounded while reading, before any verification
- No authentication middleware (webhooks come from the provider, not users)
- Stored subscription links decide the account; an account id in event
  metadata is only used when no link exists yet (it seeds the first link)

Status codes:
- 413 oversized payload, 401 bad or missing signature, 400 malformed event
- 500 no trust domain configured, or verification did not finish in time
- 200 for everything after verification, including processing failures,
  so the provider does not redeliver a partially processed event
"""

import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request, status
from starlette.concurrency import run_in_threadpool

from entitlement_engine.billing.errors import (
    BillingError,
    MalformedEvent,
    NoTrustDomainConfigured,
    PayloadTooLarge,
    SignatureInvalid,
)
from entitlement_engine.billing.reconciler import StateReconciler
from entitlement_engine.billing.verifier import EventVerifier, VerifiedEvent

logger = logging.getLogger(__name__)

router = APIRouter(tags=["webhooks"])


async def read_bounded_body(request: Request, verifier: EventVerifier) -> bytes:
    """Read the body, refusing to buffer more than the verifier's limit."""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit():
        verifier.check_size(int(declared))

    chunks = []
    size = 0
    async for chunk in request.stream():
        size += len(chunk)
        verifier.check_size(size)
        chunks.append(chunk)
    return b"".join(chunks)


async def verify_webhook(request: Request, signature: Optional[str]) -> VerifiedEvent:
    """
    Authenticate and parse the webhook.

    Raises:
        HTTPException: 413 / 401 / 400 / 500 per the mapping above
    """
    verifier: EventVerifier = request.app.state.verifier
    timeout = request.app.state.settings.verification_timeout_seconds

    try:
        body = await read_bounded_body(request, verifier)
        return await asyncio.wait_for(run_in_threadpool(verifier.verify, body, signature), timeout=timeout)
    except PayloadTooLarge as e:
        raise HTTPException(status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail=e.to_dict())
    except SignatureInvalid as e:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=e.to_dict())
    except MalformedEvent as e:
        logger.warning("Rejected malformed webhook event", extra={
            "event_type": e.event_type,
            "error": e.message,
        })
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=e.to_dict())
    except NoTrustDomainConfigured as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=e.to_dict())
    except asyncio.TimeoutError:
        logger.error("Webhook verification timed out", extra={"timeout_seconds": timeout})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"error": "VERIFICATION_TIMEOUT", "message": "Verification timed out"},
        )


@router.post("/webhook")
async def receive_webhook(
    request: Request,
    x_signature: Optional[str] = Header(default=None, alias="X-Signature"),
):
    """
    Receive a billing event.

    Verification failures are rejected; once verified, the event is always
    acknowledged and the outcome is reported in `status`.
    """
    verified = await verify_webhook(request, x_signature)
    event = verified.event

    reconciler: StateReconciler = request.app.state.reconciler
    timeout = request.app.state.settings.persistence_timeout_seconds

    try:
        result = await asyncio.wait_for(run_in_threadpool(reconciler.apply, verified), timeout=timeout)
    except asyncio.TimeoutError:
        logger.error("Webhook reconciliation timed out", extra={
            "event_type": event.raw_type,
            "event_id": event.event_id,
            "timeout_seconds": timeout,
        })
        return {"received": True, "status": "error", "event_type": event.raw_type}
    except BillingError as e:
        logger.error("Failed to reconcile webhook", extra={
            "event_type": event.raw_type,
            "event_id": event.event_id,
            "error_code": e.error_code,
            "error": e.message,
        })
        return {"received": True, "status": "error", "event_type": event.raw_type}
    except Exception as e:
        logger.error("Unexpected error reconciling webhook", extra={
            "event_type": event.raw_type,
            "event_id": event.event_id,
            "error": str(e),
        }, exc_info=True)
        # Acknowledge so the provider does not retry a partially processed event
        return {"received": True, "status": "error", "event_type": event.raw_type}

    return {
        "received": True,
        "status": result.outcome.value,
        "event_type": event.raw_type,
        "trust_domain": verified.trust_domain.value,
    }
