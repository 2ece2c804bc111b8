"""
Entitlement snapshot read API.

Consumers always receive a well-formed snapshot: unknown accounts and
evaluation failures yield the most restrictive one.
"""

from fastapi import APIRouter, Request

from entitlement_engine.entitlements.service import EntitlementService

router = APIRouter(prefix="/api/entitlements", tags=["entitlements"])


@router.get("/{account_id}")
def get_entitlements(account_id: str, request: Request):
    service: EntitlementService = request.app.state.entitlement_service
    return service.get_snapshot(account_id).to_dict()
