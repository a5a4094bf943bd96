"""Entitlement lookup, verification and lifecycle endpoints."""
from typing import Optional

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from marketplace.core.admin_auth import AdminActor, require_admin
from marketplace.core.auth import get_current_user_id
from marketplace.core.errors import NotFoundError
from marketplace.features.entitlements.contracts import EntitlementCreate, VerificationResult, VerifyRequest
from marketplace.features.entitlements.service import (
    cancel_entitlement,
    create_entitlement,
    get_entitlement,
    list_entitlements,
)
from marketplace.features.entitlements.verification import verify_entitlement

router = APIRouter(prefix="/v1/entitlements", tags=["entitlements"])


def verification_payload(result: VerificationResult) -> dict:
    return {
        "allowed": result.allowed,
        "reason_code": result.reason_code.value,
        "message": result.message,
        "entitlement_id": result.entitlement_id,
        "quota_remaining": result.quota_remaining,
        "quota_limit": result.quota_limit,
    }


@router.post("/verify")
def verify(body: VerifyRequest, user_id: str = Depends(get_current_user_id)):
    # May deactivate expired entitlements as a side effect
    result = verify_entitlement(user_id, body.service_id)
    return JSONResponse(status_code=result.status_code, content=verification_payload(result))


@router.get("")
def list_mine(
    service_id: Optional[int] = Query(None, ge=1),
    active_only: bool = Query(False),
    user_id: str = Depends(get_current_user_id),
):
    items = list_entitlements(user_id, service_id=service_id, active_only=active_only)
    return {"entitlements": [item.model_dump(mode="json") for item in items], "count": len(items)}


@router.get("/{entitlement_id}")
def get_one(entitlement_id: int, user_id: str = Depends(get_current_user_id)):
    ent = get_entitlement(entitlement_id)
    if ent is None or ent.user_id != user_id:
        raise NotFoundError("Entitlement not found")
    return ent.model_dump(mode="json")


@router.post("", status_code=201)
def create(body: EntitlementCreate, actor: AdminActor = Depends(require_admin)):
    ent = create_entitlement(body)
    return ent.model_dump(mode="json")


@router.post("/{entitlement_id}/cancel")
def cancel(entitlement_id: int, user_id: str = Depends(get_current_user_id)):
    ent = cancel_entitlement(entitlement_id, user_id)
    return {"entitlement": ent.model_dump(mode="json"), "message": "Entitlement cancelled"}
