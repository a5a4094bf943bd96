"""Admin endpoints: quota adjustments and meter tiers (X-Admin-Key)."""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict

from marketplace.core.admin_auth import AdminActor, require_admin
from marketplace.core.errors import NotFoundError
from marketplace.features.entitlements.contracts import QuotaAdjustmentRequest
from marketplace.features.entitlements.service import adjust_quota, get_entitlement, list_quota_adjustments
from marketplace.features.metering.service import get_usage_meter

router = APIRouter(prefix="/v1/admin", tags=["admin"])


class TierUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tier: str


@router.post("/entitlements/{entitlement_id}/quota")
def adjust_entitlement_quota(
    entitlement_id: int,
    body: QuotaAdjustmentRequest,
    actor: AdminActor = Depends(require_admin),
):
    record = adjust_quota(entitlement_id, body, actor_id=actor.actor_id, actor_role=actor.actor_role)
    ent = get_entitlement(entitlement_id)
    return {
        "entitlement": ent.model_dump(mode="json"),
        "audit": record.model_dump(mode="json"),
    }


@router.get("/entitlements/{entitlement_id}/quota-adjustments")
def quota_history(entitlement_id: int, actor: AdminActor = Depends(require_admin)):
    if get_entitlement(entitlement_id) is None:
        raise NotFoundError("Entitlement not found")
    records = list_quota_adjustments(entitlement_id)
    return {"adjustments": [record.model_dump(mode="json") for record in records]}


@router.put("/users/{user_id}/tier")
def set_tier(user_id: str, body: TierUpdateRequest, actor: AdminActor = Depends(require_admin)):
    get_usage_meter().set_user_tier(user_id, body.tier)
    return {"user_id": user_id, "tier": body.tier}
