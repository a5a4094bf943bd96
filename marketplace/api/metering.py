"""Monthly usage meter endpoints, keyed by feature name."""
from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from marketplace.core.auth import get_current_user_id
from marketplace.features.metering.service import get_usage_meter

router = APIRouter(prefix="/v1/metering", tags=["metering"])


class MeterUnitsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    units: float = Field(default=1, gt=0)


@router.get("/{feature}")
def check(feature: str, user_id: str = Depends(get_current_user_id)):
    return get_usage_meter().check_quota(user_id, feature).to_dict()


@router.post("/{feature}/record")
def record(feature: str, body: MeterUnitsRequest, user_id: str = Depends(get_current_user_id)):
    return get_usage_meter().record_usage(user_id, feature, body.units).to_dict()


@router.post("/{feature}/enforce")
def enforce(feature: str, body: MeterUnitsRequest, user_id: str = Depends(get_current_user_id)):
    result = get_usage_meter().enforce_quota(user_id, feature, body.units)
    return JSONResponse(
        status_code=200 if result.allowed else 429,
        content={"allowed": result.allowed, "metrics": result.metrics.to_dict()},
    )


@router.get("/{feature}/history")
def history(
    feature: str,
    days_back: int = Query(30, ge=1, le=366),
    user_id: str = Depends(get_current_user_id),
):
    events = get_usage_meter().get_usage_history(user_id, feature, days_back=days_back)
    return {"feature": feature, "events": events, "count": len(events)}
