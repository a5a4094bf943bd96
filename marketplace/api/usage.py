"""Usage tracking and ledger analytics endpoints."""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from marketplace.api.entitlements import verification_payload
from marketplace.core.auth import get_current_user_id
from marketplace.core.errors import ValidationError
from marketplace.features.entitlements.contracts import TrackResult, TrackUsageRequest
from marketplace.features.entitlements.service import as_utc
from marketplace.features.entitlements.verification import verify_entitlement
from marketplace.features.usage.service import get_usage_stats, list_usage_logs, track_usage

router = APIRouter(prefix="/v1/usage", tags=["usage"])


def _track_payload(result: TrackResult) -> dict:
    payload = {
        "success": result.success,
        "reason_code": result.reason_code.value,
        "message": result.message,
    }
    if result.success:
        payload.update(
            {
                "usage_log": result.log_entry.model_dump(mode="json"),
                "quota_used": result.quota_used,
                "quota_limit": result.quota_limit,
                "quota_remaining": result.quota_remaining,
                "percentage_used": result.percentage_used,
            }
        )
        if result.warning:
            payload["warning"] = result.warning
    return payload


@router.post("/track")
def track(body: TrackUsageRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    # Verify may deactivate expired entitlements before picking one with room for the batch
    decision = verify_entitlement(user_id, body.service_id, requests_count=body.requests_count)
    if not decision.allowed:
        return JSONResponse(status_code=decision.status_code, content=verification_payload(decision))

    forwarded = request.headers.get("x-forwarded-for")
    ip_address = forwarded.split(",")[0].strip() if forwarded else (request.client.host if request.client else None)

    result = track_usage(
        decision.entitlement_id,
        user_id,
        body.service_id,
        body.endpoint,
        requests_count=body.requests_count,
        ip_address=ip_address,
        user_agent=request.headers.get("user-agent"),
    )
    return JSONResponse(status_code=result.status_code, content=_track_payload(result))


@router.get("/stats")
def stats(
    service_id: Optional[int] = Query(None, ge=1),
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    user_id: str = Depends(get_current_user_id),
):
    start, end = as_utc(start), as_utc(end)
    if start and end and start > end:
        raise ValidationError("start must be before end")
    return get_usage_stats(user_id=user_id, service_id=service_id, start=start, end=end)


@router.get("/logs")
def logs(
    entitlement_id: Optional[int] = Query(None, ge=1),
    service_id: Optional[int] = Query(None, ge=1),
    limit: int = Query(100, ge=1, le=1000),
    user_id: str = Depends(get_current_user_id),
):
    entries = list_usage_logs(user_id=user_id, entitlement_id=entitlement_id, service_id=service_id, limit=limit)
    return {"logs": [entry.model_dump(mode="json") for entry in entries], "count": len(entries)}
