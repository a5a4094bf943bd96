"""
marketplace/features/usage/service.py

Usage tracker and usage ledger queries.

track_usage is the only writer of quota_used increments and of the
usage_logs table. Both writes happen in one transaction: either the quota
moves and the ledger row exists, or neither.
"""

from collections import defaultdict
from datetime import datetime
from typing import Any, Dict, List, Optional
import logging

from sqlalchemy import func, insert, select, update

from marketplace.core.config import settings
from marketplace.core.database import db_errors, entitlements, get_db_session, usage_logs
from marketplace.core.errors import ValidationError
from marketplace.core.logging import log_event
from marketplace.features.entitlements.contracts import REASON_MESSAGES, ReasonCode, TrackResult
from marketplace.features.entitlements.service import as_utc, normalize_now, row_to_entitlement
from marketplace.models.usage_log import UsageLogEntry

logger = logging.getLogger("marketplace.usage")

UNKNOWN = "unknown"
TOP_ENDPOINTS = 10


def _row_to_log(row) -> UsageLogEntry:
    data = dict(row._mapping)
    data.pop("created_at", None)
    data["timestamp"] = as_utc(data["timestamp"])
    return UsageLogEntry(**data)


def _classify_miss(row, user_id: str, service_id: int, current: datetime) -> ReasonCode:
    """Why the conditional increment matched no row."""
    if row is None or row.user_id != user_id or row.service_id != service_id:
        return ReasonCode.NO_ENTITLEMENT
    ent = row_to_entitlement(row)
    if current > ent.valid_until:
        return ReasonCode.ENTITLEMENT_EXPIRED
    if ent.is_cancelled or not ent.is_active:
        return ReasonCode.ENTITLEMENT_INACTIVE
    if current < ent.valid_from:
        return ReasonCode.ENTITLEMENT_NOT_STARTED
    return ReasonCode.QUOTA_EXCEEDED


def _quota_warning(quota_used: int, quota_limit: int) -> Optional[str]:
    if quota_limit <= 0:
        return None
    fraction = quota_used / quota_limit
    if fraction <= settings.QUOTA_WARNING_THRESHOLD:
        return None
    remaining = max(0, quota_limit - quota_used)
    return f"Quota usage at {fraction * 100:.1f}%: {remaining} requests remaining"


def track_usage(
    entitlement_id: int,
    user_id: str,
    service_id: int,
    endpoint: str,
    requests_count: int = 1,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    now: Optional[Any] = None,
) -> TrackResult:
    """
    Record requests_count calls against an entitlement.

    The increment only applies when the row belongs to (user_id, service_id),
    is active, is inside its validity window and has room for the whole
    batch. A batch that would cross quota_limit is rejected, never clamped.
    """
    if requests_count < 1:
        raise ValidationError("requests_count must be >= 1")
    if not endpoint:
        raise ValidationError("endpoint is required")

    current = normalize_now(now)
    log_entry = None

    with db_errors("track_usage"), get_db_session() as session:
        result = session.execute(
            update(entitlements)
            .where(entitlements.c.id == entitlement_id)
            .where(entitlements.c.user_id == user_id)
            .where(entitlements.c.service_id == service_id)
            .where(entitlements.c.is_active.is_(True))
            .where(entitlements.c.valid_from <= current)
            .where(entitlements.c.valid_until >= current)
            .where(entitlements.c.quota_used + requests_count <= entitlements.c.quota_limit)
            .values(
                quota_used=entitlements.c.quota_used + requests_count,
                updated_at=current,
            )
        )

        if result.rowcount != 1:
            session.rollback()
            reason = _classify_miss(
                session.execute(select(entitlements).where(entitlements.c.id == entitlement_id)).first(),
                user_id,
                service_id,
                current,
            )
        else:
            reason = ReasonCode.OK
            inserted = session.execute(
                insert(usage_logs).values(
                    entitlement_id=entitlement_id,
                    user_id=user_id,
                    service_id=service_id,
                    timestamp=current,
                    requests_count=requests_count,
                    endpoint=endpoint,
                    ip_address=ip_address or UNKNOWN,
                    user_agent=user_agent or UNKNOWN,
                    created_at=current,
                )
            )
            log_entry = _row_to_log(
                session.execute(
                    select(usage_logs).where(usage_logs.c.id == inserted.inserted_primary_key[0])
                ).one()
            )
            quota = session.execute(
                select(entitlements.c.quota_used, entitlements.c.quota_limit)
                .where(entitlements.c.id == entitlement_id)
            ).one()

    if reason is not ReasonCode.OK:
        logger.warning(
            f"[track] {reason.value}",
            extra={
                "user_id": user_id,
                "service_id": service_id,
                "entitlement_id": entitlement_id,
                "reason_code": reason.value,
                "requests_count": requests_count,
            },
        )
        return TrackResult.reject(reason)

    quota_used, quota_limit = quota.quota_used, quota.quota_limit
    warning = _quota_warning(quota_used, quota_limit)
    percentage_used = round(quota_used / quota_limit * 100, 2) if quota_limit else 100.0

    logger.info(
        "[track] RECORDED",
        extra={
            "user_id": user_id,
            "service_id": service_id,
            "entitlement_id": entitlement_id,
            "requests_count": requests_count,
            "quota_used": quota_used,
            "quota_limit": quota_limit,
        },
    )
    if warning:
        log_event(
            "info",
            "[track] LOW_QUOTA",
            user_id=user_id,
            service_id=service_id,
            entitlement_id=entitlement_id,
            extra={"percentage_used": percentage_used},
        )

    return TrackResult(
        success=True,
        reason_code=ReasonCode.OK,
        message=REASON_MESSAGES[ReasonCode.OK],
        log_entry=log_entry,
        quota_used=quota_used,
        quota_limit=quota_limit,
        quota_remaining=max(0, quota_limit - quota_used),
        percentage_used=percentage_used,
        warning=warning,
    )


def list_usage_logs(
    *,
    user_id: Optional[str] = None,
    entitlement_id: Optional[int] = None,
    service_id: Optional[int] = None,
    limit: int = 100,
) -> List[UsageLogEntry]:
    """Newest first."""
    query = select(usage_logs)
    if user_id is not None:
        query = query.where(usage_logs.c.user_id == user_id)
    if entitlement_id is not None:
        query = query.where(usage_logs.c.entitlement_id == entitlement_id)
    if service_id is not None:
        query = query.where(usage_logs.c.service_id == service_id)
    query = query.order_by(usage_logs.c.timestamp.desc(), usage_logs.c.id.desc()).limit(limit)

    with db_errors("list_usage_logs"), get_db_session() as session:
        rows = session.execute(query).all()
    return [_row_to_log(row) for row in rows]


def get_usage_stats(
    *,
    user_id: Optional[str] = None,
    service_id: Optional[int] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Aggregate analytics over the usage ledger. Counts are summed requests_count."""
    filters = []
    if user_id is not None:
        filters.append(usage_logs.c.user_id == user_id)
    if service_id is not None:
        filters.append(usage_logs.c.service_id == service_id)
    if start is not None:
        filters.append(usage_logs.c.timestamp >= as_utc(start))
    if end is not None:
        filters.append(usage_logs.c.timestamp <= as_utc(end))

    request_sum = func.sum(usage_logs.c.requests_count).label("request_count")

    with db_errors("get_usage_stats"), get_db_session() as session:
        by_service = session.execute(
            select(usage_logs.c.service_id, request_sum)
            .where(*filters)
            .group_by(usage_logs.c.service_id)
            .order_by(request_sum.desc(), usage_logs.c.service_id.asc())
        ).all()
        by_endpoint = session.execute(
            select(usage_logs.c.endpoint, request_sum)
            .where(*filters)
            .group_by(usage_logs.c.endpoint)
            .order_by(request_sum.desc(), usage_logs.c.endpoint.asc())
        ).all()
        timeline = session.execute(
            select(usage_logs.c.timestamp, usage_logs.c.requests_count).where(*filters)
        ).all()

    by_day: Dict[str, int] = defaultdict(int)
    for row in timeline:
        by_day[as_utc(row.timestamp).date().isoformat()] += row.requests_count

    total_requests = sum(by_day.values())
    days = len(by_day) or 1

    return {
        "total_requests": total_requests,
        "unique_services": len(by_service),
        "unique_endpoints": len(by_endpoint),
        "requests_by_service": [
            {"service_id": row.service_id, "request_count": int(row.request_count)} for row in by_service
        ],
        "requests_by_endpoint": [
            {"endpoint": row.endpoint, "request_count": int(row.request_count)}
            for row in by_endpoint[:TOP_ENDPOINTS]
        ],
        "requests_by_day": [
            {"date": day, "request_count": count} for day, count in sorted(by_day.items())
        ],
        "average_requests_per_day": round(total_requests / days, 2),
    }
