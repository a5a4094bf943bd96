"""
marketplace/features/entitlements/service.py

Entitlement lifecycle: creation after payment verification, lookup,
cancellation and quota adjustment.

Every mutation of an entitlement row is a single conditional UPDATE so
concurrent callers never read-modify-write the same row.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from marketplace.core.config import settings
from marketplace.core.database import db_errors, entitlements, get_db_session, quota_adjustments
from marketplace.core.errors import ConflictError, NotFoundError, ValidationError
from marketplace.features.entitlements.contracts import EntitlementCreate, QuotaAdjustmentRequest
from marketplace.models.entitlement import Entitlement
from marketplace.models.quota_adjustment import QuotaAdjustment

logger = logging.getLogger("marketplace.entitlements")

_DATETIME_FIELDS = ("valid_from", "valid_until", "cancelled_at", "created_at", "updated_at")


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return datetime.now(timezone.utc)
    return as_utc(now)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive datetimes (SQLite round-trips) are UTC by convention."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def row_to_entitlement(row) -> Entitlement:
    data = dict(row._mapping)
    for field in _DATETIME_FIELDS:
        data[field] = as_utc(data.get(field))
    return Entitlement(**data)


def _row_to_adjustment(row) -> QuotaAdjustment:
    data = dict(row._mapping)
    data["created_at"] = as_utc(data["created_at"])
    return QuotaAdjustment(**data)


def _fetch(session, entitlement_id: int):
    return session.execute(
        select(entitlements).where(entitlements.c.id == entitlement_id)
    ).first()


def get_entitlement(entitlement_id: int) -> Optional[Entitlement]:
    with db_errors("get_entitlement"), get_db_session() as session:
        row = _fetch(session, entitlement_id)
    return row_to_entitlement(row) if row else None


def get_entitlement_by_payment(payment_id: str) -> Optional[Entitlement]:
    with db_errors("get_entitlement_by_payment"), get_db_session() as session:
        row = session.execute(
            select(entitlements).where(entitlements.c.payment_id == payment_id)
        ).first()
    return row_to_entitlement(row) if row else None


def list_entitlements(
    user_id: str,
    service_id: Optional[int] = None,
    active_only: bool = False,
) -> List[Entitlement]:
    """Newest first. Does not apply lazy expiry; is_active is as stored."""
    query = select(entitlements).where(entitlements.c.user_id == user_id)
    if service_id is not None:
        query = query.where(entitlements.c.service_id == service_id)
    if active_only:
        query = query.where(entitlements.c.is_active.is_(True))
    query = query.order_by(entitlements.c.created_at.desc(), entitlements.c.id.desc())

    with db_errors("list_entitlements"), get_db_session() as session:
        rows = session.execute(query).all()
    return [row_to_entitlement(row) for row in rows]


def create_entitlement(payload: EntitlementCreate, now: Optional[Any] = None) -> Entitlement:
    """
    Issue an entitlement for an already-verified payment.

    Idempotent on payment_id: replaying the same purchase returns the
    existing row. Reusing a payment_id for another user or service is a
    conflict.
    """
    current = normalize_now(now)
    valid_from = as_utc(payload.valid_from) or current
    if payload.valid_until is not None:
        valid_until = as_utc(payload.valid_until)
    else:
        valid_until = valid_from + timedelta(days=payload.validity_days)

    if valid_from >= valid_until:
        raise ValidationError(
            "valid_from must be before valid_until",
            code="invalid_validity_window",
        )

    try:
        with db_errors("create_entitlement"), get_db_session() as session:
            result = session.execute(
                insert(entitlements).values(
                    user_id=payload.user_id,
                    service_id=payload.service_id,
                    payment_id=payload.payment_id,
                    pricing_tier=payload.pricing_tier.value,
                    quota_limit=payload.quota_limit,
                    quota_used=0,
                    valid_from=valid_from,
                    valid_until=valid_until,
                    is_active=True,
                    token_type=payload.token_type,
                    amount_paid=payload.amount_paid,
                    tx_digest=payload.tx_digest,
                    created_at=current,
                    updated_at=current,
                )
            )
            entitlement_id = result.inserted_primary_key[0]
    except IntegrityError:
        existing = get_entitlement_by_payment(payload.payment_id)
        if existing is None:
            raise
        if existing.user_id == payload.user_id and existing.service_id == payload.service_id:
            logger.info(
                "[entitlements] payment replay, returning existing",
                extra={"user_id": payload.user_id, "service_id": payload.service_id, "entitlement_id": existing.id},
            )
            return existing
        logger.warning(
            "[entitlements] payment_id reused",
            extra={"user_id": payload.user_id, "service_id": payload.service_id, "entitlement_id": existing.id},
        )
        raise ConflictError("Payment already used for a different entitlement", code="payment_already_used")

    logger.info(
        "[entitlements] CREATED",
        extra={
            "user_id": payload.user_id,
            "service_id": payload.service_id,
            "entitlement_id": entitlement_id,
            "quota_limit": payload.quota_limit,
        },
    )
    return get_entitlement(entitlement_id)


def cancel_entitlement(entitlement_id: int, user_id: str, now: Optional[Any] = None) -> Entitlement:
    """Owner-only, terminal. Cancelling twice is a conflict."""
    current = normalize_now(now)
    with db_errors("cancel_entitlement"), get_db_session() as session:
        result = session.execute(
            update(entitlements)
            .where(entitlements.c.id == entitlement_id)
            .where(entitlements.c.user_id == user_id)
            .where(entitlements.c.cancelled_at.is_(None))
            .values(is_active=False, cancelled_at=current, updated_at=current)
        )
        cancelled = result.rowcount == 1
        row = _fetch(session, entitlement_id)

    # Another user's entitlement is reported as missing
    if row is None or row.user_id != user_id:
        raise NotFoundError("Entitlement not found")
    if not cancelled:
        raise ConflictError("Entitlement is already cancelled", code="already_cancelled")

    logger.info(
        "[entitlements] CANCELLED",
        extra={"user_id": user_id, "service_id": row.service_id, "entitlement_id": entitlement_id},
    )
    return row_to_entitlement(row)


def adjust_quota(
    entitlement_id: int,
    request: QuotaAdjustmentRequest,
    *,
    actor_id: str,
    actor_role: str = "admin",
    now: Optional[Any] = None,
) -> QuotaAdjustment:
    """
    Atomically apply quota_limit += adjustment and record the audit row.

    The resulting limit may never be negative. Whether it may drop below
    quota_used is governed by ALLOW_QUOTA_LIMIT_BELOW_USAGE.
    """
    current = normalize_now(now)
    delta = request.adjustment
    new_limit_expr = entitlements.c.quota_limit + delta

    stmt = (
        update(entitlements)
        .where(entitlements.c.id == entitlement_id)
        .where(new_limit_expr >= 0)
    )
    if not settings.ALLOW_QUOTA_LIMIT_BELOW_USAGE:
        stmt = stmt.where(new_limit_expr >= entitlements.c.quota_used)
    stmt = stmt.values(quota_limit=new_limit_expr, updated_at=current)

    with db_errors("adjust_quota"), get_db_session() as session:
        result = session.execute(stmt)
        row = _fetch(session, entitlement_id)
        if row is None:
            raise NotFoundError("Entitlement not found")

        if result.rowcount != 1:
            if row.quota_limit + delta < 0:
                raise ValidationError(
                    f"Adjustment would make quota negative (current limit {row.quota_limit})",
                    code="negative_quota_limit",
                )
            raise ValidationError(
                f"Adjustment would drop quota limit below current usage ({row.quota_used})",
                code="quota_limit_below_usage",
            )

        # The row is write-locked by our UPDATE, so it reflects exactly our change
        new_limit = row.quota_limit
        previous_limit = new_limit - delta
        audit = session.execute(
            insert(quota_adjustments).values(
                entitlement_id=entitlement_id,
                previous_limit=previous_limit,
                new_limit=new_limit,
                adjustment=delta,
                reason=request.reason,
                actor_id=actor_id,
                actor_role=actor_role,
                created_at=current,
            )
        )
        audit_row = session.execute(
            select(quota_adjustments).where(quota_adjustments.c.id == audit.inserted_primary_key[0])
        ).one()

    if new_limit < row.quota_used:
        logger.warning(
            "[entitlements] quota limit below usage",
            extra={
                "entitlement_id": entitlement_id,
                "user_id": row.user_id,
                "quota_limit": new_limit,
                "quota_used": row.quota_used,
            },
        )

    logger.info(
        "[entitlements] QUOTA_ADJUSTED",
        extra={
            "entitlement_id": entitlement_id,
            "user_id": row.user_id,
            "service_id": row.service_id,
            "previous_limit": previous_limit,
            "new_limit": new_limit,
            "actor_id": actor_id,
        },
    )
    return _row_to_adjustment(audit_row)


def list_quota_adjustments(entitlement_id: int) -> List[QuotaAdjustment]:
    with db_errors("list_quota_adjustments"), get_db_session() as session:
        rows = session.execute(
            select(quota_adjustments)
            .where(quota_adjustments.c.entitlement_id == entitlement_id)
            .order_by(quota_adjustments.c.created_at.asc(), quota_adjustments.c.id.asc())
        ).all()
    return [_row_to_adjustment(row) for row in rows]
