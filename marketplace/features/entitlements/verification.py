"""
marketplace/features/entitlements/verification.py

Entitlement verifier: may user U call service S right now?

Verify may mutate. An active row observed past its valid_until is
deactivated in place (lazy expiry) before any quota check. The flip is a
conditional UPDATE guarded by is_active, so concurrent verifiers of the same
row converge on the same state.

Persistence failures raise InfraUnavailableError: a verifier that cannot
read the store never allows.
"""

from typing import Any, Optional
import logging

from sqlalchemy import select, update

from marketplace.core.database import db_errors, entitlements, get_db_session
from marketplace.core.errors import ValidationError
from marketplace.features.entitlements.contracts import REASON_MESSAGES, ReasonCode, VerificationResult
from marketplace.features.entitlements.service import normalize_now, row_to_entitlement

logger = logging.getLogger("marketplace.verify")


def _deny(result: VerificationResult, user_id: str, service_id: int) -> VerificationResult:
    logger.info(
        "[verify] DENY",
        extra={
            "user_id": user_id,
            "service_id": service_id,
            "entitlement_id": result.entitlement_id,
            "reason_code": result.reason_code.value,
        },
    )
    return result


def verify_entitlement(
    user_id: str,
    service_id: int,
    now: Optional[Any] = None,
    requests_count: int = 1,
) -> VerificationResult:
    """
    Decide whether user_id may call service_id at `now`.

    Side effect: active entitlements found past valid_until are set
    inactive before the decision is made.

    An entitlement is usable when it has room for requests_count more calls.
    Among several usable entitlements the one expiring first is chosen, so
    shorter grants are consumed before longer ones.
    """
    if requests_count < 1:
        raise ValidationError("requests_count must be >= 1")
    current = normalize_now(now)

    with db_errors("verify_entitlement"), get_db_session() as session:
        rows = session.execute(
            select(entitlements)
            .where(entitlements.c.user_id == user_id)
            .where(entitlements.c.service_id == service_id)
            .where(entitlements.c.is_active.is_(True))
            .order_by(entitlements.c.valid_until.asc(), entitlements.c.id.asc())
        ).all()
        candidates = [row_to_entitlement(row) for row in rows]

        surviving = []
        for ent in candidates:
            if current > ent.valid_until:
                session.execute(
                    update(entitlements)
                    .where(entitlements.c.id == ent.id)
                    .where(entitlements.c.is_active.is_(True))
                    .values(is_active=False, updated_at=current)
                )
                logger.info(
                    "[verify] EXPIRED, deactivated",
                    extra={"user_id": user_id, "service_id": service_id, "entitlement_id": ent.id},
                )
            else:
                surviving.append(ent)

    if not candidates:
        return diagnose_entitlement(user_id, service_id, now=current)

    if not surviving:
        return _deny(
            VerificationResult.deny(ReasonCode.ENTITLEMENT_EXPIRED, entitlement_id=candidates[-1].id),
            user_id,
            service_id,
        )

    started = [ent for ent in surviving if current >= ent.valid_from]
    if not started:
        return _deny(
            VerificationResult.deny(ReasonCode.ENTITLEMENT_NOT_STARTED, entitlement_id=surviving[0].id),
            user_id,
            service_id,
        )

    usable = [ent for ent in started if ent.quota_remaining >= requests_count]
    if not usable:
        exhausted = started[0]
        return _deny(
            VerificationResult(
                allowed=False,
                reason_code=ReasonCode.QUOTA_EXCEEDED,
                message=REASON_MESSAGES[ReasonCode.QUOTA_EXCEEDED],
                entitlement_id=exhausted.id,
                quota_remaining=exhausted.quota_remaining,
                quota_limit=exhausted.quota_limit,
            ),
            user_id,
            service_id,
        )

    chosen = usable[0]
    logger.info(
        "[verify] ALLOW",
        extra={
            "user_id": user_id,
            "service_id": service_id,
            "entitlement_id": chosen.id,
            "reason_code": ReasonCode.OK.value,
            "quota_remaining": chosen.quota_remaining,
        },
    )
    return VerificationResult(
        allowed=True,
        reason_code=ReasonCode.OK,
        message=REASON_MESSAGES[ReasonCode.OK],
        entitlement_id=chosen.id,
        quota_remaining=chosen.quota_remaining,
        quota_limit=chosen.quota_limit,
    )


def diagnose_entitlement(user_id: str, service_id: int, now: Optional[Any] = None) -> VerificationResult:
    """
    Explain why no active entitlement exists for (user_id, service_id).

    Looks at the most recent entitlement for the pair regardless of status.
    Expiry is checked before cancellation so every concurrent verifier of an
    expired row reports ENTITLEMENT_EXPIRED.
    """
    current = normalize_now(now)
    with db_errors("diagnose_entitlement"), get_db_session() as session:
        row = session.execute(
            select(entitlements)
            .where(entitlements.c.user_id == user_id)
            .where(entitlements.c.service_id == service_id)
            .order_by(entitlements.c.created_at.desc(), entitlements.c.id.desc())
            .limit(1)
        ).first()

    if row is None:
        return _deny(VerificationResult.deny(ReasonCode.NO_ENTITLEMENT), user_id, service_id)

    latest = row_to_entitlement(row)
    if current > latest.valid_until:
        reason = ReasonCode.ENTITLEMENT_EXPIRED
    else:
        # Cancelled or otherwise deactivated
        reason = ReasonCode.ENTITLEMENT_INACTIVE
    return _deny(VerificationResult.deny(reason, entitlement_id=latest.id), user_id, service_id)
