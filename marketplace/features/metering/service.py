"""
marketplace/features/metering/service.py

Monthly usage meter per (user, feature), independent of entitlements.

- Counters roll over at the first instant of each calendar month (UTC).
- The limit comes from the user's tier (free / pro / enterprise).
- History is a bounded, time-ordered log of recorded events.

The meter guards quota, so counter store failures propagate as
InfraUnavailableError instead of being treated as zero usage.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from marketplace.core.config import settings
from marketplace.core.counter_store import CounterStore, get_counter_store
from marketplace.core.errors import ValidationError

logger = logging.getLogger("marketplace.metering")

DEFAULT_TIER = "free"
WARNING_PERCENT = 80
EXCEEDED_PERCENT = 100


@dataclass(frozen=True)
class UsageMetrics:
    user_id: str
    feature: str
    usage: int
    limit: int
    percentage: float
    reset_date: datetime
    status: str  # ok | warning | exceeded

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "feature": self.feature,
            "usage": self.usage,
            "limit": self.limit,
            "percentage": self.percentage,
            "reset_date": self.reset_date.isoformat(),
            "status": self.status,
        }


@dataclass(frozen=True)
class QuotaCheck:
    allowed: bool
    metrics: UsageMetrics


def month_start_after(now: datetime) -> datetime:
    if now.month == 12:
        return datetime(now.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(now.year, now.month + 1, 1, tzinfo=timezone.utc)


def usage_status(percentage: float) -> str:
    if percentage >= EXCEEDED_PERCENT:
        return "exceeded"
    if percentage >= WARNING_PERCENT:
        return "warning"
    return "ok"


class UsageMeter:
    def __init__(
        self,
        store: CounterStore,
        *,
        tier_limits: Optional[Dict[str, int]] = None,
        history_max_entries: Optional[int] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.tier_limits = dict(tier_limits or settings.METER_TIER_LIMITS)
        self.history_max_entries = history_max_entries or settings.METER_HISTORY_MAX_ENTRIES
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _now(self) -> datetime:
        now = self._clock()
        if now.tzinfo is None:
            return now.replace(tzinfo=timezone.utc)
        return now.astimezone(timezone.utc)

    @staticmethod
    def _counter_key(user_id: str, feature: str, now: datetime) -> str:
        return f"usage:{user_id}:{feature}:{now.year}-{now.month:02d}"

    @staticmethod
    def _history_key(user_id: str, feature: str) -> str:
        return f"usage_history:{user_id}:{feature}"

    def _limit_for(self, user_id: str, tier_limits: Optional[Dict[str, int]] = None) -> int:
        limits = tier_limits or self.tier_limits
        tier = self.store.get(f"user:{user_id}:tier") or DEFAULT_TIER
        if tier not in limits:
            tier = DEFAULT_TIER
        return int(limits.get(tier) or limits.get(DEFAULT_TIER) or 1000)

    def _metrics(self, user_id: str, feature: str, usage: float, limit: int, now: datetime) -> UsageMetrics:
        percentage = (usage / limit) * 100 if limit > 0 else 100.0
        return UsageMetrics(
            user_id=user_id,
            feature=feature,
            usage=int(usage),
            limit=limit,
            percentage=round(percentage, 2),
            reset_date=month_start_after(now),
            status=usage_status(percentage),
        )

    def _append_history(self, user_id: str, feature: str, units: float, usage: float, now: datetime) -> None:
        member = json.dumps(
            {"timestamp": now.isoformat(), "units": units, "usage": int(usage)},
            separators=(",", ":"),
        )
        self.store.history_add(
            self._history_key(user_id, feature),
            now.timestamp() * 1000,
            member,
            self.history_max_entries,
        )

    @staticmethod
    def _validate_units(units: float) -> None:
        if units <= 0:
            raise ValidationError("units must be > 0")

    def record_usage(
        self,
        user_id: str,
        feature: str,
        units: float = 1,
        tier_limits: Optional[Dict[str, int]] = None,
    ) -> UsageMetrics:
        """Unconditionally add units to this month's counter."""
        self._validate_units(units)
        now = self._now()
        reset = month_start_after(now)
        usage = self.store.incr_float(self._counter_key(user_id, feature, now), units, int(reset.timestamp()))
        self._append_history(user_id, feature, units, usage, now)
        metrics = self._metrics(user_id, feature, usage, self._limit_for(user_id, tier_limits), now)
        if metrics.status != "ok":
            logger.info(
                f"[meter] {metrics.status.upper()}",
                extra={"user_id": user_id, "feature": feature, "usage": metrics.usage, "limit": metrics.limit},
            )
        return metrics

    def check_quota(
        self,
        user_id: str,
        feature: str,
        tier_limits: Optional[Dict[str, int]] = None,
    ) -> UsageMetrics:
        """Current metrics without recording anything."""
        now = self._now()
        usage = self.store.get_float(self._counter_key(user_id, feature, now))
        return self._metrics(user_id, feature, usage, self._limit_for(user_id, tier_limits), now)

    def enforce_quota(
        self,
        user_id: str,
        feature: str,
        units: float = 1,
        tier_limits: Optional[Dict[str, int]] = None,
    ) -> QuotaCheck:
        """
        Record units only if usage + units stays within the tier limit.

        The check and the increment are one atomic store operation, so
        concurrent callers cannot push the counter past the limit. A denied
        call records nothing.
        """
        self._validate_units(units)
        now = self._now()
        reset = month_start_after(now)
        limit = self._limit_for(user_id, tier_limits)
        applied, usage = self.store.incr_float_within(
            self._counter_key(user_id, feature, now), units, limit, int(reset.timestamp())
        )
        metrics = self._metrics(user_id, feature, usage, limit, now)
        if not applied:
            logger.warning(
                "[meter] DENY",
                extra={"user_id": user_id, "feature": feature, "usage": metrics.usage, "limit": limit},
            )
            return QuotaCheck(allowed=False, metrics=metrics)

        self._append_history(user_id, feature, units, usage, now)
        return QuotaCheck(allowed=True, metrics=metrics)

    def get_usage_history(self, user_id: str, feature: str, days_back: int = 30) -> List[Dict[str, Any]]:
        if days_back < 1:
            raise ValidationError("days_back must be >= 1")
        now = self._now()
        start = now - timedelta(days=days_back)
        entries = self.store.history_range(
            self._history_key(user_id, feature),
            start.timestamp() * 1000,
            now.timestamp() * 1000,
        )
        return [json.loads(entry) for entry in entries]

    def set_user_tier(self, user_id: str, tier: str) -> None:
        if tier not in self.tier_limits:
            raise ValidationError(f"Unknown tier: {tier}", code="unknown_tier")
        self.store.set(f"user:{user_id}:tier", tier)
        logger.info("[meter] tier set", extra={"user_id": user_id, "tier": tier})


_meter: Optional[UsageMeter] = None


def get_usage_meter() -> UsageMeter:
    global _meter
    if _meter is None:
        _meter = UsageMeter(get_counter_store())
    return _meter


def set_usage_meter(meter: Optional[UsageMeter]) -> None:
    global _meter
    _meter = meter
