"""
marketplace/models/entitlement.py

Entitlement model: one user's purchased access grant to one service.

An entitlement carries a quota (calls allowed) and a validity window
[valid_from, valid_until). quota_used is the authoritative consumption
counter; the usage ledger is a consequence of it, never its source.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class PricingTier(str, Enum):
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class Entitlement(BaseModel):
    """
    Snapshot of an `entitlements` row.

    Invariants after every successful tracked call:
    - 0 <= quota_used <= quota_limit
    - valid_from < valid_until
    - cancelled_at is set only by cancellation (terminal)
    """
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    service_id: int
    payment_id: str
    pricing_tier: PricingTier
    quota_limit: int
    quota_used: int
    valid_from: datetime
    valid_until: datetime
    is_active: bool
    cancelled_at: Optional[datetime] = None
    token_type: str
    amount_paid: str
    tx_digest: str
    created_at: datetime
    updated_at: datetime

    @property
    def quota_remaining(self) -> int:
        return max(0, self.quota_limit - self.quota_used)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None
