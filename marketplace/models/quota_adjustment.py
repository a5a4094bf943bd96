"""
marketplace/models/quota_adjustment.py

Audit record written in the same transaction as a quota_limit change.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict


class QuotaAdjustment(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    entitlement_id: int
    previous_limit: int
    new_limit: int
    adjustment: int
    reason: str
    actor_id: str
    actor_role: Literal["admin", "provider"]
    created_at: datetime
