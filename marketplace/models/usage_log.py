"""
marketplace/models/usage_log.py

Usage ledger entry. Created exactly once per successful track call, never
updated.
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class UsageLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    entitlement_id: int
    user_id: str
    service_id: int
    timestamp: datetime
    requests_count: int
    endpoint: str
    ip_address: str
    user_agent: str
