"""Decision results and request contracts for the entitlement gateway.

Denials are values, not exceptions: the verifier and tracker always return a
result carrying a ReasonCode and the HTTP status it maps to.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from marketplace.models.entitlement import PricingTier
from marketplace.models.usage_log import UsageLogEntry


class ReasonCode(str, Enum):
    OK = "OK"
    NO_ENTITLEMENT = "NO_ENTITLEMENT"
    ENTITLEMENT_INACTIVE = "ENTITLEMENT_INACTIVE"
    ENTITLEMENT_EXPIRED = "ENTITLEMENT_EXPIRED"
    ENTITLEMENT_NOT_STARTED = "ENTITLEMENT_NOT_STARTED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"

    @property
    def status_code(self) -> int:
        return REASON_STATUS[self]


REASON_STATUS = {
    ReasonCode.OK: 200,
    ReasonCode.NO_ENTITLEMENT: 403,
    ReasonCode.ENTITLEMENT_INACTIVE: 403,
    ReasonCode.ENTITLEMENT_EXPIRED: 403,
    ReasonCode.ENTITLEMENT_NOT_STARTED: 403,
    ReasonCode.QUOTA_EXCEEDED: 429,
}

REASON_MESSAGES = {
    ReasonCode.OK: "Access granted",
    ReasonCode.NO_ENTITLEMENT: "No entitlement found for this service",
    ReasonCode.ENTITLEMENT_INACTIVE: "Entitlement is no longer active",
    ReasonCode.ENTITLEMENT_EXPIRED: "Entitlement has expired",
    ReasonCode.ENTITLEMENT_NOT_STARTED: "Entitlement is not yet valid",
    ReasonCode.QUOTA_EXCEEDED: "Quota exceeded for this entitlement",
}


@dataclass(frozen=True)
class VerificationResult:
    allowed: bool
    reason_code: ReasonCode
    message: str
    entitlement_id: Optional[int] = None
    quota_remaining: Optional[int] = None
    quota_limit: Optional[int] = None

    @property
    def status_code(self) -> int:
        return self.reason_code.status_code

    @classmethod
    def deny(cls, reason_code: ReasonCode, entitlement_id: Optional[int] = None) -> "VerificationResult":
        return cls(
            allowed=False,
            reason_code=reason_code,
            message=REASON_MESSAGES[reason_code],
            entitlement_id=entitlement_id,
        )


@dataclass(frozen=True)
class TrackResult:
    success: bool
    reason_code: ReasonCode
    message: str
    log_entry: Optional[UsageLogEntry] = None
    quota_used: Optional[int] = None
    quota_limit: Optional[int] = None
    quota_remaining: Optional[int] = None
    percentage_used: Optional[float] = None
    warning: Optional[str] = None

    @property
    def status_code(self) -> int:
        if self.success:
            return 201
        return self.reason_code.status_code

    @classmethod
    def reject(cls, reason_code: ReasonCode) -> "TrackResult":
        return cls(success=False, reason_code=reason_code, message=REASON_MESSAGES[reason_code])


class VerifyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    service_id: int = Field(ge=1)


class TrackUsageRequest(BaseModel):
    """Body of a track call. The caller identity comes from auth, never the body."""
    model_config = ConfigDict(extra="forbid")

    service_id: int = Field(ge=1)
    endpoint: str = Field(min_length=1, max_length=2000)
    requests_count: int = Field(default=1, ge=1)


class EntitlementCreate(BaseModel):
    """Issued once a payment has been verified upstream."""
    model_config = ConfigDict(extra="forbid")

    user_id: str = Field(min_length=1, max_length=100)
    service_id: int = Field(ge=1)
    payment_id: str = Field(min_length=1, max_length=200)
    pricing_tier: PricingTier
    quota_limit: int = Field(ge=0)
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    validity_days: Optional[int] = Field(default=None, ge=1)
    token_type: str = Field(default="SUI", max_length=20)
    amount_paid: str = Field(default="0", max_length=100)
    tx_digest: str = Field(default="", max_length=200)

    @model_validator(mode="after")
    def _window_source(self):
        if self.valid_until is None and self.validity_days is None:
            raise ValueError("valid_until or validity_days is required")
        if self.valid_until is not None and self.validity_days is not None:
            raise ValueError("valid_until and validity_days are mutually exclusive")
        return self


class QuotaAdjustmentRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    adjustment: int
    reason: str = Field(max_length=500)

    @field_validator("adjustment")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("adjustment must be a non-zero integer")
        return value

    @field_validator("reason")
    @classmethod
    def _reason_present(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("reason is required")
        return value
