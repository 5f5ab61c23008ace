from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class ChangeType(str, Enum):
    software_update = "software-update"
    server_migration = "server-migration"
    security_patch = "security-patch"


class Urgency(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


class RollbackComplexity(str, Enum):
    easy = "easy"
    medium = "medium"
    hard = "hard"


class RiskLevel(str, Enum):
    low = "Low"
    medium = "Medium"
    high = "High"
    critical = "Critical"


class AssessmentInput(BaseModel):
    change_type: ChangeType = ChangeType.software_update
    affected_systems: int = Field(default=1, ge=1, examples=[3])
    urgency: Urgency = Urgency.low
    rollback_complexity: RollbackComplexity = RollbackComplexity.easy


class Factor(BaseModel):
    code: str
    message: str
    weight: int


class AssessmentResult(BaseModel):
    risk_level: RiskLevel
    risk_score: int
    confidence: float
    strategies: List[str]
    factors: List[Factor] = Field(default_factory=list)


class HistoryRecord(BaseModel):
    id: str
    created_at: datetime
    change_type: ChangeType
    affected_systems: int
    urgency: Urgency
    rollback_complexity: RollbackComplexity
    risk_level: RiskLevel
    confidence: float
    user_id: str


class HistoryWriteResult(BaseModel):
    saved: bool
    error: Optional[str] = None


class AuthSession(BaseModel):
    """
    Provider session as kept in the browser's cookie session.
    Only its presence matters for gating; expiry drives refresh.
    """

    access_token: str
    refresh_token: str
    expires_at: int
    user_id: str
    email: Optional[str] = None
    aal: str = "aal1"

    def is_expired(self, now: Optional[datetime] = None, leeway: int = 10) -> bool:
        now = now or datetime.now(timezone.utc)
        return now.timestamp() + leeway >= self.expires_at


class FactorStatus(str, Enum):
    verified = "verified"
    unverified = "unverified"


class MfaFactor(BaseModel):
    id: str
    factor_type: str = "totp"
    status: FactorStatus = FactorStatus.unverified
    friendly_name: Optional[str] = None


class FactorListingKind(str, Enum):
    empty = "empty"
    enrolled = "enrolled"
    error = "error"


class FactorListing(BaseModel):
    """Tagged outcome of listing a user's second factors."""

    kind: FactorListingKind
    factors: List[MfaFactor] = Field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_factors(cls, factors: List[MfaFactor]) -> "FactorListing":
        if factors:
            return cls(kind=FactorListingKind.enrolled, factors=factors)
        return cls(kind=FactorListingKind.empty)

    @classmethod
    def failed(cls, message: str) -> "FactorListing":
        return cls(kind=FactorListingKind.error, error=message)


class Enrollment(BaseModel):
    factor_id: str
    qr_code: str
    secret: Optional[str] = None
    uri: Optional[str] = None
