"""
quotagate/models/plan.py

Plan store and history ledger models.

A plan record is the durable per-user entitlement: tier, lifecycle status,
optional expiry, and per-user AI overrides. It is created on first grant and
never deleted; revocation and expiry are status transitions.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Tier(str, Enum):
    FREE = "free"
    SUPPORTER = "supporter"
    PRO = "pro"


class PlanStatus(str, Enum):
    """active -> revoked (admin) OR expired (reconciler)"""

    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class PlanSource(str, Enum):
    """Provenance of a grant. Informational only; never affects decisions."""

    ADMIN_GRANT = "admin_grant"
    DONATION = "donation"
    PROMO = "promo"
    MIGRATION = "migration"


class PlanRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier = Tier.FREE
    status: PlanStatus = PlanStatus.ACTIVE
    source: PlanSource = PlanSource.ADMIN_GRANT
    expires_at: Optional[datetime] = Field(default=None, description="None = lifetime")
    started_at: datetime
    updated_at: datetime
    updated_by: str
    reason: str = ""
    ai_banned: bool = False
    bonus_tokens: int = Field(default=0, ge=0)
    quota_override: Optional[int] = Field(default=None, ge=0, description="None = tier default")

    def effective_tier(self, now: datetime) -> Tier:
        """Tier the user is entitled to right now.

        Revoked/expired plans and active plans past their expiry collapse to
        free, so a lagging reconciler is never user-visible.
        """
        if self.status != PlanStatus.ACTIVE:
            return Tier.FREE
        if self.expires_at is not None and self.expires_at <= now:
            return Tier.FREE
        return self.tier

    def is_expired_at(self, now: datetime) -> bool:
        return self.status == PlanStatus.ACTIVE and self.expires_at is not None and self.expires_at <= now


class PlanHistoryEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    old_tier: Tier
    new_tier: Tier
    old_status: PlanStatus
    new_status: PlanStatus
    actor_id: str
    actor_name: str
    source: PlanSource
    reason: str = ""
    expires_at: Optional[datetime] = None
    created_at: datetime


class PlanSummary(BaseModel):
    """What mutation endpoints return and the profile denormalizes."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    tier: Tier
    status: PlanStatus
    source: PlanSource
    expires_at: Optional[datetime] = None
    started_at: datetime
    updated_at: datetime
    ai_banned: bool = False
    bonus_tokens: int = 0
    quota_override: Optional[int] = None

    @classmethod
    def from_record(cls, record: PlanRecord) -> "PlanSummary":
        return cls(
            user_id=record.user_id,
            tier=record.tier,
            status=record.status,
            source=record.source,
            expires_at=record.expires_at,
            started_at=record.started_at,
            updated_at=record.updated_at,
            ai_banned=record.ai_banned,
            bonus_tokens=record.bonus_tokens,
            quota_override=record.quota_override,
        )
