"""
quotagate/models/entitlement.py

Entitlement decision results and the per-user usage summary.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from quotagate.models.plan import PlanSummary, Tier


class DenialReason(str, Enum):
    """Stable reason codes, in evaluation order."""

    AI_DISABLED = "AI_DISABLED"
    PAID_FEATURES_DISABLED = "PAID_FEATURES_DISABLED"
    AI_BANNED = "AI_BANNED"
    NO_AI_ACCESS = "NO_AI_ACCESS"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"


DENIAL_MESSAGES = {
    DenialReason.AI_DISABLED: "AI features are temporarily disabled",
    DenialReason.PAID_FEATURES_DISABLED: "Paid features are temporarily disabled",
    DenialReason.AI_BANNED: "AI access has been disabled for this account",
    DenialReason.NO_AI_ACCESS: "Your plan does not include AI access",
    DenialReason.QUOTA_EXCEEDED: "Daily AI quota exceeded",
}


class Decision(BaseModel):
    """
    Outcome of one entitlement check.

    `remaining` is post-consumption on allow and 0 on a quota denial.
    `limit` is None when the decision short-circuited before quota evaluation.
    """

    model_config = ConfigDict(frozen=True)

    allow: bool
    remaining: int
    tier: Tier
    date_key: str
    reason: Optional[DenialReason] = None
    limit: Optional[int] = None

    @property
    def message(self) -> str:
        return DENIAL_MESSAGES[self.reason] if self.reason else "ok"


class DailyUsage(BaseModel):
    model_config = ConfigDict(frozen=True)

    date_key: str
    count: int
    limit: int
    remaining: int


class UsageSummary(BaseModel):
    """Display-only snapshot. Carries no authorization weight."""

    model_config = ConfigDict(frozen=True)

    plan: PlanSummary
    effective_tier: Tier
    ai_enabled: bool
    today: DailyUsage
