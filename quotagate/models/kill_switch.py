"""
quotagate/models/kill_switch.py

Global kill switch set. A single record read fresh on every decision.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from quotagate.models.plan import Tier


class AIQuotas(BaseModel):
    """Daily AI request quota per tier."""

    model_config = ConfigDict(frozen=True)

    free: int = Field(default=0, ge=0)
    supporter: int = Field(default=20, ge=0)
    pro: int = Field(default=120, ge=0)

    def for_tier(self, tier: Tier) -> int:
        return getattr(self, Tier(tier).value)


class KillSwitchSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    ai_enabled: bool = True
    paid_features_enabled: bool = True
    monetization_visible: bool = True
    ai_quotas: AIQuotas = Field(default_factory=AIQuotas)
    version: int = 0  # 0 = never written, defaults in effect
    updated_at: Optional[datetime] = None
    updated_by: Optional[str] = None
