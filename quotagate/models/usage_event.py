"""
quotagate/models/usage_event.py

One entry per entitlement decision, written in the background for
anti-abuse analytics. Losing an entry never changes a decision.
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class UsageLogEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    user_id: str
    action: str
    tier_at_time: str
    outcome: str  # allow | deny
    remaining: int
    date_key: str
    latency_ms: int
    created_at: datetime
    reason: Optional[str] = None
    prompt_chars: Optional[int] = None
    request_id: Optional[str] = None
