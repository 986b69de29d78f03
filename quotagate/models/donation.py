"""
quotagate/models/donation.py

Donation requests: a user asks for a paid tier after donating; an admin
approves (granting the plan with source=donation) or rejects manually.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from quotagate.models.plan import Tier


class DonationStatus(str, Enum):
    """pending -> approved OR rejected"""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DonationRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    user_id: str
    requested_tier: Tier
    status: DonationStatus = DonationStatus.PENDING
    note: str = ""
    admin_feedback: Optional[str] = None
    reviewed_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
