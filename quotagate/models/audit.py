"""
quotagate/models/audit.py
"""

from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict


class AuditEntry(BaseModel):
    """Append-only record of an administrative action."""

    model_config = ConfigDict(frozen=True)

    id: int
    action: str
    category: str
    actor_id: str
    actor_name: str
    actor_role: str
    target_type: Optional[str] = None
    target_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    created_at: datetime
