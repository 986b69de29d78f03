from typing import Optional

from fastapi import APIRouter, Depends, Query

from quotagate.core.admin_auth import AdminActor, require_admin
from quotagate.features.audit.service import list_audit_entries

router = APIRouter(prefix="/v1/admin/audit-log", tags=["admin-audit"])


@router.get("")
def list_audit_log(
    action: Optional[str] = Query(None),
    category: Optional[str] = Query(None),
    target_id: Optional[str] = Query(None),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: AdminActor = Depends(require_admin),
):
    entries = list_audit_entries(action=action, category=category, target_id=target_id, limit=limit + 1, offset=offset)
    return {
        "entries": [entry.model_dump(mode="json") for entry in entries[:limit]],
        "has_more": len(entries) > limit,
        "offset": offset,
    }
