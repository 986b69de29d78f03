from fastapi import APIRouter, Depends

from quotagate.core.identity import Identity, require_identity
from quotagate.features.entitlements.service import get_usage_summary
from quotagate.features.kill_switches.service import get_kill_switches
from quotagate.features.users.service import ensure_user

router = APIRouter(prefix="/v1/me", tags=["me"])


@router.get("/plan")
def my_plan(identity: Identity = Depends(require_identity)):
    """Plan and remaining quota for display. Not an authorization check."""
    ensure_user(identity.user_id, display_name=identity.display_name)
    summary = get_usage_summary(identity.user_id)
    payload = summary.model_dump(mode="json")
    payload["monetization_visible"] = get_kill_switches().monetization_visible
    return payload
