"""Admin kill switch settings."""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from quotagate.core.admin_auth import AdminActor, require_admin
from quotagate.features.kill_switches.service import get_kill_switches, update_kill_switches
from quotagate.models.kill_switch import AIQuotas, KillSwitchSet

router = APIRouter(prefix="/v1/admin/settings", tags=["admin-settings"])


class AIQuotasBody(BaseModel):
    free: int = Field(..., ge=0)
    supporter: int = Field(..., ge=0)
    pro: int = Field(..., ge=0)


class KillSwitchUpdateRequest(BaseModel):
    """Full replacement of the toggle set; every field is required."""
    ai_enabled: bool
    paid_features_enabled: bool
    monetization_visible: bool
    ai_quotas: AIQuotasBody


@router.get("/kill-switches")
def get_kill_switches_endpoint(actor: AdminActor = Depends(require_admin)):
    return get_kill_switches().model_dump(mode="json")


@router.put("/kill-switches")
def put_kill_switches_endpoint(body: KillSwitchUpdateRequest, actor: AdminActor = Depends(require_admin)):
    desired = KillSwitchSet(
        ai_enabled=body.ai_enabled,
        paid_features_enabled=body.paid_features_enabled,
        monetization_visible=body.monetization_visible,
        ai_quotas=AIQuotas(**body.ai_quotas.model_dump()),
    )
    return update_kill_switches(desired, actor).model_dump(mode="json")
