"""
Admin plan mutations.

Every endpoint requires a verified admin identity (require_admin) before any
write. Accepts both snake_case and the camelCase names used by the admin UI
(targetUid, expiresAt, quotaOverride, ...).
"""

from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, Query
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from quotagate.core.admin_auth import AdminActor, require_admin
from quotagate.core.errors import NotFoundError, ValidationError
from quotagate.features.entitlements.service import get_usage_summary
from quotagate.features.plans.service import (
    UNSET,
    get_plan_record,
    list_plan_history,
    revoke_plan,
    set_ai_overrides,
    set_plan,
)
from quotagate.features.users.service import get_user


router = APIRouter(prefix="/v1/admin/plans", tags=["admin-plans"])


# ============================================================================
# Request Models
# ============================================================================

class _TargetedRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    user_id: str = Field(..., validation_alias=AliasChoices("user_id", "targetUid", "uid"))

    @field_validator("user_id")
    @classmethod
    def _strip_user_id(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("target user id is required")
        return value


class SetPlanRequest(_TargetedRequest):
    tier: str
    status: str = "active"
    expires_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("expires_at", "expiresAt"))
    reason: str = ""
    source: str = "admin_grant"


class RevokePlanRequest(_TargetedRequest):
    reason: Optional[str] = None


class AIOverridesRequest(_TargetedRequest):
    bonus_tokens: Optional[int] = Field(default=None, ge=0, validation_alias=AliasChoices("bonus_tokens", "bonusTokens"))
    ai_banned: Optional[bool] = Field(default=None, validation_alias=AliasChoices("ai_banned", "aiBanned"))
    quota_override: Optional[int] = Field(
        default=None, ge=0, validation_alias=AliasChoices("quota_override", "quotaOverride")
    )

    def supplied(self) -> Dict[str, Any]:
        """Only the fields present in the body; explicit null stays null."""
        return {name: getattr(self, name) for name in ("bonus_tokens", "ai_banned", "quota_override") if name in self.model_fields_set}


# ============================================================================
# Handlers
# ============================================================================

def _set_plan(body: SetPlanRequest, actor: AdminActor) -> dict:
    summary = set_plan(
        body.user_id,
        body.tier,
        actor=actor,
        status=body.status,
        expires_at=body.expires_at,
        reason=body.reason,
        source=body.source,
    )
    return {"success": True, "plan": summary.model_dump(mode="json")}


def _revoke_plan(body: RevokePlanRequest, actor: AdminActor) -> dict:
    summary = revoke_plan(body.user_id, actor=actor, reason=body.reason)
    return {"success": True, "plan": summary.model_dump(mode="json")}


def _set_overrides(body: AIOverridesRequest, actor: AdminActor) -> dict:
    fields = body.supplied()
    summary = set_ai_overrides(
        body.user_id,
        actor=actor,
        bonus_tokens=fields.get("bonus_tokens", UNSET),
        ai_banned=fields.get("ai_banned", UNSET),
        quota_override=fields.get("quota_override", UNSET),
    )
    return {"success": True, "plan": summary.model_dump(mode="json")}


_ACTIONS = {
    "setPlan": (SetPlanRequest, _set_plan),
    "revokePlan": (RevokePlanRequest, _revoke_plan),
    "setAIOverrides": (AIOverridesRequest, _set_overrides),
}


@router.post("/set")
def set_plan_endpoint(body: SetPlanRequest, actor: AdminActor = Depends(require_admin)):
    return _set_plan(body, actor)


@router.post("/revoke")
def revoke_plan_endpoint(body: RevokePlanRequest, actor: AdminActor = Depends(require_admin)):
    return _revoke_plan(body, actor)


@router.post("/ai-overrides")
def set_ai_overrides_endpoint(body: AIOverridesRequest, actor: AdminActor = Depends(require_admin)):
    return _set_overrides(body, actor)


@router.post("")
def dispatch_plan_action(
    payload: Dict[str, Any] = Body(...),
    actor: AdminActor = Depends(require_admin),
):
    """Single endpoint form: {"action": "setPlan" | "revokePlan" | "setAIOverrides", ...}."""
    action = payload.get("action")
    if action not in _ACTIONS:
        raise ValidationError(f"Unknown action: {action!r}", code="invalid_action")
    model_cls, handler = _ACTIONS[action]
    try:
        body = model_cls.model_validate(payload)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"{field}: {first.get('msg', 'invalid value')}") from exc
    return handler(body, actor)


@router.get("/{user_id}")
def get_plan_endpoint(user_id: str, actor: AdminActor = Depends(require_admin)):
    if get_user(user_id) is None:
        raise NotFoundError(f"Unknown user: {user_id}")
    summary = get_usage_summary(user_id)
    return {
        "user_id": user_id,
        "has_record": get_plan_record(user_id) is not None,
        **summary.model_dump(mode="json"),
    }


@router.get("/{user_id}/history")
def get_plan_history_endpoint(
    user_id: str,
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    entries = list_plan_history(user_id, limit=limit)
    return {"user_id": user_id, "history": [entry.model_dump(mode="json") for entry in entries]}
