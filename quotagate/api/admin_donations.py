"""Admin review of donation requests."""

from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from pydantic import AliasChoices, BaseModel, Field

from quotagate.core.admin_auth import AdminActor, require_admin
from quotagate.features.donations.service import (
    approve_donation_request,
    list_donation_requests,
    reject_donation_request,
)

router = APIRouter(prefix="/v1/admin/donations", tags=["admin-donations"])


class ApproveDonationRequest(BaseModel):
    expires_at: Optional[datetime] = Field(default=None, validation_alias=AliasChoices("expires_at", "expiresAt"))
    reason: Optional[str] = None
    feedback: Optional[str] = Field(default=None, validation_alias=AliasChoices("feedback", "adminFeedback"))


class RejectDonationRequest(BaseModel):
    feedback: str = Field(..., validation_alias=AliasChoices("feedback", "adminFeedback"))


@router.get("")
def list_donations(
    status: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    actor: AdminActor = Depends(require_admin),
):
    requests = list_donation_requests(status=status, user_id=user_id, limit=limit)
    return {"requests": [r.model_dump(mode="json") for r in requests]}


@router.post("/{request_id}/approve")
def approve_donation(
    request_id: int,
    body: Optional[ApproveDonationRequest] = None,
    actor: AdminActor = Depends(require_admin),
):
    body = body or ApproveDonationRequest()
    updated = approve_donation_request(
        request_id,
        actor=actor,
        expires_at=body.expires_at,
        reason=body.reason,
        feedback=body.feedback,
    )
    return {"success": True, "request": updated.model_dump(mode="json")}


@router.post("/{request_id}/reject")
def reject_donation(
    request_id: int,
    body: RejectDonationRequest,
    actor: AdminActor = Depends(require_admin),
):
    updated = reject_donation_request(request_id, actor=actor, feedback=body.feedback)
    return {"success": True, "request": updated.model_dump(mode="json")}
