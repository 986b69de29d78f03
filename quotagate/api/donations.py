"""User-side donation requests."""

from fastapi import APIRouter, Depends
from pydantic import AliasChoices, BaseModel, Field

from quotagate.core.identity import Identity, require_identity
from quotagate.features.donations.service import list_donation_requests, submit_donation_request
from quotagate.features.users.service import ensure_user

router = APIRouter(prefix="/v1/donations", tags=["donations"])


class DonationSubmitRequest(BaseModel):
    requested_tier: str = Field(..., validation_alias=AliasChoices("requested_tier", "requestedPlan"))
    note: str = ""


@router.post("", status_code=201)
def submit_donation(body: DonationSubmitRequest, identity: Identity = Depends(require_identity)):
    ensure_user(identity.user_id, display_name=identity.display_name)
    created = submit_donation_request(identity.user_id, body.requested_tier, body.note)
    return {"success": True, "request": created.model_dump(mode="json")}


@router.get("/mine")
def my_donations(identity: Identity = Depends(require_identity)):
    requests = list_donation_requests(user_id=identity.user_id)
    return {"requests": [r.model_dump(mode="json") for r in requests]}
