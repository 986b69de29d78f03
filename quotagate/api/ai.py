"""
AI chat endpoint.

Order: identity -> per-process rate limiter -> input validation ->
profile upsert -> entitlement decision (consumes one unit on allow) -> downstream AI call.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator

from quotagate.core.config import settings
from quotagate.core.errors import EntitlementDeniedError, RateLimitError, ValidationError
from quotagate.core.identity import Identity, require_identity
from quotagate.core.rate_limit import allow_ai_request
from quotagate.features.ai.service import generate_reply
from quotagate.features.entitlements.service import check_and_consume
from quotagate.features.users.service import ensure_user

logger = logging.getLogger("quotagate.ai")

router = APIRouter(prefix="/v1/ai", tags=["ai"])


class ChatRequest(BaseModel):
    message: str
    context: Optional[Dict[str, Any]] = None

    @field_validator("message")
    @classmethod
    def _non_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value


class ChatResponse(BaseModel):
    reply: str
    remaining: int
    limit: int
    plan: str
    date_key: str = Field(..., description="YYYYMMDD in the quota timezone")


@router.post("/chat", response_model=ChatResponse)
def chat(body: ChatRequest, identity: Identity = Depends(require_identity)):
    if not allow_ai_request(identity.user_id):
        raise RateLimitError("Too many AI requests; slow down and retry shortly")

    message = body.message.strip()
    if len(message) > settings.AI_MAX_INPUT_CHARS:
        raise ValidationError(
            f"message must be at most {settings.AI_MAX_INPUT_CHARS} characters",
            code="input_too_long",
        )

    ensure_user(identity.user_id, display_name=identity.display_name)
    decision = check_and_consume(identity.user_id, "ai_chat", prompt_chars=len(message))
    if not decision.allow:
        raise EntitlementDeniedError(
            decision.reason.value,
            decision.message,
            tier=decision.tier.value,
            remaining=decision.remaining,
        )

    reply = generate_reply(message, body.context, user_id=identity.user_id)
    return ChatResponse(
        reply=reply,
        remaining=decision.remaining,
        limit=decision.limit or 0,
        plan=decision.tier.value,
        date_key=decision.date_key,
    )
