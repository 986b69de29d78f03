"""
Downstream AI call.

The model behind AI_API_URL is opaque: the engine posts the user's message
(plus optional page context) and returns whatever reply text comes back.
Quota consumed before this call is not refunded when it fails.
"""

from typing import Any, Dict, Optional

import httpx

from quotagate.core.config import settings
from quotagate.core.errors import AIServiceUnavailableError, AIUpstreamError
from quotagate.core.logging import log_event

# Tests swap in httpx.MockTransport
_transport: Optional[httpx.BaseTransport] = None


def set_transport_for_tests(transport: Optional[httpx.BaseTransport]) -> None:
    global _transport
    _transport = transport


def _extract_reply(body: Dict[str, Any]) -> str:
    if isinstance(body.get("reply"), str):
        return body["reply"]
    choices = body.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") or {}
        if isinstance(message.get("content"), str):
            return message["content"]
    raise AIUpstreamError("AI service returned no reply")


def generate_reply(message: str, context: Optional[Dict[str, Any]] = None, *, user_id: Optional[str] = None) -> str:
    if not settings.AI_API_URL:
        raise AIServiceUnavailableError("AI service is not configured")

    headers = {"Content-Type": "application/json"}
    if settings.AI_API_KEY:
        headers["Authorization"] = f"Bearer {settings.AI_API_KEY}"
    payload: Dict[str, Any] = {"message": message, "context": context or {}}
    if user_id:
        payload["user"] = user_id

    try:
        with httpx.Client(timeout=settings.AI_TIMEOUT_SECONDS, transport=_transport) as client:
            response = client.post(settings.AI_API_URL, headers=headers, json=payload)
    except httpx.HTTPError as exc:
        log_event("warning", "ai.transport_error", user_id=user_id, error_code="ai_upstream_error", extra={"error": exc})
        raise AIUpstreamError("AI service unreachable") from exc

    if response.status_code >= 300:
        log_event(
            "warning",
            "ai.upstream_error",
            user_id=user_id,
            error_code="ai_upstream_error",
            extra={"status": response.status_code},
        )
        raise AIUpstreamError(f"AI service error ({response.status_code})")

    try:
        body = response.json()
    except ValueError as exc:
        raise AIUpstreamError("AI service returned invalid JSON") from exc
    if not isinstance(body, dict):
        raise AIUpstreamError("AI service returned no reply")
    return _extract_reply(body)
