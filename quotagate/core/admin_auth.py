"""
Admin authentication for entitlement mutations.

Admin identity comes from a verified bearer token (or the dev/test X-User-Id
header). A token role claim of "admin" is accepted as is; any other claim,
or none, falls back to the stored profile role. Header identities carry no
role, so only the stored profile can make them admin.

Security guarantees:
- No verified identity -> 401, before any write
- Verified identity without the admin role -> 403, before any write
- The resolved actor is recorded on every audit/history entry
"""
from dataclasses import dataclass
from typing import Literal, Optional

from fastapi import Request

from quotagate.core.errors import PermissionError, UnauthorizedError
from quotagate.core.identity import Identity, resolve_identity
from quotagate.core.logging import log_event


@dataclass(frozen=True)
class AdminActor:
    """Represents an authenticated admin actor."""
    actor_id: str
    actor_name: str
    role: str = "admin"
    auth_mechanism: Literal["jwt", "user_header", "system"] = "jwt"


SYSTEM_ACTOR = AdminActor(actor_id="system", actor_name="system", role="system", auth_mechanism="system")


def effective_role(identity: Identity) -> Optional[str]:
    """Admin role claim, otherwise the stored profile role (or the claim when no profile)."""
    if identity.role == "admin":
        return identity.role
    from quotagate.features.users.service import get_user_role

    return get_user_role(identity.user_id) or identity.role


def admin_actor_for(identity: Identity, mechanism: Literal["jwt", "user_header"] = "jwt") -> AdminActor:
    """Return an AdminActor for `identity` or raise PermissionError."""
    role = effective_role(identity)
    if role != "admin":
        log_event(
            "warning",
            "admin.denied",
            user_id=identity.user_id,
            event_type="admin.denied",
            error_code="forbidden",
            extra={"role": role or "none"},
        )
        raise PermissionError("Admin role required")
    return AdminActor(
        actor_id=identity.user_id,
        actor_name=identity.display_name or identity.email or identity.user_id,
        role=role,
        auth_mechanism=mechanism,
    )


def require_admin(request: Request) -> AdminActor:
    """
    FastAPI dependency: require a verified admin identity.

    Usage:
        @router.post("/v1/admin/...")
        def endpoint(actor: AdminActor = Depends(require_admin)):
            ...
    """
    identity = resolve_identity(request)
    if identity is None:
        raise UnauthorizedError("Admin authentication required", code="admin_unauthorized")
    mechanism = "jwt" if request.headers.get("Authorization", "").startswith("Bearer ") else "user_header"
    return admin_actor_for(identity, mechanism)
