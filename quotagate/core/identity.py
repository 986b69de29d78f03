"""
Caller identity from bearer tokens.

Handles:
- JWT signature verification (HS256 shared secret, or RS256 via JWKS)
- Issuer/audience validation when configured
- Role extraction from `role` or `public_metadata.role`
- X-User-Id header identity for dev/test (AUTH_ALLOW_USER_HEADER); such
  identities carry no role, admin rights come from the stored profile only

Testing:
- Use create_test_token() to mint HS256 tokens
- Override JWKS fetching with set_jwks_provider_for_tests()
"""
import json
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import httpx
import jwt
from jwt.algorithms import RSAAlgorithm
from fastapi import Request

from quotagate.core.config import settings
from quotagate.core.errors import UnauthorizedError


ROLES = ("user", "moderator", "admin")


@dataclass(frozen=True)
class Identity:
    """The verified caller. `role` is None when the token carries no role claim."""
    user_id: str
    role: Optional[str] = None
    display_name: Optional[str] = None
    email: Optional[str] = None


# JWKS override (tests) and cache keyed by url
_jwks_provider_override: Optional[Callable[[str], Dict[str, Any]]] = None
_jwks_cache: Dict[str, Dict[str, Any]] = {}


def set_jwks_provider_for_tests(provider: Optional[Callable[[str], Dict[str, Any]]]) -> None:
    """Set or clear the JWKS provider override (no network in tests)."""
    global _jwks_provider_override
    _jwks_provider_override = provider
    _jwks_cache.clear()


def _fetch_jwks(jwks_url: str) -> Dict[str, Any]:
    response = httpx.get(jwks_url, timeout=5.0)
    response.raise_for_status()
    return response.json()


def get_jwks(jwks_url: str) -> Dict[str, Any]:
    if jwks_url in _jwks_cache:
        return _jwks_cache[jwks_url]
    provider = _jwks_provider_override or _fetch_jwks
    jwks = provider(jwks_url)
    _jwks_cache[jwks_url] = jwks
    return jwks


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify a JWT and return its claims.

    Raises jwt.PyJWTError on any invalid token.
    """
    options = {"verify_signature": True, "verify_exp": True, "verify_aud": bool(settings.JWT_AUDIENCE)}

    if settings.JWT_SECRET:
        return jwt.decode(
            token,
            settings.JWT_SECRET,
            algorithms=["HS256"],
            audience=settings.JWT_AUDIENCE,
            issuer=settings.JWT_ISSUER,
            options=options,
        )

    if not settings.JWT_JWKS_URL:
        raise jwt.PyJWTError("JWT_SECRET or JWT_JWKS_URL must be configured")

    kid = jwt.get_unverified_header(token).get("kid")
    if not kid:
        raise jwt.PyJWTError("Token missing 'kid' in header")

    matching_key = next(
        (key for key in get_jwks(settings.JWT_JWKS_URL).get("keys", []) if key.get("kid") == kid),
        None,
    )
    if not matching_key:
        raise jwt.PyJWTError(f"Key ID '{kid}' not found in JWKS")

    public_key = RSAAlgorithm.from_jwk(json.dumps(matching_key))
    return jwt.decode(
        token,
        public_key,
        algorithms=["RS256"],
        audience=settings.JWT_AUDIENCE,
        issuer=settings.JWT_ISSUER,
        options=options,
    )


def role_from_claims(claims: Dict[str, Any]) -> Optional[str]:
    role = claims.get("role")
    if not role:
        public_metadata = claims.get("public_metadata") or {}
        if isinstance(public_metadata, dict):
            role = public_metadata.get("role")
    return role if role in ROLES else None


def identity_from_claims(claims: Dict[str, Any]) -> Identity:
    sub = claims.get("sub")
    if not sub:
        raise UnauthorizedError("Token has no subject", code="invalid_token")
    return Identity(
        user_id=str(sub),
        role=role_from_claims(claims),
        display_name=claims.get("name"),
        email=claims.get("email"),
    )


def resolve_identity(request: Request) -> Optional[Identity]:
    """Identity for the request, or None when no credentials were presented.

    A presented but invalid token raises UnauthorizedError.
    """
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if not token:
            raise UnauthorizedError("Empty bearer token", code="invalid_token")
        try:
            claims = verify_token(token)
        except (jwt.PyJWTError, httpx.HTTPError) as exc:
            raise UnauthorizedError("Invalid or expired token", code="invalid_token") from exc
        return identity_from_claims(claims)

    if settings.AUTH_ALLOW_USER_HEADER:
        user_id = request.headers.get("X-User-Id", "").strip()
        if user_id:
            return Identity(user_id=user_id)

    return None


def require_identity(request: Request) -> Identity:
    """FastAPI dependency: any authenticated caller."""
    identity = resolve_identity(request)
    if identity is None:
        raise UnauthorizedError("Authentication required")
    return identity


# ============================================================================
# Test Helpers (deterministic, no network)
# ============================================================================

def create_test_token(
    sub: str = "user_test",
    *,
    role: Optional[str] = None,
    name: Optional[str] = None,
    email: Optional[str] = None,
    exp_minutes: int = 60,
    secret: Optional[str] = None,
    role_in_metadata: bool = False,
) -> str:
    """Mint an HS256 token signed with JWT_SECRET (or `secret`)."""
    now = int(time.time())
    payload: Dict[str, Any] = {"sub": sub, "iat": now, "exp": now + exp_minutes * 60}
    if name:
        payload["name"] = name
    if email:
        payload["email"] = email
    if settings.JWT_ISSUER:
        payload["iss"] = settings.JWT_ISSUER
    if settings.JWT_AUDIENCE:
        payload["aud"] = settings.JWT_AUDIENCE
    if role:
        if role_in_metadata:
            payload["public_metadata"] = {"role": role}
        else:
            payload["role"] = role
    return jwt.encode(payload, secret or settings.JWT_SECRET or "test-secret", algorithm="HS256")
