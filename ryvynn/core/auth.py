"""
Auth utilities for the Ryvynn API.

Validates Supabase-issued JWTs and extracts user_id from request context.
Falls back to the X-User-Id header in development and test only.
"""
from fastapi import Header, HTTPException, Request
from typing import Optional
import jwt
import logging

from ryvynn.core.config import settings

logger = logging.getLogger("ryvynn")

# Supabase signs access tokens with the project's JWT secret (HS256)
SUPABASE_JWT_AUDIENCE = "authenticated"
HEADER_AUTH_ENVS = frozenset({"development", "dev", "test"})


def verify_supabase_jwt(token: str, secret: Optional[str] = None) -> Optional[str]:
    """
    Verify a Supabase JWT and extract user_id.

    Args:
        token: JWT from Authorization header (Bearer {token})
        secret: Override for SUPABASE_JWT_SECRET

    Returns:
        user_id from the 'sub' claim, or None when no secret is configured

    Raises:
        HTTPException 401: Invalid or expired token
    """
    secret = secret or settings.SUPABASE_JWT_SECRET
    if not secret:
        logger.debug("No SUPABASE_JWT_SECRET configured, skipping JWT validation")
        return None

    try:
        payload = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            audience=SUPABASE_JWT_AUDIENCE,
            options={"verify_signature": True, "verify_exp": True},
        )
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid token")

    user_id = payload.get("sub")
    if not user_id:
        raise HTTPException(status_code=401, detail="Token has no subject")
    return user_id


def header_auth_allowed(cfg=None) -> bool:
    """X-User-Id is trusted only in development and test unless ALLOW_HEADER_AUTH says otherwise."""
    cfg = cfg or settings
    explicit = getattr(cfg, "ALLOW_HEADER_AUTH", None)
    if explicit is not None:
        return bool(explicit)
    return getattr(cfg, "ENV", "production") in HEADER_AUTH_ENVS


def _resolve_user_id(request: Request, x_user_id: Optional[str]) -> Optional[str]:
    cfg = getattr(request.app.state, "settings", None) or settings

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        user_id = verify_supabase_jwt(auth_header[7:], secret=cfg.SUPABASE_JWT_SECRET)
        if user_id:
            return user_id

    if x_user_id:
        if header_auth_allowed(cfg):
            return x_user_id
        logger.warning("[auth] X-User-Id header rejected", extra={"env": cfg.ENV})
        raise HTTPException(status_code=401, detail="Header authentication is disabled")
    return None


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local development / test user ID"),
) -> str:
    """
    Extract current user ID from request context.

    Priority:
    1. Supabase JWT from Authorization header
    2. X-User-Id header (development and test only)
    3. Raise 401 Unauthorized
    """
    user_id = _resolve_user_id(request, x_user_id)
    if user_id:
        return user_id

    raise HTTPException(
        status_code=401,
        detail="Missing Authorization (Bearer JWT) or X-User-Id header",
    )


async def get_optional_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Local development / test user ID"),
) -> Optional[str]:
    """Like get_current_user_id, but anonymous callers get None.

    A present-but-invalid token, or a header where header auth is off, still fails with 401.
    """
    return _resolve_user_id(request, x_user_id)
