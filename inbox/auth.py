from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt
from passlib.context import CryptContext

from . import config

logger = logging.getLogger(__name__)

pwd_context = CryptContext(
    schemes=["argon2", "bcrypt"],
    default="argon2",
    deprecated="auto",
)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, stored: str) -> bool:
    if not stored:
        return False
    try:
        return pwd_context.verify(password, stored)
    except (ValueError, TypeError):
        # Unknown/corrupt hash format
        return False


def _jwt_secret() -> str:
    if not config.AGENT_AUTH_SECRET and not config.DISABLE_AUTH:
        logger.warning("AGENT_AUTH_SECRET is empty; set it for secure authentication.")
    return config.AGENT_AUTH_SECRET or "dev-unsafe-secret"


def issue_access_token(agent: dict, ttl_seconds: Optional[int] = None) -> str:
    now = datetime.now(timezone.utc)
    ttl = int(config.ACCESS_TOKEN_TTL_SECONDS if ttl_seconds is None else ttl_seconds)
    payload = {
        "sub": str(agent.get("username") or ""),
        "agent_id": agent.get("id"),
        "name": agent.get("name"),
        "iss": config.JWT_ISSUER,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(seconds=ttl)).timestamp()),
    }
    return jwt.encode(payload, _jwt_secret(), algorithm="HS256")


def parse_access_token(token: str) -> Optional[dict]:
    if not token:
        return None
    try:
        payload = jwt.decode(
            token,
            _jwt_secret(),
            algorithms=["HS256"],
            options={"require_sub": True, "require_exp": True},
            issuer=config.JWT_ISSUER,
        )
    except JWTError:
        return None
    username = str(payload.get("sub") or "").strip()
    if not username:
        return None
    return {"username": username, "id": payload.get("agent_id"), "name": payload.get("name")}


def _token_from_request(request: Request) -> tuple[Optional[str], Optional[str]]:
    header_token: Optional[str] = None
    auth_header = request.headers.get("authorization") or ""
    parts = auth_header.split()
    if len(parts) >= 2 and parts[0].lower() == "bearer":
        header_token = parts[1].strip()
    return header_token, request.cookies.get(config.ACCESS_COOKIE_NAME)


async def get_current_agent(request: Request) -> dict:
    """Return the authenticated agent (username/id/name) or raise 401."""
    if config.DISABLE_AUTH:
        return {"username": "admin", "id": None, "name": "Admin"}
    header_token, cookie_token = _token_from_request(request)
    # A stale header token must not shadow a fresh cookie.
    parsed = parse_access_token(header_token or "") or parse_access_token(cookie_token or "")
    if not parsed:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return parsed


def is_public_path(path: str) -> bool:
    if path in ("/health", "/metrics", "/api/auth/login", "/api/auth/register"):
        return True
    if path.startswith("/uploads/") or path.startswith("/webhook"):
        return True
    # Anything outside the API (ws handshake is authenticated in the endpoint itself)
    return not path.startswith("/api/")


def has_valid_api_key(request: Request) -> bool:
    """True when SYSTEM_API_KEY is unset or the request presents it."""
    expected = config.SYSTEM_API_KEY
    if not expected:
        return True
    presented = request.headers.get("x-api-key") or request.query_params.get("api_key") or ""
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(request: Request) -> None:
    """Guard server-to-server routes with SYSTEM_API_KEY (open when unset)."""
    if not has_valid_api_key(request):
        raise HTTPException(status_code=401, detail="Invalid API key")
