from __future__ import annotations

import logging

from fastapi import APIRouter, Body, Depends, HTTPException, Request, Response

from .. import config
from ..auth import get_current_agent, hash_password, issue_access_token, verify_password
from ..runtime import InboxRuntime

logger = logging.getLogger(__name__)


def _public_agent(agent: dict) -> dict:
    return {
        "id": agent.get("id"),
        "username": agent.get("username"),
        "name": agent.get("name"),
        "email": agent.get("email"),
        "is_active": bool(agent.get("is_active", True)),
        "last_login": agent.get("last_login"),
    }


def create_auth_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/auth", tags=["auth"])

    @router.post("/login")
    async def login(request: Request, response: Response, payload: dict = Body(...)):
        username = str(payload.get("username") or "").strip()
        password = str(payload.get("password") or "")
        if not username or not password:
            raise HTTPException(status_code=400, detail="username and password are required")
        agent = await rt.db_manager.get_agent(username)
        if not agent or not verify_password(password, agent.get("password_hash") or ""):
            raise HTTPException(status_code=401, detail="Invalid credentials")
        if not agent.get("is_active"):
            raise HTTPException(status_code=403, detail="Agent account is disabled")
        await rt.db_manager.touch_last_login(username)
        token = issue_access_token(agent)
        response.set_cookie(
            config.ACCESS_COOKIE_NAME,
            token,
            max_age=int(config.ACCESS_TOKEN_TTL_SECONDS),
            httponly=True,
            samesite="lax",
            secure=(request.url.scheme == "https"),
        )
        logger.info("Agent %s logged in", username)
        return {"success": True, "token": token, "agent": _public_agent(agent)}

    @router.post("/register")
    async def register(payload: dict = Body(...)):
        username = str(payload.get("username") or "").strip()
        password = str(payload.get("password") or "")
        if not username or not password:
            raise HTTPException(status_code=400, detail="username and password are required")
        if len(password) < 6:
            raise HTTPException(status_code=400, detail="Password must be at least 6 characters")
        agent = await rt.db_manager.create_agent(
            username,
            hash_password(password),
            name=payload.get("name"),
            email=payload.get("email"),
        )
        if agent is None:
            raise HTTPException(status_code=400, detail="Username already exists")
        return {"success": True, "agent": _public_agent(agent)}

    @router.get("/me")
    async def me(current: dict = Depends(get_current_agent)):
        agent = await rt.db_manager.get_agent(current["username"])
        if not agent:
            return {"success": True, "agent": current}
        return {"success": True, "agent": _public_agent(agent)}

    @router.get("/agents")
    async def agents():
        return {"success": True, "data": [_public_agent(a) for a in await rt.db_manager.list_agents()]}

    @router.post("/logout")
    async def logout(response: Response):
        response.delete_cookie(config.ACCESS_COOKIE_NAME)
        return {"success": True}

    return router
