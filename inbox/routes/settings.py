from __future__ import annotations

import logging

from fastapi import APIRouter, Body, HTTPException

from ..db import as_bool
from ..runtime import InboxRuntime

logger = logging.getLogger(__name__)


def create_settings_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/settings", tags=["settings"])

    @router.get("")
    async def get_settings():
        return {"success": True, "settings": await rt.db_manager.get_all_settings()}

    @router.get("/{key}")
    async def get_setting(key: str):
        value = await rt.db_manager.get_setting(key)
        if value is None:
            raise HTTPException(status_code=404, detail="Setting not found")
        return {"success": True, "key": key, "value": value}

    @router.post("")
    async def set_setting(payload: dict = Body(...)):
        key = str(payload.get("key") or "").strip()
        if not key or "value" not in payload:
            raise HTTPException(status_code=400, detail="key and value are required")
        value = payload.get("value")
        await rt.db_manager.set_setting(key, value)
        updated = 0
        if key == "default_ai_enabled" and payload.get("applyToExisting"):
            updated = await rt.db_manager.set_all_ai(as_bool(value))
            logger.info("default_ai_enabled=%s applied to %s conversations", value, updated)
        return {"success": True, "key": key, "value": value, "updatedConversations": updated}

    return router
