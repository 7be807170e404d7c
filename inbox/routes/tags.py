from __future__ import annotations

from fastapi import APIRouter, Body, HTTPException

from ..runtime import InboxRuntime


def create_tags_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/tags", tags=["tags"])

    @router.get("")
    async def list_tags():
        return {"success": True, "data": await rt.db_manager.list_tags()}

    @router.post("")
    async def create_tag(payload: dict = Body(...)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Tag name is required")
        tag = await rt.db_manager.create_tag(name, payload.get("color"))
        return {"success": True, "data": tag}

    @router.delete("/{tag_id}")
    async def delete_tag(tag_id: int):
        if not await rt.db_manager.delete_tag(tag_id):
            raise HTTPException(status_code=404, detail="Tag not found")
        return {"success": True}

    return router
