from __future__ import annotations

from fastapi import APIRouter, Body, File, HTTPException, UploadFile

from .. import config
from ..media import media_type_for_mimetype, save_upload
from ..runtime import InboxRuntime


def _fields(payload: dict) -> dict:
    return {
        "shortcut": (str(payload["shortcut"]).strip() or None) if payload.get("shortcut") is not None else None,
        "content": payload.get("content"),
        "media_url": payload.get("mediaUrl") or payload.get("media_url"),
        "media_type": payload.get("mediaType") or payload.get("media_type"),
    }


def create_quick_replies_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/quick-replies", tags=["quick-replies"])

    @router.get("")
    async def list_quick_replies():
        return {"success": True, "data": await rt.db_manager.list_quick_replies()}

    @router.post("")
    async def create_quick_reply(payload: dict = Body(...)):
        fields = _fields(payload)
        if not fields["shortcut"] or not (fields["content"] or fields["media_url"]):
            raise HTTPException(status_code=400, detail="shortcut and content are required")
        reply = await rt.db_manager.create_quick_reply(
            fields["shortcut"], fields["content"], fields["media_url"], fields["media_type"]
        )
        if reply is None:
            raise HTTPException(status_code=409, detail="A quick reply with this shortcut already exists")
        return {"success": True, "data": reply}

    @router.put("/{reply_id}")
    async def update_quick_reply(reply_id: int, payload: dict = Body(...)):
        reply = await rt.db_manager.update_quick_reply(reply_id, **_fields(payload))
        if reply is None:
            raise HTTPException(status_code=404, detail="Quick reply not found")
        return {"success": True, "data": reply}

    @router.delete("/{reply_id}")
    async def delete_quick_reply(reply_id: int):
        if not await rt.db_manager.delete_quick_reply(reply_id):
            raise HTTPException(status_code=404, detail="Quick reply not found")
        return {"success": True}

    @router.post("/upload")
    async def upload_quick_reply_media(file: UploadFile = File(...)):
        rel_url, _, size = await save_upload(
            file,
            subdir="quick_replies",
            max_bytes=config.MAX_UPLOAD_BYTES,
            allowed_types=config.ALLOWED_UPLOAD_TYPES,
            upload_dir=rt.upload_dir,
        )
        return {
            "success": True,
            "url": rel_url,
            "mediaType": media_type_for_mimetype(file.content_type),
            "size": size,
        }

    return router
