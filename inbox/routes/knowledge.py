from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Body, File, Form, HTTPException, Query, UploadFile

from .. import config
from ..db import as_bool
from ..media import media_type_for_mimetype, public_url_for, remove_upload, save_upload
from ..runtime import InboxRuntime

logger = logging.getLogger(__name__)

KNOWLEDGE_MEDIA_TYPES = {"image", "audio", "video"}


def _keywords(raw) -> list:
    if isinstance(raw, list):
        return [str(k).strip() for k in raw if str(k).strip()]
    return [k.strip() for k in str(raw or "").split(",") if k.strip()]


def create_knowledge_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/ai-knowledge", tags=["ai-knowledge"])

    def _out(row: dict) -> dict:
        row["full_url"] = public_url_for(row.get("media_url"), rt.public_url)
        return row

    @router.get("")
    async def list_resources(type: Optional[str] = None, active: Optional[str] = Query(None)):
        rows = await rt.db_manager.list_knowledge(type=type, active=as_bool(active) if active is not None else None)
        return {"success": True, "data": [_out(r) for r in rows]}

    @router.post("/upload")
    async def upload_resource(
        file: UploadFile = File(...),
        description: Optional[str] = Form(None),
        title: Optional[str] = Form(None),
        keywords: Optional[str] = Form(None),
    ):
        media_type = media_type_for_mimetype(file.content_type)
        if media_type not in KNOWLEDGE_MEDIA_TYPES:
            raise HTTPException(status_code=400, detail="Only image, audio or video files are accepted")
        rel_url, _, size = await save_upload(
            file,
            subdir="ai_knowledge",
            max_bytes=config.MAX_KNOWLEDGE_UPLOAD_BYTES,
            upload_dir=rt.upload_dir,
        )
        row = await rt.db_manager.create_knowledge(
            type=media_type,
            title=title or file.filename,
            content=description or "",
            media_url=rel_url,
            filename=file.filename,
            keywords=_keywords(keywords),
        )
        logger.info("Knowledge %s resource %s stored (%s bytes)", media_type, row["id"], size)
        return {"success": True, "data": _out(row)}

    @router.post("/text")
    async def create_text_resource(payload: dict = Body(...)):
        title = str(payload.get("title") or "").strip()
        content = str(payload.get("content") or "").strip()
        if not title or not content:
            raise HTTPException(status_code=400, detail="title and content are required")
        row = await rt.db_manager.create_knowledge(
            type="text",
            title=title,
            content=content,
            keywords=_keywords(payload.get("keywords")),
        )
        return {"success": True, "data": _out(row)}

    @router.delete("/{resource_id}")
    async def delete_resource(resource_id: str):
        row = await rt.db_manager.delete_knowledge(resource_id)
        if row is None:
            raise HTTPException(status_code=404, detail="Resource not found")
        await remove_upload(row.get("media_url"), upload_dir=rt.upload_dir)
        return {"success": True}

    return router
