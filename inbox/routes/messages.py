from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, File, Form, HTTPException, UploadFile

from .. import config
from ..auth import get_current_agent
from ..bulk import estimate_seconds, run_bulk_send
from ..media import media_kind_from_url, media_type_for_mimetype, save_upload
from ..runtime import InboxRuntime
from ..webhook.normalize import normalize_jid

logger = logging.getLogger(__name__)


def create_messages_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api", tags=["messages"])

    @router.post("/send-message")
    async def send_message(payload: dict = Body(...), agent: dict = Depends(get_current_agent)):
        """Send an agent text reply."""
        phone = normalize_jid(str(payload.get("phone") or ""))
        text = str(payload.get("message") or "").strip()
        if not phone or not text:
            raise HTTPException(status_code=400, detail="phone and message are required")
        try:
            message = await rt.processor.process_outgoing_message(
                phone=phone,
                text=text,
                name=payload.get("name"),
                temp_id=payload.get("temp_id"),
                agent_id=payload.get("agent_id") or payload.get("agentId") or agent.get("id"),
                agent_name=payload.get("agent_name") or payload.get("agentName") or agent.get("name"),
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"success": message["status"] == "delivered", "message": message}

    @router.post("/send-file")
    async def send_file(
        file: UploadFile = File(...),
        phone: str = Form(...),
        caption: Optional[str] = Form(None),
        name: Optional[str] = Form(None),
        temp_id: Optional[str] = Form(None),
        agent_id: Optional[str] = Form(None),
        agent_name: Optional[str] = Form(None),
        agent: dict = Depends(get_current_agent),
    ):
        """Upload a file and send it as media."""
        key = normalize_jid(phone)
        if not key:
            raise HTTPException(status_code=400, detail="phone is required")
        rel_url, stored_name, size = await save_upload(
            file,
            max_bytes=config.MAX_UPLOAD_BYTES,
            allowed_types=config.ALLOWED_UPLOAD_TYPES,
            upload_dir=rt.upload_dir,
        )
        media_type = media_type_for_mimetype(file.content_type)
        logger.info("Agent upload %s (%s bytes) for %s", stored_name, size, key)
        try:
            message = await rt.processor.process_outgoing_message(
                phone=key,
                text=(caption or "").strip() or None,
                name=name,
                temp_id=temp_id,
                agent_id=agent_id or agent.get("id"),
                agent_name=agent_name or agent.get("name"),
                media_type=media_type,
                media_url=rel_url,
                file_name=file.filename or stored_name,
            )
        except ValueError as exc:
            raise HTTPException(status_code=409, detail=str(exc))
        return {"success": message["status"] == "delivered", "message": message, "url": rel_url}

    @router.post("/bulk-send")
    async def bulk_send(
        background_tasks: BackgroundTasks,
        payload: dict = Body(...),
        agent: dict = Depends(get_current_agent),
    ):
        """Start sending one message to many recipients; progress arrives over /ws."""
        recipients = payload.get("recipients")
        if not isinstance(recipients, list) or not recipients:
            raise HTTPException(status_code=400, detail="recipients must be a non-empty list")
        text = str(payload.get("message") or "").strip() or None
        media_url = payload.get("mediaUrl") or payload.get("media_url") or None
        if not text and not media_url:
            raise HTTPException(status_code=400, detail="message or mediaUrl is required")
        media_type = None
        if media_url:
            media_type = payload.get("mediaType") or payload.get("media_type") or media_kind_from_url(media_url) or "document"

        targets = []
        for r in recipients:
            if isinstance(r, dict):
                targets.append({"phone": normalize_jid(str(r.get("phone") or "")), "name": r.get("name")})
            else:
                targets.append({"phone": normalize_jid(str(r or "")), "name": None})

        batch_size = config.BULK_BATCH_SIZE
        job = rt.bulk_sends.start(len(targets), batch_size)
        background_tasks.add_task(
            run_bulk_send,
            rt,
            job,
            targets,
            text=text,
            media_url=media_url,
            media_type=media_type,
            agent_id=payload.get("agent_id") or payload.get("agentId") or agent.get("id"),
            agent_name=payload.get("agent_name") or payload.get("agentName") or agent.get("name"),
            batch_size=batch_size,
        )
        logger.info("Bulk send %s queued by %s for %s recipients", job.batch_id, agent.get("username"), job.total)
        return {
            "success": True,
            "batchId": job.batch_id,
            "total": job.total,
            "estimatedTime": estimate_seconds(job.total, batch_size),
        }

    @router.get("/bulk-send/{batch_id}")
    async def bulk_send_status(batch_id: str):
        job = rt.bulk_sends.get(batch_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Batch not found")
        return {"success": True, "batch": job.to_dict()}

    return router
