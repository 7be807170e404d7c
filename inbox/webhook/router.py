from __future__ import annotations

import json
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request

from ..auth import has_valid_api_key, require_api_key
from ..db import utc_now_iso
from ..runtime import InboxRuntime

logger = logging.getLogger(__name__)


def create_webhook_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/webhook")

    @router.post("/evolution")
    async def evolution_webhook(request: Request, background_tasks: BackgroundTasks):
        """Gateway webhook endpoint (ingress). ACKs before any processing.

        The gateway always gets a 200; events with a wrong API key are
        acknowledged and dropped.
        """
        if not has_valid_api_key(request):
            logger.warning("Gateway event with invalid API key dropped")
            return {"success": True}
        try:
            payload = json.loads((await request.body()).decode("utf-8") or "{}")
        except (UnicodeDecodeError, ValueError):
            logger.warning("Unparseable webhook body ignored")
            return {"success": True}
        if not isinstance(payload, dict):
            return {"success": True}
        logger.info("Gateway event %s instance=%s", payload.get("event"), payload.get("instance"))
        # Runs after the response has been sent.
        background_tasks.add_task(rt.processor.process_event, payload)
        return {"success": True}

    @router.post("/receive-message", dependencies=[Depends(require_api_key)])
    async def receive_message(payload: dict):
        """Messages relayed by the automation workflow."""
        if not payload.get("phone"):
            raise HTTPException(status_code=400, detail="Phone number required")
        try:
            return await rt.processor.ingest_relayed_message(payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc))

    @router.get("/health")
    async def webhook_health():
        return {"status": "ok", "timestamp": utc_now_iso()}

    return router
