from __future__ import annotations

import logging
import math
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from ..auth import get_current_agent
from ..db import CONVERSATION_STATE_AGENT, CONVERSATION_STATE_AI
from ..realtime import LIST_CHANNEL, conversation_channel
from ..runtime import InboxRuntime
from ..webhook.normalize import normalize_jid

logger = logging.getLogger(__name__)


def conversation_summary(row: dict) -> dict:
    return {
        "id": row["phone"],
        "contact": {"name": row.get("contact_name") or row["phone"], "phone": row["phone"]},
        "lastMessage": row.get("last_message") or "",
        "rawTimestamp": row.get("last_message_timestamp"),
        "unread": int(row.get("unread_count") or 0),
        "status": row.get("status"),
        "aiEnabled": bool(row.get("ai_enabled")),
        "state": row.get("conversation_state"),
        "agentId": row.get("agent_id"),
    }


def create_conversations_router(rt: InboxRuntime) -> APIRouter:
    router = APIRouter(prefix="/api/conversations", tags=["conversations"])

    async def _require(phone: str) -> dict:
        conv = await rt.db_manager.get_conversation(phone)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        return conv

    async def _broadcast_state(conv: dict) -> None:
        data = {
            "phone": conv["phone"],
            "conversation_state": conv.get("conversation_state"),
            "ai_enabled": bool(conv.get("ai_enabled")),
            "agent_id": conv.get("agent_id"),
            "status": conv.get("status"),
        }
        await rt.connection_manager.publish(conversation_channel(conv["phone"]), "state_changed", data)
        await rt.connection_manager.publish(LIST_CHANNEL, "state_changed", data)

    @router.get("")
    async def list_conversations(
        page: int = Query(1, ge=1),
        limit: int = Query(50, ge=1),
        status: Optional[str] = None,
        search: Optional[str] = None,
    ):
        limit = min(limit, 100)
        rows, total = await rt.db_manager.list_conversations(page=page, limit=limit, status=status, search=search)
        total_pages = math.ceil(total / limit) if total else 0
        return {
            "success": True,
            "data": [conversation_summary(r) for r in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "totalPages": total_pages,
                "hasNext": page < total_pages,
                "hasPrev": page > 1,
            },
        }

    @router.get("/stats")
    async def conversation_stats():
        return {"success": True, "stats": await rt.db_manager.conversation_stats()}

    @router.post("/start-new")
    async def start_new(payload: dict = Body(...)):
        phone = normalize_jid(str(payload.get("phone") or ""))
        if not phone:
            raise HTTPException(status_code=400, detail="Phone number required")
        conv, created = await rt.db_manager.get_or_create_conversation(phone, payload.get("name") or None)
        if created:
            await rt.connection_manager.publish(
                LIST_CHANNEL,
                "conversation_updated",
                {"phone": phone, "contact_name": conv.get("contact_name"), "unread": 0, "isNew": True},
            )
        return {"success": True, "created": created, "conversation": conversation_summary(conv)}

    @router.get("/{phone}/messages")
    async def get_messages(
        phone: str,
        limit: int = Query(50, ge=1),
        before: Optional[str] = None,
        after: Optional[str] = None,
    ):
        rows = await rt.db_manager.get_messages(phone, limit=min(limit, 200), before=before, after=after)
        return {"success": True, "data": rows}

    @router.get("/{phone}/messages/count")
    async def count_messages(phone: str):
        return {"success": True, "count": await rt.db_manager.count_messages(phone)}

    @router.post("/{phone}/mark-read")
    async def mark_read(phone: str):
        if not await rt.db_manager.mark_read(phone):
            raise HTTPException(status_code=404, detail="Conversation not found")
        if getattr(rt.gateway, "configured", False):
            # Mirror the read receipt on the phone; failures only cost the receipt.
            await rt.gateway.mark_as_read(phone)
        return {"success": True}

    @router.post("/{phone}/mark-unread")
    async def mark_unread(phone: str):
        if not await rt.db_manager.mark_unread(phone):
            raise HTTPException(status_code=404, detail="Conversation not found")
        if getattr(rt.gateway, "configured", False):
            await rt.gateway.mark_as_unread(phone)
        return {"success": True}

    @router.post("/{phone}/toggle-ai")
    async def toggle_ai(phone: str, payload: dict = Body(...)):
        if "aiEnabled" not in payload:
            raise HTTPException(status_code=400, detail="aiEnabled is required")
        enabled = bool(payload.get("aiEnabled"))
        conv = await rt.db_manager.set_ai_state(phone, enabled)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await _broadcast_state(conv)
        await rt.automation.notify_state_change(phone, conv["conversation_state"])
        return {"success": True, "conversation": conversation_summary(conv)}

    @router.post("/{phone}/take-by-agent")
    async def take_by_agent(phone: str, payload: dict = Body(default={}), agent: dict = Depends(get_current_agent)):
        agent_id = payload.get("agentId") or payload.get("agent_id") or agent.get("id") or agent.get("username")
        conv = await rt.db_manager.take_by_agent(phone, str(agent_id) if agent_id is not None else None)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await _broadcast_state(conv)
        await rt.automation.notify_state_change(phone, CONVERSATION_STATE_AGENT)
        return {"success": True, "conversation": conversation_summary(conv)}

    @router.post("/{phone}/activate-ai")
    async def activate_ai(phone: str):
        conv = await rt.db_manager.set_ai_state(phone, True)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await _broadcast_state(conv)
        await rt.automation.notify_state_change(phone, CONVERSATION_STATE_AI)
        return {"success": True, "conversation": conversation_summary(conv)}

    @router.post("/{phone}/close")
    async def close_conversation(phone: str):
        conv = await rt.db_manager.close_conversation(phone)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await _broadcast_state(conv)
        return {"success": True, "conversation": conversation_summary(conv)}

    @router.put("/{phone}/name")
    async def rename(phone: str, payload: dict = Body(...)):
        name = str(payload.get("name") or "").strip()
        if not name:
            raise HTTPException(status_code=400, detail="Name is required")
        conv = await rt.db_manager.update_contact_name(phone, name)
        if not conv:
            raise HTTPException(status_code=404, detail="Conversation not found")
        await rt.connection_manager.publish(
            LIST_CHANNEL,
            "conversation_updated",
            {"phone": phone, "contact_name": name, "unread": int(conv.get("unread_count") or 0), "isNew": False},
        )
        return {"success": True, "conversation": conversation_summary(conv)}

    @router.get("/{phone}/tags")
    async def conversation_tags(phone: str):
        return {"success": True, "data": await rt.db_manager.get_conversation_tags(phone)}

    @router.post("/{phone}/tags")
    async def assign_tag(phone: str, payload: dict = Body(...)):
        tag_id = payload.get("tagId") or payload.get("tag_id")
        if tag_id is None:
            raise HTTPException(status_code=400, detail="tagId is required")
        await _require(phone)
        if not await rt.db_manager.get_tag(int(tag_id)):
            raise HTTPException(status_code=404, detail="Tag not found")
        await rt.db_manager.assign_tag(phone, int(tag_id))
        return {"success": True, "data": await rt.db_manager.get_conversation_tags(phone)}

    @router.delete("/{phone}/tags/{tag_id}")
    async def remove_tag(phone: str, tag_id: int):
        if not await rt.db_manager.remove_tag(phone, tag_id):
            raise HTTPException(status_code=404, detail="Tag not assigned")
        return {"success": True}

    return router
