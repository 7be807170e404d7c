from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Optional

from ..db import utc_now_iso
from ..dedup import message_fingerprint
from ..media import is_internal_media_url, media_kind_from_url, public_url_for, save_base64_as_file
from ..observability.context import conversation_context
from ..runtime import InboxRuntime
from .normalize import (
    UPSERT_EVENTS,
    MessageContent,
    extract_content,
    extract_resource_token,
    fallback_group_name,
    find_inline_base64,
    is_group_jid,
    is_placeholder_group_name,
    media_label,
    normalize_jid,
)

logger = logging.getLogger(__name__)

# Upper bound for asking the gateway to decrypt a media message.
MEDIA_FETCH_TIMEOUT_SECONDS = 20.0
_SENDABLE_KINDS = {"image", "video", "audio", "document"}


def message_event(message: dict, conversation: Optional[dict], *, preview: Optional[str] = None, is_new: bool = False) -> dict:
    """Real-time payload for a stored message (enough to patch thread and sidebar)."""
    conversation = conversation or {}
    return {
        "id": message.get("id"),
        "phone": message.get("phone"),
        "contact_name": conversation.get("contact_name"),
        "message": preview if preview is not None else message.get("text"),
        "text": message.get("text"),
        "whatsapp_id": message.get("whatsapp_id"),
        "sender": message.get("sender"),
        "media_type": message.get("media_type"),
        "media_url": message.get("media_url"),
        "status": message.get("status"),
        "agent_name": message.get("agent_name"),
        "timestamp": message.get("timestamp"),
        "unread": int(conversation.get("unread_count") or 0),
        "conversation_state": conversation.get("conversation_state"),
        "ai_enabled": bool(conversation.get("ai_enabled")),
        "isNew": is_new,
    }


class MessageProcessor:
    """Turns gateway webhook events and agent sends into stored, broadcast messages."""

    def __init__(self, rt: InboxRuntime):
        self.rt = rt

    async def process_event(self, payload: Dict[str, Any]) -> None:
        """Background entry point. Never raises: the gateway already got its 200."""
        payload = payload or {}
        try:
            event = payload.get("event")
            if event not in UPSERT_EVENTS:
                logger.debug("Ignoring gateway event %s", event)
                return
            data = payload.get("data") or {}
            key = data.get("key") or {}
            if not key:
                return
            remote_jid = str(key.get("remoteJid") or "")
            phone = normalize_jid(remote_jid)
            if not phone:
                logger.warning("Could not extract phone from JID %r", remote_jid)
                return
            with conversation_context(phone):
                await self._process(data, key, phone, is_group_jid(remote_jid))
        except Exception:
            logger.exception("Webhook event processing failed (event dropped)")

    async def _process(self, data: Dict[str, Any], key: Dict[str, Any], phone: str, is_group: bool) -> None:
        from_me = key.get("fromMe") is True
        sender = "agent" if from_me else "customer"
        content = extract_content(data.get("message"))
        if content.empty:
            return

        if from_me and message_fingerprint(phone, content.sent_text, content.media_type) in self.rt.recent_sends:
            logger.info("Dropping echo of our own outbound message to %s", phone)
            return

        db = self.rt.db_manager
        whatsapp_id = key.get("id") or None
        if await db.message_exists(whatsapp_id):
            logger.info("Message %s already stored, skipping", whatsapp_id)
            return

        push_name = data.get("pushName") or None
        existing = await db.get_conversation(phone)
        name_to_use = push_name if (is_group or not from_me) else None
        if is_group:
            name_to_use = await self._resolve_group_name(phone, existing)

        media_type, media_url = await self._resolve_media(data, content)

        text = content.text
        preview = content.preview
        if is_group:
            text = f"*{push_name or 'Miembro'}*: {content.preview or ''}".rstrip()
            preview = text

        if existing is None or name_to_use:
            conversation = await db.upsert_conversation(phone, name_to_use)
        else:
            conversation = existing

        message = await db.create_message(
            phone=phone,
            sender=sender,
            text=text,
            whatsapp_id=whatsapp_id,
            media_type=media_type,
            media_url=media_url,
        )
        if message is None:
            logger.info("Message %s inserted concurrently, skipping", whatsapp_id)
            return
        await db.update_last_message(phone, preview, message.get("timestamp"))
        if from_me:
            await db.mark_read(phone)
        else:
            await db.increment_unread(phone)
        conversation = await db.get_conversation(phone) or conversation
        logger.info("Stored %s message from %s (new_conversation=%s)", sender, phone, existing is None)

        await self.rt.connection_manager.emit_to_conversation(
            phone,
            "new_message",
            message_event(message, conversation, preview=preview, is_new=existing is None),
            unread=int(conversation.get("unread_count") or 0),
        )

        if conversation.get("ai_enabled") and not is_group and not from_me:
            await self._run_automation(
                conversation,
                text=preview,
                contact_name=push_name,
                media_type=media_type,
                media_url=media_url,
            )
        else:
            reason = "agent message" if from_me else "group" if is_group else "AI disabled"
            logger.debug("Automation skipped for %s (%s)", phone, reason)

    async def _resolve_group_name(self, phone: str, existing: Optional[dict]) -> str:
        if not is_placeholder_group_name(existing):
            return str(existing["contact_name"])  # type: ignore[index]
        info = None
        try:
            info = await self.rt.gateway.fetch_group_info(phone)
        except Exception as exc:
            logger.warning("Group info lookup failed for %s: %s", phone, exc)
        subject = (info or {}).get("subject")
        if subject:
            return str(subject)
        return fallback_group_name(phone, existing)

    async def _resolve_media(self, data: Dict[str, Any], content: MessageContent) -> tuple[Optional[str], Optional[str]]:
        """Return (media_type, public_url) or (None, None) when nothing displayable exists."""
        if not content.media_type:
            return None, None
        b64 = find_inline_base64(data, content.kind_key)
        if not b64:
            try:
                b64 = await asyncio.wait_for(self.rt.gateway.fetch_base64(data), timeout=MEDIA_FETCH_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Timed out fetching %s media from gateway", content.media_type)
            except Exception as exc:
                logger.warning("Fetching %s media from gateway failed: %s", content.media_type, exc)
        if b64:
            url = await save_base64_as_file(
                b64,
                content.media_type,
                content.mimetype,
                upload_dir=self.rt.upload_dir,
                public_url=self.rt.public_url,
            )
            if url:
                return content.media_type, url
        if content.url and not is_internal_media_url(content.url):
            return content.media_type, content.url
        if content.url:
            logger.warning("Only an internal WhatsApp URL is available for %s media; storing text only", content.media_type)
        return None, None

    async def _resolve_reply_media(self, reply_media_url: Optional[str], reply_media_type: Optional[str], resource_id: Optional[str]) -> tuple[Optional[str], Optional[str]]:
        media_url = reply_media_url
        media_kind = reply_media_type
        if resource_id:
            resource = await self.rt.db_manager.get_knowledge(resource_id)
            if resource is None:
                logger.warning("AI reply referenced unknown knowledge resource %s", resource_id)
            elif resource.get("media_url"):
                media_url = resource["media_url"]
                media_kind = resource.get("type")
        if not media_url:
            return None, None
        media_url = public_url_for(media_url, self.rt.public_url)
        if media_kind not in _SENDABLE_KINDS:
            media_kind = media_kind_from_url(media_url) or "document"
        return media_url, media_kind

    async def _run_automation(
        self,
        conversation: dict,
        *,
        text: Optional[str],
        contact_name: Optional[str],
        media_type: Optional[str],
        media_url: Optional[str],
    ) -> None:
        phone = conversation["phone"]
        reply = await self.rt.automation.trigger_ai(
            phone=phone,
            text=text,
            contact_name=contact_name or conversation.get("contact_name"),
            media_type=media_type,
            media_url=media_url,
        )
        if reply is None:
            logger.info("No AI reply for %s", phone)
            return

        resource_id, reply_text = extract_resource_token(reply.text)
        out_url, out_kind = await self._resolve_reply_media(reply.media_url, reply.media_type, resource_id)
        if not reply_text and not out_url:
            logger.info("AI reply for %s was empty after resolving references", phone)
            return

        gateway = self.rt.gateway
        sent_text: Optional[str] = reply_text or None
        sent_media_type: Optional[str] = None
        sent_media_url: Optional[str] = None
        if out_url:
            result = await gateway.send_media(phone, out_url, out_kind, caption=reply_text)
            if result.success:
                sent_media_type, sent_media_url = out_kind, out_url
            else:
                logger.warning("AI media send failed for %s, falling back to text: %s", phone, result.error)
                sent_text = f"{reply_text}\n{out_url}" if reply_text else out_url
                result = await gateway.send_text(phone, sent_text)
        else:
            result = await gateway.send_text(phone, reply_text)

        # The gateway will echo this send back through the webhook.
        self.rt.recent_sends.add(message_fingerprint(phone, sent_text, sent_media_type))

        db = self.rt.db_manager
        message = await db.create_message(
            phone=phone,
            sender="ai",
            text=sent_text,
            whatsapp_id=f"ai-{uuid.uuid4().hex}",
            media_type=sent_media_type,
            media_url=sent_media_url,
            status="delivered" if result.success else "failed",
        )
        if message is None:
            return
        preview = sent_text or media_label(sent_media_type)
        await db.update_last_message(phone, preview, message.get("timestamp"))
        conversation = await db.get_conversation(phone) or conversation
        logger.info("AI reply stored for %s (media=%s, delivered=%s)", phone, sent_media_type, result.success)
        await self.rt.connection_manager.emit_to_conversation(
            phone,
            "new_message",
            message_event(message, conversation, preview=preview),
            unread=int(conversation.get("unread_count") or 0),
        )

    async def process_outgoing_message(
        self,
        *,
        phone: str,
        text: Optional[str],
        name: Optional[str] = None,
        temp_id: Optional[str] = None,
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        media_type: Optional[str] = None,
        media_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> dict:
        """Store, deliver and broadcast an agent reply. Returns the stored message."""
        db = self.rt.db_manager
        conversation, _ = await db.get_or_create_conversation(phone, name)
        message = await db.create_message(
            phone=phone,
            sender="agent",
            text=text,
            whatsapp_id=temp_id,
            media_type=media_type,
            media_url=media_url,
            status="sending",
            agent_id=agent_id,
            agent_name=agent_name,
        )
        if message is None:
            raise ValueError(f"Duplicate temp_id {temp_id}")
        preview = text or media_label(media_type)
        await db.update_last_message(phone, preview, message.get("timestamp"))

        gateway = self.rt.gateway
        if getattr(gateway, "configured", False):
            if media_url:
                result = await gateway.send_media(
                    phone,
                    public_url_for(media_url, self.rt.public_url),
                    media_type or "document",
                    caption=text,
                    file_name=file_name,
                )
            else:
                result = await gateway.send_text(phone, text or "")
            delivered = bool(result.success)
        else:
            delivered = await self.rt.automation.send_message(
                phone=phone,
                name=name or conversation.get("contact_name"),
                message=text,
                temp_id=temp_id,
                media_type=media_type,
                media_url=public_url_for(media_url, self.rt.public_url) if media_url else None,
                file_name=file_name,
            )
        status = "delivered" if delivered else "failed"
        await db.update_message_status(message["id"], status)
        message["status"] = status
        if not delivered:
            logger.warning("Agent message to %s was not delivered", phone)

        conversation = await db.get_conversation(phone) or conversation
        await self.rt.connection_manager.emit_to_conversation(
            phone,
            "agent_message",
            message_event(message, conversation, preview=preview),
            unread=int(conversation.get("unread_count") or 0),
        )
        return message

    async def ingest_relayed_message(self, payload: Dict[str, Any]) -> dict:
        """Store a message relayed by the automation workflow (`/webhook/receive-message`)."""
        phone = normalize_jid(str(payload.get("phone") or ""))
        if not phone:
            raise ValueError("Phone number required")
        db = self.rt.db_manager
        whatsapp_id = payload.get("whatsapp_id") or None
        if await db.message_exists(whatsapp_id):
            logger.info("Duplicate relayed message %s", whatsapp_id)
            return {"success": True, "duplicate": True}

        sender = str(payload.get("sender_type") or "customer")
        if sender == "user":
            sender = "customer"
        contact_name = payload.get("contact_name") or f"Usuario {phone[-4:]}"
        conversation, created = await db.get_or_create_conversation(phone, contact_name)
        message = await db.create_message(
            phone=phone,
            sender=sender,
            text=payload.get("message"),
            whatsapp_id=whatsapp_id,
            media_type=payload.get("media_type"),
            media_url=payload.get("media_url"),
            timestamp=payload.get("timestamp") or utc_now_iso(),
        )
        if message is None:
            return {"success": True, "duplicate": True}
        await db.update_last_message(phone, payload.get("message"), message.get("timestamp"))
        if sender != "agent":
            await db.increment_unread(phone)
        conversation = await db.get_conversation(phone) or conversation
        await self.rt.connection_manager.emit_to_conversation(
            phone,
            "new_message",
            message_event(message, conversation, is_new=created),
            unread=int(conversation.get("unread_count") or 0),
        )
        return {
            "success": True,
            "message": "Mensaje procesado",
            "ai_should_respond": bool(conversation.get("ai_enabled")),
            "conversation_state": conversation.get("conversation_state"),
        }
