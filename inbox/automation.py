"""Client for the external automation workflow (n8n webhooks)."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from . import config
from .db import CONVERSATION_STATE_AGENT, utc_now_iso

logger = logging.getLogger(__name__)


@dataclass
class AutomationReply:
    text: str
    media_url: Optional[str] = None
    media_type: Optional[str] = None


def parse_ai_reply(data: Any) -> Optional[AutomationReply]:
    """Accept the reply shapes different workflow versions produce.

    `[{"output": ...}]`, `{"output": ...}`, `{"text"|"message": ..., "mediaUrl", "mediaType"}`
    or a bare string.
    """
    if isinstance(data, list):
        data = data[0] if data else None
    if isinstance(data, str):
        text = data.strip()
        return AutomationReply(text=text) if text else None
    if not isinstance(data, dict):
        return None
    text = data.get("output") or data.get("text") or data.get("message")
    if isinstance(text, dict):
        # Some workflows wrap the output once more.
        return parse_ai_reply(text)
    media_url = data.get("mediaUrl") or data.get("media_url")
    media_type = data.get("mediaType") or data.get("media_type")
    if not text and not media_url:
        return None
    return AutomationReply(text=str(text or "").strip(), media_url=media_url or None, media_type=media_type or None)


class AutomationClient:
    def __init__(
        self,
        send_url: str | None = None,
        ai_url: str | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.send_url = config.N8N_SEND_WEBHOOK_URL if send_url is None else send_url
        self.ai_url = config.N8N_AI_WEBHOOK_URL if ai_url is None else ai_url
        self._transport = transport
        self._timeout = httpx.Timeout(config.AUTOMATION_HTTP_TIMEOUT_SECONDS, connect=5.0)

    @property
    def configured(self) -> bool:
        return bool(self.send_url)

    async def _post(self, url: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            return await client.post(url, json=payload)

    async def send_message(
        self,
        *,
        phone: str,
        name: Optional[str],
        message: Optional[str],
        temp_id: Optional[str] = None,
        media_type: Optional[str] = None,
        media_url: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> bool:
        """Hand an agent reply to the workflow for delivery. Returns False on any failure."""
        if not self.send_url:
            logger.warning("Automation webhook not configured; message for %s not delivered", phone)
            return False
        payload: Dict[str, Any] = {
            "phone": phone,
            "name": name,
            "message": message,
            "temp_id": temp_id,
            "conversation_state": CONVERSATION_STATE_AGENT,
            "timestamp": utc_now_iso(),
        }
        if media_type:
            payload.update({"media_type": media_type, "media_url": media_url, "file_name": file_name})
        try:
            response = await self._post(self.send_url, payload)
            response.raise_for_status()
            return True
        except httpx.HTTPError as exc:
            logger.error("Automation send_message failed for %s: %s", phone, exc)
            return False

    async def notify_state_change(self, phone: str, state: str) -> None:
        if not self.send_url:
            return
        payload = {"phone": phone, "type": "state_change", "new_state": state, "timestamp": utc_now_iso()}
        try:
            response = await self._post(self.send_url, payload)
            response.raise_for_status()
            logger.info("State change notified phone=%s state=%s", phone, state)
        except httpx.HTTPError as exc:
            logger.error("Automation notify_state_change failed for %s: %s", phone, exc)

    async def trigger_ai(
        self,
        *,
        phone: str,
        text: Optional[str],
        contact_name: Optional[str] = None,
        media_type: Optional[str] = None,
        media_url: Optional[str] = None,
    ) -> Optional[AutomationReply]:
        """Ask the workflow for an AI answer and wait for it."""
        if not self.ai_url:
            return None
        payload = {
            "type": "incoming_message",
            "phone": phone,
            "name": contact_name,
            "message": text,
            "timestamp": utc_now_iso(),
            "media_type": media_type,
            "media_url": media_url,
        }
        try:
            response = await self._post(self.ai_url, payload)
        except httpx.HTTPError as exc:
            logger.error("Automation trigger_ai failed for %s: %s", phone, exc)
            return None
        if response.status_code < 200 or response.status_code >= 300:
            logger.warning("Automation trigger_ai status=%s for %s", response.status_code, phone)
            return None
        try:
            data: Any = response.json()
        except ValueError:
            data = response.text
        return parse_ai_reply(data)
