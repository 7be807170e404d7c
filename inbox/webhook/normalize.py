"""Pure helpers that turn gateway payload fragments into inbox values."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

GROUP_SUFFIX = "@g.us"
STANDARD_SUFFIX = "@s.whatsapp.net"
UPSERT_EVENTS = {"messages.upsert", "MESSAGES_UPSERT"}

# (payload key, media type, default mimetype, preview label)
_MEDIA_KINDS = (
    ("imageMessage", "image", "image/jpeg", "📷 Imagen"),
    ("videoMessage", "video", "video/mp4", "🎥 Video"),
    ("audioMessage", "audio", "audio/ogg; codecs=opus", "🎵 Audio"),
    ("documentMessage", "document", "application/pdf", "📄 Documento"),
)
VOICE_NOTE_LABEL = "🎤 Nota de voz"

_RESOURCE_TOKEN = re.compile(r"\[\s*ID\s*:\s*([0-9A-Za-z][0-9A-Za-z-]{7,})\s*\]")


def media_label(media_type: Optional[str]) -> Optional[str]:
    """Sidebar label for a media kind ("image" -> "📷 Imagen")."""
    for _, kind, _, label in _MEDIA_KINDS:
        if kind == media_type:
            return label
    return media_type or None


def is_group_jid(jid: Optional[str]) -> bool:
    return GROUP_SUFFIX in (jid or "")


def normalize_jid(jid: Optional[str]) -> str:
    """Conversation key for a gateway JID.

    Groups keep their JID. Everything else is reduced to digits, and Colombian
    numbers (country code 57) get a leading "+" to match stored keys.
    """
    jid = (jid or "").strip()
    if is_group_jid(jid):
        return jid
    digits = re.sub(r"\D", "", jid.split("@", 1)[0])
    if not digits:
        return ""
    if "@" in jid and not jid.endswith(STANDARD_SUFFIX):
        logger.warning("Non-standard JID domain %s, normalized to %s", jid, digits)
    return f"+{digits}" if digits.startswith("57") else digits


def is_placeholder_group_name(conversation: Optional[dict]) -> bool:
    if not conversation:
        return True
    name = str(conversation.get("contact_name") or "")
    return not name or GROUP_SUFFIX in name or name.startswith("Grupo")


def fallback_group_name(phone: str, conversation: Optional[dict]) -> str:
    name = str((conversation or {}).get("contact_name") or "")
    if name and "@" not in name:
        return name
    return f"Grupo {phone.split('@', 1)[0][:10]}..."


@dataclass
class MessageContent:
    text: Optional[str] = None
    label: Optional[str] = None
    media_type: Optional[str] = None
    mimetype: Optional[str] = None
    url: Optional[str] = None
    kind_key: Optional[str] = None
    caption: Optional[str] = None

    @property
    def preview(self) -> Optional[str]:
        return self.text or self.label

    @property
    def sent_text(self) -> Optional[str]:
        """The text as it went out: the caption for media, never a document file name."""
        return self.caption if self.media_type else self.text

    @property
    def empty(self) -> bool:
        return not self.text and not self.media_type


def extract_content(message: Optional[Dict[str, Any]]) -> MessageContent:
    message = message or {}
    if message.get("conversation"):
        return MessageContent(text=str(message["conversation"]))
    extended = message.get("extendedTextMessage") or {}
    if extended.get("text"):
        return MessageContent(text=str(extended["text"]))
    for key, media_type, default_mime, label in _MEDIA_KINDS:
        part = message.get(key)
        if not isinstance(part, dict):
            continue
        caption = part.get("caption") or None
        text = caption
        if media_type == "document":
            text = text or part.get("fileName") or None
        if media_type == "audio" and part.get("ptt"):
            label = VOICE_NOTE_LABEL
        return MessageContent(
            text=text,
            caption=caption,
            label=label,
            media_type=media_type,
            mimetype=part.get("mimetype") or default_mime,
            url=part.get("url") or None,
            kind_key=key,
        )
    return MessageContent()


def find_inline_base64(data: Dict[str, Any], kind_key: Optional[str]) -> Optional[str]:
    """Base64 media as delivered by the different gateway webhook configurations."""
    message = data.get("message") or {}
    candidates = [data.get("base64"), message.get("base64")]
    if kind_key and isinstance(message.get(kind_key), dict):
        candidates.append(message[kind_key].get("base64"))
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c
    return None


def extract_resource_token(text: Optional[str]) -> Tuple[Optional[str], str]:
    """Split an `[ID: <uuid>]` knowledge reference out of an AI reply."""
    text = text or ""
    match = _RESOURCE_TOKEN.search(text)
    if not match:
        return None, text.strip()
    stripped = _RESOURCE_TOKEN.sub("", text)
    stripped = re.sub(r"[ \t]{2,}", " ", stripped)
    stripped = re.sub(r"\n{3,}", "\n\n", stripped)
    return match.group(1), stripped.strip()
