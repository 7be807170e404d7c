"""Outbound client for the WhatsApp gateway (Evolution API)."""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from . import config

logger = logging.getLogger(__name__)


@dataclass
class GatewayResult:
    success: bool
    data: Any = None
    error: Any = None
    strategy: Optional[str] = None


@dataclass(frozen=True)
class SendStrategy:
    """One request-body shape accepted by some gateway version."""

    name: str
    build: Callable[..., Dict[str, Any]]


def is_jid(phone: str) -> bool:
    # Group ids look like "1203...-1612..." or carry an explicit "@domain".
    return "-" in phone or "@" in phone


def gateway_number(phone: str) -> str:
    return phone if is_jid(phone) else re.sub(r"\D", "", phone)


def _cus_jid(phone: str) -> str:
    return phone.replace("@lid", "@c.us") if is_jid(phone) else f"{re.sub(r'[^0-9]', '', phone)}@c.us"


TEXT_STRATEGIES: Sequence[SendStrategy] = (
    SendStrategy(
        "options_wrapped",
        lambda phone, text: {
            "number": gateway_number(phone),
            "text": text,
            "options": {
                "delay": 500,
                "presence": "composing",
                "linkPreview": False,
                "checkContact": False,
                "force": True,
            },
            "checkContact": False,
        },
    ),
    SendStrategy(
        "hybrid",
        lambda phone, text: {
            "number": gateway_number(phone),
            "text": text,
            "textMessage": {"text": text},
            "checkContact": False,
            "options": {"checkContact": False},
        },
    ),
    SendStrategy(
        "flat_minimal",
        lambda phone, text: {"number": gateway_number(phone), "text": text, "checkContact": False},
    ),
    SendStrategy(
        "jid_cus",
        lambda phone, text: {"number": _cus_jid(phone), "text": text, "checkContact": False},
    ),
)

MEDIA_STRATEGIES: Sequence[SendStrategy] = (
    SendStrategy(
        "standard",
        lambda phone, url, media_type, caption, file_name: {
            "number": gateway_number(phone),
            "mediatype": media_type,
            "media": url,
            "caption": caption or "",
            "fileName": file_name,
        },
    ),
    SendStrategy(
        "alternative_url",
        lambda phone, url, media_type, caption, file_name: {
            "number": gateway_number(phone),
            "mediatype": media_type,
            "url": url,
            "caption": caption or "",
            "fileName": file_name,
        },
    ),
    SendStrategy(
        "legacy_type",
        lambda phone, url, media_type, caption, file_name: {
            "number": gateway_number(phone),
            "type": media_type,
            "media": url,
            "caption": caption or "",
            "fileName": file_name,
        },
    ),
)

_DEFAULT_EXTENSIONS = {"image": ".jpg", "video": ".mp4", "audio": ".mp3", "document": ".pdf"}


def _is_ok(response: httpx.Response) -> bool:
    return 200 <= response.status_code < 300


def _body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class EvolutionClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        instance: str | None = None,
        *,
        public_url: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (config.EVOLUTION_API_URL if base_url is None else base_url).rstrip("/")
        self.api_key = config.EVOLUTION_API_KEY if api_key is None else api_key
        self.instance = config.EVOLUTION_INSTANCE_NAME if instance is None else instance
        self.public_url = (config.PUBLIC_URL if public_url is None else public_url).rstrip("/")
        self._transport = transport
        self._timeout = httpx.Timeout(
            config.GATEWAY_HTTP_TIMEOUT_SECONDS,
            connect=config.GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS,
        )

    @property
    def configured(self) -> bool:
        return bool(self.base_url and self.api_key and self.instance)

    @property
    def headers(self) -> Dict[str, str]:
        return {"apikey": self.api_key, "Content-Type": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _try_strategies(
        self,
        url: str,
        strategies: Sequence[SendStrategy],
        *args: Any,
    ) -> GatewayResult:
        """POST each strategy's body in order until the gateway answers 2xx."""
        last_error: Any = None
        async with self._client() as client:
            for strategy in strategies:
                body = strategy.build(*args)
                try:
                    response = await client.post(url, json=body, headers=self.headers)
                except httpx.HTTPError as exc:
                    logger.warning("Gateway strategy %s failed: %s", strategy.name, exc)
                    last_error = str(exc)
                    continue
                data = _body(response)
                if _is_ok(response):
                    logger.info("Gateway send ok strategy=%s number=%s", strategy.name, body.get("number"))
                    return GatewayResult(success=True, data=data, strategy=strategy.name)
                logger.warning(
                    "Gateway strategy %s rejected status=%s body=%s",
                    strategy.name,
                    response.status_code,
                    str(data)[:300],
                )
                last_error = data
        logger.error("All gateway strategies exhausted for %s", url)
        return GatewayResult(success=False, error=last_error)

    async def send_text(self, phone: str, text: str) -> GatewayResult:
        if not self.configured:
            return GatewayResult(success=False, error="gateway not configured")
        url = f"{self.base_url}/message/sendText/{self.instance}"
        return await self._try_strategies(url, TEXT_STRATEGIES, phone, text)

    def _public_media_url(self, media_url: str) -> str:
        # The gateway cannot reach our localhost; swap in the public origin when we have one.
        if "localhost" in media_url and self.public_url and "localhost" not in self.public_url:
            return re.sub(r"https?://localhost(:\d+)?", self.public_url, media_url)
        return media_url

    async def send_media(
        self,
        phone: str,
        media_url: str,
        media_type: str,
        caption: Optional[str] = None,
        file_name: Optional[str] = None,
    ) -> GatewayResult:
        if not self.configured:
            return GatewayResult(success=False, error="gateway not configured")
        name = file_name or "file"
        if "." not in name:
            name += _DEFAULT_EXTENSIONS.get(media_type, "")
        url = f"{self.base_url}/message/sendMedia/{self.instance}"
        return await self._try_strategies(
            url, MEDIA_STRATEGIES, phone, self._public_media_url(media_url), media_type, caption, name
        )

    async def check_instance(self) -> Dict[str, Any]:
        url = f"{self.base_url}/instance/connectionState/{self.instance}"
        try:
            async with self._client() as client:
                response = await client.get(url, headers=self.headers)
            data = _body(response)
            return data if isinstance(data, dict) else {"raw": data}
        except httpx.HTTPError as exc:
            return {"error": str(exc)}

    async def fetch_group_info(self, group_jid: str) -> Optional[Dict[str, Any]]:
        """Look up group metadata, trying the endpoint layouts of different gateway versions."""
        if not self.configured:
            return None
        variants: List[Tuple[str, Dict[str, str]]] = [
            (f"/group/findGroup/{self.instance}", {"groupJid": group_jid}),
            (f"/group/info/{self.instance}", {"groupJid": group_jid}),
            ("/group/findGroup", {"instance": self.instance, "groupJid": group_jid}),
        ]
        async with self._client() as client:
            for path, params in variants:
                try:
                    response = await client.get(f"{self.base_url}{path}", params=params, headers=self.headers)
                except httpx.HTTPError as exc:
                    logger.warning("Group info endpoint %s failed: %s", path, exc)
                    continue
                data = _body(response)
                if _is_ok(response) and isinstance(data, dict) and (data.get("subject") or data.get("id")):
                    return data
        return None

    async def _mark(self, phone: str, read: bool) -> Dict[str, Any]:
        jid = phone if is_jid(phone) else f"{re.sub(r'[^0-9]', '', phone)}@c.us"
        url = f"{self.base_url}/chat/markMessageAsRead/{self.instance}"
        try:
            async with self._client() as client:
                response = await client.post(url, json={"number": jid, "read": read}, headers=self.headers)
            data = _body(response)
            return data if isinstance(data, dict) else {"raw": data}
        except httpx.HTTPError as exc:
            logger.warning("markMessageAsRead(read=%s) failed for %s: %s", read, phone, exc)
            return {"error": str(exc)}

    async def mark_as_read(self, phone: str) -> Dict[str, Any]:
        return await self._mark(phone, True)

    async def mark_as_unread(self, phone: str) -> Dict[str, Any]:
        return await self._mark(phone, False)

    async def fetch_base64(self, message: Dict[str, Any]) -> Optional[str]:
        """Ask the gateway to decrypt/download a received media message."""
        if not self.configured:
            return None
        url = f"{self.base_url}/chat/getBase64FromMessage/{self.instance}"
        payload = {"message": {"key": message.get("key"), "message": message.get("message")}}
        try:
            async with self._client() as client:
                response = await client.post(url, json=payload, headers=self.headers)
        except httpx.HTTPError as exc:
            logger.warning("fetch_base64 failed: %s", exc)
            return None
        data = _body(response)
        if not _is_ok(response):
            logger.warning("fetch_base64 rejected status=%s body=%s", response.status_code, str(data)[:300])
            return None
        return (data or {}).get("base64") if isinstance(data, dict) else None
