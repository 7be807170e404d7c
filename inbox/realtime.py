from __future__ import annotations

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)

LIST_CHANNEL = "conversations:list"


def conversation_channel(phone: str) -> str:
    return f"conversation:{phone}"


class ConnectionManager:
    """Channel-keyed WebSocket fan-out.

    Every socket may subscribe to any number of channels. `publish` sends to the
    sockets of one channel; dead sockets are dropped on the first failed send.
    """

    def __init__(self):
        self.channels: Dict[str, Set[WebSocket]] = defaultdict(set)
        self.connection_metadata: Dict[WebSocket, dict] = {}

    async def connect(self, websocket: WebSocket, client_info: dict | None = None):
        await websocket.accept()
        self.connection_metadata[websocket] = {
            "channels": set(),
            "connected_at": datetime.now(timezone.utc),
            "client_info": client_info or {},
        }
        logger.info("WS connected agent=%s total=%s", (client_info or {}).get("agent"), len(self.connection_metadata))

    def subscribe(self, websocket: WebSocket, channel: str) -> None:
        meta = self.connection_metadata.get(websocket)
        if meta is None:
            return
        self.channels[channel].add(websocket)
        meta["channels"].add(channel)

    def unsubscribe(self, websocket: WebSocket, channel: str) -> None:
        sockets = self.channels.get(channel)
        if sockets is not None:
            sockets.discard(websocket)
            if not sockets:
                del self.channels[channel]
        meta = self.connection_metadata.get(websocket)
        if meta is not None:
            meta["channels"].discard(channel)

    def disconnect(self, websocket: WebSocket):
        meta = self.connection_metadata.pop(websocket, None)
        if meta is None:
            return
        for channel in list(meta["channels"]):
            sockets = self.channels.get(channel)
            if sockets is not None:
                sockets.discard(websocket)
                if not sockets:
                    del self.channels[channel]
        logger.info("WS disconnected total=%s", len(self.connection_metadata))

    async def publish(self, channel: str, event: str, data: Dict[str, Any]) -> int:
        """Send `{event, data}` to every socket on `channel`; returns how many got it."""
        message = {"event": event, "channel": channel, "data": data}
        delivered = 0
        disconnected = set()
        for websocket in list(self.channels.get(channel, ())):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.info("WS send failed on %s, dropping socket: %s", channel, exc)
                disconnected.add(websocket)
        for ws in disconnected:
            self.disconnect(ws)
        return delivered

    async def broadcast(self, event: str, data: Dict[str, Any]) -> int:
        """Send `{event, data}` to every connected socket regardless of subscriptions."""
        message = {"event": event, "channel": None, "data": data}
        delivered = 0
        disconnected = set()
        for websocket in list(self.connection_metadata):
            try:
                await websocket.send_json(message)
                delivered += 1
            except Exception as exc:
                logger.info("WS broadcast failed, dropping socket: %s", exc)
                disconnected.add(websocket)
        for ws in disconnected:
            self.disconnect(ws)
        return delivered

    async def emit_to_conversation(self, phone: str, event: str, data: Dict[str, Any], *, unread: int = 1) -> None:
        """Publish to the thread channel and refresh the sidebar entry on the list channel."""
        await self.publish(conversation_channel(phone), event, data)
        await self.publish(
            LIST_CHANNEL,
            "conversation_updated",
            {
                "phone": phone,
                "lastMessage": data.get("message"),
                "timestamp": data.get("timestamp"),
                "contact_name": data.get("contact_name"),
                "unread": unread,
                "isNew": bool(data.get("isNew")),
                "sender": data.get("sender"),
            },
        )

    def active_count(self) -> int:
        return len(self.connection_metadata)

    def get_channels(self) -> List[str]:
        return list(self.channels.keys())
