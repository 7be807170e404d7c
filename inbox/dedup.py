from __future__ import annotations

import time
from typing import Callable, Dict, Optional


def message_fingerprint(phone: str, text: Optional[str], media_type: Optional[str] = None) -> str:
    """Identify an outbound message by what it looks like on the wire.

    The gateway echoes our own sends back through the webhook without any
    correlation id, so phone + media kind + trimmed text is all there is.
    """
    return f"{phone}|{media_type or ''}|{(text or '').strip()}"


class RecentSendCache:
    """Fingerprints of messages this process just sent, each kept for `ttl` seconds."""

    def __init__(self, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = float(ttl)
        self._clock = clock
        self._expires: Dict[str, float] = {}

    def _sweep(self, now: float) -> None:
        expired = [k for k, exp in self._expires.items() if exp <= now]
        for k in expired:
            del self._expires[k]

    def add(self, fingerprint: str) -> None:
        now = self._clock()
        self._sweep(now)
        self._expires[fingerprint] = now + self.ttl

    def __contains__(self, fingerprint: object) -> bool:
        exp = self._expires.get(fingerprint)  # type: ignore[arg-type]
        if exp is None:
            return False
        if exp <= self._clock():
            del self._expires[fingerprint]  # type: ignore[arg-type]
            return False
        return True

    def __len__(self) -> int:
        self._sweep(self._clock())
        return len(self._expires)

    def clear(self) -> None:
        self._expires.clear()
