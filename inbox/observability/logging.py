from __future__ import annotations

import logging
from typing import Callable, Dict, Optional

Getter = Callable[[], Optional[str]]

LOG_FORMAT = (
    "%(asctime)s %(levelname)s %(name)s "
    "request_id=%(request_id)s agent=%(agent_username)s conversation=%(conversation)s "
    "%(message)s"
)


class _ContextFilter(logging.Filter):
    """Copy context values onto each record (None when unset or the getter fails)."""

    def __init__(self, getters: Dict[str, Optional[Getter]]) -> None:
        super().__init__()
        self._getters = getters

    def filter(self, record: logging.LogRecord) -> bool:
        for field, getter in self._getters.items():
            value = None
            if getter is not None:
                try:
                    value = getter()
                except Exception:
                    value = None
            setattr(record, field, value)
        return True


def configure_logging(
    *,
    level: str = "INFO",
    request_id_getter: Optional[Getter] = None,
    agent_getter: Optional[Getter] = None,
    conversation_getter: Optional[Getter] = None,
) -> None:
    """Configure root logging so every line carries request id, agent and conversation."""
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)

    # uvicorn and pytest install their own handlers; only add one when nothing is there.
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setLevel(lvl)
        handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT))
        root.addHandler(handler)

    ctx_filter = _ContextFilter(
        {
            "request_id": request_id_getter,
            "agent_username": agent_getter,
            "conversation": conversation_getter,
        }
    )
    # Logger-level filters skip records propagated from child loggers.
    for handler in root.handlers:
        if not any(isinstance(f, _ContextFilter) for f in handler.filters):
            handler.addFilter(ctx_filter)
