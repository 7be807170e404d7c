"""Per-request / per-event values that end up on every log record."""
from __future__ import annotations

import uuid
from contextlib import contextmanager
from contextvars import ContextVar, Token
from typing import Iterator, Optional

# HTTP handlers set the request id and agent; background webhook processing runs
# in a copy of the scheduling request's context and adds the conversation phone.
_REQUEST_ID: ContextVar[Optional[str]] = ContextVar("inbox_request_id", default=None)
_AGENT_USERNAME: ContextVar[Optional[str]] = ContextVar("inbox_agent", default=None)
_CONVERSATION: ContextVar[Optional[str]] = ContextVar("inbox_conversation", default=None)


def _clean(value: Optional[str]) -> Optional[str]:
    return (value or "").strip() or None


def get_request_id() -> Optional[str]:
    return _REQUEST_ID.get()


def set_request_id(value: Optional[str] = None) -> tuple[str, Token[Optional[str]]]:
    """Adopt an incoming X-Request-Id or mint one."""
    rid = _clean(value) or uuid.uuid4().hex
    return rid, _REQUEST_ID.set(rid)


def reset_request_id(token: Token[Optional[str]]) -> None:
    _REQUEST_ID.reset(token)


def get_agent_username() -> Optional[str]:
    return _AGENT_USERNAME.get()


def set_agent_username(value: Optional[str]) -> Token[Optional[str]]:
    return _AGENT_USERNAME.set(_clean(value))


def reset_agent_username(token: Token[Optional[str]]) -> None:
    _AGENT_USERNAME.reset(token)


def get_conversation() -> Optional[str]:
    return _CONVERSATION.get()


@contextmanager
def conversation_context(phone: Optional[str]) -> Iterator[None]:
    tok = _CONVERSATION.set(_clean(phone))
    try:
        yield
    finally:
        _CONVERSATION.reset(tok)
