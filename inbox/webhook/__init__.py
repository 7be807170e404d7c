"""Gateway webhook ingress + background processing."""

from .processor import MessageProcessor
from .router import create_webhook_router

__all__ = [
    "MessageProcessor",
    "create_webhook_router",
]
