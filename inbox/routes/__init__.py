"""REST API routers (all built from a shared InboxRuntime)."""

from .auth import create_auth_router
from .conversations import create_conversations_router
from .dashboard import create_dashboard_router
from .knowledge import create_knowledge_router
from .messages import create_messages_router
from .quick_replies import create_quick_replies_router
from .settings import create_settings_router
from .tags import create_tags_router

__all__ = [
    "create_auth_router",
    "create_conversations_router",
    "create_dashboard_router",
    "create_knowledge_router",
    "create_messages_router",
    "create_quick_replies_router",
    "create_settings_router",
    "create_tags_router",
]
