from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .bulk import BulkSendTracker
from .dedup import RecentSendCache
from .db import DatabaseManager
from .realtime import ConnectionManager


@dataclass
class InboxRuntime:
    """Shared dependencies handed to routers and the webhook processor.

    Routers read attributes at call time, so swapping e.g. `db_manager` on the
    instance (tests, reconfiguration) takes effect immediately.
    """

    db_manager: DatabaseManager
    connection_manager: ConnectionManager
    gateway: Any
    automation: Any
    recent_sends: RecentSendCache
    public_url: str
    upload_dir: Path
    # Bound after construction (the processor itself depends on the runtime).
    processor: Any = None
    bulk_sends: BulkSendTracker = field(default_factory=BulkSendTracker)
