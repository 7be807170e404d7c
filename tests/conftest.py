import asyncio
import os
import tempfile

import pytest

# Tests focus on business logic, not authentication; keep auth disabled here.
os.environ.setdefault("DISABLE_AUTH", "1")
# Ensure tests always use SQLite (some environments may export DATABASE_URL).
os.environ.pop("DATABASE_URL", None)
os.environ.setdefault("REQUIRE_POSTGRES", "0")
# Keep import-time side effects (default SQLite file, uploads mount) out of the repo.
_SCRATCH = tempfile.mkdtemp(prefix="inbox-tests-")
os.environ.setdefault("DB_PATH", os.path.join(_SCRATCH, "default.sqlite"))
os.environ.setdefault("UPLOAD_DIR", os.path.join(_SCRATCH, "uploads"))
os.environ.setdefault("PUBLIC_URL", "https://inbox.example.com")

from inbox import main
from inbox.automation import AutomationReply
from inbox.bulk import BulkSendTracker
from inbox.dedup import RecentSendCache
from inbox.gateway import GatewayResult
from inbox.realtime import ConnectionManager


class FakeGateway:
    """Records outbound calls; every send succeeds unless `fail_media`/`fail_text` is set."""

    configured = True

    def __init__(self):
        self.texts = []
        self.media = []
        self.read_marks = []
        self.group_subject = None
        self.base64 = None
        self.fail_media = False
        self.fail_text = False

    async def send_text(self, phone, text):
        self.texts.append((phone, text))
        return GatewayResult(success=not self.fail_text, strategy="fake")

    async def send_media(self, phone, media_url, media_type, caption=None, file_name=None):
        self.media.append((phone, media_url, media_type, caption))
        return GatewayResult(success=not self.fail_media, strategy="fake")

    async def fetch_group_info(self, group_jid):
        return {"id": group_jid, "subject": self.group_subject} if self.group_subject else None

    async def fetch_base64(self, message):
        return self.base64

    async def mark_as_read(self, phone):
        self.read_marks.append((phone, True))
        return {}

    async def mark_as_unread(self, phone):
        self.read_marks.append((phone, False))
        return {}


class FakeAutomation:
    configured = True

    def __init__(self):
        self.reply = None
        self.ai_calls = []
        self.state_changes = []
        self.sent = []

    async def trigger_ai(self, *, phone, text, contact_name=None, media_type=None, media_url=None):
        self.ai_calls.append({"phone": phone, "text": text, "media_type": media_type, "media_url": media_url})
        return self.reply

    async def notify_state_change(self, phone, state):
        self.state_changes.append((phone, state))

    async def send_message(self, **kwargs):
        self.sent.append(kwargs)
        return True


class RecordingSocket:
    """Stands in for a WebSocket inside ConnectionManager."""

    def __init__(self):
        self.messages = []

    async def accept(self):
        pass

    async def send_json(self, message):
        self.messages.append(message)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m["event"] == name]


@pytest.fixture
def db_manager(tmp_path, monkeypatch):
    db_path = tmp_path / "db.sqlite"
    dm = main.DatabaseManager(str(db_path))
    asyncio.run(dm.init_db())
    monkeypatch.setattr(main.runtime, "db_manager", dm)
    return dm


@pytest.fixture
def gateway(monkeypatch):
    fake = FakeGateway()
    monkeypatch.setattr(main.runtime, "gateway", fake)
    return fake


@pytest.fixture
def automation(monkeypatch):
    fake = FakeAutomation()
    fake.reply = AutomationReply(text="Hola, ¿en qué te ayudo?")
    monkeypatch.setattr(main.runtime, "automation", fake)
    return fake


@pytest.fixture
def upload_dir(tmp_path, monkeypatch):
    path = tmp_path / "uploads"
    path.mkdir()
    monkeypatch.setattr(main.runtime, "upload_dir", path)
    return path


@pytest.fixture
def runtime(db_manager, gateway, automation, upload_dir, monkeypatch):
    monkeypatch.setattr(main.runtime, "recent_sends", RecentSendCache(ttl=30))
    monkeypatch.setattr(main.runtime, "connection_manager", ConnectionManager())
    monkeypatch.setattr(main.runtime, "bulk_sends", BulkSendTracker())
    return main.runtime


@pytest.fixture
def subscribe(runtime):
    """subscribe(*channels) -> RecordingSocket registered on the runtime's manager."""

    def _subscribe(*channels):
        sock = RecordingSocket()
        manager = runtime.connection_manager
        asyncio.run(manager.connect(sock, client_info={"agent": "test"}))
        for channel in channels:
            manager.subscribe(sock, channel)
        return sock

    return _subscribe


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    with TestClient(main.app) as c:
        yield c


def upsert_payload(remote_jid, text=None, *, msg_id="MSG1", from_me=False, push_name="Ana", message=None, **extra):
    """A gateway `messages.upsert` webhook body."""
    data = {
        "key": {"remoteJid": remote_jid, "fromMe": from_me, "id": msg_id},
        "pushName": push_name,
        "message": message if message is not None else {"conversation": text},
    }
    data.update(extra)
    return {"event": "messages.upsert", "instance": "main", "data": data}


@pytest.fixture
def webhook_payload():
    return upsert_payload
