from __future__ import annotations

import asyncio
import json
import logging
import re
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

import aiosqlite
import asyncpg

from . import config

logger = logging.getLogger(__name__)

CONVERSATION_STATE_AI = "ai_active"
CONVERSATION_STATE_AGENT = "agent_active"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def _rowcount(status: Any) -> int:
    """Parse asyncpg command status strings like 'UPDATE 3' / 'INSERT 0 1'."""
    try:
        return int(str(status or "").split()[-1])
    except (ValueError, IndexError):
        return 0


def _normalize_pg_url(raw: Optional[str]) -> Optional[str]:
    # Some platforms provide SQLAlchemy-style URLs which asyncpg does NOT accept.
    url = (raw or "").strip() or None
    if not url:
        return None
    for prefix in ("postgresql+asyncpg://", "postgres+asyncpg://", "postgresql+psycopg://", "postgresql+psycopg2://"):
        if url.startswith(prefix):
            url = url.replace(prefix, "postgresql://", 1)
    scheme = (urlparse(url).scheme or "").lower()
    if scheme not in ("postgresql", "postgres"):
        return None
    return url


SCHEMA = """
    CREATE TABLE IF NOT EXISTS conversations (
        id                     INTEGER PRIMARY KEY AUTOINCREMENT,
        phone                  TEXT UNIQUE NOT NULL,
        contact_name           TEXT,
        last_message           TEXT,
        last_message_timestamp TEXT,
        unread_count           INTEGER DEFAULT 0,
        status                 TEXT DEFAULT 'active',          -- active | archived
        ai_enabled             INTEGER DEFAULT 1,              -- bool 0/1
        conversation_state     TEXT DEFAULT 'ai_active',       -- ai_active | agent_active
        agent_id               TEXT,
        taken_by_agent_at      TEXT,
        created_at             TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at             TEXT DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_conversations_last_ts
        ON conversations (last_message_timestamp);

    CREATE TABLE IF NOT EXISTS messages (
        id           INTEGER PRIMARY KEY AUTOINCREMENT,
        phone        TEXT NOT NULL,
        sender       TEXT NOT NULL,                            -- customer | agent | ai | system
        text         TEXT,
        whatsapp_id  TEXT UNIQUE,
        media_type   TEXT,
        media_url    TEXT,
        status       TEXT DEFAULT 'delivered',
        agent_id     TEXT,
        agent_name   TEXT,
        timestamp    TEXT DEFAULT CURRENT_TIMESTAMP
    );
    CREATE INDEX IF NOT EXISTS idx_messages_phone_ts
        ON messages (phone, timestamp);

    CREATE TABLE IF NOT EXISTS agents (
        id            INTEGER PRIMARY KEY AUTOINCREMENT,
        username      TEXT UNIQUE NOT NULL,
        password_hash TEXT NOT NULL,
        name          TEXT,
        email         TEXT,
        is_active     INTEGER DEFAULT 1,
        last_login    TEXT,
        created_at    TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS tags (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        name       TEXT UNIQUE NOT NULL,
        color      TEXT DEFAULT '#808080',
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS conversation_tags (
        phone      TEXT NOT NULL,
        tag_id     INTEGER NOT NULL REFERENCES tags(id),
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        PRIMARY KEY (phone, tag_id)
    );

    CREATE TABLE IF NOT EXISTS quick_replies (
        id         INTEGER PRIMARY KEY AUTOINCREMENT,
        shortcut   TEXT UNIQUE NOT NULL,
        content    TEXT,
        media_url  TEXT,
        media_type TEXT,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS ai_knowledge (
        id         TEXT PRIMARY KEY,
        type       TEXT NOT NULL,                              -- image | video | audio | text
        title      TEXT,
        content    TEXT,
        media_url  TEXT,
        filename   TEXT,
        keywords   TEXT,                                       -- JSON array
        embedding  TEXT,                                       -- opaque, written by the automation workflow
        is_active  INTEGER DEFAULT 1,
        created_at TEXT DEFAULT CURRENT_TIMESTAMP
    );

    CREATE TABLE IF NOT EXISTS settings (
        key        TEXT PRIMARY KEY,
        value      TEXT,
        updated_at TEXT DEFAULT CURRENT_TIMESTAMP
    )
"""


def _strip_sql_comments(sql: str) -> str:
    out_lines: List[str] = []
    for line in (sql or "").splitlines():
        if "--" in line:
            line = line.split("--", 1)[0]
        if line.strip():
            out_lines.append(line)
    return "\n".join(out_lines).strip()


class DatabaseManager:
    """Database helper supporting SQLite and optional PostgreSQL."""

    def __init__(self, db_path: str | None = None, db_url: str | None = None):
        self.db_url = _normalize_pg_url(db_url if db_url is not None else config.DATABASE_URL)
        self.db_path = db_path or config.DB_PATH
        self.use_postgres = bool(self.db_url)
        if not self.use_postgres:
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._pool: Optional[asyncpg.pool.Pool] = None
        # Pool creation can be slow/fail on cold start. Protect with a lock and add backoff
        # so every request doesn't stampede the DB.
        self._pool_lock = asyncio.Lock()
        self._pool_failed_until: float = 0.0
        self._pool_last_error: Optional[BaseException] = None

    async def _get_pool(self):
        if self._pool:
            return self._pool
        if not self.db_url:
            return None

        now = time.time()
        if self._pool_failed_until and now < self._pool_failed_until:
            remaining = max(0.0, self._pool_failed_until - now)
            last = type(self._pool_last_error).__name__ if self._pool_last_error else "unknown"
            raise RuntimeError(f"Postgres pool unavailable (retry in ~{remaining:.0f}s; last_error={last})")

        async with self._pool_lock:
            if self._pool:
                return self._pool
            try:
                self._pool = await asyncpg.create_pool(
                    self.db_url,
                    min_size=config.PG_POOL_MIN,
                    max_size=config.PG_POOL_MAX,
                    timeout=float(config.PG_CONNECT_TIMEOUT_SECONDS),
                    # PgBouncer in transaction pooling mode does not support prepared statements
                    statement_cache_size=0,
                    max_inactive_connection_lifetime=60.0,
                )
                self._pool_last_error = None
                self._pool_failed_until = 0.0
            except Exception as exc:
                self._pool_last_error = exc
                self._pool_failed_until = time.time() + float(config.PG_POOL_RETRY_BACKOFF_SECONDS)
                p = urlparse(self.db_url or "")
                logger.error(
                    "Postgres pool creation failed (will back off %ss). host=%s db=%s err=%s",
                    float(config.PG_POOL_RETRY_BACKOFF_SECONDS),
                    p.hostname,
                    (p.path or "").lstrip("/") or None,
                    exc,
                )
                if config.REQUIRE_POSTGRES:
                    raise
                logger.warning("Falling back to SQLite at %s", self.db_path)
                self.use_postgres = False
                self._pool = None
        return self._pool

    def _convert(self, query: str) -> str:
        """Convert SQLite style placeholders to asyncpg numbered ones."""
        if not self.use_postgres:
            return query

        idx = 1

        def repl(match):
            nonlocal idx
            rep = f"${idx}"
            idx += 1
            return rep

        # Named placeholders must start with a letter so time literals like "00:00" are left alone.
        return re.sub(r"\?|:[A-Za-z_]\w*", repl, query)

    # ── basic connection helper ──
    @asynccontextmanager
    async def _conn(self):
        if self.use_postgres:
            pool = await self._get_pool()
            if pool:
                async with pool.acquire() as conn:
                    yield conn
                return
            self.use_postgres = False
        timeout_s = max(0.1, float(config.SQLITE_BUSY_TIMEOUT_MS) / 1000.0)
        async with aiosqlite.connect(self.db_path, timeout=timeout_s) as db:
            db.row_factory = aiosqlite.Row
            await db.execute(f"PRAGMA busy_timeout = {int(config.SQLITE_BUSY_TIMEOUT_MS)}")
            yield db

    async def _fetchone(self, query: str, params: Sequence[Any] = ()) -> Optional[dict]:
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                row = await db.fetchrow(q, *params)
            else:
                cur = await db.execute(q, tuple(params))
                row = await cur.fetchone()
            return dict(row) if row else None

    async def _fetchall(self, query: str, params: Sequence[Any] = ()) -> List[dict]:
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                rows = await db.fetch(q, *params)
            else:
                cur = await db.execute(q, tuple(params))
                rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def _execute(self, query: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and return the number of affected rows."""
        async with self._conn() as db:
            q = self._convert(query)
            if self.use_postgres:
                return _rowcount(await db.execute(q, *params))
            cur = await db.execute(q, tuple(params))
            await db.commit()
            return cur.rowcount

    async def _insert(self, query: str, params: Sequence[Any]) -> Optional[int]:
        """Run an INSERT and return the new row id (None when a conflict skipped it)."""
        async with self._conn() as db:
            if self.use_postgres:
                row = await db.fetchrow(self._convert(query.rstrip() + " RETURNING id"), *params)
                return int(row["id"]) if row else None
            cur = await db.execute(query, tuple(params))
            await db.commit()
            return cur.lastrowid if cur.rowcount else None

    async def ping(self) -> bool:
        """Lightweight DB connectivity check (used by /health)."""
        try:
            row = await self._fetchone("SELECT 1 AS ok")
            return bool(row and row.get("ok"))
        except Exception:
            return False

    # ── schema ──
    async def init_db(self):
        async with self._conn() as db:
            if self.use_postgres:
                script = SCHEMA.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "SERIAL PRIMARY KEY")
                statements = [s.strip() for s in _strip_sql_comments(script).split(";") if s.strip()]
                for stmt in statements:
                    await db.execute(stmt)
            else:
                await db.executescript(SCHEMA)
                await db.commit()

    # ── Conversations ─────────────────────────────────────────────
    @staticmethod
    def _conversation_out(row: Optional[dict]) -> Optional[dict]:
        if not row:
            return None
        row["ai_enabled"] = bool(row.get("ai_enabled"))
        row["unread_count"] = int(row.get("unread_count") or 0)
        return row

    async def get_conversation(self, phone: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM conversations WHERE phone = ?", (phone,))
        return self._conversation_out(row)

    async def upsert_conversation(self, phone: str, contact_name: Optional[str] = None) -> dict:
        """Insert the conversation if absent; on conflict update only non-null fields.

        New rows take their AI flag (and matching state) from the `default_ai_enabled`
        setting. Existing rows keep their AI flag, state and, when `contact_name` is
        None, their name.
        """
        ai_enabled = as_bool(await self.get_setting("default_ai_enabled", True))
        state = CONVERSATION_STATE_AI if ai_enabled else CONVERSATION_STATE_AGENT
        now = utc_now_iso()
        await self._execute(
            """
            INSERT INTO conversations (phone, contact_name, ai_enabled, conversation_state, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, 'active', ?, ?)
            ON CONFLICT(phone) DO UPDATE SET
                contact_name=COALESCE(EXCLUDED.contact_name, conversations.contact_name),
                updated_at=EXCLUDED.updated_at
            """,
            (phone, contact_name, int(ai_enabled), state, now, now),
        )
        conv = await self.get_conversation(phone)
        assert conv is not None
        return conv

    async def get_or_create_conversation(self, phone: str, contact_name: Optional[str] = None) -> Tuple[dict, bool]:
        existing = await self.get_conversation(phone)
        if existing:
            return existing, False
        return await self.upsert_conversation(phone, contact_name), True

    async def list_conversations(
        self,
        *,
        page: int = 1,
        limit: int = 50,
        status: Optional[str] = None,
        search: Optional[str] = None,
    ) -> Tuple[List[dict], int]:
        where: List[str] = []
        params: List[Any] = []
        if status:
            where.append("status = ?")
            params.append(status)
        if search:
            where.append("(LOWER(contact_name) LIKE ? OR phone LIKE ?)")
            params.extend([f"%{search.lower()}%", f"%{search}%"])
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""

        total_row = await self._fetchone(f"SELECT COUNT(*) AS total FROM conversations {where_sql}", params)
        total = int((total_row or {}).get("total") or 0)
        rows = await self._fetchall(
            f"""
            SELECT * FROM conversations {where_sql}
            ORDER BY (last_message_timestamp IS NULL), last_message_timestamp DESC, id DESC
            LIMIT ? OFFSET ?
            """,
            [*params, int(limit), int(max(0, page - 1) * limit)],
        )
        return [self._conversation_out(r) for r in rows], total

    async def conversation_stats(self) -> dict:
        row = await self._fetchone(
            """
            SELECT
                COUNT(*) AS total,
                SUM(CASE WHEN status = 'active' THEN 1 ELSE 0 END) AS active,
                SUM(CASE WHEN status = 'archived' THEN 1 ELSE 0 END) AS archived,
                SUM(CASE WHEN unread_count > 0 THEN 1 ELSE 0 END) AS unread,
                SUM(CASE WHEN conversation_state = 'ai_active' THEN 1 ELSE 0 END) AS ai_active,
                SUM(CASE WHEN conversation_state = 'agent_active' THEN 1 ELSE 0 END) AS agent_active
            FROM conversations
            """
        )
        return {k: int(v or 0) for k, v in (row or {}).items()}

    async def mark_read(self, phone: str) -> bool:
        n = await self._execute(
            "UPDATE conversations SET unread_count = 0, updated_at = ? WHERE phone = ?",
            (utc_now_iso(), phone),
        )
        return n > 0

    async def mark_unread(self, phone: str) -> bool:
        n = await self._execute(
            """
            UPDATE conversations
            SET unread_count = CASE WHEN unread_count > 0 THEN unread_count ELSE 1 END, updated_at = ?
            WHERE phone = ?
            """,
            (utc_now_iso(), phone),
        )
        return n > 0

    async def increment_unread(self, phone: str) -> None:
        await self._execute(
            "UPDATE conversations SET unread_count = COALESCE(unread_count, 0) + 1, updated_at = ? WHERE phone = ?",
            (utc_now_iso(), phone),
        )

    async def update_last_message(self, phone: str, text: Optional[str], timestamp: Optional[str] = None) -> None:
        ts = timestamp or utc_now_iso()
        await self._execute(
            """
            UPDATE conversations
            SET last_message = ?, last_message_timestamp = ?, updated_at = ?
            WHERE phone = ?
            """,
            (text, ts, ts, phone),
        )

    async def set_ai_state(self, phone: str, enabled: bool) -> Optional[dict]:
        """Enable (ai_active) or disable (agent_active) automation for a conversation."""
        state = CONVERSATION_STATE_AI if enabled else CONVERSATION_STATE_AGENT
        n = await self._execute(
            "UPDATE conversations SET ai_enabled = ?, conversation_state = ?, updated_at = ? WHERE phone = ?",
            (int(bool(enabled)), state, utc_now_iso(), phone),
        )
        if not n:
            return None
        return await self.get_conversation(phone)

    async def set_all_ai(self, enabled: bool) -> int:
        state = CONVERSATION_STATE_AI if enabled else CONVERSATION_STATE_AGENT
        return await self._execute(
            "UPDATE conversations SET ai_enabled = ?, conversation_state = ?, updated_at = ?",
            (int(bool(enabled)), state, utc_now_iso()),
        )

    async def take_by_agent(self, phone: str, agent_id: Optional[str]) -> Optional[dict]:
        now = utc_now_iso()
        n = await self._execute(
            """
            UPDATE conversations
            SET conversation_state = ?, agent_id = ?, taken_by_agent_at = ?, ai_enabled = 0, updated_at = ?
            WHERE phone = ?
            """,
            (CONVERSATION_STATE_AGENT, agent_id, now, now, phone),
        )
        if not n:
            return None
        return await self.get_conversation(phone)

    async def close_conversation(self, phone: str) -> Optional[dict]:
        n = await self._execute(
            "UPDATE conversations SET status = 'archived', updated_at = ? WHERE phone = ?",
            (utc_now_iso(), phone),
        )
        if not n:
            return None
        return await self.get_conversation(phone)

    async def update_contact_name(self, phone: str, name: str) -> Optional[dict]:
        n = await self._execute(
            "UPDATE conversations SET contact_name = ?, updated_at = ? WHERE phone = ?",
            (name, utc_now_iso(), phone),
        )
        if not n:
            return None
        return await self.get_conversation(phone)

    # ── Messages ──────────────────────────────────────────────────
    async def message_exists(self, whatsapp_id: Optional[str]) -> bool:
        if not whatsapp_id:
            return False
        row = await self._fetchone("SELECT 1 AS hit FROM messages WHERE whatsapp_id = ?", (whatsapp_id,))
        return bool(row)

    async def create_message(
        self,
        *,
        phone: str,
        sender: str,
        text: Optional[str] = None,
        whatsapp_id: Optional[str] = None,
        media_type: Optional[str] = None,
        media_url: Optional[str] = None,
        status: str = "delivered",
        agent_id: Optional[str] = None,
        agent_name: Optional[str] = None,
        timestamp: Optional[str] = None,
    ) -> Optional[dict]:
        """Insert a message. Returns None when `whatsapp_id` already exists."""
        new_id = await self._insert(
            """
            INSERT INTO messages (phone, sender, text, whatsapp_id, media_type, media_url, status, agent_id, agent_name, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(whatsapp_id) DO NOTHING
            """,
            (
                phone,
                sender,
                text,
                whatsapp_id,
                media_type,
                media_url,
                status,
                agent_id,
                agent_name,
                timestamp or utc_now_iso(),
            ),
        )
        if new_id is None:
            return None
        return await self._fetchone("SELECT * FROM messages WHERE id = ?", (new_id,))

    async def get_messages(
        self,
        phone: str,
        *,
        limit: int = 50,
        before: Optional[str] = None,
        after: Optional[str] = None,
    ) -> List[dict]:
        """Return messages in chronological order.

        `before` pages backwards from a timestamp, `after` fetches anything newer.
        Without a cursor the latest `limit` messages are returned.
        """
        if after:
            return await self._fetchall(
                "SELECT * FROM messages WHERE phone = ? AND timestamp > ? ORDER BY timestamp ASC, id ASC LIMIT ?",
                (phone, after, int(limit)),
            )
        if before:
            rows = await self._fetchall(
                "SELECT * FROM messages WHERE phone = ? AND timestamp < ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (phone, before, int(limit)),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM messages WHERE phone = ? ORDER BY timestamp DESC, id DESC LIMIT ?",
                (phone, int(limit)),
            )
        rows.reverse()
        return rows

    async def count_messages(self, phone: str) -> int:
        row = await self._fetchone("SELECT COUNT(*) AS total FROM messages WHERE phone = ?", (phone,))
        return int((row or {}).get("total") or 0)

    async def update_message_status(self, message_id: int, status: str) -> bool:
        n = await self._execute("UPDATE messages SET status = ? WHERE id = ?", (status, int(message_id)))
        return n > 0

    # ── Tags ──────────────────────────────────────────────────────
    async def list_tags(self) -> List[dict]:
        return await self._fetchall("SELECT * FROM tags ORDER BY name ASC")

    async def get_tag(self, tag_id: int) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM tags WHERE id = ?", (int(tag_id),))

    async def create_tag(self, name: str, color: Optional[str] = None) -> dict:
        await self._execute(
            """
            INSERT INTO tags (name, color, created_at) VALUES (?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET color=EXCLUDED.color
            """,
            (name, color or "#808080", utc_now_iso()),
        )
        tag = await self._fetchone("SELECT * FROM tags WHERE name = ?", (name,))
        assert tag is not None
        return tag

    async def delete_tag(self, tag_id: int) -> bool:
        await self._execute("DELETE FROM conversation_tags WHERE tag_id = ?", (int(tag_id),))
        n = await self._execute("DELETE FROM tags WHERE id = ?", (int(tag_id),))
        return n > 0

    async def get_conversation_tags(self, phone: str) -> List[dict]:
        return await self._fetchall(
            """
            SELECT t.* FROM tags t
            JOIN conversation_tags ct ON ct.tag_id = t.id
            WHERE ct.phone = ?
            ORDER BY t.name ASC
            """,
            (phone,),
        )

    async def assign_tag(self, phone: str, tag_id: int) -> bool:
        n = await self._execute(
            """
            INSERT INTO conversation_tags (phone, tag_id, created_at) VALUES (?, ?, ?)
            ON CONFLICT(phone, tag_id) DO NOTHING
            """,
            (phone, int(tag_id), utc_now_iso()),
        )
        return n > 0

    async def remove_tag(self, phone: str, tag_id: int) -> bool:
        n = await self._execute(
            "DELETE FROM conversation_tags WHERE phone = ? AND tag_id = ?",
            (phone, int(tag_id)),
        )
        return n > 0

    # ── Settings (key/value JSON) ──────────────────────────────────
    async def get_setting(self, key: str, default: Any = None) -> Any:
        row = await self._fetchone("SELECT value FROM settings WHERE key = ?", (key,))
        if not row or row.get("value") is None:
            return default
        try:
            return json.loads(row["value"])
        except (TypeError, ValueError):
            return row["value"]

    async def set_setting(self, key: str, value: Any) -> None:
        # value is JSON-serializable
        await self._execute(
            """
            INSERT INTO settings (key, value, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value=EXCLUDED.value, updated_at=EXCLUDED.updated_at
            """,
            (key, json.dumps(value), utc_now_iso()),
        )

    async def get_all_settings(self) -> Dict[str, Any]:
        rows = await self._fetchall("SELECT key, value FROM settings ORDER BY key ASC")
        out: Dict[str, Any] = {}
        for r in rows:
            try:
                out[r["key"]] = json.loads(r["value"]) if r.get("value") is not None else None
            except (TypeError, ValueError):
                out[r["key"]] = r["value"]
        return out

    # ── Quick replies ─────────────────────────────────────────────
    async def list_quick_replies(self) -> List[dict]:
        return await self._fetchall("SELECT * FROM quick_replies ORDER BY created_at DESC, id DESC")

    async def get_quick_reply(self, reply_id: int) -> Optional[dict]:
        return await self._fetchone("SELECT * FROM quick_replies WHERE id = ?", (int(reply_id),))

    async def create_quick_reply(
        self,
        shortcut: str,
        content: Optional[str],
        media_url: Optional[str] = None,
        media_type: Optional[str] = None,
    ) -> Optional[dict]:
        """Create a quick reply. Returns None when the shortcut is taken."""
        now = utc_now_iso()
        new_id = await self._insert(
            """
            INSERT INTO quick_replies (shortcut, content, media_url, media_type, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(shortcut) DO NOTHING
            """,
            (shortcut, content, media_url, media_type, now, now),
        )
        if new_id is None:
            return None
        return await self.get_quick_reply(new_id)

    async def update_quick_reply(self, reply_id: int, **fields: Any) -> Optional[dict]:
        n = await self._execute(
            """
            UPDATE quick_replies SET
                shortcut=COALESCE(?, shortcut),
                content=COALESCE(?, content),
                media_url=COALESCE(?, media_url),
                media_type=COALESCE(?, media_type),
                updated_at=?
            WHERE id = ?
            """,
            (
                fields.get("shortcut"),
                fields.get("content"),
                fields.get("media_url"),
                fields.get("media_type"),
                utc_now_iso(),
                int(reply_id),
            ),
        )
        if not n:
            return None
        return await self.get_quick_reply(reply_id)

    async def delete_quick_reply(self, reply_id: int) -> bool:
        return await self._execute("DELETE FROM quick_replies WHERE id = ?", (int(reply_id),)) > 0

    # ── AI knowledge ──────────────────────────────────────────────
    @staticmethod
    def _knowledge_out(row: Optional[dict]) -> Optional[dict]:
        if not row:
            return None
        try:
            row["keywords"] = json.loads(row.get("keywords") or "[]")
        except (TypeError, ValueError):
            row["keywords"] = []
        row["is_active"] = bool(row.get("is_active"))
        return row

    async def get_knowledge(self, resource_id: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM ai_knowledge WHERE id = ?", (str(resource_id),))
        return self._knowledge_out(row)

    async def list_knowledge(self, *, type: Optional[str] = None, active: Optional[bool] = None) -> List[dict]:
        where: List[str] = []
        params: List[Any] = []
        if type:
            where.append("type = ?")
            params.append(type)
        if active is not None:
            where.append("is_active = ?")
            params.append(int(bool(active)))
        where_sql = f"WHERE {' AND '.join(where)}" if where else ""
        rows = await self._fetchall(f"SELECT * FROM ai_knowledge {where_sql} ORDER BY created_at DESC", params)
        return [self._knowledge_out(r) for r in rows]

    async def create_knowledge(
        self,
        *,
        type: str,
        title: Optional[str] = None,
        content: Optional[str] = None,
        media_url: Optional[str] = None,
        filename: Optional[str] = None,
        keywords: Iterable[str] = (),
    ) -> dict:
        resource_id = str(uuid.uuid4())
        await self._execute(
            """
            INSERT INTO ai_knowledge (id, type, title, content, media_url, filename, keywords, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?)
            """,
            (resource_id, type, title, content, media_url, filename, json.dumps(list(keywords)), utc_now_iso()),
        )
        created = await self.get_knowledge(resource_id)
        assert created is not None
        return created

    async def delete_knowledge(self, resource_id: str) -> Optional[dict]:
        """Delete a resource and return the removed row (None if unknown)."""
        existing = await self.get_knowledge(resource_id)
        if not existing:
            return None
        await self._execute("DELETE FROM ai_knowledge WHERE id = ?", (str(resource_id),))
        return existing

    # ── Agents ────────────────────────────────────────────────────
    @staticmethod
    def _agent_out(row: Optional[dict]) -> Optional[dict]:
        if not row:
            return None
        row["is_active"] = bool(row.get("is_active"))
        return row

    async def get_agent(self, username: str) -> Optional[dict]:
        row = await self._fetchone("SELECT * FROM agents WHERE username = ?", (username,))
        return self._agent_out(row)

    async def create_agent(
        self,
        username: str,
        password_hash: str,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Optional[dict]:
        """Create an agent. Returns None when the username is taken."""
        new_id = await self._insert(
            """
            INSERT INTO agents (username, password_hash, name, email, is_active, created_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT(username) DO NOTHING
            """,
            (username, password_hash, name or username, email, utc_now_iso()),
        )
        if new_id is None:
            return None
        return await self.get_agent(username)

    async def list_agents(self) -> List[dict]:
        rows = await self._fetchall(
            "SELECT id, username, name, email, is_active, last_login, created_at FROM agents ORDER BY name ASC"
        )
        return [self._agent_out(r) for r in rows]

    async def touch_last_login(self, username: str) -> None:
        await self._execute("UPDATE agents SET last_login = ? WHERE username = ?", (utc_now_iso(), username))

    # ── Dashboard ─────────────────────────────────────────────────
    async def dashboard_stats(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
        """Message/conversation counters for a day range (YYYY-MM-DD, inclusive).

        Defaults to today (UTC) when no range is given.
        """
        start = (start_date or utc_now_iso()[:10])[:10]
        end = (end_date or start)[:10]

        def _range(col: str) -> str:
            return f"substr({col}, 1, 10) >= ? AND substr({col}, 1, 10) <= ?"

        received = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM messages WHERE sender = 'customer' AND {_range('timestamp')}",
            (start, end),
        )
        sent = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM messages WHERE sender = 'agent' AND {_range('timestamp')}",
            (start, end),
        )
        ai_sent = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM messages WHERE sender = 'ai' AND {_range('timestamp')}",
            (start, end),
        )
        unanswered = await self._fetchone(
            f"""
            SELECT COUNT(*) AS n FROM conversations
            WHERE unread_count > 0 AND status = 'active' AND {_range('last_message_timestamp')}
            """,
            (start, end),
        )
        new_conversations = await self._fetchone(
            f"SELECT COUNT(*) AS n FROM conversations WHERE {_range('created_at')}",
            (start, end),
        )
        per_agent_rows = await self._fetchall(
            f"""
            SELECT COALESCE(agent_name, 'Número Sede') AS agent_name, COUNT(*) AS n
            FROM messages
            WHERE sender = 'agent' AND {_range('timestamp')}
            GROUP BY COALESCE(agent_name, 'Número Sede')
            """,
            (start, end),
        )
        per_agent: Dict[str, int] = {}
        for a in await self.list_agents():
            if a.get("is_active"):
                per_agent[str(a.get("name") or a.get("username"))] = 0
        for r in per_agent_rows:
            per_agent[str(r["agent_name"])] = int(r["n"] or 0)

        return {
            "range": {"start": start, "end": end},
            "received": int((received or {}).get("n") or 0),
            "sent": int((sent or {}).get("n") or 0),
            "ai_sent": int((ai_sent or {}).get("n") or 0),
            "unanswered": int((unanswered or {}).get("n") or 0),
            "new_conversations": int((new_conversations or {}).get("n") or 0),
            "agents": [
                {"agent_name": name, "count": count}
                for name, count in sorted(per_agent.items(), key=lambda kv: kv[1], reverse=True)
            ],
        }

    async def dashboard_chart(self, start_date: Optional[str] = None, end_date: Optional[str] = None) -> dict:
        """Received/sent/new-conversation counts bucketed by hour (ranges up to 2 days) or day."""
        start = (start_date or utc_now_iso()[:10])[:10]
        end = (end_date or start)[:10]
        try:
            span_days = (datetime.fromisoformat(end) - datetime.fromisoformat(start)).days
        except ValueError:
            span_days = 0
        period = "day" if span_days > 2 else "hour"
        width = 10 if period == "day" else 13

        message_rows = await self._fetchall(
            f"""
            SELECT substr(timestamp, 1, {width}) AS slot,
                   SUM(CASE WHEN sender = 'customer' THEN 1 ELSE 0 END) AS received,
                   SUM(CASE WHEN sender = 'agent' THEN 1 ELSE 0 END) AS sent,
                   SUM(CASE WHEN sender = 'ai' THEN 1 ELSE 0 END) AS ai_sent
            FROM messages
            WHERE substr(timestamp, 1, 10) >= ? AND substr(timestamp, 1, 10) <= ?
            GROUP BY substr(timestamp, 1, {width})
            """,
            (start, end),
        )
        conversation_rows = await self._fetchall(
            f"""
            SELECT substr(created_at, 1, {width}) AS slot, COUNT(*) AS created
            FROM conversations
            WHERE substr(created_at, 1, 10) >= ? AND substr(created_at, 1, 10) <= ?
            GROUP BY substr(created_at, 1, {width})
            """,
            (start, end),
        )

        # SQLite CURRENT_TIMESTAMP defaults use a space where ISO strings use "T".
        buckets: Dict[str, Dict[str, int]] = {}

        def _bucket(slot: Any) -> Dict[str, int]:
            key = str(slot or "").replace(" ", "T")
            if period == "hour":
                key = f"{key}:00"
            return buckets.setdefault(key, {"received": 0, "sent": 0, "ai_sent": 0, "created": 0})

        for r in message_rows:
            b = _bucket(r["slot"])
            b["received"] += int(r["received"] or 0)
            b["sent"] += int(r["sent"] or 0)
            b["ai_sent"] += int(r["ai_sent"] or 0)
        for r in conversation_rows:
            _bucket(r["slot"])["created"] += int(r["created"] or 0)

        return {
            "range": {"start": start, "end": end},
            "period": period,
            "points": [{"time": key, **counts} for key, counts in sorted(buckets.items())],
        }
