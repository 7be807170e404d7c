import os
from pathlib import Path

from dotenv import load_dotenv

# Absolute paths
ROOT_DIR = Path(__file__).resolve().parent.parent

# Load environment variables early so defaults below can be overridden by a local `.env`.
load_dotenv()

PORT = int(os.getenv("PORT", "4000"))
ENVIRONMENT = (os.getenv("ENVIRONMENT") or os.getenv("NODE_ENV") or "development").strip().lower()
LOG_LEVEL = (os.getenv("LOG_LEVEL", "INFO") or "INFO").strip().upper()
CORS_ALLOWED_ORIGINS = [
    o.strip() for o in (os.getenv("CORS_ALLOWED_ORIGINS") or os.getenv("FRONTEND_URL") or "http://localhost:3000").split(",")
    if o.strip()
]

# ── Database ──────────────────────────────────────────────────────
DB_PATH = os.getenv("DB_PATH") or str(ROOT_DIR / "data" / "inbox.db")
DATABASE_URL = os.getenv("DATABASE_URL")  # optional PostgreSQL URL
PG_POOL_MIN = int(os.getenv("PG_POOL_MIN", "1"))
PG_POOL_MAX = int(os.getenv("PG_POOL_MAX", "10"))
PG_CONNECT_TIMEOUT_SECONDS = float(os.getenv("PG_CONNECT_TIMEOUT_SECONDS", "10"))
PG_POOL_RETRY_BACKOFF_SECONDS = float(os.getenv("PG_POOL_RETRY_BACKOFF_SECONDS", "15"))
REQUIRE_POSTGRES = int(os.getenv("REQUIRE_POSTGRES", "1"))  # when 1 and DATABASE_URL is set, never fallback to SQLite
SQLITE_BUSY_TIMEOUT_MS = int(os.getenv("SQLITE_BUSY_TIMEOUT_MS", "3000"))
HEALTH_DB_TIMEOUT_SECONDS = float(os.getenv("HEALTH_DB_TIMEOUT_SECONDS", "2"))

# ── WhatsApp gateway (Evolution API) ──────────────────────────────
EVOLUTION_API_URL = (os.getenv("EVOLUTION_API_URL", "") or "").rstrip("/")
EVOLUTION_API_KEY = os.getenv("EVOLUTION_API_KEY", "")
EVOLUTION_INSTANCE_NAME = os.getenv("EVOLUTION_INSTANCE_NAME", "")
GATEWAY_HTTP_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_HTTP_TIMEOUT_SECONDS", "30"))
GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS = float(os.getenv("GATEWAY_HTTP_CONNECT_TIMEOUT_SECONDS", "5"))

# ── Automation workflow (n8n) ─────────────────────────────────────
N8N_SEND_WEBHOOK_URL = os.getenv("N8N_SEND_WEBHOOK_URL", "")
# AI replies are requested from the receive webhook when set, else from the send webhook.
N8N_AI_WEBHOOK_URL = os.getenv("N8N_AI_WEBHOOK_URL") or os.getenv("N8N_RECEIVE_WEBHOOK_URL") or N8N_SEND_WEBHOOK_URL
AUTOMATION_HTTP_TIMEOUT_SECONDS = float(os.getenv("AUTOMATION_HTTP_TIMEOUT_SECONDS", "60"))

# ── Media / uploads ───────────────────────────────────────────────
PUBLIC_URL = (os.getenv("PUBLIC_URL") or os.getenv("BASE_URL") or f"http://localhost:{PORT}").rstrip("/")
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR") or str(ROOT_DIR / "uploads"))
MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(16 * 1024 * 1024)))
MAX_KNOWLEDGE_UPLOAD_BYTES = int(os.getenv("MAX_KNOWLEDGE_UPLOAD_BYTES", str(50 * 1024 * 1024)))
ALLOWED_UPLOAD_TYPES = {
    "image/jpeg", "image/png", "image/gif", "image/webp",
    "video/mp4", "video/quicktime", "video/webm",
    "audio/mpeg", "audio/wav", "audio/ogg", "audio/webm",
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "application/vnd.ms-excel",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

# Window in which an outbound AI reply's webhook echo is recognized and dropped.
ECHO_DEDUP_TTL_SECONDS = float(os.getenv("ECHO_DEDUP_TTL_SECONDS", "30"))

# ── Bulk sends ────────────────────────────────────────────────────
BULK_BATCH_SIZE = int(os.getenv("BULK_BATCH_SIZE", "50"))
BULK_BATCH_DELAY_SECONDS = float(os.getenv("BULK_BATCH_DELAY_SECONDS", "2"))
BULK_MESSAGE_DELAY_SECONDS = float(os.getenv("BULK_MESSAGE_DELAY_SECONDS", "0.1"))
# Finished batches stay queryable this long.
BULK_RESULT_TTL_SECONDS = float(os.getenv("BULK_RESULT_TTL_SECONDS", "300"))

# ── Auth ──────────────────────────────────────────────────────────
AGENT_AUTH_SECRET = os.getenv("AGENT_AUTH_SECRET") or os.getenv("JWT_SECRET") or ""
JWT_ISSUER = os.getenv("JWT_ISSUER", "whatsapp-dashboard")
ACCESS_TOKEN_TTL_SECONDS = int(os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(7 * 24 * 3600)))
ACCESS_COOKIE_NAME = "agent_access"
DISABLE_AUTH = os.getenv("DISABLE_AUTH", "0") == "1"
# Shared secret for server-to-server callers (gateway/automation). Open when empty.
SYSTEM_API_KEY = os.getenv("SYSTEM_API_KEY", "")
