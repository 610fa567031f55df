"""
Environment configuration for the collaborative room server.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, default))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, default))


# ============ ENVIRONMENT CONFIG ============
DEBUG = os.getenv("DEBUG", "false").lower() == "true"
PRODUCTION_DOMAIN = os.getenv("PRODUCTION_DOMAIN", "coderoom.local")

# Comma separated; empty means production domain (+ localhost in debug)
ALLOWED_HOSTS = [h.strip() for h in os.getenv("ALLOWED_HOSTS", "").split(",") if h.strip()]
if not ALLOWED_HOSTS:
    ALLOWED_HOSTS = [PRODUCTION_DOMAIN, f"*.{PRODUCTION_DOMAIN}"] + (
        ["localhost", "127.0.0.1"] if DEBUG else []
    )

ALLOWED_ORIGINS = [
    f"https://{PRODUCTION_DOMAIN}",
    f"https://www.{PRODUCTION_DOMAIN}",
] + (["http://localhost:3000", "http://127.0.0.1:3000"] if DEBUG else [])

# ============ STORAGE ============
STORE_BACKEND = os.getenv("STORE_BACKEND", "sqlite")  # sqlite | file | memory
DATA_DIR = Path(os.getenv("DATA_DIR", Path(__file__).parent / "data"))
DATABASE_PATH = Path(os.getenv("DATABASE_PATH", DATA_DIR / "rooms.db"))
DATA_FILE = Path(os.getenv("DATA_FILE", DATA_DIR / "data.json"))

# ============ ROOM STATE ============
SAVE_INTERVAL = _float("SAVE_INTERVAL", 1.0)  # seconds between durable writes per room
CODE_UPDATE_INTERVAL = _float("CODE_UPDATE_INTERVAL", 0.1)
TYPING_TIMEOUT = _float("TYPING_TIMEOUT", 2.0)
CURSOR_BATCH_INTERVAL = _float("CURSOR_BATCH_INTERVAL", 0.05)
CURSOR_STALE_SECONDS = _float("CURSOR_STALE_SECONDS", 30.0)
CHAT_HISTORY_LIMIT = _int("CHAT_HISTORY_LIMIT", 100)
COMMIT_DEDUPE_SECONDS = _float("COMMIT_DEDUPE_SECONDS", 300.0)
COMMIT_RETENTION = _int("COMMIT_RETENTION", 0)  # 0 = keep every commit
MAX_CODE_SIZE = _int("MAX_CODE_SIZE", 500_000)
MAX_CHAT_LENGTH = _int("MAX_CHAT_LENGTH", 5000)
MAX_NAME_LENGTH = _int("MAX_NAME_LENGTH", 50)
SEND_TIMEOUT_SECONDS = _float("SEND_TIMEOUT_SECONDS", 5.0)

# ============ SHARE LINKS ============
SHARE_TTL_SECONDS = _int("SHARE_TTL_SECONDS", 7 * 24 * 3600)
SHARE_BASE_URL = os.getenv("SHARE_BASE_URL", "http://localhost:3000/codeeditor?shared=")

# ============ BACKGROUND WORKERS ============
CLEANUP_INTERVAL_SECONDS = _float("CLEANUP_INTERVAL_SECONDS", 60.0)
BACKUP_INTERVAL_SECONDS = _float("BACKUP_INTERVAL_SECONDS", 600.0)
ROOM_RETENTION_SECONDS = _float("ROOM_RETENTION_SECONDS", 30 * 24 * 3600)  # 0 disables

# WebSocket frames allowed per window, per connection
WS_MESSAGE_LIMIT = _int("WS_MESSAGE_LIMIT", 60)
WS_MESSAGE_WINDOW = _float("WS_MESSAGE_WINDOW", 2.0)
