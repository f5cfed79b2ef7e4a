import logging
import os
from pathlib import Path

# Load .env early so os.getenv picks up local dev secrets.
try:  # pragma: no cover - environment bootstrap
    from dotenv import load_dotenv

    _DOTENV_PATHS = [Path.cwd() / ".env", Path(__file__).resolve().parent / ".env"]
    for _env_path in _DOTENV_PATHS:
        if _env_path.exists():
            load_dotenv(dotenv_path=_env_path, override=False)
except Exception as exc:
    logging.getLogger(__name__).warning("Failed to load .env: %s", exc)

APP_NAME = "Channel Inventory Reconciliation"
APP_VERSION = "1.0.0"
ROOT_DIR = Path(__file__).resolve().parent

# ----------------------------
# Helpers
# ----------------------------
def _req(name: str) -> str:
    v = os.getenv(name)
    if not v:
        raise RuntimeError(f"Missing required env var: {name}")
    return v

def _csv_list(name: str, default: str = "") -> list[str]:
    raw = (os.getenv(name) or default).strip()
    if not raw:
        return []
    return [x.strip() for x in raw.split(",") if x.strip()]

def _int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Invalid integer for %s=%r; using %s", name, raw, default)
        return default

# ----------------------------
# Credentials (env only, resolved lazily so offline tools run without them)
# ----------------------------
def lwa_credentials() -> dict[str, str]:
    return {
        "client_id": _req("LWA_CLIENT_ID"),
        "client_secret": _req("LWA_CLIENT_SECRET"),
        "refresh_token": _req("LWA_REFRESH_TOKEN"),
    }

# ----------------------------
# Channel / marketplace
# ----------------------------
CHANNEL_KEY = (os.getenv("CHANNEL_KEY") or "amazon").strip().lower()

# Preferred: MARKETPLACE_IDS="A21TJRUUN4KGV" (comma-separated supported)
MARKETPLACE_IDS = _csv_list("MARKETPLACE_IDS")

# Back-compat: MARKETPLACE_ID="A21TJRUUN4KGV"
if not MARKETPLACE_IDS:
    single = (os.getenv("MARKETPLACE_ID") or "").strip()
    if single:
        MARKETPLACE_IDS = [single]

# Hard default (IN) to avoid empty marketplaceIds breaking reports
if not MARKETPLACE_IDS:
    MARKETPLACE_IDS = ["A21TJRUUN4KGV"]

# Convenience single value
MARKETPLACE_ID = MARKETPLACE_IDS[0]

COMPANY_ID = (os.getenv("COMPANY_ID") or "default").strip()

REPORTS_API_HOST = os.getenv("REPORTS_API_HOST", "https://sellingpartnerapi-eu.amazon.com")
SPAPI_HTTP_TIMEOUT = _int("SPAPI_HTTP_TIMEOUT", 30)

# ----------------------------
# Storage
# ----------------------------
INVENTORY_DB_PATH = Path(os.getenv("INVENTORY_DB_PATH") or (ROOT_DIR / "channel_inventory.db"))
INGEST_CHUNK_SIZE = _int("INGEST_CHUNK_SIZE", 500)
CATALOG_CHUNK_SIZE = _int("CATALOG_CHUNK_SIZE", 400)

# ----------------------------
# Polling policy (owned by callers of poll_once)
# ----------------------------
POLL_BACKOFF_SECONDS = tuple(int(x) for x in _csv_list("POLL_BACKOFF_SECONDS", "2,4,8,15,20"))
POLL_MAX_WAIT_SECONDS = _int("POLL_MAX_WAIT_SECONDS", 600)
STUCK_BATCH_MINUTES = _int("STUCK_BATCH_MINUTES", 60)

# ----------------------------
# Logging
# ----------------------------
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").upper()
LOG_DIR = Path(os.getenv("LOG_DIR") or (ROOT_DIR / "logs"))
