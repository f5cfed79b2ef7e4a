import logging
from logging.handlers import RotatingFileHandler

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import APP_NAME, APP_VERSION, CHANNEL_KEY, INVENTORY_DB_PATH, LOG_DIR, LOG_LEVEL, MARKETPLACE_ID
from routes.channel_inventory_routes import register_channel_inventory_routes
from routes.channel_mapping_routes import register_channel_mapping_routes
from services.db import ensure_inventory_schema

# --- Logging configuration ---
LOG_DIR.mkdir(parents=True, exist_ok=True)
LOG_FILE_PATH = LOG_DIR / "channel_inventory.log"

root_logger = logging.getLogger()
logger = logging.getLogger("channel_inventory")
if not root_logger.handlers:
    root_logger.setLevel(LOG_LEVEL)

    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    file_handler = RotatingFileHandler(
        LOG_FILE_PATH,
        maxBytes=5_000_000,  # 5 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setFormatter(formatter)

    root_logger.addHandler(console_handler)
    root_logger.addHandler(file_handler)

logging.getLogger("uvicorn").propagate = True
logging.getLogger("uvicorn.error").propagate = True
logging.getLogger("uvicorn.access").propagate = True
# --- End logging configuration ---

app = FastAPI(title=APP_NAME, version=APP_VERSION)


@app.middleware("http")
async def log_failed_requests(request: Request, call_next):
    response = await call_next(request)
    if response.status_code >= 500:
        logger.warning("[HTTP] %s %s -> %s", request.method, request.url.path, response.status_code)
    return response


register_channel_inventory_routes(app)
register_channel_mapping_routes(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    try:
        ensure_inventory_schema()
        logger.info(
            "[Startup] %s %s ready (channel=%s marketplace=%s db=%s)",
            APP_NAME,
            APP_VERSION,
            CHANNEL_KEY,
            MARKETPLACE_ID,
            INVENTORY_DB_PATH,
        )
    except Exception as e:
        logger.error(f"[Startup] Failed to ensure inventory schema: {e}", exc_info=True)
        raise


@app.get("/api/health")
def health():
    return {"ok": True, "app": APP_NAME, "version": APP_VERSION, "channel_key": CHANNEL_KEY, "marketplace_id": MARKETPLACE_ID}


if __name__ == "__main__":
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=False)
