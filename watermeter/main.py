"""Water Meter Server - FastAPI Application Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from watermeter.config import settings
from watermeter.database import init_db

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize database and the MQTT bridge on startup."""
    init_db()

    from watermeter.mqtt.bridge import get_bridge
    if settings.mqtt_enabled:
        get_bridge().start()
    else:
        logger.info("MQTT disabled, device traffic over HTTP only")

    yield

    if settings.mqtt_enabled:
        get_bridge().stop()


app = FastAPI(
    title="Water Meter Server",
    description="Prepaid water meter token and balance settlement backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from watermeter.api.errors import install_error_handlers  # noqa: E402

install_error_handlers(app)

# --- Register API routers ---
from watermeter.api.auth import router as auth_router  # noqa: E402
from watermeter.api.api_keys import router as api_keys_router  # noqa: E402
from watermeter.api.devices import router as devices_router  # noqa: E402
from watermeter.api.tokens import router as tokens_router  # noqa: E402
from watermeter.api.balances import router as balances_router  # noqa: E402
from watermeter.api.usage import router as usage_router  # noqa: E402
from watermeter.api.device import router as device_router  # noqa: E402
from watermeter.api.mqtt import router as mqtt_router  # noqa: E402

API_PREFIX = "/api/v1"

app.include_router(auth_router, prefix=API_PREFIX)
app.include_router(api_keys_router, prefix=API_PREFIX)
app.include_router(devices_router, prefix=API_PREFIX)
app.include_router(tokens_router, prefix=API_PREFIX)
app.include_router(balances_router, prefix=API_PREFIX)
app.include_router(usage_router, prefix=API_PREFIX)
app.include_router(device_router, prefix=API_PREFIX)
app.include_router(mqtt_router, prefix=API_PREFIX)


@app.get("/")
def root():
    """Health check / server info."""
    return {
        "name": settings.server_name,
        "version": "0.1.0",
        "status": "running",
    }


@app.get("/api/v1/health")
def health():
    return {"status": "ok"}
