"""ASGI entry point wiring the chat API, the realtime socket and metrics."""

import logging.config
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.metrics import router as metrics_router
from app.api.routes import router as api_router
from app.api.uploads import media_router
from app.api.ws import router as ws_router
from app.config import get_settings
from app.services.chat_events import deliver_relayed_message
from parley.realtime import get_room_relay, realtime_status, shutdown_realtime, startup_realtime

settings = get_settings()

LOGGING_CONFIG = {
    "version": 1,
    "disable_existing_loggers": False,
    "formatters": {
        "standard": {
            "format": "%(asctime)s %(levelname)s [%(name)s] %(message)s",
        }
    },
    "handlers": {
        "default": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
        }
    },
    "root": {
        "handlers": ["default"],
        "level": "DEBUG" if settings.debug else "INFO",
    },
    "loggers": {
        # Broker reconnect chatter stays at INFO even in debug mode.
        "parley.realtime.transport": {
            "handlers": ["default"],
            "level": "INFO",
            "propagate": False,
        },
        "sqlalchemy.engine": {"level": "WARNING"},
    },
}

logging.config.dictConfig(LOGGING_CONFIG)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    await startup_realtime()
    logger.info("Parley started", extra={"realtime": realtime_status()})
    try:
        yield
    finally:
        await shutdown_realtime()


app = FastAPI(title=settings.app_name, debug=settings.debug, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[str(origin).rstrip("/") for origin in settings.cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Messages relayed from other nodes are delivered to sockets held here.
get_room_relay().on_remote_event(deliver_relayed_message)


@app.get("/health", tags=["system"])
def health_check() -> dict[str, str]:
    """Liveness probe; ``realtime`` tells whether events cross nodes."""

    return {
        "status": "ok",
        "environment": settings.environment,
        "realtime": realtime_status(),
    }


app.include_router(api_router, prefix="/api")
app.include_router(ws_router)
app.include_router(metrics_router)
app.include_router(media_router)
