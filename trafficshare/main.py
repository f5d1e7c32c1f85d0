import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from trafficshare.config import configure_logging, settings
from trafficshare.api.routes import router
from trafficshare.state.redis_client import get_redis
from trafficshare.websocket.handlers import ws_router

configure_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Log the active sampling policy on startup; warn early if Redis is down."""
    logger.info(
        "TrafficShare starting: env=%s stuck=%.0fm/%dms cooldown=%dms background=%s",
        settings.ENV,
        settings.STUCK_DISTANCE_THRESHOLD_METERS,
        settings.STUCK_TIME_THRESHOLD_MS,
        settings.COOLDOWN_INTERVAL_MS,
        settings.BACKGROUND_SAMPLING_ENABLED,
    )
    if get_redis() is None:
        logger.warning("Session store unreachable at startup; requests will get 503 until it recovers")
    yield
    logger.info("TrafficShare shutting down")


app = FastAPI(
    title="TrafficShare Sampling API",
    description="Stuck-in-traffic detection and point awards for foreground and background location sampling.",
    version="1.0.0",
    lifespan=lifespan,
)

app.include_router(router)
app.include_router(ws_router)
