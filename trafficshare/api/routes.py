import logging

import redis
from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from trafficshare.config import settings
from trafficshare.models.schemas import (
    LocationBatchRequest,
    PointsResponse,
    StatusView,
)
from trafficshare.state.account_store import AccountStore
from trafficshare.state.projection import build_status_view
from trafficshare.state.redis_client import get_redis
from trafficshare.state.session_state import SessionStore
from trafficshare.utils.time_utils import now_ms
from trafficshare.workers.celery_app import celery_app
from trafficshare.workers.scheduler import CeleryTaskScheduler, background_task_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")


def _require_redis() -> redis.Redis:
    r = get_redis()
    if r is None:
        raise HTTPException(
            status_code=503,
            detail="Session store is unavailable. Try again shortly.",
        )
    return r


@router.get("/users/{user_id}/status", response_model=StatusView)
def get_status(user_id: str) -> StatusView:
    """Return the traffic-screen status projection for a user.

    Read-only: cached classification from the session state plus the remote
    point balance and cooldown.
    """
    r = _require_redis()
    return build_status_view(SessionStore(r, user_id), AccountStore(r), user_id, now_ms())


@router.get("/users/{user_id}/points", response_model=PointsResponse)
def get_points(user_id: str) -> PointsResponse:
    """Return the point balance and award history, creating the account if needed."""
    r = _require_redis()
    account = AccountStore(r).ensure_user(user_id)
    return PointsResponse(
        user_id=user_id,
        points=account.points,
        point_history=account.point_history,
    )


@router.post("/users/{user_id}/location-batch", status_code=202)
def post_location_batch(user_id: str, request: LocationBatchRequest) -> JSONResponse:
    """Accept a deferred batch of background fixes from the device.

    The batch is handed to the user's registered background task.  If no
    background task is registered (the traffic screen is focused, or
    sampling is stopped) the batch is dropped.
    """
    r = _require_redis()
    scheduler = CeleryTaskScheduler(r, celery_app)
    fixes = [fix.model_dump() for fix in request.fixes]

    accepted = scheduler.deliver(background_task_id(user_id), user_id, fixes)
    logger.info(
        "location-batch: user=%s fixes=%d accepted=%s",
        user_id,
        len(fixes),
        accepted,
    )
    if not accepted:
        return JSONResponse(
            status_code=202,
            content={"accepted": False, "reason": "not_registered"},
        )
    return JSONResponse(status_code=202, content={"accepted": True, "fixes": len(fixes)})


@router.get("/health")
async def health_check() -> JSONResponse:
    """Report store reachability, Maps key presence and background sampling mode."""
    store = "unavailable"
    background_tasks = None
    r = get_redis()
    if r is not None:
        try:
            background_tasks = CeleryTaskScheduler(r, celery_app).registered_count()
            store = "ok"
        except redis.RedisError as exc:
            logger.warning("health: store check failed: %s", exc)

    return JSONResponse(
        {
            "status": "healthy",
            "redis": store,
            "maps_api": "configured" if settings.GOOGLE_MAPS_API_KEY else "missing",
            "background_sampling": settings.BACKGROUND_SAMPLING_ENABLED,
            "background_tasks": background_tasks,
        }
    )
