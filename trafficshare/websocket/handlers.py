"""trafficshare/websocket/handlers.py — WebSocket endpoint for the focused traffic screen.

Endpoint: WS /ws/user/{user_id}

Client → Server, first frame (permission handshake):
  {"type": "permissions", "foreground": true, "background": true}

Client → Server, every foreground watch update:
  {
    "type": "location",
    "lat": 40.7128,
    "lng": -74.0060,
    "heading": 87.5,                  // optional, null when unknown
    "timestamp_ms": 1718442870000     // optional, defaults to receipt time
  }

Server → Client:
  {"type": "sampling_config", ...}    once, after the handshake
  {"type": "status", ...}             every PROJECTION_POLL_INTERVAL_SECONDS
  {"type": "points_awarded", ...}     whenever a foreground fix earns points
  {"type": "error", "code": ...}      then the socket is closed
"""
import asyncio
import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError

from trafficshare.config import settings
from trafficshare.models.schemas import LocationPermissions, LocationSample
from trafficshare.oracles.traffic_client import OracleClient
from trafficshare.state.account_store import AccountStore
from trafficshare.state.redis_client import get_redis
from trafficshare.state.session_state import SessionStore
from trafficshare.utils.time_utils import now_ms
from trafficshare.websocket.manager import manager
from trafficshare.workers.coordinator import LocationPermissionDenied

logger = logging.getLogger(__name__)

ws_router = APIRouter()


async def _reject(websocket: WebSocket, code: str, close_code: int) -> None:
    await websocket.send_json({"type": "error", "code": code})
    await websocket.close(code=close_code)


def parse_location_frame(data: dict) -> LocationSample:
    """Build a LocationSample from a location frame; receipt time fills a missing timestamp.

    Raises:
        ValidationError: if the coordinates or timestamp are invalid.
    """
    timestamp_ms = data.get("timestamp_ms")
    return LocationSample(
        lat=data.get("lat"),
        lng=data.get("lng"),
        heading=data.get("heading"),
        timestamp_ms=now_ms() if timestamp_ms is None else timestamp_ms,
    )


@ws_router.websocket("/ws/user/{user_id}")
async def traffic_screen_stream(websocket: WebSocket, user_id: str) -> None:
    """Handle a focused traffic-screen session.

    Flow:
      1. Accept the connection and register it with ConnectionManager.
      2. Read the permission handshake; refusal is fatal for the session.
      3. Switch the user to foreground sampling (stops the background task).
      4. Start the status-projection push task.
      5. Process location frames one at a time through the shared pipeline.
      6. On disconnect: cancel the push task and hand over to background
         sampling.
    """
    await manager.connect(user_id, websocket)
    status_task = None

    try:
        r = get_redis()
        if r is None:
            await _reject(websocket, "unavailable", status.WS_1011_INTERNAL_ERROR)
            return

        handshake = await websocket.receive_json()
        if handshake.get("type") != "permissions":
            await _reject(websocket, "permissions_required", status.WS_1008_POLICY_VIOLATION)
            return

        permissions = LocationPermissions(
            foreground=bool(handshake.get("foreground")),
            background=bool(handshake.get("background")),
        )
        try:
            token = manager.start_foreground(user_id, r, permissions)
        except LocationPermissionDenied:
            await _reject(websocket, "permission_denied", status.WS_1008_POLICY_VIOLATION)
            return

        accounts = AccountStore(r)
        await asyncio.to_thread(accounts.ensure_user, user_id)
        session = SessionStore(r, user_id)
        oracle = OracleClient(session)

        await websocket.send_json({
            "type": "sampling_config",
            "distance_interval_m": settings.FOREGROUND_WATCH_DISTANCE_INTERVAL_METERS,
            "time_interval_ms": settings.FOREGROUND_WATCH_TIME_INTERVAL_MS,
        })

        status_task = asyncio.create_task(
            manager.push_status_updates(user_id, session, accounts, websocket),
            name=f"status-{user_id}",
        )

        while True:
            data = await websocket.receive_json()
            msg_type = data.get("type")

            if msg_type != "location":
                logger.debug("Unhandled message type=%s user=%s", msg_type, user_id)
                continue

            try:
                sample = parse_location_frame(data)
            except ValidationError as exc:
                logger.warning("Invalid location frame: user=%s error=%s", user_id, exc)
                continue

            outcome = await manager.handle_fix(
                user_id, token, sample, session=session, accounts=accounts, oracle=oracle
            )
            if outcome is not None and outcome.award is not None and outcome.award.granted:
                await websocket.send_json({
                    "type": "points_awarded",
                    "amount": outcome.award.amount,
                    "reason": outcome.award.reason,
                    "points": outcome.award.new_points,
                })

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected cleanly: user=%s", user_id)
    except Exception as exc:
        logger.warning("WebSocket error: user=%s error=%s", user_id, exc)
    finally:
        if status_task is not None:
            status_task.cancel()
            try:
                await status_task
            except asyncio.CancelledError:
                pass
        manager.disconnect(user_id, websocket)
