"""trafficshare/websocket/manager.py — Traffic-screen connection registry.

A connected WebSocket means the traffic screen is focused on the device.
ConnectionManager ties each connection to the user's SamplingCoordinator:
connecting (after the permission handshake) switches the user to
foreground sampling, disconnecting hands over to the background task.

Each connection also gets an async background task that polls the status
projection every PROJECTION_POLL_INTERVAL_SECONDS and pushes it to the
screen.
"""
import asyncio
import logging
from typing import Optional

from fastapi import WebSocket, status

from trafficshare.config import settings
from trafficshare.models.schemas import LocationPermissions, LocationSample
from trafficshare.oracles.traffic_client import OracleClient
from trafficshare.state.account_store import AccountStore
from trafficshare.state.projection import build_status_view
from trafficshare.state.session_state import SessionStore
from trafficshare.utils.time_utils import now_ms
from trafficshare.workers.celery_app import celery_app
from trafficshare.workers.coordinator import SamplingCoordinator
from trafficshare.workers.pipeline import FixOutcome, process_fix
from trafficshare.workers.scheduler import CeleryTaskScheduler
from trafficshare.workers.tasks import process_location_batch

logger = logging.getLogger(__name__)


class ConnectionManager:
    """In-memory registry of focused traffic screens and their coordinators.

    Connection state is held per-process, so a single Uvicorn worker is
    assumed.  Background registrations live in Redis and are shared with the
    Celery workers.
    """

    def __init__(self) -> None:
        self.active_connections: dict[str, WebSocket] = {}
        self.coordinators: dict[str, SamplingCoordinator] = {}

    async def connect(self, user_id: str, websocket: WebSocket) -> None:
        """Accept and register a new traffic-screen connection.

        An older connection of the same user is closed; only the newest
        screen may sample.
        """
        await websocket.accept()
        previous = self.active_connections.get(user_id)
        self.active_connections[user_id] = websocket
        logger.info(
            "WebSocket connected: user=%s active=%d",
            user_id,
            len(self.active_connections),
        )
        if previous is not None and previous is not websocket:
            try:
                await previous.close(code=status.WS_1008_POLICY_VIOLATION, reason="superseded")
                logger.info("Superseded connection closed: user=%s", user_id)
            except Exception as exc:
                logger.warning("Failed to close superseded connection: user=%s error=%s", user_id, exc)

    def start_foreground(self, user_id: str, client, permissions: LocationPermissions) -> int:
        """Switch the user to foreground sampling and return the sampler token.

        A coordinator left over from an older connection of the same user is
        stopped first so its in-flight fixes can no longer write.

        Raises:
            LocationPermissionDenied: propagated from the coordinator.
        """
        previous = self.coordinators.pop(user_id, None)
        if previous is not None:
            previous.stop()

        coordinator = SamplingCoordinator(
            user_id,
            CeleryTaskScheduler(client, celery_app),
            process_location_batch,
        )
        token = coordinator.focus_gained(permissions)
        self.coordinators[user_id] = coordinator
        return token

    def disconnect(self, user_id: str, websocket: Optional[WebSocket] = None) -> None:
        """Unregister the connection and hand the user over to background sampling.

        When websocket is given, nothing happens unless it is still the
        user's current connection.
        """
        if websocket is not None and self.active_connections.get(user_id) is not websocket:
            return
        self.active_connections.pop(user_id, None)
        coordinator = self.coordinators.pop(user_id, None)
        if coordinator is not None:
            coordinator.focus_lost()
        logger.info(
            "WebSocket disconnected: user=%s active=%d",
            user_id,
            len(self.active_connections),
        )

    async def handle_fix(
        self,
        user_id: str,
        token: int,
        sample: LocationSample,
        *,
        session: SessionStore,
        accounts: AccountStore,
        oracle: OracleClient,
    ) -> Optional[FixOutcome]:
        """Run a foreground fix through the pipeline off the event loop.

        Returns None if the user has no coordinator (already disconnected).
        """
        coordinator = self.coordinators.get(user_id)
        if coordinator is None:
            return None
        return await asyncio.to_thread(
            process_fix,
            user_id,
            sample,
            session=session,
            accounts=accounts,
            oracle=oracle,
            still_active=lambda: coordinator.is_active(token),
        )

    async def send_status(self, user_id: str, payload: dict) -> None:
        """Push a payload to the user's screen.

        Silently skips if the user is no longer connected.
        """
        websocket = self.active_connections.get(user_id)
        if websocket is None:
            logger.warning("send_status: no active connection for user=%s", user_id)
            return
        try:
            await websocket.send_json(payload)
            logger.debug("Status sent: user=%s type=%s", user_id, payload.get("type"))
        except Exception as exc:
            logger.warning("Failed to send status to user=%s: %s", user_id, exc)

    async def push_status_updates(
        self,
        user_id: str,
        session: SessionStore,
        accounts: AccountStore,
        websocket: Optional[WebSocket] = None,
    ) -> None:
        """Poll the status projection and push it until cancelled.

        Runs as an ``asyncio`` background task created by the WebSocket
        handler.  Exits cleanly when cancelled (on disconnect), and returns
        as soon as websocket is no longer the user's current connection.
        """
        try:
            while True:
                if websocket is not None and self.active_connections.get(user_id) is not websocket:
                    logger.info("Status updates stopped, connection superseded: user=%s", user_id)
                    return
                try:
                    view = await asyncio.to_thread(
                        build_status_view, session, accounts, user_id, now_ms()
                    )
                except Exception as exc:
                    logger.warning("Status projection failed: user=%s error=%s", user_id, exc)
                else:
                    await self.send_status(
                        user_id, {"type": "status", **view.model_dump(mode="json")}
                    )
                await asyncio.sleep(settings.PROJECTION_POLL_INTERVAL_SECONDS)
        except asyncio.CancelledError:
            logger.info("Status updates cancelled: user=%s", user_id)
            raise


# Shared singleton used by the WebSocket handler and tests.
manager = ConnectionManager()
