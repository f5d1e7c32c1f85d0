"""trafficshare/workers/coordinator.py — Single-writer sampler lifecycle.

One SamplingCoordinator exists per connected user.  It guarantees that at
most one sampler (foreground WebSocket loop or background Celery task)
mutates the user's session state and account at any time:

    UNREGISTERED ──focus_gained──▶ FOREGROUND_ACTIVE ──focus_lost──▶ BACKGROUND_ACTIVE
          │                          ▲        │                          │
          │                          └────────┼──────focus_gained────────┘
          └──────── permission denied / stop ─┴──────────▶ STOPPED

Every transition out of FOREGROUND_ACTIVE bumps a generation counter so a
foreground fix that is still in flight can tell it has been superseded and
must not write its results.
"""
import itertools
import logging
from enum import Enum
from typing import Any

from trafficshare.config import settings
from trafficshare.models.schemas import LocationPermissions
from trafficshare.workers.scheduler import Scheduler, background_task_id

logger = logging.getLogger(__name__)

# Generations are process-wide so a token from a replaced coordinator can
# never match the coordinator that superseded it.
_generations = itertools.count(1)


class LocationPermissionDenied(Exception):
    """Foreground or background location access was refused by the user."""


class SamplerState(str, Enum):
    UNREGISTERED = "unregistered"
    BACKGROUND_ACTIVE = "background_active"
    FOREGROUND_ACTIVE = "foreground_active"
    STOPPED = "stopped"


class SamplingCoordinator:
    """Owns the foreground/background hand-over for one user."""

    def __init__(self, user_id: str, scheduler: Scheduler, background_handler: Any) -> None:
        self.user_id = user_id
        self.scheduler = scheduler
        self.background_handler = background_handler
        self.task_id = background_task_id(user_id)
        self._generation = 0
        if scheduler.is_registered(self.task_id):
            self.state = SamplerState.BACKGROUND_ACTIVE
        else:
            self.state = SamplerState.UNREGISTERED

    def _stop_background(self) -> None:
        if self.scheduler.is_registered(self.task_id):
            self.scheduler.unregister(self.task_id)

    def focus_gained(self, permissions: LocationPermissions) -> int:
        """Switch to foreground sampling and return the sampler token.

        Raises:
            LocationPermissionDenied: if either location permission is
                missing.  The coordinator is left STOPPED; the client must
                re-grant and reconnect.
        """
        if not (permissions.foreground and permissions.background):
            self._stop_background()
            self._generation = next(_generations)
            self.state = SamplerState.STOPPED
            logger.warning(
                "Location permission denied: user=%s foreground=%s background=%s",
                self.user_id,
                permissions.foreground,
                permissions.background,
            )
            raise LocationPermissionDenied(
                "foreground and background location access are both required"
            )

        self._stop_background()
        self._generation = next(_generations)
        self.state = SamplerState.FOREGROUND_ACTIVE
        logger.info("Foreground sampling started: user=%s generation=%d", self.user_id, self._generation)
        return self._generation

    def focus_lost(self) -> None:
        """Stop foreground sampling and hand over to the background task if it is enabled."""
        if self.state is not SamplerState.FOREGROUND_ACTIVE:
            return
        self._generation = next(_generations)
        if settings.BACKGROUND_SAMPLING_ENABLED:
            self.scheduler.register_recurring(self.task_id, self.background_handler)
            self.state = SamplerState.BACKGROUND_ACTIVE
            logger.info("Foreground sampling stopped, background resumed: user=%s", self.user_id)
        else:
            self.state = SamplerState.STOPPED
            logger.info("Foreground sampling stopped: user=%s", self.user_id)

    def stop(self) -> None:
        """Stop every sampler for this user."""
        self._stop_background()
        self._generation = next(_generations)
        self.state = SamplerState.STOPPED
        logger.info("All sampling stopped: user=%s", self.user_id)

    def is_active(self, token: int) -> bool:
        """True while the foreground sampler holding token may still write."""
        return self.state is SamplerState.FOREGROUND_ACTIVE and token == self._generation
