"""trafficshare/workers/scheduler.py — Background task registration.

The Scheduler protocol is the only thing the coordinator knows about
background execution.  CeleryTaskScheduler keeps registrations in a single
Redis hash so the API process (which registers and unregisters) and the
Celery workers (which check registration before every write) share one
view:

    scheduler:registered   HASH  task_id → Celery task name

A task id is registered at most once; registering again just overwrites
the handler name.
"""
import logging
from typing import Any, Protocol

from trafficshare.config import settings

logger = logging.getLogger(__name__)

_REGISTRY_KEY = "scheduler:registered"


def background_task_id(user_id: str) -> str:
    """Return the recurring background task id for a user."""
    return f"{settings.BACKGROUND_TASK_NAME}:{user_id}"


class Scheduler(Protocol):
    def register_recurring(self, task_id: str, handler: Any) -> None: ...

    def unregister(self, task_id: str) -> None: ...

    def is_registered(self, task_id: str) -> bool: ...


class CeleryTaskScheduler:
    """Scheduler backed by a Redis registry and Celery task dispatch."""

    def __init__(self, client, celery_app) -> None:
        self.client = client
        self.celery_app = celery_app

    def register_recurring(self, task_id: str, handler: Any) -> None:
        """Register handler (a Celery task or its name) for task_id."""
        name = getattr(handler, "name", handler)
        self.client.hset(_REGISTRY_KEY, task_id, name)
        logger.info("Background task registered: task_id=%s handler=%s", task_id, name)

    def unregister(self, task_id: str) -> None:
        removed = self.client.hdel(_REGISTRY_KEY, task_id)
        if removed:
            logger.info("Background task unregistered: task_id=%s", task_id)

    def is_registered(self, task_id: str) -> bool:
        return bool(self.client.hexists(_REGISTRY_KEY, task_id))

    def registered_count(self) -> int:
        return int(self.client.hlen(_REGISTRY_KEY))

    def deliver(self, task_id: str, *args: Any) -> bool:
        """Dispatch a payload to the handler registered for task_id.

        Returns False, without dispatching, when nothing is registered.
        """
        name = self.client.hget(_REGISTRY_KEY, task_id)
        if name is None:
            logger.debug("Delivery dropped, task not registered: task_id=%s", task_id)
            return False
        self.celery_app.send_task(name, args=list(args))
        logger.debug("Delivery dispatched: task_id=%s handler=%s", task_id, name)
        return True
