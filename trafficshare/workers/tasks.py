"""trafficshare/workers/tasks.py — Celery task for background location batches.

process_location_batch is dispatched by the scheduler when the mobile app,
running in the background, delivers a batch of deferred location fixes.
For every fix, in delivery order, it runs the shared pipeline:

  1. Stuck Detector.
  2. Traffic / road oracle refresh (throttled).
  3. Point Award Policy.

The batch is dropped, and in-flight results are discarded, as soon as the
user's background task is no longer registered (the foreground screen has
taken over, or sampling was stopped).
"""
import logging
from typing import Any, Dict, List

from pydantic import ValidationError

from trafficshare.models.schemas import LocationSample
from trafficshare.oracles.traffic_client import OracleClient
from trafficshare.state.account_store import AccountStore
from trafficshare.state.redis_client import get_redis
from trafficshare.state.session_state import SessionStore
from trafficshare.workers.celery_app import celery_app
from trafficshare.workers.pipeline import process_fix
from trafficshare.workers.scheduler import CeleryTaskScheduler, background_task_id

logger = logging.getLogger(__name__)


@celery_app.task(name="trafficshare.workers.tasks.process_location_batch")
def process_location_batch(user_id: str, fixes: List[Dict[str, Any]]) -> dict:
    """Process a batch of background location fixes for one user.

    Args:
        user_id: Account the fixes belong to.
        fixes:   Serialised LocationSample dicts, oldest first.

    Returns:
        Dict with keys: processed (int), awarded (int points), and reason
        (str) when the batch was skipped.
    """
    r = get_redis()
    if r is None:
        logger.warning("process_location_batch: store unavailable for user=%s", user_id)
        return {"processed": 0, "awarded": 0, "reason": "no_store"}

    scheduler = CeleryTaskScheduler(r, celery_app)
    task_id = background_task_id(user_id)
    if not scheduler.is_registered(task_id):
        logger.info("Background batch skipped, task not registered: user=%s", user_id)
        return {"processed": 0, "awarded": 0, "reason": "not_registered"}

    accounts = AccountStore(r)
    accounts.ensure_user(user_id)
    session = SessionStore(r, user_id)
    oracle = OracleClient(session)

    processed = 0
    awarded = 0
    for raw in fixes:
        try:
            sample = LocationSample.model_validate(raw)
        except ValidationError as exc:
            logger.warning("Invalid background fix skipped: user=%s error=%s", user_id, exc)
            continue

        outcome = process_fix(
            user_id,
            sample,
            session=session,
            accounts=accounts,
            oracle=oracle,
            still_active=lambda: scheduler.is_registered(task_id),
        )
        if outcome.discarded:
            logger.info("Background batch aborted, task unregistered: user=%s", user_id)
            break
        processed += 1
        awarded += outcome.points_awarded

    logger.info(
        "Background batch done: user=%s fixes=%d processed=%d awarded=%d",
        user_id,
        len(fixes),
        processed,
        awarded,
    )
    return {"processed": processed, "awarded": awarded}
