"""trafficshare/workers/pipeline.py — Shared per-fix processing entry point.

Both the foreground WebSocket loop and the background Celery task call
process_fix() identically.  Lifecycle concerns (which sampler is allowed to
write) enter only through the still_active callable.
"""
import logging
from dataclasses import dataclass
from typing import Callable, Optional

from trafficshare.models.schemas import LocationSample, TrafficSeverity
from trafficshare.oracles.traffic_client import OracleClient, RoadStatus
from trafficshare.state.account_store import AccountStore
from trafficshare.state.session_state import SessionStore
from trafficshare.workers.award_policy import AwardResult, award_points
from trafficshare.workers.stuck_detector import StuckVerdict, detect_stuck

logger = logging.getLogger(__name__)


@dataclass
class FixOutcome:
    discarded: bool = False
    verdict: Optional[StuckVerdict] = None
    severity: Optional[TrafficSeverity] = None
    on_road: Optional[bool] = None
    award: Optional[AwardResult] = None

    @property
    def points_awarded(self) -> int:
        if self.award is None or not self.award.granted:
            return 0
        return self.award.amount


def process_fix(
    user_id: str,
    sample: LocationSample,
    *,
    session: SessionStore,
    accounts: AccountStore,
    oracle: OracleClient,
    still_active: Callable[[], bool] = lambda: True,
    now: Optional[int] = None,
) -> FixOutcome:
    """Run one location fix through detection, classification and award.

    Steps:
        1. Stuck Detector against the persisted reference point.
        2. Traffic severity refresh (throttled).
        3. On-road refresh (throttled).
        4. Point Award Policy against the remote cooldown anchor.

    Args:
        user_id:      Account owning the session.
        sample:       The fix to process.
        session:      Durable session slots for user_id.
        accounts:     Remote account store.
        oracle:       Throttled traffic/road oracles bound to session.
        still_active: Returns False once this sampler has been stopped;
                      checked before any write and again before awarding.
        now:          Evaluation time; defaults to the fix timestamp.

    Returns:
        FixOutcome describing what happened.
    """
    if not still_active():
        logger.info("Fix discarded, sampler no longer active: user=%s", user_id)
        return FixOutcome(discarded=True)

    now = sample.timestamp_ms if now is None else now

    verdict = detect_stuck(session, sample, now)
    severity = oracle.refresh_traffic(sample, now, still_active)
    road: RoadStatus = oracle.refresh_on_road(sample, now, still_active)

    outcome = FixOutcome(verdict=verdict, severity=severity, on_road=road.on_road)

    if not still_active():
        logger.info("Award skipped, sampler stopped mid-fix: user=%s", user_id)
        outcome.discarded = True
        return outcome

    outcome.award = award_points(
        accounts,
        session,
        user_id,
        stuck=verdict is StuckVerdict.STUCK,
        on_road=road.on_road,
        severity=severity,
        now=now,
    )

    logger.debug(
        "Fix processed: user=%s verdict=%s severity=%s on_road=%s awarded=%d",
        user_id,
        verdict.value,
        severity.value,
        road.on_road,
        outcome.points_awarded,
    )
    return outcome
