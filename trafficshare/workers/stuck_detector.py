"""trafficshare/workers/stuck_detector.py — Stationary-in-traffic detection.

The verdict is derived from the persisted reference point alone, so a
process that is killed and restarted resumes exactly where it left off:

  - no reference yet        → store the fix as reference, MOVING
  - stale / duplicate fix   → re-derive the verdict, reference untouched
  - moved ≥ distance limit  → reference replaced by the fix, MOVING
  - still for ≥ time limit  → STUCK, reference untouched
  - otherwise               → MOVING, reference untouched

Thresholds come from settings (STUCK_DISTANCE_THRESHOLD_METERS,
STUCK_TIME_THRESHOLD_MS).
"""
import logging
from enum import Enum
from typing import Optional, Tuple

from trafficshare.config import settings
from trafficshare.models.schemas import LocationSample, ReferencePoint
from trafficshare.state.session_state import SessionStore
from trafficshare.utils.geo import distance_meters

logger = logging.getLogger(__name__)


class StuckVerdict(str, Enum):
    MOVING = "moving"
    STUCK = "stuck"


def evaluate_stuck(
    sample: LocationSample,
    reference: Optional[ReferencePoint],
    now: int,
) -> Tuple[StuckVerdict, Optional[ReferencePoint]]:
    """Classify a fix against the current reference point.

    Args:
        sample:    The fix being processed.
        reference: The persisted anchor, or None if none exists yet.
        now:       Evaluation time in epoch milliseconds.

    Returns:
        (verdict, reference) where reference is the anchor that should be
        persisted afterwards; it is the input object itself when unchanged.
    """
    if reference is None:
        fresh = ReferencePoint(lat=sample.lat, lng=sample.lng, timestamp_ms=now)
        return StuckVerdict.MOVING, fresh

    distance = distance_meters(reference.lat, reference.lng, sample.lat, sample.lng)
    elapsed = now - reference.timestamp_ms
    stale = sample.timestamp_ms <= reference.timestamp_ms

    if distance >= settings.STUCK_DISTANCE_THRESHOLD_METERS:
        if stale:
            return StuckVerdict.MOVING, reference
        moved = ReferencePoint(lat=sample.lat, lng=sample.lng, timestamp_ms=now)
        return StuckVerdict.MOVING, moved

    if elapsed >= settings.STUCK_TIME_THRESHOLD_MS:
        return StuckVerdict.STUCK, reference

    return StuckVerdict.MOVING, reference


def detect_stuck(session: SessionStore, sample: LocationSample, now: int) -> StuckVerdict:
    """Run evaluate_stuck against the freshest persisted reference and persist the outcome."""
    reference = session.get_last_known_location()
    verdict, new_reference = evaluate_stuck(sample, reference, now)

    if new_reference is not reference:
        session.set_last_known_location(new_reference)
        if reference is None:
            logger.info("Reference point initialised: user=%s", session.user_id)
        else:
            logger.info(
                "User moved, stationary timer reset: user=%s lat=%.5f lng=%.5f",
                session.user_id,
                sample.lat,
                sample.lng,
            )
    elif reference is not None and sample.timestamp_ms <= reference.timestamp_ms:
        logger.debug(
            "Stale fix ignored for reference: user=%s fix_ts=%d ref_ts=%d",
            session.user_id,
            sample.timestamp_ms,
            reference.timestamp_ms,
        )

    if verdict is StuckVerdict.STUCK:
        logger.info(
            "User is stuck: user=%s stationary for %ds",
            session.user_id,
            (now - reference.timestamp_ms) // 1000,
        )

    session.set_cached_is_stuck(verdict is StuckVerdict.STUCK)
    return verdict
