"""trafficshare/workers/award_policy.py — Point award decision and grant.

decide_award() is pure; award_points() wraps it with the reads and writes
against the remote account and the local session mirror.

Rules (all must hold):
  0. Cooldown: at most one grant per COOLDOWN_INTERVAL_MS, anchored on the
     remote last_point_time (visible to every sampler of the user).
  1. The user is stuck.
  2. The user is on a road.
  3. Traffic is HEAVY (HEAVY_TRAFFIC_POINTS) or MODERATE
     (MODERATE_TRAFFIC_POINTS); other severities grant nothing.

The cooldown check and the grant are not one atomic step, so two samplers
of the same user racing inside one window may both grant.  The coordinator
keeps a single active sampler per user to make that window rare.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from redis.exceptions import RedisError

from trafficshare.config import settings
from trafficshare.models.schemas import TrafficSeverity
from trafficshare.state.account_store import AccountStore
from trafficshare.state.session_state import SessionStore

logger = logging.getLogger(__name__)

HEAVY_REASON = "stuck in heavy traffic on road"
MODERATE_REASON = "stuck in moderate traffic on road"


@dataclass
class AwardDecision:
    eligible: bool
    amount: int = 0
    reason: str = ""

    @property
    def grants(self) -> bool:
        return self.eligible and self.amount > 0


@dataclass
class AwardResult:
    granted: bool
    amount: int = 0
    reason: str = ""
    new_points: Optional[int] = None


def decide_award(
    stuck: bool,
    on_road: bool,
    severity: TrafficSeverity,
    now: int,
    last_point_time: int,
) -> AwardDecision:
    """Decide whether, and how many, points to grant for the current fix."""
    cooldown_ready = now - last_point_time >= settings.COOLDOWN_INTERVAL_MS
    eligible = stuck and on_road and cooldown_ready

    if severity is TrafficSeverity.HEAVY:
        amount, reason = settings.HEAVY_TRAFFIC_POINTS, HEAVY_REASON
    elif severity is TrafficSeverity.MODERATE:
        amount, reason = settings.MODERATE_TRAFFIC_POINTS, MODERATE_REASON
    else:
        amount, reason = 0, ""

    return AwardDecision(eligible=eligible, amount=amount, reason=reason)


def resolve_last_point_time(accounts: AccountStore, session: SessionStore, user_id: str) -> int:
    """Return the authoritative cooldown anchor, converging the local mirror to it.

    The remote value wins; the local mirror is used only when the account
    carries no anchor at all.
    """
    local = session.get_last_point_award_at()
    remote = accounts.get_last_point_time(user_id)
    if remote is None:
        return local
    if remote != local:
        logger.debug(
            "Cooldown mirror converged: user=%s local=%d remote=%d",
            user_id,
            local,
            remote,
        )
        session.set_last_point_award_at(remote)
    return remote


def award_points(
    accounts: AccountStore,
    session: SessionStore,
    user_id: str,
    stuck: bool,
    on_road: bool,
    severity: TrafficSeverity,
    now: int,
) -> AwardResult:
    """Evaluate the award rules against fresh state and grant points if they hold."""
    last_point_time = resolve_last_point_time(accounts, session, user_id)
    decision = decide_award(stuck, on_road, severity, now, last_point_time)

    logger.debug(
        "Point check: user=%s stuck=%s on_road=%s severity=%s cooldown_ready=%s",
        user_id,
        stuck,
        on_road,
        severity.value,
        now - last_point_time >= settings.COOLDOWN_INTERVAL_MS,
    )

    if not decision.grants:
        if decision.eligible:
            logger.info(
                "Stuck on road but traffic is %s, no points awarded: user=%s",
                severity.value,
                user_id,
            )
        return AwardResult(granted=False)

    try:
        new_points = accounts.grant_points(user_id, decision.amount, decision.reason, now)
    except RedisError as exc:
        logger.error(
            "Point grant failed, cooldown not advanced: user=%s amount=%d error=%s",
            user_id,
            decision.amount,
            exc,
        )
        return AwardResult(granted=False, amount=decision.amount, reason=decision.reason)

    session.set_last_point_award_at(now)
    logger.info(
        "Points awarded: user=%s amount=%d total=%d reason=%s",
        user_id,
        decision.amount,
        new_points,
        decision.reason,
    )
    return AwardResult(
        granted=True,
        amount=decision.amount,
        reason=decision.reason,
        new_points=new_points,
    )
