"""trafficshare/state/projection.py — Read-only status view for the traffic screen."""
import logging

from trafficshare.config import settings
from trafficshare.models.schemas import StatusView
from trafficshare.state.account_store import AccountStore
from trafficshare.state.session_state import SessionStore

logger = logging.getLogger(__name__)


def cooldown_remaining_ms(now: int, last_point_time: int) -> int:
    """Milliseconds until the next award is possible, never negative."""
    return max(0, settings.COOLDOWN_INTERVAL_MS - (now - last_point_time))


def build_status_view(
    session: SessionStore,
    accounts: AccountStore,
    user_id: str,
    now: int,
) -> StatusView:
    """Assemble the display model from cached session slots and the remote account.

    Never writes.  When the account does not exist yet, points are 0 and the
    cooldown is anchored on the local mirror.
    """
    state = session.load()
    account = accounts.get_user(user_id)
    if account is None:
        points, last_point_time = 0, state.last_point_award_at
    else:
        points, last_point_time = account.points, account.last_point_time

    return StatusView(
        user_id=user_id,
        points=points,
        traffic_severity=state.cached_traffic_severity,
        stuck=state.cached_is_stuck,
        on_road=state.cached_on_road,
        snapped_location=state.cached_snapped_location,
        cooldown_remaining_ms=cooldown_remaining_ms(now, last_point_time),
    )
