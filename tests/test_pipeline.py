"""tests/test_pipeline.py — End-to-end scenarios for process_fix().

Session state and accounts live in fakeredis.  Most scenarios use a mocked
OracleClient that reports a heavy jam on a road; the throttling scenario
drives the real OracleClient over a mocked googlemaps client.

Scenario (defaults: 30 m / 60 s stuck thresholds, 300 s cooldown)
--------
  reference (0, 0) at t=0
  fix 1  (0.00005, 0) t=70 s   → STUCK, HEAVY, on road → +10 points
  fix 2  same place   t=80 s   → STUCK, but cooldown   → no grant
  fix 3  50 m north   t=90 s   → MOVING, reference reset
"""
from unittest.mock import MagicMock

import fakeredis
import pytest

from trafficshare.models.schemas import LocationSample, ReferencePoint, TrafficSeverity
from trafficshare.oracles.traffic_client import OracleClient, RoadStatus
from trafficshare.state.account_store import AccountStore
from trafficshare.state.session_state import SessionStore
from trafficshare.workers.award_policy import HEAVY_REASON
from trafficshare.workers.pipeline import process_fix
from trafficshare.workers.stuck_detector import StuckVerdict

USER_ID = "user-001"


@pytest.fixture()
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture()
def session(fake_redis):
    store = SessionStore(fake_redis, USER_ID)
    store.set_last_known_location(ReferencePoint(lat=0.0, lng=0.0, timestamp_ms=0))
    return store


@pytest.fixture()
def accounts(fake_redis):
    store = AccountStore(fake_redis)
    store.ensure_user(USER_ID)
    return store


@pytest.fixture()
def oracle():
    mock = MagicMock(spec=OracleClient)
    mock.refresh_traffic.return_value = TrafficSeverity.HEAVY
    mock.refresh_on_road.return_value = RoadStatus(on_road=True)
    return mock


def _run(session, accounts, oracle, lat, lng, t, **kwargs):
    sample = LocationSample(lat=lat, lng=lng, timestamp_ms=t)
    return process_fix(
        USER_ID, sample, session=session, accounts=accounts, oracle=oracle, **kwargs
    )


def test_stuck_in_heavy_traffic_earns_ten_points(session, accounts, oracle):
    outcome = _run(session, accounts, oracle, 0.00005, 0.0, 70_000)

    assert outcome.verdict is StuckVerdict.STUCK
    assert outcome.severity is TrafficSeverity.HEAVY
    assert outcome.on_road is True
    assert outcome.award.granted is True
    assert outcome.points_awarded == 10

    account = accounts.get_user(USER_ID)
    assert account.points == 10
    assert account.last_point_time == 70_000
    assert account.point_history[0].reason == HEAVY_REASON
    assert session.get_last_point_award_at() == 70_000


def test_cooldown_blocks_second_grant(session, accounts, oracle):
    _run(session, accounts, oracle, 0.00005, 0.0, 70_000)
    outcome = _run(session, accounts, oracle, 0.00005, 0.0, 80_000)

    assert outcome.verdict is StuckVerdict.STUCK
    assert outcome.on_road is True
    assert outcome.severity is TrafficSeverity.HEAVY
    assert outcome.points_awarded == 0
    account = accounts.get_user(USER_ID)
    assert account.points == 10
    assert len(account.point_history) == 1


def test_movement_clears_stuck(session, accounts, oracle):
    _run(session, accounts, oracle, 0.00005, 0.0, 70_000)
    outcome = _run(session, accounts, oracle, 0.00045, 0.0, 90_000)

    assert outcome.verdict is StuckVerdict.MOVING
    assert session.get_last_known_location() == ReferencePoint(
        lat=0.00045, lng=0.0, timestamp_ms=90_000
    )
    assert session.get_cached_is_stuck() is False

    # Stopping again immediately needs a fresh 60 s from the reset
    assert _run(session, accounts, oracle, 0.00045, 0.0, 140_000).verdict is StuckVerdict.MOVING
    assert _run(session, accounts, oracle, 0.00045, 0.0, 150_000).verdict is StuckVerdict.STUCK


def test_steps_run_in_order_with_fix_time(session, accounts, oracle):
    _run(session, accounts, oracle, 0.00005, 0.0, 70_000)

    sample = oracle.refresh_traffic.call_args.args[0]
    assert sample.timestamp_ms == 70_000
    assert oracle.refresh_traffic.call_args.args[1] == 70_000
    assert oracle.refresh_on_road.call_args.args[1] == 70_000


def test_inactive_sampler_discards_fix_before_any_write(session, accounts, oracle):
    outcome = _run(session, accounts, oracle, 0.00045, 0.0, 90_000, still_active=lambda: False)

    assert outcome.discarded is True
    assert session.get_last_known_location() == ReferencePoint(lat=0.0, lng=0.0, timestamp_ms=0)
    oracle.refresh_traffic.assert_not_called()
    oracle.refresh_on_road.assert_not_called()


def test_sampler_stopped_mid_fix_skips_award(session, accounts, oracle):
    calls = iter([True, False])
    outcome = _run(
        session, accounts, oracle, 0.00005, 0.0, 70_000, still_active=lambda: next(calls, False)
    )

    assert outcome.discarded is True
    assert outcome.award is None
    assert accounts.get_user(USER_ID).points == 0


def test_explicit_now_overrides_fix_timestamp(session, accounts, oracle):
    outcome = _run(session, accounts, oracle, 0.00005, 0.0, 10_000, now=70_000)
    assert outcome.verdict is StuckVerdict.STUCK


def test_real_oracle_throttled_across_fixes(fake_redis, accounts):
    """Two fixes 10 s apart: one Distance Matrix and one Roads call."""
    t0 = 1_700_000_000_000
    session = SessionStore(fake_redis, USER_ID)
    session.set_last_known_location(ReferencePoint(lat=0.0, lng=0.0, timestamp_ms=t0))
    gmaps = MagicMock()
    gmaps.distance_matrix.return_value = {
        "rows": [{"elements": [{
            "status": "OK",
            "duration": {"value": 600},
            "duration_in_traffic": {"value": 1200},
        }]}]
    }
    gmaps.snap_to_roads.return_value = [{"location": {"latitude": 0.00006, "longitude": 0.0}}]
    oracle = OracleClient(session, gmaps=gmaps)

    first = _run(session, accounts, oracle, 0.00005, 0.0, t0 + 70_000)
    second = _run(session, accounts, oracle, 0.00005, 0.0, t0 + 80_000)

    assert gmaps.distance_matrix.call_count == 1
    assert gmaps.snap_to_roads.call_count == 1
    assert first.points_awarded == 10
    assert second.severity is TrafficSeverity.HEAVY
    assert second.on_road is True
    assert second.points_awarded == 0
