"""tests/test_websocket_endpoint.py — Integration tests for WS /ws/user/{user_id}.

Uses FastAPI's TestClient WebSocket support (synchronous).

Strategy: use the real ConnectionManager singleton and the real pipeline,
and mock only the external I/O:
  - get_redis                    → fakeredis (shared with assertions)
  - manager.push_status_updates  → AsyncMock (no polling loop)
  - OracleClient                 → real class over a MagicMock googlemaps client
"""
from contextlib import ExitStack
from unittest.mock import AsyncMock, MagicMock, patch

import fakeredis
import pytest
from fastapi.testclient import TestClient
from pydantic import ValidationError

from trafficshare.main import app
from trafficshare.oracles.traffic_client import OracleClient
from trafficshare.state.account_store import AccountStore
from trafficshare.state.session_state import SessionStore
from trafficshare.websocket.handlers import parse_location_frame
from trafficshare.websocket.manager import manager as ws_manager
from trafficshare.workers.scheduler import CeleryTaskScheduler, background_task_id

USER_ID = "user-001"
T0 = 1_718_442_870_000
GRANTED = {"type": "permissions", "foreground": True, "background": True}


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def fake_redis():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture()
def gmaps():
    gmaps = MagicMock()
    gmaps.distance_matrix.return_value = {
        "rows": [{"elements": [{
            "status": "OK",
            "duration": {"value": 600},
            "duration_in_traffic": {"value": 1200},
        }]}]
    }
    gmaps.snap_to_roads.side_effect = lambda path: [
        {"location": {"latitude": path[0][0], "longitude": path[0][1]}}
    ]
    return gmaps


@pytest.fixture()
def ws_env(fake_redis, gmaps):
    """Apply the standard patches for all WebSocket tests."""
    with ExitStack() as stack:
        stack.enter_context(
            patch("trafficshare.websocket.handlers.get_redis", return_value=fake_redis)
        )
        stack.enter_context(
            patch.object(ws_manager, "push_status_updates", new=AsyncMock())
        )
        stack.enter_context(
            patch(
                "trafficshare.websocket.handlers.OracleClient",
                side_effect=lambda session: OracleClient(session, gmaps=gmaps),
            )
        )
        yield fake_redis


def _background_registered(fake_redis) -> bool:
    return CeleryTaskScheduler(fake_redis, MagicMock()).is_registered(background_task_id(USER_ID))


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------


def test_handshake_returns_sampling_config(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        config = ws.receive_json()

    assert config == {
        "type": "sampling_config",
        "distance_interval_m": 50,
        "time_interval_ms": 10_000,
    }


def test_handshake_creates_account(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()

    assert AccountStore(ws_env).get_user(USER_ID) is not None


def test_missing_handshake_is_rejected(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json({"type": "location", "lat": 0.0, "lng": 0.0})
        msg = ws.receive_json()

    assert msg == {"type": "error", "code": "permissions_required"}


@pytest.mark.parametrize(
    "handshake",
    [
        {"type": "permissions", "foreground": False, "background": True},
        {"type": "permissions", "foreground": True, "background": False},
    ],
)
def test_permission_denied_is_fatal(client, ws_env, handshake):
    CeleryTaskScheduler(ws_env, MagicMock()).register_recurring(
        background_task_id(USER_ID), "handler"
    )

    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(handshake)
        msg = ws.receive_json()

    assert msg == {"type": "error", "code": "permission_denied"}
    assert not _background_registered(ws_env)
    assert USER_ID not in ws_manager.coordinators


def test_store_unavailable_is_reported(client):
    with (
        patch("trafficshare.websocket.handlers.get_redis", return_value=None),
        patch.object(ws_manager, "push_status_updates", new=AsyncMock()),
    ):
        with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
            msg = ws.receive_json()

    assert msg == {"type": "error", "code": "unavailable"}


# ---------------------------------------------------------------------------
# Foreground / background hand-over
# ---------------------------------------------------------------------------


def test_connect_stops_background_sampling(client, ws_env):
    CeleryTaskScheduler(ws_env, MagicMock()).register_recurring(
        background_task_id(USER_ID), "handler"
    )

    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()
        assert not _background_registered(ws_env)


def test_disconnect_resumes_background_sampling(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()

    assert _background_registered(ws_env)
    assert USER_ID not in ws_manager.active_connections
    assert USER_ID not in ws_manager.coordinators


def test_status_push_started_after_handshake(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()

    ws_manager.push_status_updates.assert_called_once()
    assert ws_manager.push_status_updates.call_args.args[0] == USER_ID


# ---------------------------------------------------------------------------
# Location frames
# ---------------------------------------------------------------------------


def test_location_frames_update_session(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()
        ws.send_json({"type": "location", "lat": 0.0, "lng": 0.0, "timestamp_ms": T0})
        # A stuck fix produces an award frame, which proves the first fix was handled
        ws.send_json({"type": "location", "lat": 0.00005, "lng": 0.0, "timestamp_ms": T0 + 70_000})
        ws.receive_json()

    session = SessionStore(ws_env, USER_ID)
    assert session.get_last_known_location().timestamp_ms == T0
    assert session.get_cached_is_stuck() is True


def test_stuck_in_heavy_traffic_sends_points_awarded(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()
        ws.send_json({"type": "location", "lat": 0.0, "lng": 0.0, "heading": 0.0, "timestamp_ms": T0})
        ws.send_json({"type": "location", "lat": 0.00005, "lng": 0.0, "timestamp_ms": T0 + 70_000})
        msg = ws.receive_json()

    assert msg == {
        "type": "points_awarded",
        "amount": 10,
        "reason": "stuck in heavy traffic on road",
        "points": 10,
    }
    assert AccountStore(ws_env).get_user(USER_ID).points == 10


def test_invalid_location_frame_is_ignored(client, ws_env):
    with client.websocket_connect(f"/ws/user/{USER_ID}") as ws:
        ws.send_json(GRANTED)
        ws.receive_json()
        ws.send_json({"type": "location", "lat": 999.0, "lng": 0.0, "timestamp_ms": T0})
        ws.send_json({"type": "location", "lat": 0.0, "lng": 0.0, "timestamp_ms": T0})
        ws.send_json({"type": "location", "lat": 0.0, "lng": 0.0, "timestamp_ms": T0 + 70_000})
        msg = ws.receive_json()

    assert msg["type"] == "points_awarded"


# ---------------------------------------------------------------------------
# parse_location_frame
# ---------------------------------------------------------------------------


def test_location_frame_keeps_zero_timestamp():
    with patch("trafficshare.websocket.handlers.now_ms", return_value=T0) as mock_now:
        sample = parse_location_frame({"type": "location", "lat": 0.0, "lng": 0.0, "timestamp_ms": 0})

    assert sample.timestamp_ms == 0
    mock_now.assert_not_called()


def test_location_frame_without_timestamp_uses_receipt_time():
    with patch("trafficshare.websocket.handlers.now_ms", return_value=T0):
        sample = parse_location_frame({"type": "location", "lat": 1.0, "lng": 2.0, "heading": 90.0})

    assert sample.timestamp_ms == T0
    assert sample.heading == 90.0


def test_location_frame_with_invalid_coordinates_raises():
    with pytest.raises(ValidationError):
        parse_location_frame({"type": "location", "lat": 999.0, "lng": 0.0, "timestamp_ms": T0})
