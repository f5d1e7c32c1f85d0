"""trafficshare/state/session_state.py — Durable per-user sampling session state.

Each field is stored in its own Redis key so that a reader never has to
reparse unrelated slots:

    session:{user_id}:last_known_location          JSON {lat, lng, timestamp_ms}
    session:{user_id}:last_traffic_oracle_call_at  epoch ms
    session:{user_id}:last_road_oracle_call_at     epoch ms
    session:{user_id}:last_point_award_at          epoch ms
    session:{user_id}:cached_traffic_severity      TrafficSeverity value
    session:{user_id}:cached_on_road               JSON bool
    session:{user_id}:cached_snapped_location      JSON {lat, lng}
    session:{user_id}:cached_is_stuck              JSON bool

Keys carry no TTL: the state must survive process restarts.  A missing or
unreadable key always yields the field's default.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from pydantic import ValidationError

from trafficshare.models.schemas import Location, ReferencePoint, TrafficSeverity

logger = logging.getLogger(__name__)

_FIELDS = (
    "last_known_location",
    "last_traffic_oracle_call_at",
    "last_road_oracle_call_at",
    "last_point_award_at",
    "cached_traffic_severity",
    "cached_on_road",
    "cached_snapped_location",
    "cached_is_stuck",
)


@dataclass
class SessionState:
    """Snapshot of every session slot for one user.

    cached_is_stuck is for display only; decisions always recompute the
    verdict from last_known_location.
    """
    last_known_location: Optional[ReferencePoint] = None
    last_traffic_oracle_call_at: int = 0
    last_road_oracle_call_at: int = 0
    last_point_award_at: int = 0
    cached_traffic_severity: TrafficSeverity = TrafficSeverity.UNKNOWN
    cached_on_road: bool = False
    cached_snapped_location: Optional[Location] = field(default=None)
    cached_is_stuck: bool = False


def _parse_int(raw: str) -> int:
    value = int(raw)
    if value < 0:
        raise ValueError(f"negative timestamp {value}")
    return value


def _parse_bool(raw: str) -> bool:
    value = json.loads(raw)
    if not isinstance(value, bool):
        raise ValueError(f"expected bool, got {value!r}")
    return value


class SessionStore:
    """Read/write access to one user's session slots.

    The client only needs get/set/delete, so any Redis-compatible client
    (including fakeredis) works.
    """

    def __init__(self, client, user_id: str) -> None:
        self.client = client
        self.user_id = user_id

    def _key(self, name: str) -> str:
        return f"session:{self.user_id}:{name}"

    def _read(self, name: str, parse: Callable[[str], Any], default: Any) -> Any:
        raw = self.client.get(self._key(name))
        if raw is None:
            return default
        try:
            return parse(raw)
        except (ValueError, TypeError, ValidationError) as exc:
            logger.warning(
                "Corrupt session field ignored: user=%s field=%s error=%s",
                self.user_id,
                name,
                exc,
            )
            return default

    def _write(self, name: str, value: str) -> None:
        self.client.set(self._key(name), value)

    # -- reference point ----------------------------------------------------

    def get_last_known_location(self) -> Optional[ReferencePoint]:
        return self._read("last_known_location", ReferencePoint.model_validate_json, None)

    def set_last_known_location(self, point: Optional[ReferencePoint]) -> None:
        if point is None:
            self.client.delete(self._key("last_known_location"))
            return
        self._write("last_known_location", point.model_dump_json())

    # -- throttle / cooldown anchors -----------------------------------------

    def get_last_traffic_oracle_call_at(self) -> int:
        return self._read("last_traffic_oracle_call_at", _parse_int, 0)

    def set_last_traffic_oracle_call_at(self, ms: int) -> None:
        self._write("last_traffic_oracle_call_at", str(int(ms)))

    def get_last_road_oracle_call_at(self) -> int:
        return self._read("last_road_oracle_call_at", _parse_int, 0)

    def set_last_road_oracle_call_at(self, ms: int) -> None:
        self._write("last_road_oracle_call_at", str(int(ms)))

    def get_last_point_award_at(self) -> int:
        return self._read("last_point_award_at", _parse_int, 0)

    def set_last_point_award_at(self, ms: int) -> None:
        self._write("last_point_award_at", str(int(ms)))

    # -- cached classifications --------------------------------------------

    def get_cached_traffic_severity(self) -> TrafficSeverity:
        return self._read("cached_traffic_severity", TrafficSeverity, TrafficSeverity.UNKNOWN)

    def set_cached_traffic_severity(self, severity: TrafficSeverity) -> None:
        self._write("cached_traffic_severity", TrafficSeverity(severity).value)

    def get_cached_on_road(self) -> bool:
        return self._read("cached_on_road", _parse_bool, False)

    def set_cached_on_road(self, on_road: bool) -> None:
        self._write("cached_on_road", json.dumps(bool(on_road)))

    def get_cached_snapped_location(self) -> Optional[Location]:
        return self._read("cached_snapped_location", Location.model_validate_json, None)

    def set_cached_snapped_location(self, location: Optional[Location]) -> None:
        if location is None:
            self.client.delete(self._key("cached_snapped_location"))
            return
        self._write("cached_snapped_location", location.model_dump_json())

    def get_cached_is_stuck(self) -> bool:
        return self._read("cached_is_stuck", _parse_bool, False)

    def set_cached_is_stuck(self, stuck: bool) -> None:
        self._write("cached_is_stuck", json.dumps(bool(stuck)))

    # -- whole-session helpers ----------------------------------------------

    def load(self) -> SessionState:
        """Read every slot, applying defaults for missing or corrupt values."""
        return SessionState(
            last_known_location=self.get_last_known_location(),
            last_traffic_oracle_call_at=self.get_last_traffic_oracle_call_at(),
            last_road_oracle_call_at=self.get_last_road_oracle_call_at(),
            last_point_award_at=self.get_last_point_award_at(),
            cached_traffic_severity=self.get_cached_traffic_severity(),
            cached_on_road=self.get_cached_on_road(),
            cached_snapped_location=self.get_cached_snapped_location(),
            cached_is_stuck=self.get_cached_is_stuck(),
        )

    def clear(self) -> None:
        """Delete every session slot for this user."""
        self.client.delete(*(self._key(name) for name in _FIELDS))
        logger.info("Session state cleared: user=%s", self.user_id)
