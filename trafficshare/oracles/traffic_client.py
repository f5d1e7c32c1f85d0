"""trafficshare/oracles/traffic_client.py — Throttled Google Maps oracles.

Two independent channels, each with its own minimum call interval:

    traffic  Distance Matrix (origin → point projected ahead along heading)
             ratio = duration_in_traffic / duration → TrafficSeverity
    road     Roads snap → distance to nearest road → on_road flag

When a channel is throttled, or the call fails, the last cached value from
the session store is returned so the award policy always has a
classification, only possibly a stale one.

Network failures (transport error, timeout) leave the throttle timestamp
untouched so the next fix retries immediately.  A call that reached Google
but produced no usable answer still consumes the throttle window.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

import googlemaps
from googlemaps.exceptions import ApiError, Timeout, TransportError

from trafficshare.config import settings
from trafficshare.models.schemas import Location, LocationSample, TrafficSeverity
from trafficshare.state.session_state import SessionStore
from trafficshare.utils.geo import distance_meters, projected_point

logger = logging.getLogger(__name__)

_NETWORK_ERRORS = (TransportError, Timeout)


@dataclass
class RoadStatus:
    on_road: bool
    snapped_location: Optional[Location] = None


def classify_ratio(ratio: float) -> TrafficSeverity:
    """Map a travel-time ratio onto a severity class using the configured thresholds."""
    if ratio > settings.HEAVY_TRAFFIC_RATIO:
        return TrafficSeverity.HEAVY
    if ratio > settings.MODERATE_TRAFFIC_RATIO:
        return TrafficSeverity.MODERATE
    return TrafficSeverity.FREE_FLOW


def traffic_ratio(element: dict) -> float:
    """Return duration_in_traffic / duration for one Distance Matrix element.

    A missing or zero normal duration yields 1.0.  Raises KeyError if the
    element carries no traffic duration at all.
    """
    in_traffic = element["duration_in_traffic"]["value"]
    normal = (element.get("duration") or {}).get("value")
    if not normal:
        return 1.0
    return in_traffic / normal


def _always_active() -> bool:
    return True


class OracleClient:
    """Traffic and road classification for one user's session."""

    def __init__(self, session: SessionStore, gmaps: Optional[googlemaps.Client] = None) -> None:
        self.session = session
        self._gmaps = gmaps

    @property
    def gmaps(self) -> googlemaps.Client:
        if self._gmaps is None:
            self._gmaps = googlemaps.Client(
                key=settings.GOOGLE_MAPS_API_KEY,
                timeout=settings.ORACLE_TIMEOUT_SECONDS,
            )
        return self._gmaps

    # ------------------------------------------------------------------
    # Traffic channel
    # ------------------------------------------------------------------

    def refresh_traffic(
        self,
        sample: LocationSample,
        now: int,
        still_active: Optional[Callable[[], bool]] = None,
    ) -> TrafficSeverity:
        """Return the current traffic severity, calling Google only when the throttle allows."""
        still_active = still_active or _always_active
        user_id = self.session.user_id

        last_call = self.session.get_last_traffic_oracle_call_at()
        if now - last_call < settings.MIN_TRAFFIC_CALL_INTERVAL_MS:
            cached = self.session.get_cached_traffic_severity()
            logger.debug(
                "Traffic oracle throttled: user=%s %dms since last call, cached=%s",
                user_id,
                now - last_call,
                cached.value,
            )
            return cached

        dest_lat, dest_lng = projected_point(
            sample.lat, sample.lng, sample.heading, settings.TRAFFIC_CHECK_DISTANCE_METERS
        )

        stamp_throttle = True
        try:
            response = self.gmaps.distance_matrix(
                origins=[(sample.lat, sample.lng)],
                destinations=[(dest_lat, dest_lng)],
                mode="driving",
                departure_time=datetime.now(timezone.utc),
            )
            element = response["rows"][0]["elements"][0]
            if element.get("status") != "OK":
                raise ValueError(f"element status {element.get('status')}")
            ratio = traffic_ratio(element)
            severity = classify_ratio(ratio)
            logger.info(
                "Traffic ratio: user=%s ratio=%.2f severity=%s",
                user_id,
                ratio,
                severity.value,
            )
        except _NETWORK_ERRORS as exc:
            logger.warning("Traffic oracle unreachable: user=%s error=%s", user_id, exc)
            severity = TrafficSeverity.ERROR
            stamp_throttle = False
        except (ApiError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Traffic oracle returned no usable data: user=%s error=%s", user_id, exc)
            severity = TrafficSeverity.ERROR

        if not still_active():
            logger.info("Discarding traffic result for inactive sampler: user=%s", user_id)
            return self.session.get_cached_traffic_severity()

        if stamp_throttle:
            self.session.set_last_traffic_oracle_call_at(now)
        self.session.set_cached_traffic_severity(severity)
        return severity

    # ------------------------------------------------------------------
    # Road channel
    # ------------------------------------------------------------------

    def _cached_road_status(self) -> RoadStatus:
        return RoadStatus(
            on_road=self.session.get_cached_on_road(),
            snapped_location=self.session.get_cached_snapped_location(),
        )

    def refresh_on_road(
        self,
        sample: LocationSample,
        now: int,
        still_active: Optional[Callable[[], bool]] = None,
    ) -> RoadStatus:
        """Return whether the sample lies on a road, calling Google only when the throttle allows."""
        still_active = still_active or _always_active
        user_id = self.session.user_id

        last_call = self.session.get_last_road_oracle_call_at()
        if now - last_call < settings.MIN_ROADS_CALL_INTERVAL_MS:
            cached = self._cached_road_status()
            logger.debug(
                "Roads oracle throttled: user=%s %dms since last call, cached on_road=%s",
                user_id,
                now - last_call,
                cached.on_road,
            )
            return cached

        try:
            snapped_points = self.gmaps.snap_to_roads(path=[(sample.lat, sample.lng)])
            if snapped_points:
                snapped = snapped_points[0]["location"]
                snapped_location = Location(lat=snapped["latitude"], lng=snapped["longitude"])
                distance_to_road = distance_meters(
                    sample.lat, sample.lng, snapped_location.lat, snapped_location.lng
                )
                status = RoadStatus(
                    on_road=distance_to_road < settings.ON_ROAD_THRESHOLD_METERS,
                    snapped_location=snapped_location,
                )
                logger.info(
                    "Distance to road: user=%s distance=%.1fm on_road=%s",
                    user_id,
                    distance_to_road,
                    status.on_road,
                )
            else:
                status = RoadStatus(on_road=False, snapped_location=None)
                logger.info("No snapped road found: user=%s", user_id)
        except _NETWORK_ERRORS as exc:
            logger.warning("Roads oracle unreachable: user=%s error=%s", user_id, exc)
            return self._cached_road_status()
        except (ApiError, KeyError, IndexError, TypeError, ValueError) as exc:
            logger.warning("Roads oracle returned no usable data: user=%s error=%s", user_id, exc)
            if still_active():
                self.session.set_last_road_oracle_call_at(now)
            return self._cached_road_status()

        if not still_active():
            logger.info("Discarding road result for inactive sampler: user=%s", user_id)
            return self._cached_road_status()

        self.session.set_last_road_oracle_call_at(now)
        self.session.set_cached_on_road(status.on_road)
        self.session.set_cached_snapped_location(status.snapped_location)
        return status
