from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class TrafficSeverity(str, Enum):
    """Congestion class derived from the travel-time ratio."""
    UNKNOWN = "unknown"
    FREE_FLOW = "free_flow"
    MODERATE = "moderate"
    HEAVY = "heavy"
    ERROR = "error"

class Location(BaseModel):
    lat: float
    lng: float

    @field_validator("lat")
    @classmethod
    def validate_lat(cls, v: float) -> float:
        """Reject latitudes outside the valid range [-90, 90]."""
        if not -90 <= v <= 90:
            raise ValueError(f"lat must be between -90 and 90, got {v}")
        return v

    @field_validator("lng")
    @classmethod
    def validate_lng(cls, v: float) -> float:
        """Reject longitudes outside the valid range [-180, 180]."""
        if not -180 <= v <= 180:
            raise ValueError(f"lng must be between -180 and 180, got {v}")
        return v

class ReferencePoint(Location):
    """Anchor for stationary-time accumulation."""
    timestamp_ms: int

class LocationSample(Location):
    """A single fix from the device location provider."""
    model_config = ConfigDict(frozen=True)

    heading: Optional[float] = None
    timestamp_ms: int

    @field_validator("timestamp_ms")
    @classmethod
    def validate_timestamp(cls, v: int) -> int:
        """Reject negative epoch timestamps."""
        if v < 0:
            raise ValueError(f"timestamp_ms must be non-negative, got {v}")
        return v

class PointHistoryEntry(BaseModel):
    amount: int
    reason: str
    timestamp: str   # ISO-8601 UTC

class UserAccount(BaseModel):
    user_id: str
    points: int = 0
    point_history: List[PointHistoryEntry] = Field(default_factory=list)
    last_point_time: int = 0

class LocationPermissions(BaseModel):
    foreground: bool
    background: bool

class LocationBatchRequest(BaseModel):
    fixes: List[LocationSample]

    @field_validator("fixes")
    @classmethod
    def validate_fixes_count(cls, v: List[LocationSample]) -> List[LocationSample]:
        """Reject empty batches and batches larger than 100 fixes."""
        if not 1 <= len(v) <= 100:
            raise ValueError(f"fixes must contain between 1 and 100 items, got {len(v)}")
        return v

class StatusView(BaseModel):
    user_id: str
    points: int
    traffic_severity: TrafficSeverity
    stuck: bool
    on_road: bool
    snapped_location: Optional[Location] = None
    cooldown_remaining_ms: int

class PointsResponse(BaseModel):
    user_id: str
    points: int
    point_history: List[PointHistoryEntry]
