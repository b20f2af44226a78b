from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple, Union

from emergency_geo.config import CLUSTER_MIXED_COLOR, CLUSTER_RADIUS_METERS, CLUSTER_TYPE_COLORS
from emergency_geo.errors import ValidationError

LonLat = Tuple[float, float]
BoundingBox = Tuple[float, float, float, float]

ENTITY_TYPES = ("incident", "helper", "responder", "hospital")
MIXED = "mixed"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Entity:
    id: str
    type: str
    latitude: float
    longitude: float
    status: str
    created_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if self.type not in ENTITY_TYPES:
            raise ValidationError(f"Unknown entity type {self.type!r} for {self.id}")

    @property
    def lon_lat(self) -> LonLat:
        return (self.longitude, self.latitude)


@dataclass(frozen=True)
class Polygon:
    ring: Tuple[LonLat, ...]


@dataclass(frozen=True)
class Circle:
    center: LonLat
    radius_meters: float


Geometry = Union[Polygon, Circle]


@dataclass(frozen=True)
class ZoneDraft:
    name: str
    geometry: Geometry
    color: str
    opacity: float
    created_by: str
    description: Optional[str] = None
    is_active: bool = True


@dataclass(frozen=True)
class Zone:
    id: str
    name: str
    geometry: Geometry
    color: str
    opacity: float
    created_by: str
    is_active: bool
    created_at: datetime
    updated_at: datetime
    description: Optional[str] = None


@dataclass(frozen=True)
class ZoneChange:
    op: str  # insert | update | delete
    zone: Zone


@dataclass(frozen=True)
class GeoSweep:
    id: str
    center: LonLat
    radius_meters: float
    color: str
    label: str
    responders_count: Optional[int] = None


@dataclass(frozen=True)
class SweepResult:
    matched: Tuple[Entity, ...]
    count: int


@dataclass(frozen=True)
class Cluster:
    id: str
    centroid: LonLat
    member_count: int
    dominant_type: str
    color: str
    members: Tuple[Entity, ...]


@dataclass(frozen=True)
class ClusteringConfig:
    enabled: bool = True
    radius_meters: float = CLUSTER_RADIUS_METERS
    type_colors: dict = field(default_factory=lambda: dict(CLUSTER_TYPE_COLORS))
    mixed_color: str = CLUSTER_MIXED_COLOR


@dataclass(frozen=True)
class EmergencyZoneStats:
    zone_id: str
    zone_name: str
    active_incident_count: int
    available_helper_count: int
    assigned_responder_count: int
    average_response_time_minutes: int
    computed_at: datetime


@dataclass(frozen=True)
class IsochroneZone:
    id: str
    center: LonLat
    time_bands_minutes: Tuple[int, ...]
    colors: Tuple[str, ...]
    geometry: Tuple[Polygon, ...]


@dataclass(frozen=True)
class RouteInfo:
    id: str
    origin: LonLat
    destination: LonLat
    distance_km: float
    duration_minutes: int
    polyline: Tuple[LonLat, ...]
