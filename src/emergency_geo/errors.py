from __future__ import annotations


class GeoEngineError(Exception):
    """Base class for every error raised by the zone/sweep/cluster engine."""


class GeometryError(GeoEngineError):
    """Malformed polygon, circle or point. Never retried; the caller must fix the input."""


class ValidationError(GeoEngineError):
    """A zone draft or partial update violates the zone invariants."""


class NotFoundError(GeoEngineError):
    def __init__(self, zone_id: str) -> None:
        super().__init__(f"Zone not found: {zone_id}")
        self.zone_id = zone_id


class RoutingError(GeoEngineError):
    """The routing service failed or returned inconsistent data."""
