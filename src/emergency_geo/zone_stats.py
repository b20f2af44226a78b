from __future__ import annotations

import math
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from emergency_geo.geometry import GeometryKernel, wrap_longitude
from emergency_geo.models import EmergencyZoneStats, Entity, Polygon, Zone, utc_now


def _is_active_incident(entity: Entity) -> bool:
    return entity.status == "active" and entity.resolved_at is None


def _has_resolution(entity: Entity) -> bool:
    return (
        entity.created_at is not None
        and entity.resolved_at is not None
        and entity.resolved_at >= entity.created_at
    )


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class ZoneStatsAggregator:
    def __init__(self, kernel: GeometryKernel | None = None) -> None:
        self.kernel = kernel or GeometryKernel()

    def _in_zone(
        self,
        entities: Iterable[Entity],
        keep: Callable[[Entity], bool],
        polygon: Polygon,
        bbox,
    ) -> List[Entity]:
        # Attribute filter first, then bbox, then the exact polygon test.
        # Longitudes are read in the frame of the bbox midpoint so circle zones
        # across the antimeridian still match.
        mid_lon = (bbox[0] + bbox[2]) / 2
        matched = []
        for e in entities:
            if not keep(e):
                continue
            point = (wrap_longitude(e.longitude, mid_lon), e.latitude)
            if self.kernel.in_bounding_box(point, bbox) and self.kernel.point_in_polygon(point, polygon):
                matched.append(e)
        return matched

    def compute_stats(
        self,
        zone: Zone,
        incidents: Iterable[Entity],
        helpers: Iterable[Entity],
        responders: Iterable[Entity],
        now: Optional[datetime] = None,
    ) -> EmergencyZoneStats:
        polygon = self.kernel.as_polygon(zone.geometry)
        bbox = self.kernel.bounding_box(polygon)
        incidents = list(incidents)

        active = self._in_zone(incidents, _is_active_incident, polygon, bbox)
        resolved = self._in_zone(incidents, _has_resolution, polygon, bbox)
        available = self._in_zone(helpers, lambda e: e.status == "available", polygon, bbox)
        assigned = self._in_zone(responders, lambda e: e.status == "assigned", polygon, bbox)

        average = 0
        if resolved:
            total_minutes = sum((e.resolved_at - e.created_at).total_seconds() / 60 for e in resolved)
            average = _round_half_up(total_minutes / len(resolved))

        return EmergencyZoneStats(
            zone_id=zone.id,
            zone_name=zone.name,
            active_incident_count=len(active),
            available_helper_count=len(available),
            assigned_responder_count=len(assigned),
            average_response_time_minutes=average,
            computed_at=now or utc_now(),
        )
