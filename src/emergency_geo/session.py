from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Optional, Tuple

from emergency_geo.models import Cluster, EmergencyZoneStats, Entity, GeoSweep, Zone


@dataclass(frozen=True)
class MapSession:
    """Immutable view state of one operator map, replaced on every change."""

    zones: Tuple[Zone, ...] = ()
    entities: Tuple[Entity, ...] = ()
    sweeps: Tuple[GeoSweep, ...] = ()
    clusters: Tuple[Cluster, ...] = ()
    selected_zone_stats: Optional[EmergencyZoneStats] = None
    version: int = 0

    def entities_of_type(self, entity_type: str) -> Tuple[Entity, ...]:
        return tuple(e for e in self.entities if e.type == entity_type)


_SESSION_FIELDS = {f.name for f in fields(MapSession)} - {"version"}


def update_session(session: MapSession, **changes) -> MapSession:
    unknown = set(changes) - _SESSION_FIELDS
    if unknown:
        raise TypeError(f"Unknown session fields: {', '.join(sorted(unknown))}")
    for name in ("zones", "entities", "sweeps", "clusters"):
        if name in changes:
            changes[name] = tuple(changes[name])
    return replace(session, version=session.version + 1, **changes)
