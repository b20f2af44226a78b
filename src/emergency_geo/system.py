from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Iterable, Optional, Sequence, Tuple

from emergency_geo.clustering import ClusteringEngine
from emergency_geo.config import DEFAULT_SWEEP_RADIUS_METERS, RECOMPUTE_DEBOUNCE_SECONDS, SWEEP_COLORS
from emergency_geo.errors import RoutingError
from emergency_geo.geometry import GeometryKernel
from emergency_geo.isochrone import IsochroneAdapter
from emergency_geo.models import (
    Cluster,
    ClusteringConfig,
    EmergencyZoneStats,
    Entity,
    GeoSweep,
    IsochroneZone,
    LonLat,
    SweepResult,
    Zone,
    ZoneChange,
    ZoneDraft,
)
from emergency_geo.session import MapSession, update_session
from emergency_geo.sweep import SweepAnalyzer, create_sweep
from emergency_geo.zone_stats import ZoneStatsAggregator
from emergency_geo.zone_store import ZoneStore

logger = logging.getLogger(__name__)


class EmergencyMapSystem:
    """Owns the map session and wires zone, sweep, cluster and stats operations to it.

    Entity snapshots arriving in bursts are coalesced by a debounce timer into one
    cluster recomputation over the latest snapshot; recomputations never overlap.
    """

    def __init__(
        self,
        zone_store: ZoneStore,
        clustering_config: Optional[ClusteringConfig] = None,
        routing: Optional[IsochroneAdapter] = None,
        debounce_seconds: float = RECOMPUTE_DEBOUNCE_SECONDS,
    ) -> None:
        self.kernel = GeometryKernel()
        self.zone_store = zone_store
        self.sweep_analyzer = SweepAnalyzer(self.kernel)
        self.clustering = ClusteringEngine(self.kernel)
        self.stats = ZoneStatsAggregator(self.kernel)
        self.routing = routing
        self.clustering_config = clustering_config or ClusteringConfig()
        self.debounce_seconds = debounce_seconds

        self._session = MapSession()
        self._state_lock = threading.Lock()
        self._compute_lock = threading.Lock()
        self._timer_lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self._pending: Optional[Tuple[Entity, ...]] = None

    @property
    def session(self) -> MapSession:
        return self._session

    def _commit(self, **changes) -> MapSession:
        with self._state_lock:
            self._session = update_session(self._session, **changes)
            return self._session

    # Zones

    def load_zones(self) -> Tuple[Zone, ...]:
        zones = self.zone_store.list(active_only=True)
        return self._commit(zones=zones).zones

    def handle_zone_change(self, change: ZoneChange) -> Tuple[Zone, ...]:
        return self._commit(zones=self.zone_store.apply_change(change)).zones

    def create_zone(self, draft: ZoneDraft) -> Zone:
        zone = self.zone_store.create(draft)
        self._commit(zones=self.zone_store.zones)
        return zone

    def update_zone(self, zone_id: str, fields: dict) -> Zone:
        zone = self.zone_store.update(zone_id, fields)
        self._commit(zones=self.zone_store.zones)
        return zone

    def delete_zone(self, zone_id: str) -> None:
        self.zone_store.delete(zone_id)
        self._commit(zones=self.zone_store.zones)

    def zone_stats(self, zone_id: str) -> EmergencyZoneStats:
        zone = self.zone_store.get(zone_id)
        session = self._session
        stats = self.stats.compute_stats(
            zone,
            incidents=session.entities_of_type("incident"),
            helpers=session.entities_of_type("helper"),
            responders=session.entities_of_type("responder"),
        )
        self._commit(selected_zone_stats=stats)
        return stats

    # Sweeps

    def sweep(
        self,
        center: LonLat,
        radius_meters: float = DEFAULT_SWEEP_RADIUS_METERS,
        color: str = SWEEP_COLORS["danger"],
        label: Optional[str] = None,
    ) -> Tuple[GeoSweep, SweepResult]:
        sweep = create_sweep(center, radius_meters, color=color, label=label)
        responders = [e for e in self._session.entities_of_type("responder") if e.status == "available"]
        result = self.sweep_analyzer.analyze_sweep(sweep, responders)

        sweep = replace(sweep, responders_count=result.count)
        self._commit(sweeps=self._session.sweeps + (sweep,))
        return sweep, result

    def clear_sweeps(self) -> None:
        self._commit(sweeps=())

    # Entities and clusters

    def ingest_entities(self, entities: Iterable[Entity]) -> None:
        snapshot = tuple(entities)
        self._commit(entities=snapshot)
        with self._timer_lock:
            self._pending = snapshot
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._flush_in_background)
            self._timer.daemon = True
            self._timer.start()

    def flush(self) -> Optional[Tuple[Cluster, ...]]:
        """Run the pending recomputation now, if any. Returns the new clusters."""
        with self._timer_lock:
            snapshot, self._pending = self._pending, None
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
        if snapshot is None:
            return None
        return self.recompute_clusters(snapshot)

    def _flush_in_background(self) -> None:
        try:
            self.flush()
        except Exception:
            logger.exception("Cluster recomputation failed; previous clusters kept")

    def recompute_clusters(self, snapshot: Optional[Sequence[Entity]] = None) -> Tuple[Cluster, ...]:
        with self._compute_lock:
            if snapshot is None:
                snapshot = self._session.entities
            clusters = tuple(self.clustering.cluster_with_config(snapshot, self.clustering_config))
            with self._state_lock:
                if self._session.entities is snapshot or tuple(snapshot) == self._session.entities:
                    self._session = update_session(self._session, clusters=clusters)
                else:
                    logger.debug("Discarding clusters for a superseded entity snapshot")
        return clusters

    def shutdown(self) -> None:
        with self._timer_lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._pending = None

    # Routing

    async def isochrones(self, center: LonLat, time_bands_minutes: Sequence[int] = (5, 10)) -> IsochroneZone:
        if self.routing is None:
            raise RoutingError("No routing service configured")
        return await self.routing.fetch(center, time_bands_minutes)
