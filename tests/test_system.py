import asyncio
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from emergency_geo import demo
from emergency_geo.db import SqliteZoneBackend
from emergency_geo.errors import RoutingError
from emergency_geo.models import Entity, Polygon, ZoneChange, ZoneDraft
from emergency_geo.session import MapSession, update_session
from emergency_geo.system import EmergencyMapSystem
from emergency_geo.zone_store import ZoneStore

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
ZONE_RING = ((-74.0, 40.72), (-74.0, 40.75), (-73.98, 40.75), (-73.98, 40.72), (-74.0, 40.72))


def _system(tmp_path: Path, debounce_seconds: float = 60) -> EmergencyMapSystem:
    store = ZoneStore(SqliteZoneBackend(tmp_path / "zones.db"))
    return EmergencyMapSystem(zone_store=store, debounce_seconds=debounce_seconds)


def _entities():
    return [
        Entity("INC-1", "incident", 40.7330, -73.9930, "active", created_at=T0),
        Entity("INC-2", "incident", 40.7331, -73.9931, "resolved", created_at=T0, resolved_at=T0 + timedelta(minutes=9)),
        Entity("HLP-1", "helper", 40.7332, -73.9929, "available"),
        Entity("MED-12", "responder", 40.7410, -73.9890, "available"),
        Entity("FIRE-7", "responder", 40.7290, -73.9970, "assigned"),
        Entity("FAR-1", "responder", 34.0522, -118.2437, "available"),
    ]


def test_update_session_returns_new_snapshot() -> None:
    session = MapSession()
    updated = update_session(session, sweeps=[])

    assert updated is not session
    assert updated.version == 1
    assert session.version == 0
    with pytest.raises(TypeError):
        update_session(session, version=5)


def test_zone_lifecycle_updates_session(tmp_path: Path) -> None:
    system = _system(tmp_path)
    zone = system.create_zone(
        ZoneDraft(name="Cordon", geometry=Polygon(ring=ZONE_RING), color="#f00", opacity=0.3, created_by="ops")
    )
    assert system.session.zones == (zone,)

    renamed = system.update_zone(zone.id, {"name": "Cordon North"})
    assert system.session.zones[0].name == "Cordon North"

    system.handle_zone_change(ZoneChange(op="delete", zone=renamed))
    assert system.session.zones == ()
    assert [z.id for z in system.load_zones()] == [zone.id]

    system.delete_zone(zone.id)
    assert system.session.zones == ()


def test_sweep_counts_available_responders(tmp_path: Path) -> None:
    system = _system(tmp_path)
    system.ingest_entities(_entities())

    sweep, result = system.sweep((-73.993, 40.733), radius_meters=2000)
    system.shutdown()

    assert [e.id for e in result.matched] == ["MED-12"]
    assert sweep.responders_count == 1
    assert system.session.sweeps == (sweep,)

    system.clear_sweeps()
    assert system.session.sweeps == ()


def test_zone_stats_use_current_snapshot(tmp_path: Path) -> None:
    system = _system(tmp_path)
    zone = system.create_zone(
        ZoneDraft(name="Cordon", geometry=Polygon(ring=ZONE_RING), color="#f00", opacity=0.3, created_by="ops")
    )
    system.ingest_entities(_entities())

    stats = system.zone_stats(zone.id)
    system.shutdown()

    assert stats.active_incident_count == 1
    assert stats.available_helper_count == 1
    assert stats.assigned_responder_count == 1
    assert stats.average_response_time_minutes == 9
    assert system.session.selected_zone_stats == stats


def test_burst_of_snapshots_is_coalesced(tmp_path: Path) -> None:
    system = _system(tmp_path)
    calls = []
    original = system.clustering.cluster_with_config

    def recording(points, config):
        calls.append(tuple(points))
        return original(points, config)

    system.clustering.cluster_with_config = recording

    snapshots = [_entities()[: i + 1] for i in range(5)]
    for snapshot in snapshots:
        system.ingest_entities(snapshot)
    clusters = system.flush()

    assert len(calls) == 1
    assert calls[0] == tuple(snapshots[-1])
    assert system.session.entities == tuple(snapshots[-1])
    assert [c.member_count for c in clusters] == [3]
    assert system.session.clusters == clusters
    assert system.flush() is None


def test_debounce_timer_recomputes_in_background(tmp_path: Path) -> None:
    system = _system(tmp_path, debounce_seconds=0.05)
    done = threading.Event()
    original = system.recompute_clusters

    def recompute(snapshot=None):
        try:
            return original(snapshot)
        finally:
            done.set()

    system.recompute_clusters = recompute
    system.ingest_entities(_entities())

    assert done.wait(timeout=5)
    assert [c.dominant_type for c in system.session.clusters] == ["mixed"]


def test_stale_cluster_result_is_not_committed(tmp_path: Path) -> None:
    system = _system(tmp_path)
    old_snapshot = tuple(_entities())
    system.ingest_entities(old_snapshot)
    system.ingest_entities(_entities()[:1])

    clusters = system.recompute_clusters(old_snapshot)
    system.shutdown()

    assert len(clusters) == 1
    assert system.session.clusters == ()


def test_isochrones_without_routing_service(tmp_path: Path) -> None:
    system = _system(tmp_path)
    with pytest.raises(RoutingError):
        asyncio.run(system.isochrones((-73.993, 40.733)))


def test_demo_prints_zone_summary(capsys) -> None:
    demo.main()
    out = capsys.readouterr().out

    assert "Zone: Lower Manhattan flood cordon" in out
    assert "Active incidents: 1" in out
    assert "Average response time: 12 min" in out
    assert "Sweep 2000m: 1 available responder(s)" in out
    assert "mixed x3" in out


def test_background_failure_keeps_previous_clusters(tmp_path: Path, caplog) -> None:
    system = _system(tmp_path)
    system.ingest_entities(_entities())
    clusters = system.flush()

    def broken(points, config):
        raise ValueError("boom")

    system.clustering.cluster_with_config = broken
    system.ingest_entities(_entities()[:2])
    system._flush_in_background()

    assert system.session.clusters == clusters
    assert "Cluster recomputation failed" in caplog.text
