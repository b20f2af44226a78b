from __future__ import annotations

import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

from emergency_geo.config import configure_logging
from emergency_geo.db import SqliteZoneBackend
from emergency_geo.models import Entity, Polygon, ZoneDraft
from emergency_geo.system import EmergencyMapSystem
from emergency_geo.zone_store import ZoneStore


def main() -> None:
    configure_logging()
    start = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)

    entities = [
        Entity("INC-1001", "incident", 40.7330, -73.9930, "active", created_at=start),
        Entity(
            "INC-0998",
            "incident",
            40.7341,
            -73.9921,
            "resolved",
            created_at=start - timedelta(hours=2),
            resolved_at=start - timedelta(hours=1, minutes=48),
        ),
        Entity("HLP-7", "helper", 40.7332, -73.9931, "available"),
        Entity("HLP-9", "helper", 40.7334, -73.9929, "busy"),
        Entity("MED-12", "responder", 40.7410, -73.9890, "available"),
        Entity("FIRE-7", "responder", 40.7290, -73.9970, "assigned"),
        Entity("HOSP-1", "hospital", 40.7390, -73.9870, "open"),
    ]

    with tempfile.TemporaryDirectory() as tmp:
        store = ZoneStore(SqliteZoneBackend(Path(tmp) / "zones.db"))
        system = EmergencyMapSystem(zone_store=store)
        zone = system.create_zone(
            ZoneDraft(
                name="Lower Manhattan flood cordon",
                geometry=Polygon(
                    ring=(
                        (-74.000, 40.725),
                        (-74.000, 40.745),
                        (-73.980, 40.745),
                        (-73.980, 40.725),
                        (-74.000, 40.725),
                    )
                ),
                color="#3b82f6",
                opacity=0.35,
                created_by="dispatcher-1",
            )
        )

        system.ingest_entities(entities)
        clusters = system.flush() or ()
        sweep, result = system.sweep((-73.993, 40.733), radius_meters=2000)
        stats = system.zone_stats(zone.id)
        system.shutdown()

    print("=== Emergency Map Analysis ===")
    print(f"Zone: {stats.zone_name}")
    print(f"Active incidents: {stats.active_incident_count}")
    print(f"Available helpers: {stats.available_helper_count}")
    print(f"Assigned responders: {stats.assigned_responder_count}")
    print(f"Average response time: {stats.average_response_time_minutes} min")
    print(f"\n{sweep.label}: {result.count} available responder(s)")
    for responder in result.matched:
        print(f" - {responder.id}")

    print("\nClusters:")
    for cluster in clusters:
        print(f" - {cluster.dominant_type} x{cluster.member_count} at {cluster.centroid}")


if __name__ == "__main__":
    main()
