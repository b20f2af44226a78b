import threading
from pathlib import Path

import pytest

from emergency_geo.db import SqliteZoneBackend
from emergency_geo.errors import NotFoundError, ValidationError
from emergency_geo.models import Circle, Polygon, ZoneChange, ZoneDraft
from emergency_geo.zone_store import ZoneStore

SQUARE = Polygon(ring=((121.45, 14.12), (121.45, 14.13), (121.46, 14.13), (121.46, 14.12), (121.45, 14.12)))


def _draft(name: str = "Flood cordon", geometry=SQUARE, **overrides) -> ZoneDraft:
    fields = dict(name=name, geometry=geometry, color="#3b82f6", opacity=0.4, created_by="dispatcher-1")
    fields.update(overrides)
    return ZoneDraft(**fields)


def _store(tmp_path: Path) -> ZoneStore:
    return ZoneStore(SqliteZoneBackend(tmp_path / "zones.db"))


def test_create_persists_and_lists_zone(tmp_path: Path) -> None:
    store = _store(tmp_path)

    zone = store.create(_draft(description="Barangay 4 river bank"))

    assert zone.id
    assert zone.geometry == SQUARE
    assert zone.is_active
    assert zone.created_at == zone.updated_at
    assert [z.id for z in store.list()] == [zone.id]
    assert store.zones == (zone,)

    reopened = ZoneStore(SqliteZoneBackend(tmp_path / "zones.db"))
    assert reopened.get(zone.id) == zone


def test_create_circle_zone(tmp_path: Path) -> None:
    zone = _store(tmp_path).create(_draft(geometry=Circle(center=(121.45, 14.12), radius_meters=750)))
    assert zone.geometry == Circle(center=(121.45, 14.12), radius_meters=750)


@pytest.mark.parametrize(
    "draft",
    [
        _draft(geometry=Polygon(ring=((0, 0), (1, 1), (0, 0)))),
        _draft(geometry=Polygon(ring=((0, 0), (0, 1), (0, 1), (1, 0), (0, 0)))),
        _draft(geometry=Polygon(ring=((0, 0), (0, 1), (1, 1), (1, 0)))),
        _draft(geometry=Circle(center=(0, 0), radius_meters=0)),
        _draft(name="  "),
        _draft(opacity=1.5),
        _draft(created_by=""),
    ],
)
def test_create_rejects_invalid_drafts(tmp_path: Path, draft: ZoneDraft) -> None:
    store = _store(tmp_path)
    with pytest.raises(ValidationError):
        store.create(draft)
    assert store.list(active_only=False) == []


def test_update_changes_presentation_fields_only(tmp_path: Path) -> None:
    store = _store(tmp_path)
    zone = store.create(_draft())

    updated = store.update(zone.id, {"name": "Evacuation area", "opacity": 0.8, "color": "#ff0000"})

    assert updated.name == "Evacuation area"
    assert updated.opacity == 0.8
    assert updated.geometry == zone.geometry
    assert updated.updated_at >= zone.updated_at
    assert store.zones[0].name == "Evacuation area"

    with pytest.raises(ValidationError):
        store.update(zone.id, {"geometry": SQUARE})
    with pytest.raises(ValidationError):
        store.update(zone.id, {"created_by": "someone-else"})
    with pytest.raises(ValidationError):
        store.update(zone.id, {"opacity": -0.1})


def test_update_and_delete_missing_zone_raise_not_found(tmp_path: Path) -> None:
    store = _store(tmp_path)
    with pytest.raises(NotFoundError):
        store.update("missing", {"name": "x"})
    with pytest.raises(NotFoundError):
        store.delete("missing")
    with pytest.raises(NotFoundError):
        store.get("missing")


def test_deactivate_is_soft_delete(tmp_path: Path) -> None:
    store = _store(tmp_path)
    zone = store.create(_draft())

    store.deactivate(zone.id)

    assert store.list() == []
    assert store.zones == ()
    assert [z.id for z in store.list(active_only=False)] == [zone.id]


def test_delete_removes_zone(tmp_path: Path) -> None:
    store = _store(tmp_path)
    keep = store.create(_draft(name="Keep"))
    drop = store.create(_draft(name="Drop"))

    store.delete(drop.id)

    assert [z.id for z in store.list(active_only=False)] == [keep.id]
    assert [z.id for z in store.zones] == [keep.id]


def test_list_orders_newest_first(tmp_path: Path) -> None:
    store = _store(tmp_path)
    first = store.create(_draft(name="First"))
    second = store.create(_draft(name="Second"))

    assert [z.id for z in store.list()] == [second.id, first.id]


def test_apply_change_folds_notifications(tmp_path: Path) -> None:
    store = _store(tmp_path)
    zone = store.create(_draft())
    renamed = store.backend.update_zone(zone.id, {"name": "Renamed elsewhere"})

    store.apply_change(ZoneChange(op="update", zone=renamed))
    assert store.zones[0].name == "Renamed elsewhere"

    store.apply_change(ZoneChange(op="delete", zone=renamed))
    assert store.zones == ()

    with pytest.raises(ValidationError):
        store.apply_change(ZoneChange(op="upsert", zone=renamed))


class _RecordingBackend(SqliteZoneBackend):
    def __init__(self, db_path: Path) -> None:
        super().__init__(db_path)
        self.active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()
        self.entered = threading.Event()

    def update_zone(self, zone_id: str, fields: dict):
        with self._count_lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        self.entered.wait(timeout=0.05)
        try:
            return super().update_zone(zone_id, fields)
        finally:
            with self._count_lock:
                self.active -= 1


def test_concurrent_updates_to_one_zone_are_serialized(tmp_path: Path) -> None:
    backend = _RecordingBackend(tmp_path / "zones.db")
    store = ZoneStore(backend)
    zone = store.create(_draft())

    threads = [
        threading.Thread(target=store.update, args=(zone.id, {"opacity": i / 10})) for i in range(1, 6)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)

    assert backend.max_active == 1
    assert store.get(zone.id).opacity in {0.1, 0.2, 0.3, 0.4, 0.5}


@pytest.mark.parametrize("field", ["name", "color", "opacity", "is_active"])
def test_update_rejects_null_for_required_fields(tmp_path: Path, field: str) -> None:
    store = _store(tmp_path)
    zone = store.create(_draft())

    with pytest.raises(ValidationError):
        store.update(zone.id, {field: None})
    assert store.get(zone.id) == zone


def test_delete_releases_zone_lock(tmp_path: Path) -> None:
    store = _store(tmp_path)
    zone = store.create(_draft())
    store.update(zone.id, {"name": "Renamed"})
    assert zone.id in store._zone_locks

    store.delete(zone.id)

    assert zone.id not in store._zone_locks
