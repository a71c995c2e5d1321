from __future__ import annotations

from datetime import date, datetime

import pytest

from lifeline.core.errors import ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import MovementAction, MovementEntry, Record
from lifeline.core.pagination import normalize_pagination
from lifeline.lines.movements import (
    TrackingContext,
    list_movements,
    purge_movements_older_than,
    record_movements,
    track_company_change,
    track_image_deletion,
    track_image_replace,
    track_image_upload,
    track_location_change,
    track_maintenance,
    track_record_restored,
    track_status_change,
)
from lifeline.lines.services import create_record, update_record

NOW = datetime(2026, 3, 10, 9, 0)


def _updates(record_id: int) -> list[MovementEntry]:
    return [entry for entry in record_movements(record_id) if entry.action == MovementAction.UPDATE]


def test_update_without_changes_writes_nothing(app, make_record):
    with app.app_context():
        record_id = make_record("MV-1", cliente="Acme")
        update_record(record_id, {"cliente": "Acme"}, now=NOW)
        update_record(record_id, {"cliente": "  Acme  "}, now=NOW)
        assert _updates(record_id) == []


def test_update_records_only_changed_fields(app, make_record, users):
    with app.app_context():
        record_id = make_record("MV-2", cliente="Acme")
        context = TrackingContext(user_id=users["admin"], username="admin", ip_address="10.0.0.1")
        update_record(record_id, {"cliente": "Otra", "ubicacion": None}, context, now=NOW)

        entries = _updates(record_id)
        assert len(entries) == 1
        entry = entries[0]
        assert entry.changed_fields == ["cliente"]
        assert entry.description == 'Cliente actualizado: "Acme" → "Otra"'
        assert entry.previous_values["cliente"] == "Acme"
        assert entry.new_values["cliente"] == "Otra"
        assert entry.user_id == users["admin"]
        assert entry.username == "admin"
        assert entry.ip_address == "10.0.0.1"


def test_create_record_writes_create_entry(app, users):
    with app.app_context():
        context = TrackingContext(user_id=users["operario"], username="operario")
        record = create_record(
            {
                "codigo": "MV-3",
                "cliente": "Acme",
                "fecha_instalacion": "2024-01-15",
                "fv_anios": 2,
            },
            context,
            now=NOW,
        )
        assert record.fecha_vencimiento == date(2026, 1, 15)

        entries = record_movements(record.id)
        assert [entry.action for entry in entries] == [MovementAction.CREATE]
        assert entries[0].description == "Registro creado: MV-3"
        assert entries[0].new_values["fecha_vencimiento"] == "2026-01-15"
        assert "codigo" in entries[0].changed_fields
        assert "observaciones" not in entries[0].changed_fields


def test_system_actor_is_used_without_context(app, make_record):
    with app.app_context():
        record_id = make_record("MV-4")
        track_status_change(record_id, "MV-4", "ACTIVO", "VENCIDO", observation="prueba")
        track_image_upload(record_id, "MV-4", {"original_name": "foto.jpg", "size": 204800, "filename": "a.jpg"})
        db.session.commit()

        entries = record_movements(record_id)
        status_entry = next(entry for entry in entries if entry.action == MovementAction.STATUS_CHANGE)
        assert status_entry.username == "Sistema"
        assert status_entry.user_id is None
        assert status_entry.description == 'Estado cambiado de "ACTIVO" a "VENCIDO" - prueba'
        image_entry = next(entry for entry in entries if entry.action == MovementAction.IMAGE_UPLOAD)
        assert image_entry.description == "Imagen subida: foto.jpg (200KB)"


def test_movement_entries_are_immutable(app, make_record):
    with app.app_context():
        record_id = make_record("MV-5")
        entry = record_movements(record_id)[0]
        entry.description = "reescrito"
        with pytest.raises(RuntimeError):
            db.session.commit()
        db.session.rollback()

        assert record_movements(record_id)[0].description == "Registro creado: MV-5"


def test_list_movements_filters_and_paginates(app, make_record):
    with app.app_context():
        record_id = make_record("MV-6", cliente="Acme")
        update_record(record_id, {"cliente": "B"}, now=NOW)
        update_record(record_id, {"cliente": "C"}, now=NOW)

        params = normalize_pagination({"limit": "1", "sortBy": "id", "sortOrder": "asc"})
        page = list_movements({"record_id": str(record_id), "action": "update"}, params)
        assert page["meta"]["total"] == 2
        assert page["meta"]["totalPages"] == 2
        assert page["meta"]["hasNextPage"] is True
        assert page["data"][0]["description"] == 'Cliente actualizado: "Acme" → "B"'

        with pytest.raises(ValidationError):
            list_movements({"action": "NOPE"}, params)


def test_purge_respects_minimum_retention(app, make_record):
    with app.app_context():
        record_id = make_record("MV-7", created_at=datetime(2025, 1, 1, 8, 0))
        with pytest.raises(ValidationError):
            purge_movements_older_than(10)

        deleted = purge_movements_older_than(30, now=datetime(2026, 1, 1))
        assert deleted >= 1
        assert record_movements(record_id) == []


def test_specialised_producers_describe_the_change(app, make_record):
    with app.app_context():
        record_id = make_record("MV-8", cliente="Acme")
        record = db.session.get(Record, record_id)
        record.ubicacion = "Nave 2"
        location = track_location_change(record, None)
        record.cliente = "Beta"
        company = track_company_change(record, "Acme")
        maintenance = track_maintenance(record, "revision anual", metadata={"tecnico": "JL"})
        restored = track_record_restored(record)
        replaced = track_image_replace(
            record_id, "MV-8", {"original_name": "a.jpg", "size": 1024}, {"original_name": "b.jpg", "size": 2048}
        )
        removed = track_image_deletion(record_id, "MV-8", {"filename": "b.jpg"})
        db.session.commit()

        assert location.description == 'Ubicación cambiada de "N/A" a "Nave 2"'
        assert company.description == 'Cliente cambiado de "Acme" a "Beta"'
        assert maintenance.description == "Mantenimiento registrado: revision anual"
        assert maintenance.additional_metadata == {"tecnico": "JL"}
        assert restored.action == MovementAction.RESTORE
        assert replaced.description == "Imagen reemplazada: b.jpg (2KB)"
        assert removed.description == "Imagen eliminada: b.jpg"
        assert len(record_movements(record_id)) == 7
