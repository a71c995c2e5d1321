from __future__ import annotations

from datetime import datetime

import pytest

from lifeline.core.errors import NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import MaintenanceEvent, MovementAction, Record
from lifeline.lines.maintenance import delete_maintenance, record_maintenances, register_maintenance
from lifeline.lines.movements import TrackingContext, record_movements

NOW = datetime(2026, 3, 10, 9, 0)


def _with_length(make_record, codigo: str, longitud: float) -> int:
    record_id = make_record(codigo)
    db.session.get(Record, record_id).longitud = longitud
    db.session.commit()
    return record_id


def test_length_change_updates_record_and_history(app, make_record, users):
    with app.app_context():
        record_id = _with_length(make_record, "MT-1", 12.0)
        context = TrackingContext(user_id=users["operario"], username="operario")

        event = register_maintenance(
            record_id,
            {"maintenance_date": "2026-03-01", "description": "Cambio de tramo", "new_length_meters": "15,5"},
            context,
            now=NOW,
        )

        assert event.previous_length == 12.0
        assert event.new_length == 15.5
        assert event.created_by == users["operario"]
        assert db.session.get(Record, record_id).longitud == 15.5

        entries = record_movements(record_id)
        assert [entry.action for entry in entries] == [
            MovementAction.CREATE,
            MovementAction.UPDATE,
            MovementAction.MAINTENANCE,
        ]
        assert entries[1].changed_fields == ["longitud"]
        assert entries[2].description == "Mantenimiento registrado: 2026-03-01 - Cambio de tramo"
        assert entries[2].additional_metadata["maintenance_id"] == event.id
        assert entries[2].username == "operario"


def test_same_length_only_logs_maintenance(app, make_record):
    with app.app_context():
        record_id = _with_length(make_record, "MT-2", 20.0)

        event = register_maintenance(record_id, {"maintenance_date": "2026-03-10", "new_length_meters": 20}, now=NOW)

        assert event.previous_length is None
        assert event.new_length is None
        actions = [entry.action for entry in record_movements(record_id)]
        assert actions == [MovementAction.CREATE, MovementAction.MAINTENANCE]


def test_invalid_maintenance_writes_nothing(app, make_record):
    with app.app_context():
        record_id = _with_length(make_record, "MT-3", 8.0)

        with pytest.raises(ValidationError):
            register_maintenance(record_id, {"maintenance_date": "2026-03-11"}, now=NOW)
        with pytest.raises(ValidationError):
            register_maintenance(record_id, {}, now=NOW)
        with pytest.raises(ValidationError):
            register_maintenance(record_id, {"maintenance_date": "10/03/2026"}, now=NOW)
        with pytest.raises(ValidationError):
            register_maintenance(record_id, {"maintenance_date": "2026-03-01", "new_length_meters": 0}, now=NOW)
        with pytest.raises(NotFoundError):
            register_maintenance(999999, {"maintenance_date": "2026-03-01"}, now=NOW)

        assert MaintenanceEvent.query.count() == 0
        assert db.session.get(Record, record_id).longitud == 8.0
        assert len(record_movements(record_id)) == 1


def test_listing_and_deleting_keeps_history(app, make_record):
    with app.app_context():
        record_id = make_record("MT-4")
        older_id = register_maintenance(record_id, {"maintenance_date": "2025-06-01"}, now=NOW).id
        newer_id = register_maintenance(record_id, {"maintenance_date": "2026-02-01"}, now=NOW).id

        assert [event.id for event in record_maintenances(record_id)] == [newer_id, older_id]

        delete_maintenance(older_id)
        assert [event.id for event in record_maintenances(record_id)] == [newer_id]
        maintenance_entries = [
            entry for entry in record_movements(record_id) if entry.action == MovementAction.MAINTENANCE
        ]
        assert len(maintenance_entries) == 2

        with pytest.raises(NotFoundError):
            delete_maintenance(older_id)
