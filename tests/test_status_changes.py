from __future__ import annotations

from datetime import date, datetime

import pytest

from lifeline.core.errors import StateConflictError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import MovementAction, Record, RecordEstado
from lifeline.lines.movements import TrackingContext, record_movements
from lifeline.lines.relationships import can_be_parent, create_relationship
from lifeline.lines.services import change_record_status, create_record, refresh_record_statuses, update_record
from lifeline.lines.status import MANUAL_STATUS_TRANSITIONS

NOW = datetime(2026, 3, 10, 9, 0)


def _estado(record_id: int) -> RecordEstado:
    return db.session.get(Record, record_id).estado_actual


def test_relationship_states_have_no_manual_exit():
    for estado in (RecordEstado.REEMPLAZADA, RecordEstado.DIVIDIDA, RecordEstado.ACTUALIZADA):
        assert MANUAL_STATUS_TRANSITIONS[estado] == set()
    for targets in MANUAL_STATUS_TRANSITIONS.values():
        assert not targets & {RecordEstado.REEMPLAZADA, RecordEstado.DIVIDIDA, RecordEstado.ACTUALIZADA}


def test_divided_parent_cannot_be_reactivated_by_update(app, make_record):
    with app.app_context():
        parent_id = make_record("SC-1", fecha_vencimiento=date(2030, 1, 1))
        create_relationship(parent_id, "DIVISION", [{"codigo": "SC-1A"}], now=NOW)

        with pytest.raises(StateConflictError):
            update_record(parent_id, {"estado_actual": "ACTIVO"}, now=NOW)
        assert _estado(parent_id) == RecordEstado.DIVIDIDA

        update_record(parent_id, {"observaciones": "Tramo retirado"}, now=NOW)
        assert _estado(parent_id) == RecordEstado.DIVIDIDA
        refresh_record_statuses(now=NOW)
        assert _estado(parent_id) == RecordEstado.DIVIDIDA


def test_update_cannot_set_relationship_state(app, make_record):
    with app.app_context():
        record_id = make_record("SC-2")

        with pytest.raises(ValidationError):
            update_record(record_id, {"estado_actual": "REEMPLAZADA"}, now=NOW)

        assert _estado(record_id) == RecordEstado.ACTIVO
        assert can_be_parent(record_id).can_be_parent is True
        assert [entry.action for entry in record_movements(record_id)] == [MovementAction.CREATE]


def test_create_cannot_set_relationship_state(app):
    with app.app_context():
        with pytest.raises(ValidationError):
            create_record({"codigo": "SC-3", "estado_actual": "actualizada"}, now=NOW)
        assert Record.query.filter_by(codigo="SC-3").first() is None


def test_manual_change_writes_status_movement(app, make_record, users):
    with app.app_context():
        record_id = make_record("SC-4")
        context = TrackingContext(user_id=users["operario"], username="operario")

        record = change_record_status(record_id, "inactivo", "Linea desmontada por obra", context)

        assert record.estado_actual == RecordEstado.INACTIVO
        entry = record_movements(record_id)[-1]
        assert entry.action == MovementAction.STATUS_CHANGE
        assert entry.description == 'Estado cambiado de "ACTIVO" a "INACTIVO" - Linea desmontada por obra'
        assert entry.user_id == users["operario"]


def test_manual_change_requires_observation(app, make_record):
    with app.app_context():
        record_id = make_record("SC-5")

        with pytest.raises(ValidationError):
            change_record_status(record_id, "POR_VENCER", "   ")
        with pytest.raises(ValidationError):
            change_record_status(record_id, "VENCIDO", "corta")
        with pytest.raises(ValidationError):
            change_record_status(record_id, None, "Revision de campo")

        change_record_status(record_id, "POR_VENCER", "revisado")
        assert _estado(record_id) == RecordEstado.POR_VENCER


def test_manual_change_follows_transition_table(app, make_record):
    with app.app_context():
        record_id = make_record("SC-6", estado=RecordEstado.INACTIVO)

        with pytest.raises(StateConflictError):
            change_record_status(record_id, "VENCIDO", "Inspeccion fallida en nave")
        assert _estado(record_id) == RecordEstado.INACTIVO

        change_record_status(record_id, "INACTIVO", "Sigue desmontada")
        change_record_status(record_id, "ACTIVO", "Reinstalada")
        assert _estado(record_id) == RecordEstado.ACTIVO

        changes = [entry for entry in record_movements(record_id) if entry.action == MovementAction.STATUS_CHANGE]
        assert len(changes) == 2


def test_manual_change_rejects_relationship_states(app, make_record):
    with app.app_context():
        parent_id = make_record("SC-7")
        create_relationship(parent_id, "REPLACEMENT", [{"codigo": "SC-7A"}], now=NOW)
        other_id = make_record("SC-8")

        with pytest.raises(StateConflictError):
            change_record_status(parent_id, "ACTIVO", "Vuelve a servicio")
        with pytest.raises(ValidationError):
            change_record_status(other_id, "DIVIDIDA", "Division manual")
        with pytest.raises(ValidationError):
            change_record_status(other_id, "MANTENIMIENTO", "Revision anual")

        assert _estado(parent_id) == RecordEstado.REEMPLAZADA
        assert _estado(other_id) == RecordEstado.ACTIVO


def test_refresh_realigns_manual_status_with_expiration(app, make_record):
    with app.app_context():
        record_id = make_record("SC-9", fecha_vencimiento=date(2025, 12, 1), estado=RecordEstado.VENCIDO)

        change_record_status(record_id, "ACTIVO", "Revisada sin incidencias")
        assert _estado(record_id) == RecordEstado.ACTIVO

        refresh_record_statuses(now=NOW)
        assert _estado(record_id) == RecordEstado.VENCIDO
