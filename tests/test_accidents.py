from __future__ import annotations

from datetime import date, datetime

import pytest

from lifeline.core.errors import NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import Accident, AccidentEstado, AccidentSeveridad, Record
from lifeline.core.pagination import normalize_pagination
from lifeline.lines.accidents import (
    accident_statistics,
    delete_accident,
    list_accidents,
    recent_accidents,
    record_accidents,
    report_accident,
    update_accident,
)
from lifeline.lines.movements import TrackingContext

NOW = datetime(2026, 3, 10, 9, 0)


def _report(record_id: int, fecha: str, severidad: str | None = None, **extra) -> Accident:
    payload = {"fecha_accidente": fecha, "descripcion_incidente": "Caida desde anclaje", **extra}
    if severidad:
        payload["severidad"] = severidad
    return report_accident(record_id, payload, now=NOW)


def test_report_defaults_and_reporter(app, make_record, users):
    with app.app_context():
        record_id = make_record("AC-1")
        context = TrackingContext(user_id=users["operario"], username="operario")

        accident = report_accident(
            record_id,
            {
                "fecha_accidente": "2026-03-09",
                "descripcion_incidente": "  Arnes enganchado en tramo 3  ",
                "persona_involucrada": "J. Perez",
            },
            context,
            now=NOW,
        )

        assert accident.estado == AccidentEstado.REPORTADO
        assert accident.severidad == AccidentSeveridad.LEVE
        assert accident.descripcion_incidente == "Arnes enganchado en tramo 3"
        assert accident.reportado_por == users["operario"]
        assert accident.fecha_accidente == date(2026, 3, 9)


def test_invalid_reports_are_rejected(app, make_record):
    with app.app_context():
        record_id = make_record("AC-2")

        with pytest.raises(ValidationError):
            _report(record_id, "2026-03-11")
        with pytest.raises(ValidationError):
            report_accident(record_id, {"fecha_accidente": "2026-03-01", "descripcion_incidente": " "}, now=NOW)
        with pytest.raises(ValidationError):
            _report(record_id, "2026-03-01", severidad="FATAL")
        with pytest.raises(NotFoundError):
            _report(999999, "2026-03-01")

        assert Accident.query.count() == 0


def test_update_validates_before_writing(app, make_record):
    with app.app_context():
        record_id = make_record("AC-3")
        accident_id = _report(record_id, "2026-02-01").id

        with pytest.raises(ValidationError):
            update_accident(accident_id, {"estado": "RESUELTO", "fecha_accidente": "2027-01-01"}, now=NOW)
        assert db.session.get(Accident, accident_id).estado == AccidentEstado.REPORTADO

        updated = update_accident(
            accident_id,
            {"estado": "en_investigacion", "severidad": "GRAVE", "acciones_correctivas": "Sustituir mosqueton"},
            now=NOW,
        )
        assert updated.estado == AccidentEstado.EN_INVESTIGACION
        assert updated.severidad == AccidentSeveridad.GRAVE
        assert updated.acciones_correctivas == "Sustituir mosqueton"

        with pytest.raises(NotFoundError):
            update_accident(accident_id, {"record_id": 999999}, now=NOW)


def test_queries_and_statistics(app, make_record):
    with app.app_context():
        first = make_record("AC-4")
        second = make_record("AC-5")
        old_id = _report(first, "2025-11-01", "GRAVE").id
        new_id = _report(first, "2026-03-01").id
        _report(second, "2026-02-20", "CRITICO", descripcion_incidente="Rotura de cable")

        assert [accident.id for accident in record_accidents(first)] == [new_id, old_id]
        assert len(recent_accidents(now=NOW)) == 2

        page = list_accidents({"severidad": "critico"}, normalize_pagination({}))
        assert page["meta"]["total"] == 1
        assert page["data"][0]["linea_vida"]["codigo"] == "AC-5"
        searched = list_accidents({"search": "rotura", "record_id": str(second)}, normalize_pagination({}))
        assert searched["meta"]["total"] == 1
        with pytest.raises(ValidationError):
            list_accidents({"record_id": "x"}, normalize_pagination({}))

        stats = accident_statistics(now=NOW)
        assert stats["total"] == 3
        assert stats["por_severidad"] == {"LEVE": 1, "MODERADO": 0, "GRAVE": 1, "CRITICO": 1}
        assert stats["por_estado"]["REPORTADO"] == 3
        assert stats["ultimo_mes"] == 2
        assert stats["lineas_con_incidentes"] == 2


def test_accidents_go_with_their_record(app, make_record):
    with app.app_context():
        record_id = make_record("AC-6")
        accident_id = _report(record_id, "2026-03-01").id
        kept_id = _report(make_record("AC-7"), "2026-03-01").id

        delete_accident(kept_id)
        assert db.session.get(Accident, kept_id) is None

        db.session.delete(db.session.get(Record, record_id))
        db.session.commit()
        assert db.session.get(Accident, accident_id) is None
