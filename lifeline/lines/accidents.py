from __future__ import annotations

import logging
from datetime import date, datetime, timedelta

from sqlalchemy import func

from lifeline.core.errors import NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import Accident, AccidentEstado, AccidentSeveridad, utcnow
from lifeline.core.pagination import PaginationParams, paginate, parse_id_filter
from lifeline.lines.movements import TrackingContext
from lifeline.lines.services import record_by_id

logger = logging.getLogger(__name__)

ACCIDENT_SORT_FIELDS = frozenset({"id", "fecha_accidente", "severidad", "estado", "created_at"})
TEXT_FIELDS = ("persona_involucrada", "acciones_correctivas")
RECENT_DAYS = 30


def _parse_accident_date(value: object, today: date) -> date:
    if isinstance(value, datetime):
        parsed = value.date()
    elif isinstance(value, date):
        parsed = value
    else:
        raw = str(value or "").strip()
        if not raw:
            raise ValidationError("La fecha del accidente es obligatoria")
        try:
            parsed = date.fromisoformat(raw[:10])
        except ValueError as exc:
            raise ValidationError("La fecha debe ser válida (YYYY-MM-DD)") from exc
    if parsed > today:
        raise ValidationError("La fecha del accidente no puede ser futura")
    return parsed


def _parse_enum(enum_cls, value: object, label: str):
    try:
        return enum_cls(str(value).strip().upper())
    except ValueError as exc:
        raise ValidationError(f"{label} invalido: {value}") from exc


def _description(value: object) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationError("La descripción del incidente es obligatoria")
    return text


def _clean(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def report_accident(
    record_id: int,
    payload: dict[str, object],
    context: TrackingContext | None = None,
    now: datetime | None = None,
) -> Accident:
    context = context or TrackingContext()
    now = now or utcnow()
    record = record_by_id(record_id)

    accident = Accident(
        record_id=record.id,
        fecha_accidente=_parse_accident_date(payload.get("fecha_accidente"), now.date()),
        descripcion_incidente=_description(payload.get("descripcion_incidente")),
        severidad=_parse_enum(AccidentSeveridad, payload.get("severidad") or "LEVE", "Severidad"),
        estado=AccidentEstado.REPORTADO,
        reportado_por=context.user_id,
        created_at=now,
    )
    for name in TEXT_FIELDS:
        setattr(accident, name, _clean(payload.get(name)))
    db.session.add(accident)
    db.session.commit()
    logger.info("accident %s reported for record %s (%s)", accident.id, record.codigo, accident.severidad.value)
    return accident


def accident_by_id(accident_id: int) -> Accident:
    accident = db.session.get(Accident, accident_id)
    if not accident:
        raise NotFoundError(f"Accidente con ID {accident_id} no encontrado")
    return accident


def update_accident(accident_id: int, payload: dict[str, object], now: datetime | None = None) -> Accident:
    accident = accident_by_id(accident_id)
    now = now or utcnow()

    changes: dict[str, object] = {}
    if payload.get("record_id") is not None:
        changes["record_id"] = record_by_id(parse_id_filter(payload["record_id"], "record_id")).id
    if "fecha_accidente" in payload:
        changes["fecha_accidente"] = _parse_accident_date(payload.get("fecha_accidente"), now.date())
    if "descripcion_incidente" in payload:
        changes["descripcion_incidente"] = _description(payload.get("descripcion_incidente"))
    if payload.get("severidad"):
        changes["severidad"] = _parse_enum(AccidentSeveridad, payload["severidad"], "Severidad")
    if payload.get("estado"):
        changes["estado"] = _parse_enum(AccidentEstado, payload["estado"], "Estado de accidente")
    for name in TEXT_FIELDS:
        if name in payload:
            changes[name] = _clean(payload.get(name))

    for name, value in changes.items():
        setattr(accident, name, value)
    db.session.commit()
    logger.info("accident %s updated: %s", accident.id, ", ".join(sorted(changes)) or "no changes")
    return accident


def delete_accident(accident_id: int) -> None:
    accident = accident_by_id(accident_id)
    db.session.delete(accident)
    db.session.commit()
    logger.info("accident %s deleted", accident_id)


def record_accidents(record_id: int) -> list[Accident]:
    record = record_by_id(record_id)
    return (
        Accident.query.filter_by(record_id=record.id)
        .order_by(Accident.fecha_accidente.desc(), Accident.id.desc())
        .all()
    )


def recent_accidents(days: int = RECENT_DAYS, now: datetime | None = None) -> list[Accident]:
    since = (now or utcnow()).date() - timedelta(days=days)
    return (
        Accident.query.filter(Accident.fecha_accidente >= since)
        .order_by(Accident.fecha_accidente.desc(), Accident.id.desc())
        .all()
    )


def _parse_filter_date(value: str | None, field_name: str) -> date | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError(f"Formato de fecha invalido para {field_name}") from exc


def list_accidents(filters: dict[str, str], params: PaginationParams) -> dict[str, object]:
    query = Accident.query
    if filters.get("record_id"):
        query = query.filter(Accident.record_id == parse_id_filter(filters["record_id"], "record_id"))
    if filters.get("estado"):
        query = query.filter(Accident.estado == _parse_enum(AccidentEstado, filters["estado"], "Estado de accidente"))
    if filters.get("severidad"):
        query = query.filter(Accident.severidad == _parse_enum(AccidentSeveridad, filters["severidad"], "Severidad"))
    if filters.get("search"):
        query = query.filter(Accident.descripcion_incidente.ilike(f"%{filters['search'].strip()}%"))
    desde = _parse_filter_date(filters.get("fecha_desde"), "fecha_desde")
    if desde:
        query = query.filter(Accident.fecha_accidente >= desde)
    hasta = _parse_filter_date(filters.get("fecha_hasta"), "fecha_hasta")
    if hasta:
        query = query.filter(Accident.fecha_accidente <= hasta)
    return paginate(query, Accident, params, accident_to_dict)


def accident_statistics(now: datetime | None = None) -> dict[str, object]:
    today = (now or utcnow()).date()
    por_estado = {estado.value: 0 for estado in AccidentEstado}
    for estado, count in db.session.query(Accident.estado, func.count(Accident.id)).group_by(Accident.estado):
        por_estado[estado.value] = count
    por_severidad = {severidad.value: 0 for severidad in AccidentSeveridad}
    for severidad, count in db.session.query(Accident.severidad, func.count(Accident.id)).group_by(
        Accident.severidad
    ):
        por_severidad[severidad.value] = count
    return {
        "total": Accident.query.count(),
        "por_estado": por_estado,
        "por_severidad": por_severidad,
        "ultimo_mes": Accident.query.filter(Accident.fecha_accidente >= today - timedelta(days=RECENT_DAYS)).count(),
        "lineas_con_incidentes": db.session.query(func.count(func.distinct(Accident.record_id))).scalar() or 0,
    }


def accident_to_dict(accident: Accident) -> dict[str, object]:
    record = accident.record
    return {
        "id": accident.id,
        "record_id": accident.record_id,
        "fecha_accidente": accident.fecha_accidente.isoformat(),
        "descripcion_incidente": accident.descripcion_incidente,
        "persona_involucrada": accident.persona_involucrada,
        "acciones_correctivas": accident.acciones_correctivas,
        "severidad": accident.severidad.value,
        "estado": accident.estado.value,
        "reportado_por": accident.reportado_por,
        "created_at": accident.created_at.isoformat(),
        "linea_vida": {
            "id": record.id,
            "codigo": record.codigo,
            "cliente": record.cliente or "",
            "ubicacion": record.ubicacion or "",
        }
        if record
        else None,
    }
