from __future__ import annotations

import calendar
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta

from flask import current_app

from lifeline.core.errors import ConflictError, NotFoundError, StateConflictError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import RELATIONSHIP_ESTADOS, Record, RecordEstado, TERMINAL_ESTADOS, utcnow
from lifeline.core.pagination import PaginationParams, paginate
from lifeline.lines.authorization import check_authorization_needed, validate_code
from lifeline.lines.movements import (
    TrackingContext,
    record_snapshot,
    track_record_created,
    track_record_deleted,
    track_record_updated,
    track_status_change,
)
from lifeline.lines.status import (
    LONG_OBSERVATION_ESTADOS,
    MANUAL_STATUS_TRANSITIONS,
    OBSERVATION_MIN_LENGTH,
    classify,
    reconcile_status,
    status_statistics,
    thresholds_from_config,
)

logger = logging.getLogger(__name__)

TEXT_FIELDS = ("cliente", "equipo", "anclaje_equipos", "observaciones", "seec", "tipo_linea", "ubicacion")
RECORD_SORT_FIELDS = frozenset(
    {"id", "codigo", "cliente", "fecha_instalacion", "fecha_vencimiento", "estado_actual", "created_at"}
)


@dataclass
class StatusRefreshResult:
    evaluated: int = 0
    updated: int = 0
    skipped_terminal: int = 0
    changes: list[dict[str, object]] = field(default_factory=list)


@dataclass(frozen=True)
class DeletionResult:
    record_id: int
    codigo: str
    authorization_id: int | None = None


def _parse_optional_iso_date(value: object, field_name: str) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError(f"Formato de fecha invalido para {field_name}") from exc


def _parse_optional_int(value: object, field_name: str) -> int | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        parsed = int(str(value).strip())
    except ValueError as exc:
        raise ValidationError(f"Valor entero invalido en {field_name}") from exc
    if parsed < 0:
        raise ValidationError(f"{field_name} no puede ser negativo")
    return parsed


def _parse_optional_float(value: object, field_name: str) -> float | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        return float(str(value).strip().replace(",", "."))
    except ValueError as exc:
        raise ValidationError(f"Valor numerico invalido en {field_name}") from exc


def _clean_text(value: object) -> str | None:
    if value is None:
        return None
    return str(value).strip() or None


def _parse_estado(value: object) -> RecordEstado | None:
    raw = _clean_text(value)
    if raw is None:
        return None
    try:
        return RecordEstado(raw.upper())
    except ValueError as exc:
        raise ValidationError(f"Estado invalido: {raw}") from exc


def _parse_requested_estado(value: object) -> RecordEstado | None:
    estado = _parse_estado(value)
    if estado in RELATIONSHIP_ESTADOS:
        raise ValidationError(f"El estado {estado.value} solo se asigna al relacionar líneas")
    return estado


def _add_years(base: date, years: int) -> date:
    try:
        return base.replace(year=base.year + years)
    except ValueError:
        # Leap day edge-case: move to Feb 28.
        return base.replace(month=2, day=28, year=base.year + years)


def _add_months(base: date, months: int) -> date:
    month_index = base.month - 1 + months
    year = base.year + month_index // 12
    month = month_index % 12 + 1
    day = min(base.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def expiration_from_useful_life(installed: date, years: int | None, months: int | None) -> date:
    return _add_months(_add_years(installed, years or 0), months or 0)


def _validate_dates(installed: date | None, expiration: date | None) -> None:
    if installed and expiration and expiration <= installed:
        raise ValidationError("La fecha de vencimiento debe ser posterior a la fecha de instalación")


def _thresholds():
    return thresholds_from_config(current_app.config)


def build_record(payload: dict[str, object], now: datetime | None = None) -> Record:
    """Parse a payload into an unsaved record with its expiration and status derived."""
    codigo = _clean_text(payload.get("codigo"))
    if not codigo:
        raise ValidationError("Falta codigo")

    installed = _parse_optional_iso_date(payload.get("fecha_instalacion"), "fecha_instalacion")
    expiration = _parse_optional_iso_date(payload.get("fecha_vencimiento"), "fecha_vencimiento")
    years = _parse_optional_int(payload.get("fv_anios"), "fv_anios")
    months = _parse_optional_int(payload.get("fv_meses"), "fv_meses")
    _validate_dates(installed, expiration)
    if installed and (years or months):
        expiration = expiration_from_useful_life(installed, years, months)

    record = Record(
        codigo=codigo,
        fv_anios=years,
        fv_meses=months,
        fecha_instalacion=installed,
        longitud=_parse_optional_float(payload.get("longitud"), "longitud"),
        fecha_vencimiento=expiration,
    )
    for name in TEXT_FIELDS:
        setattr(record, name, _clean_text(payload.get(name)))
    record.estado_actual = reconcile_status(
        _parse_requested_estado(payload.get("estado_actual")),
        expiration,
        now or utcnow(),
        _thresholds(),
    )
    return record


def _ensure_code_available(codigo: str, exclude_id: int | None = None) -> None:
    query = Record.query.filter(Record.codigo == codigo)
    if exclude_id is not None:
        query = query.filter(Record.id != exclude_id)
    if query.first():
        raise ConflictError(f"Ya existe un registro con el código: {codigo}")


def create_record(
    payload: dict[str, object],
    context: TrackingContext | None = None,
    now: datetime | None = None,
) -> Record:
    record = build_record(payload, now)
    _ensure_code_available(record.codigo)
    db.session.add(record)
    db.session.flush()
    track_record_created(record, context)
    db.session.commit()
    logger.info("record %s created", record.codigo)
    return record


def record_by_id(record_id: int) -> Record:
    record = db.session.get(Record, record_id)
    if not record:
        raise NotFoundError(f"Registro con ID {record_id} no encontrado")
    return record


def record_by_code(codigo: str) -> Record:
    record = Record.query.filter_by(codigo=(codigo or "").strip()).first()
    if not record:
        raise NotFoundError(f"Registro con código {codigo} no encontrado")
    return record


def update_record(
    record_id: int,
    payload: dict[str, object],
    context: TrackingContext | None = None,
    now: datetime | None = None,
) -> Record:
    record = record_by_id(record_id)
    previous = record_snapshot(record)

    # Parse and validate everything before touching the mapped object.
    changes: dict[str, object] = {}
    if "codigo" in payload:
        codigo = _clean_text(payload.get("codigo"))
        if not codigo:
            raise ValidationError("Falta codigo")
        if codigo != record.codigo:
            _ensure_code_available(codigo, exclude_id=record.id)
        changes["codigo"] = codigo
    for name in TEXT_FIELDS:
        if name in payload:
            changes[name] = _clean_text(payload.get(name))
    if "longitud" in payload:
        changes["longitud"] = _parse_optional_float(payload.get("longitud"), "longitud")
    for name in ("fecha_instalacion", "fecha_vencimiento"):
        if name in payload:
            changes[name] = _parse_optional_iso_date(payload.get(name), name)
    for name in ("fv_anios", "fv_meses"):
        if name in payload:
            changes[name] = _parse_optional_int(payload.get(name), name)
    requested = _parse_requested_estado(payload.get("estado_actual")) if "estado_actual" in payload else None
    if requested is not None and record.estado_actual in RELATIONSHIP_ESTADOS:
        raise StateConflictError(
            f"La línea {record.codigo} está {record.estado_actual.value} y su estado no puede modificarse"
        )

    installed = changes.get("fecha_instalacion", record.fecha_instalacion)
    expiration = changes.get("fecha_vencimiento", record.fecha_vencimiento)
    _validate_dates(installed, expiration)
    years = changes.get("fv_anios", record.fv_anios)
    months = changes.get("fv_meses", record.fv_meses)
    useful_life_touched = "fv_anios" in payload or "fv_meses" in payload
    if useful_life_touched and installed and (years or months):
        changes["fecha_vencimiento"] = expiration = expiration_from_useful_life(installed, years, months)

    for name, value in changes.items():
        setattr(record, name, value)
    record.estado_actual = reconcile_status(
        requested or record.estado_actual,
        expiration,
        now or utcnow(),
        _thresholds(),
    )

    entry = track_record_updated(record, previous, context)
    db.session.commit()
    if entry is None:
        logger.debug("record %s update without changes", record.codigo)
    return record


def change_record_status(
    record_id: int,
    estado: object,
    observation: str | None,
    context: TrackingContext | None = None,
) -> Record:
    """Apply an operator status change.

    Only ``MANUAL_STATUS_TRANSITIONS`` moves are accepted and every change needs
    an observation. Re-applying the current status is allowed, which just adds
    the observation to the history. The requested status is stored as given;
    the periodic refresh later realigns non-terminal states with the expiration.
    """
    record = record_by_id(record_id)
    target = _parse_requested_estado(estado)
    if target is None:
        raise ValidationError("Falta estado")
    note = _clean_text(observation)
    if not note:
        raise ValidationError(f"El cambio de estado a {target.value} requiere una observación")
    if target in LONG_OBSERVATION_ESTADOS and len(note) < OBSERVATION_MIN_LENGTH:
        raise ValidationError(
            f"La observación debe tener al menos {OBSERVATION_MIN_LENGTH} caracteres para el estado {target.value}"
        )

    previous = record.estado_actual
    allowed = MANUAL_STATUS_TRANSITIONS.get(previous, set())
    if target != previous and target not in allowed:
        raise StateConflictError(f"Transicion invalida: {previous.value} -> {target.value}")

    record.estado_actual = target
    track_status_change(record.id, record.codigo, previous.value, target.value, context, observation=note)
    db.session.commit()
    logger.info("record %s status %s -> %s (manual)", record.codigo, previous.value, target.value)
    return record


def delete_record(
    record_id: int,
    context: TrackingContext | None = None,
    authorization_code: str | None = None,
    now: datetime | None = None,
) -> DeletionResult:
    """Delete a record, consuming an authorization code when the record needs one."""
    context = context or TrackingContext()
    record = record_by_id(record_id)
    now = now or utcnow()

    authorization_id = None
    check = check_authorization_needed(record.id, context.user_id, now)
    if check.needs_authorization:
        if not authorization_code:
            raise StateConflictError(f"Se requiere un código de autorización para eliminar: {check.message}")
        validation = validate_code(record.id, authorization_code, context.user_id, now)
        if not validation.valid:
            raise StateConflictError("Código de autorización inválido, expirado o ya utilizado")
        authorization_id = validation.authorization_id
        record = record_by_id(record_id)

    result = DeletionResult(record_id=record.id, codigo=record.codigo, authorization_id=authorization_id)
    track_record_deleted(record, context)
    db.session.delete(record)
    db.session.commit()
    logger.info("record %s deleted (authorization=%s)", result.codigo, authorization_id)
    return result


def record_to_dict(record: Record, now: datetime | None = None) -> dict[str, object]:
    info = classify(record.fecha_vencimiento, now or utcnow(), _thresholds())
    return {
        "id": record.id,
        "codigo": record.codigo,
        "cliente": record.cliente,
        "equipo": record.equipo,
        "anclaje_equipos": record.anclaje_equipos,
        "fv_anios": record.fv_anios,
        "fv_meses": record.fv_meses,
        "fecha_instalacion": record.fecha_instalacion.isoformat() if record.fecha_instalacion else None,
        "longitud": record.longitud,
        "observaciones": record.observaciones,
        "seec": record.seec,
        "tipo_linea": record.tipo_linea,
        "ubicacion": record.ubicacion,
        "fecha_vencimiento": record.fecha_vencimiento.isoformat() if record.fecha_vencimiento else None,
        "estado_actual": record.estado_actual.value,
        "status_info": {
            "status": info.status.value,
            "days_remaining": None if info.days_remaining == float("inf") else int(info.days_remaining),
            "message": info.message,
            "priority": info.priority,
        },
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def list_records(filters: dict[str, str], params: PaginationParams) -> dict[str, object]:
    query = Record.query
    for name in ("codigo", "cliente", "equipo", "ubicacion"):
        if filters.get(name):
            query = query.filter(getattr(Record, name).ilike(f"%{filters[name].strip()}%"))
    if filters.get("estado_actual"):
        query = query.filter(Record.estado_actual == _parse_estado(filters["estado_actual"]))
    for name in ("tipo_linea", "seec"):
        if filters.get(name):
            query = query.filter(getattr(Record, name) == filters[name].strip())
    desde = _parse_optional_iso_date(filters.get("fecha_vencimiento_desde"), "fecha_vencimiento_desde")
    if desde:
        query = query.filter(Record.fecha_vencimiento >= desde)
    hasta = _parse_optional_iso_date(filters.get("fecha_vencimiento_hasta"), "fecha_vencimiento_hasta")
    if hasta:
        query = query.filter(Record.fecha_vencimiento <= hasta)
    return paginate(query, Record, params, record_to_dict)


def records_by_status(estado: str) -> list[Record]:
    target = _parse_estado(estado)
    return Record.query.filter(Record.estado_actual == target).order_by(Record.id.asc()).all()


def expiring_records(days: int = 30, now: datetime | None = None) -> list[Record]:
    today = (now or utcnow()).date()
    return (
        Record.query.filter(Record.fecha_vencimiento.isnot(None))
        .filter(Record.fecha_vencimiento >= today)
        .filter(Record.fecha_vencimiento <= today + timedelta(days=days))
        .filter(Record.estado_actual.notin_(sorted(TERMINAL_ESTADOS)))
        .order_by(Record.fecha_vencimiento.asc(), Record.id.asc())
        .all()
    )


def expired_records(now: datetime | None = None) -> list[Record]:
    today = (now or utcnow()).date()
    return (
        Record.query.filter(Record.fecha_vencimiento.isnot(None))
        .filter(Record.fecha_vencimiento < today)
        .filter(Record.estado_actual.notin_(sorted(TERMINAL_ESTADOS)))
        .order_by(Record.fecha_vencimiento.asc(), Record.id.asc())
        .all()
    )


def record_statistics(now: datetime | None = None) -> dict[str, object]:
    records = Record.query.all()
    stored: dict[str, int] = {estado.value: 0 for estado in RecordEstado}
    for record in records:
        stored[record.estado_actual.value] += 1
    live = [record.fecha_vencimiento for record in records if record.estado_actual not in TERMINAL_ESTADOS]
    return {
        "total": len(records),
        "por_estado": stored,
        "calculado": status_statistics(live, now or utcnow(), _thresholds()),
    }


def refresh_record_statuses(force: bool = False, now: datetime | None = None) -> StatusRefreshResult:
    """Reconcile stored status with the calculated one.

    Only records whose status actually changes are written, each with a
    STATUS_CHANGE movement. ``force`` reports every evaluated record, the way an
    admin-triggered resync does. Terminal relationship states are never touched.
    """
    now = now or utcnow()
    thresholds = _thresholds()
    records = (
        Record.query.filter(Record.fecha_vencimiento.isnot(None))
        .order_by(Record.id.asc())
        .all()
    )
    result = StatusRefreshResult(evaluated=len(records))
    for record in records:
        if record.estado_actual in TERMINAL_ESTADOS:
            result.skipped_terminal += 1
            continue
        previous = record.estado_actual
        calculated = reconcile_status(previous, record.fecha_vencimiento, now, thresholds)
        changed = calculated != previous
        if changed:
            record.estado_actual = calculated
            track_status_change(
                record.id,
                record.codigo,
                previous.value,
                calculated.value,
                observation="Actualización automática por fecha de caducidad",
            )
            result.updated += 1
        if changed or force:
            result.changes.append(
                {"codigo": record.codigo, "old_status": previous.value, "new_status": calculated.value}
            )
    db.session.commit()
    logger.info(
        "status refresh%s: evaluated=%s updated=%s skipped_terminal=%s",
        " (forced)" if force else "",
        result.evaluated,
        result.updated,
        result.skipped_terminal,
    )
    return result
