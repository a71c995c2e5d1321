from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum

from sqlalchemy import func

from lifeline.core.errors import ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import MovementAction, MovementEntry, Record, utcnow
from lifeline.core.pagination import PaginationParams, paginate, parse_id_filter

logger = logging.getLogger(__name__)

SYSTEM_USERNAME = "Sistema"
MIN_RETENTION_DAYS = 30

TRACKABLE_FIELDS: tuple[str, ...] = (
    "codigo",
    "cliente",
    "equipo",
    "anclaje_equipos",
    "fv_anios",
    "fv_meses",
    "fecha_instalacion",
    "longitud",
    "observaciones",
    "seec",
    "tipo_linea",
    "ubicacion",
    "fecha_vencimiento",
    "estado_actual",
)

FIELD_LABELS: dict[str, str] = {
    "codigo": "Código",
    "cliente": "Cliente",
    "equipo": "Equipo",
    "anclaje_equipos": "Anclaje de Equipos",
    "fv_anios": "Años de Vida Útil",
    "fv_meses": "Meses de Vida Útil",
    "fecha_instalacion": "Fecha de Instalación",
    "longitud": "Longitud",
    "observaciones": "Observaciones",
    "seec": "SEEC",
    "tipo_linea": "Tipo de Línea",
    "ubicacion": "Ubicación",
    "fecha_vencimiento": "Fecha de Caducidad",
    "estado_actual": "Estado Actual",
}

MOVEMENT_SORT_FIELDS = frozenset({"id", "action_date", "action", "record_id", "username"})


@dataclass(frozen=True)
class TrackingContext:
    user_id: int | None = None
    username: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def display_name(self) -> str:
        return self.username or SYSTEM_USERNAME


SYSTEM_CONTEXT = TrackingContext()


def _json_value(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def record_snapshot(record: Record) -> dict[str, object]:
    return {field: _json_value(getattr(record, field)) for field in TRACKABLE_FIELDS}


def changed_fields(previous: dict[str, object], current: dict[str, object]) -> list[str]:
    # Plain inequality per whitelisted field, nothing structural.
    return [field for field in TRACKABLE_FIELDS if field in current and previous.get(field) != current.get(field)]


def _display(value: object) -> object:
    return "N/A" if value is None or value == "" else value


def build_update_description(
    record_code: str,
    fields: list[str],
    previous: dict[str, object],
    current: dict[str, object],
) -> str:
    if len(fields) == 1:
        field = fields[0]
        label = FIELD_LABELS.get(field, field)
        return f'{label} actualizado: "{_display(previous.get(field))}" → "{_display(current.get(field))}"'
    labels = ", ".join(FIELD_LABELS.get(field, field) for field in fields)
    return f"Registro {record_code} actualizado: {labels}"


def append_movement(
    record_id: int | None,
    record_code: str | None,
    action: MovementAction,
    description: str,
    context: TrackingContext | None = None,
    previous_values: dict | None = None,
    new_values: dict | None = None,
    fields: list[str] | None = None,
    additional_metadata: dict | None = None,
    is_record_active: bool = True,
    action_date: datetime | None = None,
) -> MovementEntry:
    """Queue one immutable audit entry on the current session.

    The caller owns the commit, so the entry lands in the same unit of work as
    the mutation it describes.
    """
    context = context or SYSTEM_CONTEXT
    entry = MovementEntry(
        record_id=record_id,
        record_code=record_code,
        action=action,
        description=description,
        action_date=action_date or utcnow(),
        user_id=context.user_id,
        username=context.display_name,
        previous_values=previous_values,
        new_values=new_values,
        changed_fields=fields,
        additional_metadata=additional_metadata,
        is_record_active=is_record_active,
        ip_address=context.ip_address,
        user_agent=context.user_agent,
    )
    db.session.add(entry)
    logger.debug("movement %s queued for record %s (%s)", action.value, record_id, record_code)
    return entry


def track_record_created(record: Record, context: TrackingContext | None = None) -> MovementEntry:
    snapshot = record_snapshot(record)
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.CREATE,
        f"Registro creado: {record.codigo}",
        context,
        new_values=snapshot,
        fields=[field for field, value in snapshot.items() if value is not None],
    )


def track_record_updated(
    record: Record,
    previous_values: dict[str, object],
    context: TrackingContext | None = None,
) -> MovementEntry | None:
    current = record_snapshot(record)
    fields = changed_fields(previous_values, current)
    if not fields:
        return None
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.UPDATE,
        build_update_description(record.codigo, fields, previous_values, current),
        context,
        previous_values=previous_values,
        new_values=current,
        fields=fields,
    )


def track_record_deleted(record: Record, context: TrackingContext | None = None) -> MovementEntry:
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.DELETE,
        f"Registro eliminado: {record.codigo}",
        context,
        previous_values=record_snapshot(record),
        is_record_active=False,
    )


def track_record_restored(record: Record, context: TrackingContext | None = None) -> MovementEntry:
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.RESTORE,
        f"Registro restaurado: {record.codigo}",
        context,
        new_values=record_snapshot(record),
    )


def track_status_change(
    record_id: int,
    record_code: str,
    previous_status: str,
    new_status: str,
    context: TrackingContext | None = None,
    observation: str | None = None,
) -> MovementEntry:
    description = f'Estado cambiado de "{previous_status}" a "{new_status}"'
    if observation:
        description = f"{description} - {observation}"
    return append_movement(
        record_id,
        record_code,
        MovementAction.STATUS_CHANGE,
        description,
        context,
        previous_values={"estado_actual": previous_status},
        new_values={"estado_actual": new_status},
        fields=["estado_actual"],
        additional_metadata={"observation": observation} if observation else None,
    )


def _size_kb(size: int | None) -> int:
    return round((size or 0) / 1024)


def track_image_upload(
    record_id: int,
    record_code: str,
    image_info: dict[str, object],
    context: TrackingContext | None = None,
) -> MovementEntry:
    return append_movement(
        record_id,
        record_code,
        MovementAction.IMAGE_UPLOAD,
        f"Imagen subida: {image_info.get('original_name')} ({_size_kb(image_info.get('size'))}KB)",
        context,
        new_values=dict(image_info),
    )


def track_image_replace(
    record_id: int,
    record_code: str,
    old_image_info: dict[str, object],
    new_image_info: dict[str, object],
    context: TrackingContext | None = None,
) -> MovementEntry:
    return append_movement(
        record_id,
        record_code,
        MovementAction.IMAGE_REPLACE,
        f"Imagen reemplazada: {new_image_info.get('original_name')} ({_size_kb(new_image_info.get('size'))}KB)",
        context,
        previous_values=dict(old_image_info),
        new_values=dict(new_image_info),
    )


def track_image_deletion(
    record_id: int,
    record_code: str,
    image_info: dict[str, object],
    context: TrackingContext | None = None,
) -> MovementEntry:
    return append_movement(
        record_id,
        record_code,
        MovementAction.IMAGE_DELETE,
        f"Imagen eliminada: {image_info.get('filename')}",
        context,
        previous_values=dict(image_info),
    )


def track_location_change(
    record: Record,
    previous_location: str | None,
    context: TrackingContext | None = None,
) -> MovementEntry:
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.LOCATION_CHANGE,
        f'Ubicación cambiada de "{_display(previous_location)}" a "{_display(record.ubicacion)}"',
        context,
        previous_values={"ubicacion": previous_location},
        new_values={"ubicacion": record.ubicacion},
        fields=["ubicacion"],
    )


def track_company_change(
    record: Record,
    previous_company: str | None,
    context: TrackingContext | None = None,
) -> MovementEntry:
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.COMPANY_CHANGE,
        f'Cliente cambiado de "{_display(previous_company)}" a "{_display(record.cliente)}"',
        context,
        previous_values={"cliente": previous_company},
        new_values={"cliente": record.cliente},
        fields=["cliente"],
    )


def track_maintenance(
    record: Record,
    detail: str,
    context: TrackingContext | None = None,
    metadata: dict | None = None,
) -> MovementEntry:
    return append_movement(
        record.id,
        record.codigo,
        MovementAction.MAINTENANCE,
        f"Mantenimiento registrado: {detail}",
        context,
        additional_metadata=metadata,
    )


def record_movements(record_id: int) -> list[MovementEntry]:
    return (
        MovementEntry.query.filter_by(record_id=record_id)
        .order_by(MovementEntry.action_date.asc(), MovementEntry.id.asc())
        .all()
    )


def earliest_movement(record_id: int, action: MovementAction = MovementAction.CREATE) -> MovementEntry | None:
    return (
        MovementEntry.query.filter_by(record_id=record_id, action=action)
        .order_by(MovementEntry.action_date.asc(), MovementEntry.id.asc())
        .first()
    )


def _parse_filter_datetime(value: str | None, field_name: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        return datetime.fromisoformat(raw)
    except ValueError as exc:
        raise ValidationError(f"Formato de fecha invalido para {field_name}") from exc


def movement_to_dict(entry: MovementEntry) -> dict[str, object]:
    return {
        "id": entry.id,
        "record_id": entry.record_id,
        "record_code": entry.record_code,
        "action": entry.action.value,
        "description": entry.description,
        "action_date": entry.action_date.isoformat(),
        "user_id": entry.user_id,
        "username": entry.username,
        "previous_values": entry.previous_values,
        "new_values": entry.new_values,
        "changed_fields": entry.changed_fields,
        "additional_metadata": entry.additional_metadata,
        "is_record_active": entry.is_record_active,
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
    }


def list_movements(filters: dict[str, str], params: PaginationParams) -> dict[str, object]:
    query = MovementEntry.query
    if filters.get("record_id"):
        query = query.filter(MovementEntry.record_id == parse_id_filter(filters["record_id"], "record_id"))
    if filters.get("action"):
        try:
            action = MovementAction(filters["action"].strip().upper())
        except ValueError as exc:
            raise ValidationError("Accion de movimiento invalida") from exc
        query = query.filter(MovementEntry.action == action)
    if filters.get("user_id"):
        query = query.filter(MovementEntry.user_id == parse_id_filter(filters["user_id"], "user_id"))
    if filters.get("username"):
        query = query.filter(MovementEntry.username == filters["username"].strip())
    if filters.get("record_code"):
        query = query.filter(MovementEntry.record_code.ilike(f"%{filters['record_code'].strip()}%"))
    if filters.get("is_record_active") not in (None, ""):
        active = str(filters["is_record_active"]).strip().lower() in {"1", "true", "si", "yes"}
        query = query.filter(MovementEntry.is_record_active.is_(active))
    if filters.get("search"):
        query = query.filter(MovementEntry.description.ilike(f"%{filters['search'].strip()}%"))
    date_from = _parse_filter_datetime(filters.get("date_from"), "date_from")
    if date_from:
        query = query.filter(MovementEntry.action_date >= date_from)
    date_to = _parse_filter_datetime(filters.get("date_to"), "date_to")
    if date_to:
        query = query.filter(MovementEntry.action_date <= date_to)
    return paginate(query, MovementEntry, params, movement_to_dict)


def movement_statistics(now: datetime | None = None) -> dict[str, object]:
    now = now or utcnow()
    today_start = datetime.combine(now.date(), datetime.min.time())
    week_start = today_start - timedelta(days=today_start.weekday())

    by_action = (
        db.session.query(MovementEntry.action, func.count(MovementEntry.id))
        .group_by(MovementEntry.action)
        .order_by(func.count(MovementEntry.id).desc())
        .all()
    )
    by_user = (
        db.session.query(MovementEntry.username, func.count(MovementEntry.id))
        .filter(MovementEntry.username.isnot(None))
        .group_by(MovementEntry.username)
        .order_by(func.count(MovementEntry.id).desc())
        .limit(10)
        .all()
    )
    return {
        "total": MovementEntry.query.count(),
        "today": MovementEntry.query.filter(MovementEntry.action_date >= today_start).count(),
        "this_week": MovementEntry.query.filter(MovementEntry.action_date >= week_start).count(),
        "by_action": [{"action": action.value, "count": count} for action, count in by_action],
        "by_user": [{"username": username, "count": count} for username, count in by_user],
    }


def purge_movements_older_than(days: int, now: datetime | None = None) -> int:
    """Retention batch: hard-delete entries older than ``days``.

    Kept out of the tracker's own write path; only maintenance tooling calls it.
    """
    if days < MIN_RETENTION_DAYS:
        raise ValidationError(f"La retencion minima es de {MIN_RETENTION_DAYS} dias")
    cutoff = (now or utcnow()) - timedelta(days=days)
    deleted = (
        MovementEntry.query.filter(MovementEntry.action_date < cutoff)
        .delete(synchronize_session=False)
    )
    db.session.commit()
    logger.info("purged %s movement entries older than %s", deleted, cutoff.isoformat())
    return deleted
