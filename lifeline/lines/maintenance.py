from __future__ import annotations

import logging
from datetime import date, datetime

from lifeline.core.errors import NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import MaintenanceEvent, utcnow
from lifeline.lines.movements import TrackingContext, record_snapshot, track_maintenance, track_record_updated
from lifeline.lines.services import record_by_id

logger = logging.getLogger(__name__)

DESCRIPTION_MAX_LENGTH = 500


def _parse_maintenance_date(value: object) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value or "").strip()
    if not raw:
        raise ValidationError("La fecha del mantenimiento es obligatoria")
    try:
        return date.fromisoformat(raw[:10])
    except ValueError as exc:
        raise ValidationError("La fecha debe ser válida (YYYY-MM-DD)") from exc


def _parse_new_length(value: object) -> float | None:
    if value is None or str(value).strip() == "":
        return None
    try:
        length = float(str(value).strip().replace(",", "."))
    except ValueError as exc:
        raise ValidationError("La longitud debe ser un número válido") from exc
    if length <= 0:
        raise ValidationError("La nueva longitud debe ser un número positivo mayor a cero")
    return length


def register_maintenance(
    record_id: int,
    payload: dict[str, object],
    context: TrackingContext | None = None,
    now: datetime | None = None,
) -> MaintenanceEvent:
    """Store a maintenance event for a line.

    A ``new_length_meters`` different from the current ``longitud`` is written
    back to the record with its own UPDATE movement. Every event also gets a
    MAINTENANCE movement.
    """
    context = context or TrackingContext()
    now = now or utcnow()
    record = record_by_id(record_id)

    maintenance_date = _parse_maintenance_date(payload.get("maintenance_date"))
    if maintenance_date > now.date():
        raise ValidationError("La fecha del mantenimiento no puede ser futura")
    description = str(payload.get("description") or "").strip() or None
    if description and len(description) > DESCRIPTION_MAX_LENGTH:
        raise ValidationError(f"La descripción no puede exceder {DESCRIPTION_MAX_LENGTH} caracteres")
    new_length = _parse_new_length(payload.get("new_length_meters"))

    previous_length = record.longitud
    length_changed = new_length is not None and new_length != previous_length
    event = MaintenanceEvent(
        record_id=record.id,
        maintenance_date=maintenance_date,
        description=description,
        previous_length=previous_length if length_changed else None,
        new_length=new_length if length_changed else None,
        created_by=context.user_id,
        created_at=now,
    )
    db.session.add(event)
    db.session.flush()

    if length_changed:
        previous = record_snapshot(record)
        record.longitud = new_length
        track_record_updated(record, previous, context)
        logger.info("record %s length %sm -> %sm", record.codigo, previous_length, new_length)

    detail = maintenance_date.isoformat()
    if description:
        detail = f"{detail} - {description}"
    track_maintenance(
        record,
        detail,
        context,
        metadata={
            "maintenance_id": event.id,
            "maintenance_date": maintenance_date.isoformat(),
            "previous_length": event.previous_length,
            "new_length": event.new_length,
        },
    )
    db.session.commit()
    logger.info("maintenance %s registered for record %s", event.id, record.codigo)
    return event


def record_maintenances(record_id: int) -> list[MaintenanceEvent]:
    record = record_by_id(record_id)
    return (
        MaintenanceEvent.query.filter_by(record_id=record.id)
        .order_by(MaintenanceEvent.maintenance_date.desc(), MaintenanceEvent.id.desc())
        .all()
    )


def maintenance_by_id(maintenance_id: int) -> MaintenanceEvent:
    event = db.session.get(MaintenanceEvent, maintenance_id)
    if not event:
        raise NotFoundError(f"Mantenimiento con ID {maintenance_id} no encontrado")
    return event


def delete_maintenance(maintenance_id: int) -> None:
    # The MAINTENANCE movement stays; the history is append-only.
    event = maintenance_by_id(maintenance_id)
    db.session.delete(event)
    db.session.commit()
    logger.info("maintenance %s deleted", maintenance_id)


def maintenance_to_dict(event: MaintenanceEvent) -> dict[str, object]:
    return {
        "id": event.id,
        "record_id": event.record_id,
        "maintenance_date": event.maintenance_date.isoformat(),
        "description": event.description,
        "previous_length_meters": event.previous_length,
        "new_length_meters": event.new_length,
        "created_by": event.created_by,
        "created_at": event.created_at.isoformat(),
    }
