from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from lifeline.core.errors import ConflictError, NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import (
    RELATIONSHIP_ESTADOS,
    Record,
    RecordEstado,
    RecordRelationship,
    RelationshipType,
    utcnow,
)
from lifeline.lines.movements import (
    TrackingContext,
    record_snapshot,
    track_record_created,
    track_record_deleted,
    track_record_updated,
)
from lifeline.lines.services import build_record

logger = logging.getLogger(__name__)

PARENT_STATUS_BY_TYPE: dict[RelationshipType, RecordEstado] = {
    RelationshipType.REPLACEMENT: RecordEstado.REEMPLAZADA,
    RelationshipType.DIVISION: RecordEstado.DIVIDIDA,
    RelationshipType.UPGRADE: RecordEstado.ACTUALIZADA,
}

FORBIDDEN_PARENT_STATES = RELATIONSHIP_ESTADOS


@dataclass
class RelationshipResult:
    parent: Record
    children: list[Record]
    relationships: list[RecordRelationship]
    message: str


@dataclass(frozen=True)
class ParentEligibility:
    can_be_parent: bool
    reason: str | None = None
    current_status: str | None = None
    has_children: bool = False


class Saga:
    """Ordered forward steps, each paired with an undo run in reverse on failure."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._undo: list[tuple[str, Callable[[], None]]] = []

    def step(self, label: str, forward: Callable[[], object], undo: Callable[[object], None] | None = None):
        value = forward()
        if undo is not None:
            self._undo.append((label, lambda: undo(value)))
        return value

    def compensate(self) -> int:
        failures = 0
        while self._undo:
            label, action = self._undo.pop()
            try:
                action()
            except Exception:
                db.session.rollback()
                failures += 1
                logger.exception("saga %s: undo of %s failed", self.name, label)
        return failures


def success_message(relationship_type: RelationshipType, parent_code: str, count: int) -> str:
    if relationship_type == RelationshipType.REPLACEMENT:
        return f"Línea {parent_code} reemplazada exitosamente con {count} nueva(s) línea(s)"
    if relationship_type == RelationshipType.DIVISION:
        return f"Línea {parent_code} dividida exitosamente en {count} nueva(s) línea(s)"
    return f"Línea {parent_code} actualizada exitosamente con {count} nueva(s) línea(s)"


def _parse_type(value: RelationshipType | str) -> RelationshipType:
    try:
        return RelationshipType(str(getattr(value, "value", value)).strip().upper())
    except ValueError as exc:
        raise ValidationError(f"Tipo de relación invalido: {value}") from exc


def _validate_children(parent: Record, children: list[dict[str, object]]) -> None:
    if not children:
        raise ValidationError("Debe proporcionar al menos una línea nueva")
    if not all(isinstance(child, dict) for child in children):
        raise ValidationError("Cada línea nueva debe ser un objeto con sus datos")

    codes = [str(child.get("codigo") or "").strip() for child in children]
    if parent.codigo in codes:
        raise ValidationError(
            f'No se puede relacionar una línea consigo misma. El código "{parent.codigo}" '
            "no puede repetirse en las líneas nuevas."
        )
    seen: set[str] = set()
    duplicated: list[str] = []
    for code in codes:
        if code in seen and code not in duplicated:
            duplicated.append(code)
        seen.add(code)
    if duplicated:
        raise ValidationError(f"Códigos duplicados encontrados en las líneas nuevas: {', '.join(duplicated)}")

    for code in codes:
        existing = Record.query.filter_by(codigo=code).first()
        if not existing:
            continue
        link = RecordRelationship.query.filter_by(child_record_id=existing.id).first()
        if link:
            raise ConflictError(
                f'La línea "{code}" ya está vinculada como línea derivada de "{link.parent_record.codigo}". '
                "No se pueden asociar líneas que ya estén vinculadas a otra línea original."
            )


def _create_child(child: Record, context: TrackingContext) -> Record:
    if Record.query.filter_by(codigo=child.codigo).first():
        raise ConflictError(f"Ya existe una línea con código: {child.codigo}")
    db.session.add(child)
    db.session.flush()
    track_record_created(child, context)
    db.session.commit()
    return child


def _link_child(
    parent_id: int,
    child_id: int,
    relationship_type: RelationshipType,
    notes: str | None,
    context: TrackingContext,
    now: datetime,
) -> RecordRelationship:
    link = RecordRelationship(
        parent_record_id=parent_id,
        child_record_id=child_id,
        relationship_type=relationship_type,
        notes=notes,
        created_at=now,
        created_by=context.user_id,
    )
    db.session.add(link)
    db.session.commit()
    return link


def _retire_parent(parent_id: int, relationship_type: RelationshipType, context: TrackingContext) -> Record:
    parent = db.session.get(Record, parent_id)
    previous = record_snapshot(parent)
    parent.estado_actual = PARENT_STATUS_BY_TYPE[relationship_type]
    track_record_updated(parent, previous, context)
    db.session.commit()
    return parent


def _remove_link(link_id: int) -> None:
    link = db.session.get(RecordRelationship, link_id)
    if link:
        db.session.delete(link)
        db.session.commit()


def _remove_child(child_id: int, context: TrackingContext) -> None:
    child = db.session.get(Record, child_id)
    if child:
        track_record_deleted(child, context)
        db.session.delete(child)
        db.session.commit()


def create_relationship(
    parent_id: int,
    relationship_type: RelationshipType | str,
    children: list[dict[str, object]],
    notes: str | None = None,
    context: TrackingContext | None = None,
    now: datetime | None = None,
) -> RelationshipResult:
    """Retire ``parent_id`` into a group of newly created child records.

    Every precondition is checked before the first write. Each forward step
    commits on its own; when a later step fails the already committed steps are
    undone in reverse order and the original error is re-raised.
    """
    context = context or TrackingContext()
    now = now or utcnow()
    relationship_type = _parse_type(relationship_type)

    parent = db.session.get(Record, parent_id)
    if not parent:
        raise NotFoundError(f"Línea de vida padre con ID {parent_id} no encontrada")
    if RecordRelationship.query.filter_by(parent_record_id=parent.id).first():
        raise ConflictError(f"La línea {parent.codigo} ya tiene líneas derivadas asociadas")
    if RecordRelationship.query.filter_by(child_record_id=parent.id).first():
        raise ConflictError(
            "Esta línea es derivada de otra línea. Solo las líneas originales pueden generar derivadas."
        )
    if parent.estado_actual in FORBIDDEN_PARENT_STATES:
        raise ConflictError(
            f'Las líneas con estado "{parent.estado_actual.value}" no pueden generar nuevas derivadas'
        )
    _validate_children(parent, children)
    drafts = [build_record(child, now) for child in children]
    parent_code = parent.codigo
    clean_notes = (notes or "").strip() or None

    saga = Saga(f"relationship:{parent_code}")
    created: list[Record] = []
    links: list[RecordRelationship] = []
    try:
        for draft in drafts:
            child = saga.step(
                f"create {draft.codigo}",
                lambda draft=draft: _create_child(draft, context),
                lambda record: _remove_child(record.id, context),
            )
            created.append(child)
            link = saga.step(
                f"link {child.codigo}",
                lambda child=child: _link_child(parent_id, child.id, relationship_type, clean_notes, context, now),
                lambda row: _remove_link(row.id),
            )
            links.append(link)
        parent = saga.step("retire parent", lambda: _retire_parent(parent_id, relationship_type, context))
    except Exception:
        db.session.rollback()
        logger.warning("relationship for %s failed, compensating %s step(s)", parent_code, len(created) + len(links))
        saga.compensate()
        raise

    message = success_message(relationship_type, parent_code, len(created))
    logger.info("relationship created: %s -> %s", parent_code, ", ".join(child.codigo for child in created))
    return RelationshipResult(parent=parent, children=created, relationships=links, message=message)


def child_relationships(parent_id: int) -> list[RecordRelationship]:
    return (
        RecordRelationship.query.filter_by(parent_record_id=parent_id)
        .order_by(RecordRelationship.created_at.desc(), RecordRelationship.id.asc())
        .all()
    )


def parent_relationship(child_id: int) -> RecordRelationship | None:
    return RecordRelationship.query.filter_by(child_record_id=child_id).first()


def can_be_parent(record_id: int) -> ParentEligibility:
    record = db.session.get(Record, record_id)
    if not record:
        return ParentEligibility(False, "Línea de vida no encontrada")
    status = record.estado_actual.value
    if RecordRelationship.query.filter_by(parent_record_id=record_id).first():
        return ParentEligibility(False, "Esta línea ya tiene líneas derivadas asociadas", status, True)
    if RecordRelationship.query.filter_by(child_record_id=record_id).first():
        return ParentEligibility(
            False,
            "Esta línea es derivada de otra línea. Solo las líneas originales pueden generar derivadas.",
            status,
        )
    if record.estado_actual in FORBIDDEN_PARENT_STATES:
        return ParentEligibility(False, f'Las líneas con estado "{status}" no pueden generar nuevas derivadas', status)
    return ParentEligibility(True, None, status)


def _record_summary(record: Record | None) -> dict[str, object] | None:
    if record is None:
        return None
    return {
        "id": record.id,
        "codigo": record.codigo,
        "cliente": record.cliente or "",
        "estado_actual": record.estado_actual.value,
    }


def relationship_to_dict(link: RecordRelationship) -> dict[str, object]:
    return {
        "id": link.id,
        "parent_record_id": link.parent_record_id,
        "child_record_id": link.child_record_id,
        "relationship_type": link.relationship_type.value,
        "notes": link.notes,
        "created_at": link.created_at.isoformat(),
        "created_by": link.created_by,
        "parent_record": _record_summary(link.parent_record),
        "child_record": _record_summary(link.child_record),
    }
