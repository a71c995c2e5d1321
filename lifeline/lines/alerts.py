from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from lifeline.core.errors import ConflictError, NotFoundError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import Alert, AlertPrioridad, AlertTipo, Record, RecordEstado, utcnow
from lifeline.core.pagination import PaginationParams, paginate, parse_id_filter
from lifeline.lines.status import (
    PRIORITY_CRITICAL,
    PRIORITY_HIGH,
    PRIORITY_LOW,
    PRIORITY_MEDIUM,
    StatusInfo,
    classify,
    thresholds_from_config,
)

logger = logging.getLogger(__name__)

ALERT_FREQUENCY_DAYS: dict[AlertTipo, int] = {
    AlertTipo.POR_VENCER: 7,
    AlertTipo.VENCIDO: 3,
    AlertTipo.CRITICO: 1,
}

PRIORITY_TO_ALERT: dict[str, AlertPrioridad] = {
    PRIORITY_LOW: AlertPrioridad.LOW,
    PRIORITY_MEDIUM: AlertPrioridad.MEDIUM,
    PRIORITY_HIGH: AlertPrioridad.HIGH,
    PRIORITY_CRITICAL: AlertPrioridad.CRITICAL,
}

ALERT_SORT_FIELDS = frozenset({"id", "created_at", "tipo", "prioridad", "registro_id", "leida"})

_scan_lock = threading.Lock()


@dataclass
class ScanResult:
    evaluated: int = 0
    generated: int = 0
    alerts: list[Alert] = field(default_factory=list)
    skipped: bool = False


def alert_type_for(info: StatusInfo) -> AlertTipo:
    if info.priority == PRIORITY_CRITICAL:
        return AlertTipo.CRITICO
    if info.status == RecordEstado.VENCIDO:
        return AlertTipo.VENCIDO
    return AlertTipo.POR_VENCER


def throttle_bucket(tipo: AlertTipo, now: datetime) -> int:
    return now.date().toordinal() // ALERT_FREQUENCY_DAYS[tipo]


def alert_message(codigo: str, cliente: str | None, info: StatusInfo) -> str:
    label = f"{codigo} ({cliente})" if cliente else codigo
    days = int(info.days_remaining)
    if info.priority == PRIORITY_CRITICAL:
        return f"CRÍTICO: El registro {label} lleva {abs(days)} días vencido"
    if info.priority == PRIORITY_HIGH:
        if days < 0:
            return f"URGENTE: El registro {label} venció hace {abs(days)} días"
        if days == 0:
            return f"ATENCIÓN: El registro {label} vence HOY"
        return f"URGENTE: El registro {label} vence en {days} días"
    if info.priority == PRIORITY_MEDIUM:
        return f"AVISO: El registro {label} vence en {days} días"
    return f"El registro {label} requiere atención: {info.message}"


def should_create_alert(registro_id: int, tipo: AlertTipo, now: datetime) -> bool:
    cutoff = now - timedelta(days=ALERT_FREQUENCY_DAYS[tipo])
    recent = (
        Alert.query.filter(Alert.registro_id == registro_id)
        .filter(Alert.tipo == tipo)
        .filter(Alert.created_at > cutoff)
        .first()
    )
    return recent is None


def _build_alert(record: Record, info: StatusInfo, tipo: AlertTipo, now: datetime, bucket: int | None) -> Alert:
    return Alert(
        tipo=tipo,
        registro_id=record.id,
        mensaje=alert_message(record.codigo, record.cliente, info),
        prioridad=PRIORITY_TO_ALERT[info.priority],
        created_at=now,
        snapshot={
            "codigo": record.codigo,
            "cliente": record.cliente,
            "fecha_vencimiento": record.fecha_vencimiento.isoformat() if record.fecha_vencimiento else None,
            "dias_restantes": int(info.days_remaining),
            "estado_actual": record.estado_actual.value,
        },
        throttle_bucket=bucket,
    )


def _scan(now: datetime | None, throttled: bool) -> ScanResult:
    now = now or utcnow()
    thresholds = thresholds_from_config(current_app.config)
    started = time.monotonic()
    records = (
        Record.query.filter(Record.fecha_vencimiento.isnot(None))
        .order_by(Record.id.asc())
        .all()
    )
    result = ScanResult(evaluated=len(records))
    if not records:
        logger.info("alert scan: no records with expiration date")
        return result

    # One unit of work: any failure discards every alert of this scan.
    try:
        for record in records:
            info = classify(record.fecha_vencimiento, now, thresholds)
            if info.priority == PRIORITY_LOW:
                continue
            tipo = alert_type_for(info)
            if throttled and not should_create_alert(record.id, tipo, now):
                continue
            alert = _build_alert(record, info, tipo, now, throttle_bucket(tipo, now) if throttled else None)
            db.session.add(alert)
            result.alerts.append(alert)
            logger.debug("alert %s queued for record %s", tipo.value, record.codigo)
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Otra ejecucion genero las mismas alertas; escaneo descartado") from exc
    except Exception:
        db.session.rollback()
        raise

    result.generated = len(result.alerts)
    logger.info(
        "alert scan (%s) finished in %.0fms: evaluated=%s generated=%s",
        "scheduled" if throttled else "manual",
        (time.monotonic() - started) * 1000,
        result.evaluated,
        result.generated,
    )
    return result


def run_scheduled_alert_scan(now: datetime | None = None) -> ScanResult:
    """Throttled scan used by the scheduler. Overlapping calls are skipped."""
    if not _scan_lock.acquire(blocking=False):
        logger.warning("alert scan already running, skipping this tick")
        return ScanResult(skipped=True)
    try:
        return _scan(now, throttled=True)
    finally:
        _scan_lock.release()


def run_manual_alert_scan(now: datetime | None = None) -> ScanResult:
    """Admin-triggered scan: every qualifying record gets an alert, no throttle."""
    return _scan(now, throttled=False)


def alert_to_dict(alert: Alert) -> dict[str, object]:
    return {
        "id": alert.id,
        "tipo": alert.tipo.value,
        "registro_id": alert.registro_id,
        "mensaje": alert.mensaje,
        "prioridad": alert.prioridad.value,
        "created_at": alert.created_at.isoformat(),
        "leida": alert.leida,
        "fecha_leida": alert.fecha_leida.isoformat() if alert.fecha_leida else None,
        "metadata": alert.snapshot,
    }


def _parse_choice(enum_cls, raw: str, label: str):
    try:
        return enum_cls(raw.strip())
    except ValueError:
        try:
            return enum_cls[raw.strip().upper()]
        except KeyError as exc:
            raise ValidationError(f"{label} invalido: {raw}") from exc


def list_alerts(filters: dict[str, str], params: PaginationParams) -> dict[str, object]:
    query = Alert.query
    if filters.get("tipo"):
        query = query.filter(Alert.tipo == _parse_choice(AlertTipo, filters["tipo"], "Tipo de alerta"))
    if filters.get("prioridad"):
        query = query.filter(Alert.prioridad == _parse_choice(AlertPrioridad, filters["prioridad"], "Prioridad"))
    if filters.get("leida") not in (None, ""):
        leida = str(filters["leida"]).strip().lower() in {"1", "true", "si", "yes"}
        query = query.filter(Alert.leida.is_(leida))
    if filters.get("registro_id"):
        query = query.filter(Alert.registro_id == parse_id_filter(filters["registro_id"], "registro_id"))
    return paginate(query, Alert, params, alert_to_dict)


def alert_by_id(alert_id: int) -> Alert:
    alert = db.session.get(Alert, alert_id)
    if not alert:
        raise NotFoundError(f"Alerta con ID {alert_id} no encontrada")
    return alert


def alerts_for_record(registro_id: int) -> list[Alert]:
    return (
        Alert.query.filter_by(registro_id=registro_id)
        .order_by(Alert.created_at.desc(), Alert.id.desc())
        .all()
    )


def mark_alert_read(alert_id: int, now: datetime | None = None) -> Alert:
    alert = alert_by_id(alert_id)
    if not alert.leida:
        alert.leida = True
        alert.fecha_leida = now or utcnow()
        db.session.commit()
    return alert


def mark_all_alerts_read(now: datetime | None = None) -> int:
    outcome = db.session.execute(
        update(Alert).where(Alert.leida.is_(False)).values(leida=True, fecha_leida=now or utcnow())
    )
    db.session.commit()
    return outcome.rowcount or 0


def unread_alert_count() -> int:
    return Alert.query.filter(Alert.leida.is_(False)).count()


def alerts_summary(recent_limit: int = 5) -> dict[str, object]:
    por_tipo = db.session.query(Alert.tipo, func.count(Alert.id)).group_by(Alert.tipo).all()
    por_prioridad = db.session.query(Alert.prioridad, func.count(Alert.id)).group_by(Alert.prioridad).all()
    recientes = Alert.query.order_by(Alert.created_at.desc(), Alert.id.desc()).limit(recent_limit).all()
    criticas = (
        Alert.query.filter(Alert.leida.is_(False))
        .filter(Alert.prioridad == AlertPrioridad.CRITICAL)
        .order_by(Alert.created_at.desc())
        .all()
    )
    return {
        "total": Alert.query.count(),
        "no_leidas": unread_alert_count(),
        "por_tipo": [{"tipo": tipo.value, "count": count} for tipo, count in por_tipo],
        "por_prioridad": [{"prioridad": prioridad.value, "count": count} for prioridad, count in por_prioridad],
        "recientes": [alert_to_dict(alert) for alert in recientes],
        "criticas": [alert_to_dict(alert) for alert in criticas],
    }
