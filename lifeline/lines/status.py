from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Mapping

from lifeline.core.models import RELATIONSHIP_ESTADOS, RecordEstado, TERMINAL_ESTADOS, utcnow

PRIORITY_LOW = "low"
PRIORITY_MEDIUM = "medium"
PRIORITY_HIGH = "high"
PRIORITY_CRITICAL = "critical"

URGENT_OVERDUE_DAYS = 7
URGENT_NEAR_EXPIRY_DAYS = 7

# Relationship states have no exits.
MANUAL_STATUS_TRANSITIONS: dict[RecordEstado, set[RecordEstado]] = {
    RecordEstado.ACTIVO: {RecordEstado.POR_VENCER, RecordEstado.VENCIDO, RecordEstado.INACTIVO},
    RecordEstado.POR_VENCER: {RecordEstado.ACTIVO, RecordEstado.VENCIDO, RecordEstado.INACTIVO},
    RecordEstado.VENCIDO: {RecordEstado.ACTIVO, RecordEstado.INACTIVO},
    RecordEstado.INACTIVO: {RecordEstado.ACTIVO},
    **{estado: set() for estado in RELATIONSHIP_ESTADOS},
}

OBSERVATION_MIN_LENGTH = 10
LONG_OBSERVATION_ESTADOS = frozenset({RecordEstado.VENCIDO, RecordEstado.INACTIVO})


@dataclass(frozen=True)
class StatusThresholds:
    warning_days: int = 30
    critical_days: int = 60


@dataclass(frozen=True)
class StatusInfo:
    status: RecordEstado
    days_remaining: float
    message: str
    priority: str

    @property
    def is_expired(self) -> bool:
        return self.status == RecordEstado.VENCIDO


def thresholds_from_config(config: Mapping[str, object]) -> StatusThresholds:
    defaults = StatusThresholds()
    warning = int(config.get("DAYS_TO_EXPIRE_WARNING", defaults.warning_days))
    critical = int(config.get("DAYS_OVERDUE_CRITICAL", defaults.critical_days))
    if warning < 0:
        raise ValueError("DAYS_TO_EXPIRE_WARNING debe ser >= 0")
    if critical < 0:
        raise ValueError("DAYS_OVERDUE_CRITICAL debe ser >= 0")
    return StatusThresholds(warning_days=warning, critical_days=critical)


def _as_date(value: date | datetime) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value


def days_until(expiration: date | datetime, now: date | datetime) -> int:
    """Whole calendar days from ``now`` to ``expiration``, midnight to midnight."""
    delta = _as_date(expiration) - _as_date(now)
    return math.ceil(delta / timedelta(days=1))


def classify(
    expiration: date | datetime | None,
    now: date | datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> StatusInfo:
    """Derive status, days remaining, message and priority from an expiration date.

    Pure: the same ``expiration``/``now``/``thresholds`` always give the same
    result. A missing expiration is treated as active with no deadline.
    """
    thresholds = thresholds or StatusThresholds()
    if expiration is None:
        return StatusInfo(
            status=RecordEstado.ACTIVO,
            days_remaining=math.inf,
            message="Sin fecha de caducidad definida",
            priority=PRIORITY_LOW,
        )

    days = days_until(expiration, now or utcnow())

    if days < 0:
        overdue = abs(days)
        if overdue > thresholds.critical_days:
            return StatusInfo(
                RecordEstado.VENCIDO, days, f"Vencido hace {overdue} días - CRÍTICO", PRIORITY_CRITICAL
            )
        if overdue > URGENT_OVERDUE_DAYS:
            return StatusInfo(RecordEstado.VENCIDO, days, f"Vencido hace {overdue} días - URGENTE", PRIORITY_HIGH)
        return StatusInfo(RecordEstado.VENCIDO, days, f"Vencido hace {overdue} días", PRIORITY_HIGH)

    if days == 0:
        return StatusInfo(RecordEstado.POR_VENCER, 0, "Vence HOY", PRIORITY_HIGH)

    if days <= thresholds.warning_days:
        priority = PRIORITY_HIGH if days <= URGENT_NEAR_EXPIRY_DAYS else PRIORITY_MEDIUM
        return StatusInfo(RecordEstado.POR_VENCER, days, f"Vence en {days} días", priority)

    return StatusInfo(RecordEstado.ACTIVO, days, f"Activo - {days} días restantes", PRIORITY_LOW)


def calculate_status(
    expiration: date | datetime | None,
    now: date | datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> RecordEstado:
    return classify(expiration, now, thresholds).status


def needs_alert(
    expiration: date | datetime | None,
    now: date | datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> bool:
    return classify(expiration, now, thresholds).priority != PRIORITY_LOW


def reconcile_status(
    current: RecordEstado | str | None,
    expiration: date | datetime | None,
    now: date | datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> RecordEstado:
    """Return the status a record should carry.

    Terminal relationship states are authoritative and come back unchanged.
    """
    if current is not None:
        current_estado = RecordEstado(current)
        if current_estado in TERMINAL_ESTADOS:
            return current_estado
    return calculate_status(expiration, now, thresholds)


def status_statistics(
    expirations: list[date | datetime | None],
    now: date | datetime | None = None,
    thresholds: StatusThresholds | None = None,
) -> dict[str, int]:
    stats = {
        "total": len(expirations),
        RecordEstado.ACTIVO.value: 0,
        RecordEstado.POR_VENCER.value: 0,
        RecordEstado.VENCIDO.value: 0,
        "criticos": 0,
        "requieren_alerta": 0,
    }
    for expiration in expirations:
        info = classify(expiration, now, thresholds)
        stats[info.status.value] += 1
        if info.priority == PRIORITY_CRITICAL:
            stats["criticos"] += 1
        if info.priority != PRIORITY_LOW:
            stats["requieren_alerta"] += 1
    return stats
