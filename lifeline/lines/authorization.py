from __future__ import annotations

import logging
import random
import secrets
import string
from dataclasses import dataclass
from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from lifeline.core.errors import ConflictError, NotFoundError, StateConflictError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import (
    AUTHORIZATION_CODE_PLACEHOLDER,
    AuthorizationAction,
    AuthorizationCode,
    AuthorizationStatus,
    MovementAction,
    Record,
    utcnow,
)
from lifeline.lines.movements import earliest_movement

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
CODE_LENGTH = 8


@dataclass(frozen=True)
class AuthorizationCheck:
    needs_authorization: bool
    message: str
    days_since_creation: int | None = None


@dataclass(frozen=True)
class CodeValidation:
    valid: bool
    authorization_id: int | None = None


def _expiry_delta() -> timedelta:
    return timedelta(minutes=int(current_app.config.get("AUTH_CODE_EXPIRY_MINUTES", 10)))


def _direct_delete_max_days() -> int:
    return int(current_app.config.get("DIRECT_DELETE_MAX_DAYS", 3))


def _record_or_404(record_id: int) -> Record:
    record = db.session.get(Record, record_id)
    if not record:
        raise NotFoundError("Registro no encontrado")
    return record


def check_authorization_needed(
    record_id: int,
    requester_id: int | None,
    now: datetime | None = None,
) -> AuthorizationCheck:
    """Decide whether deleting a record needs an approver's code.

    The creation date and creator come from the earliest CREATE movement, not
    from the record row. Missing history or a different creator always require
    authorization; otherwise only records older than the direct-delete window do.
    """
    _record_or_404(record_id)
    now = now or utcnow()
    limit_days = _direct_delete_max_days()

    creation = earliest_movement(record_id, MovementAction.CREATE)
    if creation is None:
        return AuthorizationCheck(True, "Registro sin historial de creación - se requiere autorización")

    days = (now - creation.action_date).days
    if requester_id is None or creation.user_id != requester_id:
        return AuthorizationCheck(
            True,
            "Solo puede eliminar registros creados por usted mismo sin autorización",
            days,
        )
    if days <= limit_days:
        return AuthorizationCheck(False, f"Puede eliminar directamente (creado hace {days} días)", days)
    return AuthorizationCheck(
        True,
        f"Requiere autorización (creado hace {days} días, límite: {limit_days} días)",
        days,
    )


def _expire_stale_pending(now: datetime, **criteria) -> int:
    statement = (
        update(AuthorizationCode)
        .where(AuthorizationCode.status == AuthorizationStatus.PENDING)
        .where(AuthorizationCode.expires_at < now)
        .values(status=AuthorizationStatus.EXPIRED)
        .execution_options(synchronize_session=False)
    )
    for column, value in criteria.items():
        statement = statement.where(getattr(AuthorizationCode, column) == value)
    return db.session.execute(statement).rowcount or 0


def request_authorization(
    record_id: int,
    requester_id: int,
    justification: str | None = None,
    request_ip: str | None = None,
    now: datetime | None = None,
) -> AuthorizationCode:
    record = _record_or_404(record_id)
    now = now or utcnow()

    check = check_authorization_needed(record_id, requester_id, now)
    if not check.needs_authorization:
        raise ValidationError(
            "Este registro puede ser eliminado directamente sin autorización "
            f"(creado hace {_direct_delete_max_days()} días o menos)"
        )

    _expire_stale_pending(now, resource_id=record_id, requested_by_user_id=requester_id)
    existing = AuthorizationCode.query.filter_by(
        resource_id=record_id,
        requested_by_user_id=requester_id,
        status=AuthorizationStatus.PENDING,
    ).first()
    if existing:
        db.session.rollback()
        raise ConflictError("Ya existe una solicitud pendiente para este registro")

    request_row = AuthorizationCode(
        action=AuthorizationAction.DELETE_RECORD,
        resource_id=record.id,
        resource_code=record.codigo,
        requested_by_user_id=requester_id,
        status=AuthorizationStatus.PENDING,
        created_at=now,
        expires_at=now + _expiry_delta(),
        request_ip=request_ip,
        justification=(justification or "").strip() or None,
        code=AUTHORIZATION_CODE_PLACEHOLDER,
    )
    db.session.add(request_row)
    try:
        db.session.commit()
    except IntegrityError as exc:
        db.session.rollback()
        raise ConflictError("Ya existe una solicitud pendiente para este registro") from exc

    logger.info(
        "authorization request %s created for record %s by user %s",
        request_row.id,
        record.codigo,
        requester_id,
    )
    return request_row


def _new_code(rng: random.Random) -> str:
    return "".join(rng.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))


def generate_code(
    request_id: int,
    approver_id: int,
    now: datetime | None = None,
    rng: random.Random | None = None,
) -> AuthorizationCode:
    now = now or utcnow()
    request_row = db.session.get(AuthorizationCode, request_id)
    if not request_row:
        raise NotFoundError("Solicitud de autorización no encontrada")
    if request_row.status != AuthorizationStatus.PENDING:
        raise StateConflictError("La solicitud ya no está pendiente")
    if request_row.expires_at < now:
        raise StateConflictError("La solicitud ha expirado")

    code = _new_code(rng or secrets.SystemRandom())
    outcome = db.session.execute(
        update(AuthorizationCode)
        .where(AuthorizationCode.id == request_id)
        .where(AuthorizationCode.status == AuthorizationStatus.PENDING)
        .values(code=code, authorized_by_user_id=approver_id, expires_at=now + _expiry_delta())
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.session.rollback()
        raise StateConflictError("La solicitud ya no está pendiente")
    db.session.commit()

    logger.info("authorization code generated for record %s by approver %s", request_row.resource_code, approver_id)
    return db.session.get(AuthorizationCode, request_id)


def normalize_code(code: str | None) -> str:
    normalized = (code or "").strip().upper()
    if len(normalized) != CODE_LENGTH or any(char not in CODE_ALPHABET for char in normalized):
        raise ValidationError(f"El código de autorización debe tener {CODE_LENGTH} caracteres alfanuméricos")
    return normalized


def _transition(row_id: int, target: AuthorizationStatus, **values) -> bool:
    outcome = db.session.execute(
        update(AuthorizationCode)
        .where(AuthorizationCode.id == row_id)
        .where(AuthorizationCode.status == AuthorizationStatus.PENDING)
        .values(status=target, **values)
        .execution_options(synchronize_session=False)
    )
    if outcome.rowcount != 1:
        db.session.rollback()
        return False
    db.session.commit()
    return True


def validate_code(
    record_id: int,
    code: str,
    requester_id: int | None,
    now: datetime | None = None,
) -> CodeValidation:
    """Consume a code. Unknown, expired and already used codes are just invalid."""
    normalized = normalize_code(code)
    now = now or utcnow()
    row = (
        AuthorizationCode.query.filter_by(
            code=normalized,
            resource_id=record_id,
            requested_by_user_id=requester_id,
            status=AuthorizationStatus.PENDING,
        )
        .order_by(AuthorizationCode.id.desc())
        .first()
    )
    if row is None:
        logger.warning("invalid authorization code for record %s", record_id)
        return CodeValidation(valid=False)

    row_id = row.id
    if row.expires_at < now:
        _transition(row_id, AuthorizationStatus.EXPIRED)
        logger.warning("expired authorization code for record %s", record_id)
        return CodeValidation(valid=False)

    if not _transition(row_id, AuthorizationStatus.USED, used_at=now):
        logger.warning("authorization %s consumed concurrently", row_id)
        return CodeValidation(valid=False)

    logger.info("authorization %s used for record %s", row_id, record_id)
    return CodeValidation(valid=True, authorization_id=row_id)


def cleanup_expired_codes(now: datetime | None = None) -> int:
    expired = _expire_stale_pending(now or utcnow())
    db.session.commit()
    logger.info("authorization cleanup: %s codes marked as expired", expired)
    return expired


def pending_requests(now: datetime | None = None) -> list[AuthorizationCode]:
    now = now or utcnow()
    return (
        AuthorizationCode.query.filter(AuthorizationCode.status == AuthorizationStatus.PENDING)
        .filter(AuthorizationCode.expires_at >= now)
        .order_by(AuthorizationCode.created_at.desc(), AuthorizationCode.id.desc())
        .all()
    )


def authorization_to_dict(row: AuthorizationCode, include_code: bool = False) -> dict[str, object]:
    requested_by = row.requested_by
    data = {
        "id": row.id,
        "action": row.action.value,
        "record_id": row.resource_id,
        "record_code": row.resource_code,
        "requested_by": {
            "id": requested_by.id,
            "username": requested_by.username,
            "name": requested_by.full_name,
        }
        if requested_by
        else None,
        "authorized_by_user_id": row.authorized_by_user_id,
        "status": row.status.value,
        "justification": row.justification,
        "created_at": row.created_at.isoformat(),
        "expires_at": row.expires_at.isoformat(),
        "used_at": row.used_at.isoformat() if row.used_at else None,
    }
    if include_code:
        data["code"] = row.code
    return data
