from __future__ import annotations

import random
from datetime import datetime, timedelta

import pytest

from lifeline.core.errors import ConflictError, NotFoundError, StateConflictError, ValidationError
from lifeline.core.extensions import db
from lifeline.core.models import AuthorizationCode, AuthorizationStatus, MovementAction, MovementEntry, Record
from lifeline.lines.authorization import (
    check_authorization_needed,
    cleanup_expired_codes,
    generate_code,
    pending_requests,
    request_authorization,
    validate_code,
)
from lifeline.lines.movements import TrackingContext
from lifeline.lines.services import delete_record

CREATED = datetime(2026, 1, 1, 8, 0)


def test_creator_can_delete_directly_inside_window(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-1", created_at=CREATED, created_by=users["operario"])

        check = check_authorization_needed(record_id, users["operario"], CREATED + timedelta(days=2))
        assert check.needs_authorization is False
        assert check.days_since_creation == 2

        with pytest.raises(ValidationError):
            request_authorization(record_id, users["operario"], now=CREATED + timedelta(days=2))


def test_authorization_needed_outside_window_or_for_others(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-2", created_at=CREATED, created_by=users["operario"])

        late = check_authorization_needed(record_id, users["operario"], CREATED + timedelta(days=5))
        assert late.needs_authorization is True
        assert late.message == "Requiere autorización (creado hace 5 días, límite: 3 días)"

        other = check_authorization_needed(record_id, users["admin"], CREATED + timedelta(days=1))
        assert other.needs_authorization is True

        assert check_authorization_needed(record_id, None, CREATED).needs_authorization is True

        no_history = make_record("AU-3", with_history=False)
        assert check_authorization_needed(no_history, users["operario"], CREATED).needs_authorization is True

        with pytest.raises(NotFoundError):
            check_authorization_needed(999999, users["operario"], CREATED)


def test_full_code_lifecycle_is_single_use(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-4", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)

        request_row = request_authorization(record_id, users["operario"], "  linea retirada  ", "10.0.0.2", now)
        assert request_row.status == AuthorizationStatus.PENDING
        assert request_row.justification == "linea retirada"
        assert request_row.expires_at == now + timedelta(minutes=10)
        assert [row.id for row in pending_requests(now)] == [request_row.id]

        granted = generate_code(request_row.id, users["admin"], now + timedelta(minutes=1), random.Random(7))
        code = granted.code
        assert len(code) == 8 and code.isalnum() and code.upper() == code
        assert granted.authorized_by_user_id == users["admin"]
        assert granted.expires_at == now + timedelta(minutes=11)

        first = validate_code(record_id, code.lower(), users["operario"], now + timedelta(minutes=2))
        assert first.valid is True
        assert first.authorization_id == request_row.id

        second = validate_code(record_id, code, users["operario"], now + timedelta(minutes=3))
        assert second.valid is False

        row = db.session.get(AuthorizationCode, request_row.id)
        assert row.status == AuthorizationStatus.USED
        assert row.used_at == now + timedelta(minutes=2)


def test_code_is_bound_to_record_and_requester(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-5", created_at=CREATED, created_by=users["admin"])
        other_record = make_record("AU-6", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        request_row = request_authorization(record_id, users["operario"], now=now)
        code = generate_code(request_row.id, users["admin"], now).code

        assert validate_code(other_record, code, users["operario"], now).valid is False
        assert validate_code(record_id, code, users["admin"], now).valid is False
        assert db.session.get(AuthorizationCode, request_row.id).status == AuthorizationStatus.PENDING


def test_expired_code_is_marked_and_stays_invalid(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-7", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        request_row = request_authorization(record_id, users["operario"], now=now)
        code = generate_code(request_row.id, users["admin"], now).code

        late = now + timedelta(minutes=30)
        assert validate_code(record_id, code, users["operario"], late).valid is False
        assert db.session.get(AuthorizationCode, request_row.id).status == AuthorizationStatus.EXPIRED
        assert validate_code(record_id, code, users["operario"], late).valid is False

        with pytest.raises(StateConflictError):
            generate_code(request_row.id, users["admin"], late)


def test_generate_code_rejects_stale_requests(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-8", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        request_row = request_authorization(record_id, users["operario"], now=now)

        with pytest.raises(StateConflictError):
            generate_code(request_row.id, users["admin"], now + timedelta(minutes=15))
        with pytest.raises(NotFoundError):
            generate_code(999999, users["admin"], now)


def test_single_pending_request_per_record_and_user(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-9", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        request_authorization(record_id, users["operario"], now=now)

        with pytest.raises(ConflictError):
            request_authorization(record_id, users["operario"], now=now + timedelta(minutes=1))

        # Once the first request lapses a new one can be filed.
        renewed = request_authorization(record_id, users["operario"], now=now + timedelta(minutes=20))
        assert renewed.status == AuthorizationStatus.PENDING
        statuses = sorted(
            row.status.value for row in AuthorizationCode.query.filter_by(resource_id=record_id).all()
        )
        assert statuses == ["EXPIRED", "PENDING"]


def test_cleanup_expires_overdue_codes_once(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-10", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        request_authorization(record_id, users["operario"], now=now)

        later = now + timedelta(hours=1)
        assert cleanup_expired_codes(later) == 1
        assert cleanup_expired_codes(later) == 0
        assert pending_requests(later) == []


def test_malformed_code_is_a_validation_error(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-11", created_at=CREATED, created_by=users["admin"])
        with pytest.raises(ValidationError):
            validate_code(record_id, "PENDING", users["operario"], CREATED)


def test_delete_record_is_gated_by_authorization(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-12", created_at=CREATED, created_by=users["admin"])
        now = datetime(2026, 2, 1, 10, 0)
        operator = TrackingContext(user_id=users["operario"], username="operario")

        with pytest.raises(StateConflictError):
            delete_record(record_id, operator, now=now)

        request_row = request_authorization(record_id, users["operario"], now=now)
        code = generate_code(request_row.id, users["admin"], now).code

        with pytest.raises(StateConflictError):
            delete_record(record_id, operator, "ZZZZZZZZ", now=now)

        result = delete_record(record_id, operator, code, now=now)
        assert result.codigo == "AU-12"
        assert result.authorization_id == request_row.id
        assert db.session.get(Record, record_id) is None

        trail = MovementEntry.query.filter_by(record_id=record_id).order_by(MovementEntry.id.asc()).all()
        assert trail[-1].action == MovementAction.DELETE
        assert trail[-1].is_record_active is False
        assert trail[-1].username == "operario"


def test_creator_deletes_fresh_record_without_code(app, make_record, users):
    with app.app_context():
        record_id = make_record("AU-13", created_at=CREATED, created_by=users["operario"])
        operator = TrackingContext(user_id=users["operario"], username="operario")

        result = delete_record(record_id, operator, now=CREATED + timedelta(days=1))
        assert result.authorization_id is None
        assert db.session.get(Record, record_id) is None
