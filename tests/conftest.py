from __future__ import annotations

import sys
from datetime import date, datetime
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from lifeline import create_app
from lifeline.core.config import Config
from lifeline.core.extensions import db
from lifeline.core.models import MovementAction, MovementEntry, Record, RecordEstado, User, seed_demo_data


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SECRET_KEY = "test-secret"
    SCHEDULER_ENABLED = False
    DAYS_TO_EXPIRE_WARNING = 30
    DAYS_OVERDUE_CRITICAL = 60


@pytest.fixture
def app():
    app = create_app(TestConfig)
    with app.app_context():
        db.create_all()
        seed_demo_data(db.session)
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def login_admin(client):
    def _login():
        return client.post(
            "/auth/login",
            data={"email": "admin@lineas.local", "password": "admin123"},
        )

    return _login


@pytest.fixture
def login_operator(client):
    def _login():
        return client.post(
            "/auth/login",
            data={"email": "operario@lineas.local", "password": "operario123"},
        )

    return _login


@pytest.fixture
def users(app):
    with app.app_context():
        admin = User.query.filter_by(username="admin").first()
        operario = User.query.filter_by(username="operario").first()
        return {"admin": admin.id, "operario": operario.id}


@pytest.fixture
def make_record(app):
    """Insert a record plus its CREATE movement at an explicit point in time."""

    def _make(
        codigo: str,
        fecha_vencimiento: date | None = None,
        created_at: datetime | None = None,
        created_by: int | None = None,
        cliente: str | None = "Cliente Test",
        estado: RecordEstado = RecordEstado.ACTIVO,
        with_history: bool = True,
    ) -> int:
        record = Record(codigo=codigo, cliente=cliente, fecha_vencimiento=fecha_vencimiento, estado_actual=estado)
        db.session.add(record)
        db.session.flush()
        if with_history:
            db.session.add(
                MovementEntry(
                    record_id=record.id,
                    record_code=codigo,
                    action=MovementAction.CREATE,
                    description=f"Registro creado: {codigo}",
                    action_date=created_at or datetime(2026, 1, 1, 8, 0),
                    user_id=created_by,
                    username="test",
                )
            )
        db.session.commit()
        return record.id

    return _make
