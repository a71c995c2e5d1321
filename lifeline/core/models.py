from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from enum import Enum

from flask_login import UserMixin
from sqlalchemy import Enum as SAEnum, ForeignKey, Index, UniqueConstraint, event, text
from sqlalchemy.orm import Mapped, mapped_column, relationship
from werkzeug.security import generate_password_hash

from lifeline.core.extensions import db


def utcnow() -> datetime:
    # Naive UTC: SQLite hands back naive datetimes, so everything stays comparable.
    return datetime.now(timezone.utc).replace(tzinfo=None)


class RecordEstado(str, Enum):
    ACTIVO = "ACTIVO"
    POR_VENCER = "POR_VENCER"
    VENCIDO = "VENCIDO"
    REEMPLAZADA = "REEMPLAZADA"
    DIVIDIDA = "DIVIDIDA"
    ACTUALIZADA = "ACTUALIZADA"
    INACTIVO = "INACTIVO"


# Only a relationship may put a record in one of these, and nothing takes it out.
RELATIONSHIP_ESTADOS = frozenset(
    {
        RecordEstado.REEMPLAZADA,
        RecordEstado.DIVIDIDA,
        RecordEstado.ACTUALIZADA,
    }
)

TERMINAL_ESTADOS = RELATIONSHIP_ESTADOS | {RecordEstado.INACTIVO}


class AlertTipo(str, Enum):
    POR_VENCER = "POR_VENCER"
    VENCIDO = "VENCIDO"
    CRITICO = "CRITICO"


class AlertPrioridad(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MovementAction(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    RESTORE = "RESTORE"
    STATUS_CHANGE = "STATUS_CHANGE"
    IMAGE_UPLOAD = "IMAGE_UPLOAD"
    IMAGE_REPLACE = "IMAGE_REPLACE"
    IMAGE_DELETE = "IMAGE_DELETE"
    LOCATION_CHANGE = "LOCATION_CHANGE"
    COMPANY_CHANGE = "COMPANY_CHANGE"
    MAINTENANCE = "MAINTENANCE"


class RelationshipType(str, Enum):
    REPLACEMENT = "REPLACEMENT"
    DIVISION = "DIVISION"
    UPGRADE = "UPGRADE"


class AccidentSeveridad(str, Enum):
    LEVE = "LEVE"
    MODERADO = "MODERADO"
    GRAVE = "GRAVE"
    CRITICO = "CRITICO"


class AccidentEstado(str, Enum):
    REPORTADO = "REPORTADO"
    EN_INVESTIGACION = "EN_INVESTIGACION"
    RESUELTO = "RESUELTO"


class AuthorizationAction(str, Enum):
    DELETE_RECORD = "DELETE_RECORD"


class AuthorizationStatus(str, Enum):
    PENDING = "PENDING"
    USED = "USED"
    EXPIRED = "EXPIRED"


AUTHORIZATION_CODE_PLACEHOLDER = "PENDING"


class User(UserMixin, db.Model):
    __tablename__ = "user_account"

    id: Mapped[int] = mapped_column(primary_key=True)
    username: Mapped[str] = mapped_column(db.String(60), unique=True, nullable=False)
    email: Mapped[str] = mapped_column(db.String(255), unique=True, nullable=False)
    full_name: Mapped[str] = mapped_column(db.String(120), nullable=False)
    password_hash: Mapped[str] = mapped_column(db.String(255), nullable=False)
    role: Mapped[str] = mapped_column(db.String(30), nullable=False, default="operator")
    is_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)


class Record(db.Model):
    # Linea de vida instalada
    __tablename__ = "registro"
    __table_args__ = (
        Index("ix_registro_estado_vencimiento", "estado_actual", "fecha_vencimiento"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    codigo: Mapped[str] = mapped_column(db.String(60), unique=True, nullable=False)
    cliente: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    equipo: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    anclaje_equipos: Mapped[str | None] = mapped_column(db.String(120), nullable=True)
    fv_anios: Mapped[int | None] = mapped_column(nullable=True)
    fv_meses: Mapped[int | None] = mapped_column(nullable=True)
    fecha_instalacion: Mapped[date | None] = mapped_column(nullable=True)
    longitud: Mapped[float | None] = mapped_column(nullable=True)
    observaciones: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    seec: Mapped[str | None] = mapped_column(db.String(60), nullable=True)
    tipo_linea: Mapped[str | None] = mapped_column(db.String(60), nullable=True)
    ubicacion: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    fecha_vencimiento: Mapped[date | None] = mapped_column(nullable=True, index=True)
    estado_actual: Mapped[RecordEstado] = mapped_column(
        SAEnum(RecordEstado, name="record_estado"),
        nullable=False,
        default=RecordEstado.ACTIVO,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    alerts = relationship("Alert", back_populates="record", cascade="all, delete-orphan")
    parent_links = relationship(
        "RecordRelationship",
        foreign_keys="RecordRelationship.parent_record_id",
        back_populates="parent_record",
        cascade="all, delete-orphan",
    )
    child_links = relationship(
        "RecordRelationship",
        foreign_keys="RecordRelationship.child_record_id",
        back_populates="child_record",
        cascade="all, delete-orphan",
    )
    maintenances = relationship(
        "MaintenanceEvent",
        back_populates="record",
        cascade="all, delete-orphan",
        order_by="MaintenanceEvent.maintenance_date.desc()",
    )
    accidents = relationship("Accident", back_populates="record", cascade="all, delete-orphan")


class Alert(db.Model):
    __tablename__ = "alerta"
    __table_args__ = (
        # Scheduled alerts carry a bucket; manual ones keep NULL and never collide.
        UniqueConstraint("registro_id", "tipo", "throttle_bucket", name="uq_alerta_throttle_bucket"),
        Index("ix_alerta_tipo_registro", "tipo", "registro_id"),
        Index("ix_alerta_leida_created", "leida", "created_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    tipo: Mapped[AlertTipo] = mapped_column(SAEnum(AlertTipo, name="alerta_tipo"), nullable=False)
    registro_id: Mapped[int] = mapped_column(ForeignKey("registro.id", ondelete="CASCADE"), nullable=False)
    mensaje: Mapped[str] = mapped_column(db.String(500), nullable=False)
    prioridad: Mapped[AlertPrioridad] = mapped_column(
        SAEnum(AlertPrioridad, name="alerta_prioridad"),
        nullable=False,
        default=AlertPrioridad.MEDIUM,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    leida: Mapped[bool] = mapped_column(default=False, nullable=False)
    fecha_leida: Mapped[datetime | None] = mapped_column(nullable=True)
    snapshot: Mapped[dict | None] = mapped_column("metadata", db.JSON, nullable=True)
    throttle_bucket: Mapped[int | None] = mapped_column(nullable=True)

    record = relationship("Record", back_populates="alerts")


class MovementEntry(db.Model):
    __tablename__ = "movimiento_registro"
    __table_args__ = (
        Index("ix_movimiento_record_date", "record_id", "action_date"),
        Index("ix_movimiento_action_date", "action", "action_date"),
        Index("ix_movimiento_user_date", "user_id", "action_date"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    # Not a foreign key: the entry outlives the record it describes.
    record_id: Mapped[int | None] = mapped_column(nullable=True)
    record_code: Mapped[str | None] = mapped_column(db.String(60), nullable=True)
    action: Mapped[MovementAction] = mapped_column(
        SAEnum(MovementAction, name="movimiento_action"),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(db.String(500), nullable=False)
    action_date: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id", ondelete="SET NULL"), nullable=True)
    username: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    previous_values: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    new_values: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    changed_fields: Mapped[list | None] = mapped_column(db.JSON, nullable=True)
    additional_metadata: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    is_record_active: Mapped[bool] = mapped_column(default=True, nullable=False)
    ip_address: Mapped[str | None] = mapped_column(db.String(45), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(db.String(500), nullable=True)

    user = relationship("User")


class RecordRelationship(db.Model):
    __tablename__ = "registro_relacion"
    __table_args__ = (
        UniqueConstraint("child_record_id", name="uq_registro_relacion_child"),
        Index("ix_registro_relacion_parent", "parent_record_id"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    parent_record_id: Mapped[int] = mapped_column(ForeignKey("registro.id", ondelete="CASCADE"), nullable=False)
    child_record_id: Mapped[int] = mapped_column(ForeignKey("registro.id", ondelete="CASCADE"), nullable=False)
    relationship_type: Mapped[RelationshipType] = mapped_column(
        SAEnum(RelationshipType, name="relationship_type"),
        nullable=False,
    )
    notes: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("user_account.id", ondelete="SET NULL"), nullable=True)

    parent_record = relationship("Record", foreign_keys=[parent_record_id], back_populates="parent_links")
    child_record = relationship("Record", foreign_keys=[child_record_id], back_populates="child_links")
    created_by_user = relationship("User")


class MaintenanceEvent(db.Model):
    __tablename__ = "mantenimiento"
    __table_args__ = (Index("ix_mantenimiento_record_date", "record_id", "maintenance_date"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    record_id: Mapped[int] = mapped_column(ForeignKey("registro.id", ondelete="CASCADE"), nullable=False)
    maintenance_date: Mapped[date] = mapped_column(nullable=False)
    description: Mapped[str | None] = mapped_column(db.String(500), nullable=True)
    # Both lengths stay NULL unless the maintenance changed the line length.
    previous_length: Mapped[float | None] = mapped_column(nullable=True)
    new_length: Mapped[float | None] = mapped_column(nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("user_account.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    record = relationship("Record", back_populates="maintenances")
    created_by_user = relationship("User")


class Accident(db.Model):
    __tablename__ = "accidente"
    __table_args__ = (
        Index("ix_accidente_record_fecha", "record_id", "fecha_accidente"),
        Index("ix_accidente_fecha", "fecha_accidente"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    record_id: Mapped[int] = mapped_column(ForeignKey("registro.id", ondelete="CASCADE"), nullable=False)
    fecha_accidente: Mapped[date] = mapped_column(nullable=False)
    descripcion_incidente: Mapped[str] = mapped_column(db.Text, nullable=False)
    persona_involucrada: Mapped[str | None] = mapped_column(db.String(200), nullable=True)
    acciones_correctivas: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    severidad: Mapped[AccidentSeveridad] = mapped_column(
        SAEnum(AccidentSeveridad, name="accidente_severidad"),
        nullable=False,
        default=AccidentSeveridad.LEVE,
    )
    estado: Mapped[AccidentEstado] = mapped_column(
        SAEnum(AccidentEstado, name="accidente_estado"),
        nullable=False,
        default=AccidentEstado.REPORTADO,
    )
    reportado_por: Mapped[int | None] = mapped_column(ForeignKey("user_account.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)

    record = relationship("Record", back_populates="accidents")
    reporter = relationship("User")


class AuthorizationCode(db.Model):
    __tablename__ = "codigo_autorizacion"
    __table_args__ = (
        Index(
            "uq_codigo_autorizacion_pending",
            "resource_id",
            "requested_by_user_id",
            unique=True,
            sqlite_where=text("status = 'PENDING'"),
            postgresql_where=text("status = 'PENDING'"),
        ),
        Index("ix_codigo_autorizacion_code", "code"),
        Index("ix_codigo_autorizacion_expires", "expires_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    code: Mapped[str] = mapped_column(db.String(8), nullable=False, default=AUTHORIZATION_CODE_PLACEHOLDER)
    action: Mapped[AuthorizationAction] = mapped_column(
        SAEnum(AuthorizationAction, name="authorization_action"),
        nullable=False,
        default=AuthorizationAction.DELETE_RECORD,
    )
    # Plain ids: authorization rows are kept for audit after the record is gone.
    resource_id: Mapped[int] = mapped_column(nullable=False)
    resource_code: Mapped[str] = mapped_column(db.String(60), nullable=False)
    requested_by_user_id: Mapped[int] = mapped_column(ForeignKey("user_account.id"), nullable=False)
    authorized_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("user_account.id"), nullable=True)
    status: Mapped[AuthorizationStatus] = mapped_column(
        SAEnum(AuthorizationStatus, name="authorization_status"),
        nullable=False,
        default=AuthorizationStatus.PENDING,
    )
    created_at: Mapped[datetime] = mapped_column(default=utcnow, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(nullable=True)
    request_ip: Mapped[str | None] = mapped_column(db.String(45), nullable=True)
    justification: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    requested_by = relationship("User", foreign_keys=[requested_by_user_id])
    authorized_by = relationship("User", foreign_keys=[authorized_by_user_id])


@event.listens_for(MovementEntry, "before_update")
def movement_before_update(_mapper, _connection, target: MovementEntry) -> None:
    raise RuntimeError(f"El movimiento {target.id} es inmutable")


def seed_demo_data(session) -> None:
    from lifeline.lines.status import classify

    admin = User(
        username="admin",
        email="admin@lineas.local",
        full_name="Admin Lineas",
        password_hash=generate_password_hash("admin123"),
        role="admin",
    )
    operario = User(
        username="operario",
        email="operario@lineas.local",
        full_name="Operario Lineas",
        password_hash=generate_password_hash("operario123"),
        role="operator",
    )
    session.add_all([admin, operario])
    session.flush()

    today = date.today()
    rows = [
        ("LV-0001", "Minera Andina", "Cable acero 8mm", today + timedelta(days=400)),
        ("LV-0002", "Minera Andina", "Cable acero 8mm", today + timedelta(days=20)),
        ("LV-0003", "Constructora Sur", "Riel rigido", today + timedelta(days=5)),
        ("LV-0004", "Constructora Sur", "Cable acero 10mm", today - timedelta(days=10)),
        ("LV-0005", "Puerto Norte", "Cable textil", today - timedelta(days=90)),
        ("LV-0006", "Puerto Norte", "Riel rigido", None),
    ]
    records: list[Record] = []
    for codigo, cliente, equipo, vencimiento in rows:
        records.append(
            Record(
                codigo=codigo,
                cliente=cliente,
                equipo=equipo,
                tipo_linea="HORIZONTAL",
                ubicacion="Nave principal",
                fecha_instalacion=today - timedelta(days=3 * 365),
                fecha_vencimiento=vencimiento,
                estado_actual=RecordEstado(classify(vencimiento, today).status),
            )
        )
    session.add_all(records)
    session.flush()

    created = utcnow() - timedelta(days=30)
    session.add_all(
        [
            MovementEntry(
                record_id=record.id,
                record_code=record.codigo,
                action=MovementAction.CREATE,
                description=f"Registro creado: {record.codigo}",
                action_date=created,
                user_id=admin.id,
                username=admin.username,
                new_values={"codigo": record.codigo, "cliente": record.cliente},
                changed_fields=["codigo", "cliente"],
            )
            for record in records
        ]
    )
    session.commit()
