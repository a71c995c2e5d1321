"""lifeline initial schema

Revision ID: a7d3e1c90b42
Revises:
Create Date: 2026-10-18 09:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a7d3e1c90b42"
down_revision = None
branch_labels = None
depends_on = None


RECORD_ESTADOS = ("ACTIVO", "POR_VENCER", "VENCIDO", "REEMPLAZADA", "DIVIDIDA", "ACTUALIZADA", "INACTIVO")
MOVEMENT_ACTIONS = (
    "CREATE",
    "UPDATE",
    "DELETE",
    "RESTORE",
    "STATUS_CHANGE",
    "IMAGE_UPLOAD",
    "IMAGE_REPLACE",
    "IMAGE_DELETE",
    "LOCATION_CHANGE",
    "COMPANY_CHANGE",
    "MAINTENANCE",
)


def upgrade():
    op.create_table(
        "user_account",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("username", sa.String(length=60), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("full_name", sa.String(length=120), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("role", sa.String(length=30), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
        sa.UniqueConstraint("username"),
    )

    op.create_table(
        "registro",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("codigo", sa.String(length=60), nullable=False),
        sa.Column("cliente", sa.String(length=120), nullable=True),
        sa.Column("equipo", sa.String(length=120), nullable=True),
        sa.Column("anclaje_equipos", sa.String(length=120), nullable=True),
        sa.Column("fv_anios", sa.Integer(), nullable=True),
        sa.Column("fv_meses", sa.Integer(), nullable=True),
        sa.Column("fecha_instalacion", sa.Date(), nullable=True),
        sa.Column("longitud", sa.Float(), nullable=True),
        sa.Column("observaciones", sa.String(length=500), nullable=True),
        sa.Column("seec", sa.String(length=60), nullable=True),
        sa.Column("tipo_linea", sa.String(length=60), nullable=True),
        sa.Column("ubicacion", sa.String(length=255), nullable=True),
        sa.Column("fecha_vencimiento", sa.Date(), nullable=True),
        sa.Column("estado_actual", sa.Enum(*RECORD_ESTADOS, name="record_estado"), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("codigo"),
    )
    with op.batch_alter_table("registro", schema=None) as batch_op:
        batch_op.create_index(batch_op.f("ix_registro_fecha_vencimiento"), ["fecha_vencimiento"], unique=False)
        batch_op.create_index(
            "ix_registro_estado_vencimiento", ["estado_actual", "fecha_vencimiento"], unique=False
        )

    op.create_table(
        "alerta",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("tipo", sa.Enum("POR_VENCER", "VENCIDO", "CRITICO", name="alerta_tipo"), nullable=False),
        sa.Column("registro_id", sa.Integer(), nullable=False),
        sa.Column("mensaje", sa.String(length=500), nullable=False),
        sa.Column(
            "prioridad",
            sa.Enum("LOW", "MEDIUM", "HIGH", "CRITICAL", name="alerta_prioridad"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("leida", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("fecha_leida", sa.DateTime(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("throttle_bucket", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["registro_id"], ["registro.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("registro_id", "tipo", "throttle_bucket", name="uq_alerta_throttle_bucket"),
    )
    op.create_index("ix_alerta_tipo_registro", "alerta", ["tipo", "registro_id"], unique=False)
    op.create_index("ix_alerta_leida_created", "alerta", ["leida", "created_at"], unique=False)

    op.create_table(
        "movimiento_registro",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=True),
        sa.Column("record_code", sa.String(length=60), nullable=True),
        sa.Column("action", sa.Enum(*MOVEMENT_ACTIONS, name="movimiento_action"), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=False),
        sa.Column("action_date", sa.DateTime(), nullable=False),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("username", sa.String(length=255), nullable=True),
        sa.Column("previous_values", sa.JSON(), nullable=True),
        sa.Column("new_values", sa.JSON(), nullable=True),
        sa.Column("changed_fields", sa.JSON(), nullable=True),
        sa.Column("additional_metadata", sa.JSON(), nullable=True),
        sa.Column("is_record_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("ip_address", sa.String(length=45), nullable=True),
        sa.Column("user_agent", sa.String(length=500), nullable=True),
        sa.ForeignKeyConstraint(["user_id"], ["user_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_movimiento_record_date", "movimiento_registro", ["record_id", "action_date"], unique=False)
    op.create_index("ix_movimiento_action_date", "movimiento_registro", ["action", "action_date"], unique=False)
    op.create_index("ix_movimiento_user_date", "movimiento_registro", ["user_id", "action_date"], unique=False)

    op.create_table(
        "registro_relacion",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("parent_record_id", sa.Integer(), nullable=False),
        sa.Column("child_record_id", sa.Integer(), nullable=False),
        sa.Column(
            "relationship_type",
            sa.Enum("REPLACEMENT", "DIVISION", "UPGRADE", name="relationship_type"),
            nullable=False,
        ),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["child_record_id"], ["registro.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["created_by"], ["user_account.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["parent_record_id"], ["registro.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("child_record_id", name="uq_registro_relacion_child"),
    )
    op.create_index("ix_registro_relacion_parent", "registro_relacion", ["parent_record_id"], unique=False)

    op.create_table(
        "codigo_autorizacion",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(length=8), nullable=False),
        sa.Column("action", sa.Enum("DELETE_RECORD", name="authorization_action"), nullable=False),
        sa.Column("resource_id", sa.Integer(), nullable=False),
        sa.Column("resource_code", sa.String(length=60), nullable=False),
        sa.Column("requested_by_user_id", sa.Integer(), nullable=False),
        sa.Column("authorized_by_user_id", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PENDING", "USED", "EXPIRED", name="authorization_status"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("used_at", sa.DateTime(), nullable=True),
        sa.Column("request_ip", sa.String(length=45), nullable=True),
        sa.Column("justification", sa.Text(), nullable=True),
        sa.ForeignKeyConstraint(["authorized_by_user_id"], ["user_account.id"]),
        sa.ForeignKeyConstraint(["requested_by_user_id"], ["user_account.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_codigo_autorizacion_code", "codigo_autorizacion", ["code"], unique=False)
    op.create_index("ix_codigo_autorizacion_expires", "codigo_autorizacion", ["expires_at"], unique=False)
    op.create_index(
        "uq_codigo_autorizacion_pending",
        "codigo_autorizacion",
        ["resource_id", "requested_by_user_id"],
        unique=True,
        sqlite_where=sa.text("status = 'PENDING'"),
        postgresql_where=sa.text("status = 'PENDING'"),
    )


def downgrade():
    op.drop_index("uq_codigo_autorizacion_pending", table_name="codigo_autorizacion")
    op.drop_index("ix_codigo_autorizacion_expires", table_name="codigo_autorizacion")
    op.drop_index("ix_codigo_autorizacion_code", table_name="codigo_autorizacion")
    op.drop_table("codigo_autorizacion")

    op.drop_index("ix_registro_relacion_parent", table_name="registro_relacion")
    op.drop_table("registro_relacion")

    op.drop_index("ix_movimiento_user_date", table_name="movimiento_registro")
    op.drop_index("ix_movimiento_action_date", table_name="movimiento_registro")
    op.drop_index("ix_movimiento_record_date", table_name="movimiento_registro")
    op.drop_table("movimiento_registro")

    op.drop_index("ix_alerta_leida_created", table_name="alerta")
    op.drop_index("ix_alerta_tipo_registro", table_name="alerta")
    op.drop_table("alerta")

    with op.batch_alter_table("registro", schema=None) as batch_op:
        batch_op.drop_index("ix_registro_estado_vencimiento")
        batch_op.drop_index(batch_op.f("ix_registro_fecha_vencimiento"))
    op.drop_table("registro")

    op.drop_table("user_account")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in (
            "authorization_status",
            "authorization_action",
            "relationship_type",
            "movimiento_action",
            "alerta_prioridad",
            "alerta_tipo",
            "record_estado",
        ):
            op.execute(sa.text(f"DROP TYPE IF EXISTS {enum_name}"))
