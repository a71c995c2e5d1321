"""maintenance and accidents

Revision ID: c41f7b2e9d05
Revises: a7d3e1c90b42
Create Date: 2026-10-18 16:10:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "c41f7b2e9d05"
down_revision = "a7d3e1c90b42"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "mantenimiento",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("maintenance_date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=500), nullable=True),
        sa.Column("previous_length", sa.Float(), nullable=True),
        sa.Column("new_length", sa.Float(), nullable=True),
        sa.Column("created_by", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["created_by"], ["user_account.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["record_id"], ["registro.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_mantenimiento_record_date", "mantenimiento", ["record_id", "maintenance_date"], unique=False
    )

    op.create_table(
        "accidente",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("record_id", sa.Integer(), nullable=False),
        sa.Column("fecha_accidente", sa.Date(), nullable=False),
        sa.Column("descripcion_incidente", sa.Text(), nullable=False),
        sa.Column("persona_involucrada", sa.String(length=200), nullable=True),
        sa.Column("acciones_correctivas", sa.Text(), nullable=True),
        sa.Column(
            "severidad",
            sa.Enum("LEVE", "MODERADO", "GRAVE", "CRITICO", name="accidente_severidad"),
            nullable=False,
        ),
        sa.Column(
            "estado",
            sa.Enum("REPORTADO", "EN_INVESTIGACION", "RESUELTO", name="accidente_estado"),
            nullable=False,
        ),
        sa.Column("reportado_por", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(["record_id"], ["registro.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["reportado_por"], ["user_account.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_accidente_record_fecha", "accidente", ["record_id", "fecha_accidente"], unique=False)
    op.create_index("ix_accidente_fecha", "accidente", ["fecha_accidente"], unique=False)


def downgrade():
    op.drop_index("ix_accidente_fecha", table_name="accidente")
    op.drop_index("ix_accidente_record_fecha", table_name="accidente")
    op.drop_table("accidente")

    op.drop_index("ix_mantenimiento_record_date", table_name="mantenimiento")
    op.drop_table("mantenimiento")

    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_name in ("accidente_estado", "accidente_severidad"):
            op.execute(sa.text(f"DROP TYPE IF EXISTS {enum_name}"))
