"""Initial schema: possession records and code counters.

Revision ID: 001
Revises: None
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# Revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

ACTIVE_PLOT_PREDICATE = "status NOT IN ('cancelled', 'handed_over') AND is_deleted = false"


def upgrade() -> None:
    """Apply migration: possession tables."""
    possession_status = sa.Enum(
        "requested",
        "surveyed",
        "ready",
        "handed_over",
        "cancelled",
        "on_hold",
        name="possession_status",
        create_constraint=True,
    )

    op.create_table(
        "possessions",
        sa.Column("possession_id", sa.Uuid(as_uuid=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("possession_code", sa.String(50), nullable=False),
        sa.Column("file_id", sa.String(64), nullable=False),
        sa.Column("plot_id", sa.String(64), nullable=False),
        sa.Column("handover_officer_id", sa.String(64), nullable=False),
        sa.Column("status", possession_status, nullable=False),
        sa.Column("init_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("survey_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("survey_person", sa.String(100), nullable=True),
        sa.Column("survey_remarks", sa.String(500), nullable=True),
        sa.Column("handover_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("handover_remarks", sa.String(500), nullable=True),
        sa.Column("letter_collected", sa.Boolean(), nullable=False),
        sa.Column("collector_name", sa.String(100), nullable=True),
        sa.Column("collector_nic", sa.String(15), nullable=True),
        sa.Column("collection_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("attachment_certificate", sa.String(500), nullable=True),
        sa.Column("attachment_photo", sa.String(500), nullable=True),
        sa.Column("attachment_other", sa.String(500), nullable=True),
        sa.Column("remarks", sa.String(1000), nullable=True),
        sa.Column("latitude", sa.Float(), nullable=True),
        sa.Column("longitude", sa.Float(), nullable=True),
        sa.Column("created_by", sa.String(64), nullable=False),
        sa.Column("updated_by", sa.String(64), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        sa.PrimaryKeyConstraint("possession_id", name=op.f("pk_possessions")),
        sa.UniqueConstraint("possession_code", name=op.f("uq_possessions_possession_code")),
    )
    op.create_index(op.f("ix_possessions_plot_id"), "possessions", ["plot_id"], unique=False)
    op.create_index(op.f("ix_possessions_file_id"), "possessions", ["file_id"], unique=False)
    op.create_index(op.f("ix_possessions_status"), "possessions", ["status"], unique=False)
    op.create_index(op.f("ix_possessions_init_date"), "possessions", ["init_date"], unique=False)
    op.create_index(
        op.f("ix_possessions_handover_officer_id"),
        "possessions",
        ["handover_officer_id"],
        unique=False,
    )
    op.create_index(
        op.f("ix_possessions_location"),
        "possessions",
        ["latitude", "longitude"],
        unique=False,
    )
    op.create_index(
        "uq_possessions_active_plot",
        "possessions",
        ["plot_id"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_PLOT_PREDICATE),
        sqlite_where=sa.text(ACTIVE_PLOT_PREDICATE),
    )

    op.create_table(
        "possession_code_counters",
        sa.Column("prefix", sa.String(32), nullable=False),
        sa.Column("last_value", sa.Integer(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("prefix", name=op.f("pk_possession_code_counters")),
    )


def downgrade() -> None:
    """Revert migration: possession tables."""
    op.drop_table("possession_code_counters")
    op.drop_index("uq_possessions_active_plot", table_name="possessions")
    op.drop_table("possessions")
    sa.Enum(name="possession_status").drop(op.get_bind(), checkfirst=True)
