"""Dedup key for family-wide jobs and the audit log

Revision ID: 0002
Revises: 0001
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "0002"
down_revision = "0001"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("jobs") as batch_op:
        batch_op.add_column(sa.Column("dedup_key", sa.String(length=512), nullable=True))
    op.create_index("idx_jobs_type_dedup", "jobs", ["type", "dedup_key"])

    # Operator mutations
    op.create_table(
        "audit_log",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("action", sa.String(length=64), nullable=False),
        sa.Column("entity_type", sa.String(length=32), nullable=True),
        sa.Column("entity_id", sa.Integer(), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("actor", sa.String(length=128), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_audit_log_created_at", "audit_log", ["created_at"])


def downgrade() -> None:
    op.drop_index("idx_audit_log_created_at", table_name="audit_log")
    op.drop_table("audit_log")

    op.drop_index("idx_jobs_type_dedup", table_name="jobs")
    with op.batch_alter_table("jobs") as batch_op:
        batch_op.drop_column("dedup_key")
