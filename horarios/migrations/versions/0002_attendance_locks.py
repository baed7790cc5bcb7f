"""Add per-employee attendance locks and session lateness

Revision ID: 0002_attendance_locks
Revises: 0001_initial
Create Date: 2026-10-19 12:00:00.000000
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_attendance_locks"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "attendance_locks",
        sa.Column("employee_id", sa.Integer(), autoincrement=False, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.PrimaryKeyConstraint("employee_id"),
    )
    op.add_column("attendance_sessions", sa.Column("late_minutes", sa.Integer(), nullable=True))


def downgrade() -> None:
    op.drop_column("attendance_sessions", "late_minutes")
    op.drop_table("attendance_locks")
