"""Initial scheduling and attendance schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-19 00:00:00
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

modality_code = postgresql.ENUM("ON_SITE", "REMOTE", "HYBRID", name="modality_code", create_type=False)
schedule_instance_status = postgresql.ENUM(
    "ACTIVE",
    "CANCELLED",
    name="schedule_instance_status",
    create_type=False,
)
attendance_session_state = postgresql.ENUM(
    "NOT_STARTED",
    "ACTIVE",
    "ON_OBLIGATORY_BREAK",
    "ON_ADDITIONAL_BREAK",
    "FINISHED",
    name="attendance_session_state",
    create_type=False,
)
attendance_action = postgresql.ENUM(
    "iniciar",
    "descanso_obligatorio",
    "descanso_adicional",
    "reanudar",
    "finalizar",
    name="attendance_action",
    create_type=False,
)
absence_note_status = postgresql.ENUM(
    "PENDING",
    "APPROVED",
    "REJECTED",
    name="absence_note_status",
    create_type=False,
)
audit_actor_type = postgresql.ENUM("ADMIN", "EMPLOYEE", "SYSTEM", name="audit_actor_type", create_type=False)

ALL_ENUMS = (
    modality_code,
    schedule_instance_status,
    attendance_session_state,
    attendance_action,
    absence_note_status,
    audit_actor_type,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in ALL_ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "shifts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("center_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("start_time", sa.Time(timezone=False), nullable=False),
        sa.Column("end_time", sa.Time(timezone=False), nullable=False),
        sa.Column("break_start_time", sa.Time(timezone=False), nullable=True),
        sa.Column("break_end_time", sa.Time(timezone=False), nullable=True),
        sa.Column("color", sa.String(length=7), nullable=False, server_default=sa.text("'#FB7D16'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.UniqueConstraint("center_id", "name", name="uq_shifts_center_name"),
    )
    op.create_index(op.f("ix_shifts_center_id"), "shifts", ["center_id"], unique=False)

    modalities = op.create_table(
        "modalities",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code", modality_code, nullable=False, unique=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
    )
    op.bulk_insert(
        modalities,
        [
            {"id": 1, "code": "ON_SITE", "name": "Presencial"},
            {"id": 2, "code": "REMOTE", "name": "Teletrabajo"},
            {"id": 3, "code": "HYBRID", "name": "Hibrido"},
        ],
    )

    op.create_table(
        "schedule_templates",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=True),
        *_timestamps(),
    )

    op.create_table(
        "schedule_template_slots",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("template_id", sa.Integer(), nullable=False),
        sa.Column("weekday", sa.Integer(), nullable=False),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("modality_id", sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(["template_id"], ["schedule_templates.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="RESTRICT"),
        sa.ForeignKeyConstraint(["modality_id"], ["modalities.id"], ondelete="RESTRICT"),
        sa.UniqueConstraint("template_id", "weekday", name="uq_schedule_template_slots_template_weekday"),
        sa.CheckConstraint("weekday BETWEEN 0 AND 6", name="ck_schedule_template_slots_weekday_range"),
    )
    op.create_index(
        op.f("ix_schedule_template_slots_template_id"),
        "schedule_template_slots",
        ["template_id"],
        unique=False,
    )

    op.create_table(
        "contracts",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("center_id", sa.Integer(), nullable=False),
        sa.Column("schedule_template_id", sa.Integer(), nullable=True),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(["schedule_template_id"], ["schedule_templates.id"], ondelete="RESTRICT"),
    )
    op.create_index(op.f("ix_contracts_employee_id"), "contracts", ["employee_id"], unique=False)
    op.create_index(op.f("ix_contracts_center_id"), "contracts", ["center_id"], unique=False)
    op.create_index(op.f("ix_contracts_schedule_template_id"), "contracts", ["schedule_template_id"], unique=False)

    op.create_table(
        "contract_amendments",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("schedule_template_id", sa.Integer(), nullable=True),
        sa.Column("valid_from", sa.Date(), nullable=False),
        sa.Column("valid_to", sa.Date(), nullable=True),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["schedule_template_id"], ["schedule_templates.id"], ondelete="RESTRICT"),
    )
    op.create_index(op.f("ix_contract_amendments_contract_id"), "contract_amendments", ["contract_id"], unique=False)
    op.create_index(
        op.f("ix_contract_amendments_schedule_template_id"),
        "contract_amendments",
        ["schedule_template_id"],
        unique=False,
    )

    op.create_table(
        "schedule_instances",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("contract_id", sa.Integer(), nullable=False),
        sa.Column("amendment_id", sa.Integer(), nullable=True),
        sa.Column("schedule_template_id", sa.Integer(), nullable=True),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("shift_id", sa.Integer(), nullable=True),
        sa.Column("modality_id", sa.Integer(), nullable=False),
        sa.Column("start_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_ts", sa.DateTime(timezone=True), nullable=False),
        sa.Column("break_start_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("break_end_ts", sa.DateTime(timezone=True), nullable=True),
        sa.Column("observations", sa.String(length=255), nullable=True),
        sa.Column("status", schedule_instance_status, nullable=False, server_default=sa.text("'ACTIVE'")),
        sa.Column("justified_absence", sa.Boolean(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["contract_id"], ["contracts.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["amendment_id"], ["contract_amendments.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["schedule_template_id"], ["schedule_templates.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["shift_id"], ["shifts.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["modality_id"], ["modalities.id"], ondelete="RESTRICT"),
        sa.CheckConstraint("end_ts > start_ts", name="ck_schedule_instances_window"),
    )
    op.create_index(op.f("ix_schedule_instances_contract_id"), "schedule_instances", ["contract_id"], unique=False)
    op.create_index(op.f("ix_schedule_instances_amendment_id"), "schedule_instances", ["amendment_id"], unique=False)
    op.create_index(op.f("ix_schedule_instances_day_date"), "schedule_instances", ["day_date"], unique=False)
    op.create_index(op.f("ix_schedule_instances_start_ts"), "schedule_instances", ["start_ts"], unique=False)
    op.create_index(op.f("ix_schedule_instances_status"), "schedule_instances", ["status"], unique=False)

    op.create_table(
        "attendance_sessions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_key", sa.String(length=100), nullable=False, unique=True),
        sa.Column("employee_id", sa.Integer(), nullable=False),
        sa.Column("schedule_instance_id", sa.Integer(), nullable=True),
        sa.Column("day_date", sa.Date(), nullable=False),
        sa.Column("state", attendance_session_state, nullable=False, server_default=sa.text("'NOT_STARTED'")),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_lat", sa.Float(), nullable=True),
        sa.Column("start_lon", sa.Float(), nullable=True),
        sa.Column("finish_lat", sa.Float(), nullable=True),
        sa.Column("finish_lon", sa.Float(), nullable=True),
        sa.Column("worked_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("obligatory_break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("additional_break_minutes", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("orphaned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("orphaned_from_instance_id", sa.Integer(), nullable=True),
        sa.Column("version_id", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.ForeignKeyConstraint(["schedule_instance_id"], ["schedule_instances.id"], ondelete="SET NULL"),
    )
    op.create_index(op.f("ix_attendance_sessions_employee_id"), "attendance_sessions", ["employee_id"], unique=False)
    op.create_index(
        op.f("ix_attendance_sessions_schedule_instance_id"),
        "attendance_sessions",
        ["schedule_instance_id"],
        unique=False,
    )
    op.create_index(op.f("ix_attendance_sessions_day_date"), "attendance_sessions", ["day_date"], unique=False)

    op.create_table(
        "attendance_session_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("session_id", sa.Integer(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("action", attendance_action, nullable=False),
        sa.Column("resulting_state", attendance_session_state, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lat", sa.Float(), nullable=True),
        sa.Column("lon", sa.Float(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.ForeignKeyConstraint(["session_id"], ["attendance_sessions.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("session_id", "sequence", name="uq_attendance_session_events_session_sequence"),
    )
    op.create_index(
        op.f("ix_attendance_session_events_session_id"),
        "attendance_session_events",
        ["session_id"],
        unique=False,
    )

    op.create_table(
        "absence_notes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("schedule_instance_id", sa.Integer(), nullable=True, unique=True),
        sa.Column("status", absence_note_status, nullable=False, server_default=sa.text("'PENDING'")),
        sa.Column("reason", sa.String(length=1000), nullable=True),
        sa.Column("resolution_reason", sa.String(length=1000), nullable=True),
        sa.Column("opened_by", sa.String(length=255), nullable=False),
        sa.Column("resolved_by", sa.String(length=255), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("orphaned", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("orphaned_from_instance_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["schedule_instance_id"], ["schedule_instances.id"], ondelete="SET NULL"),
    )
    op.create_index(op.f("ix_absence_notes_status"), "absence_notes", ["status"], unique=False)

    op.create_table(
        "domain_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_type", sa.String(length=100), nullable=False),
        sa.Column("aggregate_id", sa.String(length=255), nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=True),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index(op.f("ix_domain_events_event_type"), "domain_events", ["event_type"], unique=False)
    op.create_index(op.f("ix_domain_events_occurred_at"), "domain_events", ["occurred_at"], unique=False)

    op.create_table(
        "audit_logs",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("ts_utc", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("CURRENT_TIMESTAMP")),
        sa.Column("actor_type", audit_actor_type, nullable=False),
        sa.Column("actor_id", sa.String(length=255), nullable=False),
        sa.Column("action", sa.String(length=255), nullable=False),
        sa.Column("entity_type", sa.String(length=255), nullable=True),
        sa.Column("entity_id", sa.String(length=255), nullable=True),
        sa.Column("ip", sa.String(length=128), nullable=True),
        sa.Column("user_agent", sa.String(length=1024), nullable=True),
        sa.Column("success", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("details", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default=sa.text("'{}'::jsonb")),
    )
    op.create_index(op.f("ix_audit_logs_ts_utc"), "audit_logs", ["ts_utc"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_audit_logs_ts_utc"), table_name="audit_logs")
    op.drop_table("audit_logs")
    op.drop_index(op.f("ix_domain_events_occurred_at"), table_name="domain_events")
    op.drop_index(op.f("ix_domain_events_event_type"), table_name="domain_events")
    op.drop_table("domain_events")
    op.drop_index(op.f("ix_absence_notes_status"), table_name="absence_notes")
    op.drop_table("absence_notes")
    op.drop_index(op.f("ix_attendance_session_events_session_id"), table_name="attendance_session_events")
    op.drop_table("attendance_session_events")
    op.drop_index(op.f("ix_attendance_sessions_day_date"), table_name="attendance_sessions")
    op.drop_index(op.f("ix_attendance_sessions_schedule_instance_id"), table_name="attendance_sessions")
    op.drop_index(op.f("ix_attendance_sessions_employee_id"), table_name="attendance_sessions")
    op.drop_table("attendance_sessions")
    op.drop_index(op.f("ix_schedule_instances_status"), table_name="schedule_instances")
    op.drop_index(op.f("ix_schedule_instances_start_ts"), table_name="schedule_instances")
    op.drop_index(op.f("ix_schedule_instances_day_date"), table_name="schedule_instances")
    op.drop_index(op.f("ix_schedule_instances_amendment_id"), table_name="schedule_instances")
    op.drop_index(op.f("ix_schedule_instances_contract_id"), table_name="schedule_instances")
    op.drop_table("schedule_instances")
    op.drop_index(op.f("ix_contract_amendments_schedule_template_id"), table_name="contract_amendments")
    op.drop_index(op.f("ix_contract_amendments_contract_id"), table_name="contract_amendments")
    op.drop_table("contract_amendments")
    op.drop_index(op.f("ix_contracts_schedule_template_id"), table_name="contracts")
    op.drop_index(op.f("ix_contracts_center_id"), table_name="contracts")
    op.drop_index(op.f("ix_contracts_employee_id"), table_name="contracts")
    op.drop_table("contracts")
    op.drop_index(op.f("ix_schedule_template_slots_template_id"), table_name="schedule_template_slots")
    op.drop_table("schedule_template_slots")
    op.drop_table("schedule_templates")
    op.drop_table("modalities")
    op.drop_index(op.f("ix_shifts_center_id"), table_name="shifts")
    op.drop_table("shifts")

    bind = op.get_bind()
    for enum_type in reversed(ALL_ENUMS):
        enum_type.drop(bind, checkfirst=True)
