from __future__ import annotations

import enum
from datetime import date, datetime, time, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from horarios.db import Base

JsonDict = JSON().with_variant(JSONB(), "postgresql")


class ModalityCode(str, enum.Enum):
    ON_SITE = "ON_SITE"
    REMOTE = "REMOTE"
    HYBRID = "HYBRID"


class ScheduleInstanceStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"


class AttendanceState(str, enum.Enum):
    NOT_STARTED = "NOT_STARTED"
    ACTIVE = "ACTIVE"
    ON_OBLIGATORY_BREAK = "ON_OBLIGATORY_BREAK"
    ON_ADDITIONAL_BREAK = "ON_ADDITIONAL_BREAK"
    FINISHED = "FINISHED"


class AttendanceAction(str, enum.Enum):
    INICIAR = "iniciar"
    DESCANSO_OBLIGATORIO = "descanso_obligatorio"
    DESCANSO_ADICIONAL = "descanso_adicional"
    REANUDAR = "reanudar"
    FINALIZAR = "finalizar"


class AbsenceNoteStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class AuditActorType(str, enum.Enum):
    ADMIN = "ADMIN"
    EMPLOYEE = "EMPLOYEE"
    SYSTEM = "SYSTEM"


class Shift(Base):
    __tablename__ = "shifts"
    __table_args__ = (
        UniqueConstraint("center_id", "name", name="uq_shifts_center_name"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    center_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    start_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    end_time: Mapped[time] = mapped_column(Time(timezone=False), nullable=False)
    break_start_time: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    break_end_time: Mapped[time | None] = mapped_column(Time(timezone=False), nullable=True)
    color: Mapped[str] = mapped_column(
        String(7),
        nullable=False,
        default="#FB7D16",
        server_default=text("'#FB7D16'"),
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class Modality(Base):
    __tablename__ = "modalities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[ModalityCode] = mapped_column(
        Enum(ModalityCode, name="modality_code"),
        nullable=False,
        unique=True,
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)


class ScheduleTemplate(Base):
    __tablename__ = "schedule_templates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    slots: Mapped[list[ScheduleTemplateSlot]] = relationship(
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="ScheduleTemplateSlot.weekday",
    )


class ScheduleTemplateSlot(Base):
    __tablename__ = "schedule_template_slots"
    __table_args__ = (
        UniqueConstraint("template_id", "weekday", name="uq_schedule_template_slots_template_weekday"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    template_id: Mapped[int] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    weekday: Mapped[int] = mapped_column(Integer, nullable=False)
    shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("shifts.id", ondelete="RESTRICT"),
        nullable=True,
    )
    modality_id: Mapped[int | None] = mapped_column(
        ForeignKey("modalities.id", ondelete="RESTRICT"),
        nullable=True,
    )

    template: Mapped[ScheduleTemplate] = relationship(back_populates="slots")
    shift: Mapped[Shift | None] = relationship()
    modality: Mapped[Modality | None] = relationship()


class Contract(Base):
    __tablename__ = "contracts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    center_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    schedule_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    amendments: Mapped[list[ContractAmendment]] = relationship(
        back_populates="contract",
        order_by="ContractAmendment.valid_from",
    )


class ContractAmendment(Base):
    __tablename__ = "contract_amendments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    schedule_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="RESTRICT"),
        nullable=True,
        index=True,
    )
    valid_from: Mapped[date] = mapped_column(Date, nullable=False)
    valid_to: Mapped[date | None] = mapped_column(Date, nullable=True)

    contract: Mapped[Contract] = relationship(back_populates="amendments")


class ScheduleInstance(Base):
    __tablename__ = "schedule_instances"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    contract_id: Mapped[int] = mapped_column(
        ForeignKey("contracts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    amendment_id: Mapped[int | None] = mapped_column(
        ForeignKey("contract_amendments.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    schedule_template_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_templates.id", ondelete="SET NULL"),
        nullable=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    shift_id: Mapped[int | None] = mapped_column(
        ForeignKey("shifts.id", ondelete="SET NULL"),
        nullable=True,
    )
    modality_id: Mapped[int] = mapped_column(
        ForeignKey("modalities.id", ondelete="RESTRICT"),
        nullable=False,
    )
    start_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    end_ts: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    break_start_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    break_end_ts: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    observations: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[ScheduleInstanceStatus] = mapped_column(
        Enum(ScheduleInstanceStatus, name="schedule_instance_status"),
        nullable=False,
        default=ScheduleInstanceStatus.ACTIVE,
        server_default=text("'ACTIVE'"),
        index=True,
    )
    justified_absence: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    contract: Mapped[Contract] = relationship()
    amendment: Mapped[ContractAmendment | None] = relationship()
    shift: Mapped[Shift | None] = relationship()
    modality: Mapped[Modality] = relationship()


class AttendanceSession(Base):
    __tablename__ = "attendance_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_key: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    employee_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    schedule_instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_instances.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    day_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    state: Mapped[AttendanceState] = mapped_column(
        Enum(AttendanceState, name="attendance_session_state"),
        nullable=False,
        default=AttendanceState.NOT_STARTED,
        server_default=text("'NOT_STARTED'"),
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    start_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    start_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    finish_lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    finish_lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    worked_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default=text("0"))
    obligatory_break_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    additional_break_minutes: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default=text("0"),
    )
    late_minutes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    orphaned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    orphaned_from_instance_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    version_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    schedule_instance: Mapped[ScheduleInstance | None] = relationship()
    events: Mapped[list[AttendanceSessionEvent]] = relationship(
        back_populates="session",
        cascade="all, delete-orphan",
        order_by="AttendanceSessionEvent.sequence",
    )

    __mapper_args__ = {"version_id_col": version_id}


class AttendanceLock(Base):
    __tablename__ = "attendance_locks"

    employee_id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class AttendanceSessionEvent(Base):
    __tablename__ = "attendance_session_events"
    __table_args__ = (
        UniqueConstraint("session_id", "sequence", name="uq_attendance_session_events_session_sequence"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        ForeignKey("attendance_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[AttendanceAction] = mapped_column(
        Enum(
            AttendanceAction,
            name="attendance_action",
            values_callable=lambda enum_cls: [item.value for item in enum_cls],
        ),
        nullable=False,
    )
    resulting_state: Mapped[AttendanceState] = mapped_column(
        Enum(AttendanceState, name="attendance_session_state"),
        nullable=False,
    )
    ts_utc: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lon: Mapped[float | None] = mapped_column(Float, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )

    session: Mapped[AttendanceSession] = relationship(back_populates="events")


class AbsenceNote(Base):
    __tablename__ = "absence_notes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    schedule_instance_id: Mapped[int | None] = mapped_column(
        ForeignKey("schedule_instances.id", ondelete="SET NULL"),
        nullable=True,
        unique=True,
    )
    status: Mapped[AbsenceNoteStatus] = mapped_column(
        Enum(AbsenceNoteStatus, name="absence_note_status"),
        nullable=False,
        default=AbsenceNoteStatus.PENDING,
        server_default=text("'PENDING'"),
        index=True,
    )
    reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    resolution_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    opened_by: Mapped[str] = mapped_column(String(255), nullable=False)
    resolved_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    orphaned: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    orphaned_from_instance_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    schedule_instance: Mapped[ScheduleInstance | None] = relationship()


class DomainEvent(Base):
    __tablename__ = "domain_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    aggregate_type: Mapped[str] = mapped_column(String(100), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    payload: Mapped[dict[str, Any]] = mapped_column(
        JsonDict,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
    )
    occurred_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    ts_utc: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=text("CURRENT_TIMESTAMP"),
        index=True,
    )
    actor_type: Mapped[AuditActorType] = mapped_column(
        Enum(AuditActorType, name="audit_actor_type"),
        nullable=False,
    )
    actor_id: Mapped[str] = mapped_column(String(255), nullable=False)
    action: Mapped[str] = mapped_column(String(255), nullable=False)
    entity_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    entity_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    ip: Mapped[str | None] = mapped_column(String(128), nullable=True)
    user_agent: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=text("true"))
    details: Mapped[dict[str, Any]] = mapped_column(
        JsonDict,
        nullable=False,
        default=dict,
        server_default=text("'{}'"),
    )
