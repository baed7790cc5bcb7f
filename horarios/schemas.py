from datetime import date, datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from horarios.models import (
    AbsenceNoteStatus,
    AttendanceAction,
    AttendanceState,
    ModalityCode,
    ScheduleInstanceStatus,
)

HHMM_PATTERN = r"^\d{2}:\d{2}$"


class AdminLoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=255)


class AdminAuthResponse(BaseModel):
    access_token: str
    token_type: Literal["bearer"] = "bearer"
    expires_in: int


class AdminMeResponse(BaseModel):
    sub: str
    username: str
    role: str
    permissions: dict[str, dict[str, bool]]


class ShiftCreate(BaseModel):
    center_id: int = Field(ge=1)
    name: str = Field(min_length=1, max_length=100)
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)
    break_start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    break_end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    color: str | None = Field(default=None, max_length=7)


class ShiftUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    break_start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    break_end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    color: str | None = Field(default=None, max_length=7)
    is_active: bool | None = None


class ShiftRead(BaseModel):
    id: int
    center_id: int
    name: str
    start_time: str
    end_time: str
    break_start_time: str | None
    break_end_time: str | None
    color: str
    is_active: bool
    created_at: datetime
    updated_at: datetime


class ModalityRead(BaseModel):
    id: int
    code: ModalityCode
    name: str

    model_config = ConfigDict(from_attributes=True)


class ScheduleTemplateSlotInput(BaseModel):
    weekday: int
    shift_id: int | None = None
    modality_id: int | None = None


class ScheduleTemplateUpsert(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: str | None = Field(default=None, max_length=2000)
    slots: list[ScheduleTemplateSlotInput] = Field(default_factory=list)


class ScheduleTemplateSlotRead(BaseModel):
    weekday: int
    shift_id: int | None
    modality_id: int | None

    model_config = ConfigDict(from_attributes=True)


class ScheduleTemplateRead(BaseModel):
    id: int
    name: str
    description: str | None
    slots: list[ScheduleTemplateSlotRead]
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class ScheduleInstanceGenerateRequest(BaseModel):
    contract_id: int = Field(ge=1)
    amendment_id: int | None = Field(default=None, ge=1)
    schedule_template_id: int | None = Field(default=None, ge=1)
    date_from: date
    date_to: date

    @model_validator(mode="after")
    def _validate_range(self) -> "ScheduleInstanceGenerateRequest":
        if self.date_to < self.date_from:
            raise ValueError("date_to must be greater than or equal to date_from")
        return self


class ScheduleInstanceTimes(BaseModel):
    day_date: date
    shift_id: int | None = Field(default=None, ge=1)
    modality_id: int = Field(ge=1)
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    break_start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    break_end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    observations: str | None = Field(default=None, max_length=255)


class ScheduleInstanceCreateItem(ScheduleInstanceTimes):
    contract_id: int = Field(ge=1)


class ScheduleInstanceUpdateItem(ScheduleInstanceTimes):
    id: int = Field(ge=1)


class ScheduleInstanceBulkCreateRequest(BaseModel):
    items: list[ScheduleInstanceCreateItem] = Field(min_length=1)


class ScheduleInstanceBulkUpdateRequest(BaseModel):
    items: list[ScheduleInstanceUpdateItem] = Field(min_length=1)


class ScheduleInstanceBulkDeleteRequest(BaseModel):
    ids: list[int] = Field(min_length=1)


class ScheduleInstanceRead(BaseModel):
    id: int
    contract_id: int
    amendment_id: int | None
    schedule_template_id: int | None
    day_date: date
    shift_id: int | None
    modality_id: int
    start_ts: datetime
    end_ts: datetime
    break_start_ts: datetime | None
    break_end_ts: datetime | None
    observations: str | None
    status: ScheduleInstanceStatus
    justified_absence: bool | None
    cancelled_at: datetime | None

    model_config = ConfigDict(from_attributes=True)


class ScheduleInstanceBatchResponse(BaseModel):
    count: int
    items: list[ScheduleInstanceRead]


class OrphanWarning(BaseModel):
    code: Literal["ORPHANED_ATTENDANCE_SESSION", "ORPHANED_ABSENCE_NOTE"]
    entity_type: str
    entity_id: int
    schedule_instance_id: int


class ScheduleInstanceBulkDeleteResponse(BaseModel):
    ok: bool = True
    deleted_ids: list[int]
    warnings: list[OrphanWarning] = Field(default_factory=list)


class Coordinates(BaseModel):
    lat: float
    lon: float


class AttendanceActionRequest(BaseModel):
    action: AttendanceAction
    schedule_instance_id: int | None = Field(default=None, ge=1)
    coordinates: Coordinates | None = None


class AttendanceActionResponse(BaseModel):
    ok: bool = True
    employee_id: int
    session_id: int
    schedule_instance_id: int | None
    action: AttendanceAction
    state: AttendanceState
    started_at: datetime | None
    finished_at: datetime | None
    worked_minutes: int
    break_minutes: int
    obligatory_break_minutes: int
    additional_break_minutes: int
    late_minutes: int | None = None


class AttendanceStatusResponse(BaseModel):
    employee_id: int
    day_date: date
    session_id: int | None = None
    schedule_instance_id: int | None = None
    state: AttendanceState
    worked_minutes: int = 0
    break_minutes: int = 0
    obligatory_break_minutes: int = 0
    additional_break_minutes: int = 0
    late_minutes: int | None = None
    scheduled_minutes: int | None = None
    remaining_minutes: int | None = None
    next_schedule_instance_id: int | None = None


class AbsenceNoteCreateRequest(BaseModel):
    schedule_instance_id: int = Field(ge=1)
    reason: str | None = Field(default=None, max_length=1000)
    opened_by: str | None = Field(default=None, max_length=255)


class AbsenceNoteResolveRequest(BaseModel):
    approve: bool
    reason: str | None = Field(default=None, max_length=1000)


class AbsenceNoteRead(BaseModel):
    id: int
    schedule_instance_id: int | None
    status: AbsenceNoteStatus
    reason: str | None
    resolution_reason: str | None
    opened_by: str
    resolved_by: str | None
    resolved_at: datetime | None
    orphaned: bool
    orphaned_from_instance_id: int | None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class DomainEventRead(BaseModel):
    id: int
    event_type: str
    aggregate_type: str
    aggregate_id: str
    actor_id: str | None
    payload: dict[str, Any]
    occurred_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SoftDeleteResponse(BaseModel):
    ok: bool
    id: int
