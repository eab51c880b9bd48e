from typing import Optional, List, Literal
from pydantic import BaseModel, Field, field_validator
from models import (
    SlotStatus, SlotPeriod, AppointmentStatus, QueueEntryStatus, QueueEntryType,
    QueuePriority, DoctorDailyStatus,
)
from datetime import datetime, date
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from validators.business_rules import get_business_rules
from validators.time_validator import is_clock_time


def _check_clock(v: Optional[str]) -> Optional[str]:
    if v is not None and not is_clock_time(v):
        raise ValueError(f"Invalid time format: {v}. Use HH:MM format (e.g., 09:30, 14:00)")
    return v


# Shift timing schemas
class PeriodWindow(BaseModel):
    start: str
    end: str

    @field_validator("start", "end")
    @classmethod
    def validate_clock(cls, v):
        return _check_clock(v)


def _default_window(name: str) -> PeriodWindow:
    return PeriodWindow(**get_business_rules().DEFAULT_SHIFT_TIMINGS[name])


class ShiftTimingConfig(BaseModel):
    """Named period windows; night may wrap past midnight (end < start)"""
    morning: PeriodWindow = Field(default_factory=lambda: _default_window("morning"))
    evening: PeriodWindow = Field(default_factory=lambda: _default_window("evening"))
    night: PeriodWindow = Field(default_factory=lambda: _default_window("night"))

    def window(self, period: SlotPeriod) -> PeriodWindow:
        return getattr(self, period.value.lower())


# Hospital schemas
class HospitalCreate(BaseModel):
    name: str
    timezone: str = "UTC"
    shift_timing_config: Optional[ShiftTimingConfig] = None

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v):
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v


class HospitalResponse(BaseModel):
    id: int
    name: str
    timezone: str
    shift_timing_config: Optional[dict] = None
    created_at: datetime

    class Config:
        from_attributes = True


class HolidayCreate(BaseModel):
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)
    name: str


class HolidayResponse(BaseModel):
    id: int
    hospital_id: int
    month: int
    day: int
    name: str

    class Config:
        from_attributes = True


# Doctor schemas
class DoctorCreate(BaseModel):
    hospital_id: int
    full_name: str
    specialization: Optional[str] = None
    appointment_duration_minutes: int = get_business_rules().DEFAULT_SLOT_DURATION_MINUTES
    shift_timing_config: Optional[ShiftTimingConfig] = None


class DoctorResponse(BaseModel):
    id: int
    hospital_id: int
    full_name: str
    specialization: Optional[str] = None
    appointment_duration_minutes: int
    shift_timing_config: Optional[dict] = None
    is_active: bool

    class Config:
        from_attributes = True


class DurationUpdate(BaseModel):
    appointment_duration_minutes: int


class ScheduleDayInput(BaseModel):
    """Either period flags or an explicit shift_start/shift_end window"""
    day_of_week: int = Field(ge=0, le=6)
    morning: bool = False
    evening: bool = False
    night: bool = False
    shift_start: Optional[str] = None
    shift_end: Optional[str] = None

    @field_validator("shift_start", "shift_end")
    @classmethod
    def validate_clock(cls, v):
        return _check_clock(v)


class ScheduleUpdate(BaseModel):
    schedules: List[ScheduleDayInput]
    shift_timing_config: Optional[ShiftTimingConfig] = None


class WindowResponse(BaseModel):
    start: str
    end: str
    periods: List[SlotPeriod]


class ScheduleDayResponse(BaseModel):
    day_of_week: int
    is_working: bool
    morning: bool
    evening: bool
    night: bool
    windows: List[WindowResponse] = []


class DoctorScheduleResponse(BaseModel):
    doctor_id: int
    schedules: List[ScheduleDayResponse]
    shift_timing_config: ShiftTimingConfig


class TimeOffCreate(BaseModel):
    start_date: date
    end_date: date
    reason: Optional[str] = None


class TimeOffResponse(BaseModel):
    id: int
    doctor_id: int
    start_date: date
    end_date: date
    reason: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


# Slot and appointment schemas
class SlotResponse(BaseModel):
    id: int
    doctor_id: int
    hospital_id: int
    slot_date: date
    start_time: str
    end_time: str
    duration_minutes: int
    period: SlotPeriod
    status: SlotStatus
    appointment_id: Optional[int] = None
    patient_id: Optional[int] = None
    block_reason: Optional[str] = None

    class Config:
        from_attributes = True


class AppointmentResponse(BaseModel):
    id: int
    slot_id: Optional[int] = None
    patient_id: int
    doctor_id: int
    hospital_id: int
    appointment_date: date
    start_time: str
    end_time: str
    status: AppointmentStatus
    reason_for_visit: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by_time_off: bool
    time_off_id: Optional[int] = None
    booked_at: datetime
    checked_in_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TimeOffResult(BaseModel):
    time_off: TimeOffResponse
    cancelled_appointments: List[AppointmentResponse]


class GenerateSlotsRequest(BaseModel):
    doctor_id: int
    start_date: date
    end_date: date


class GenerateSlotsResponse(BaseModel):
    doctor_id: int
    start_date: date
    end_date: date
    slots_generated: int
    slots_skipped: int


class SlotStats(BaseModel):
    total: int
    available: int
    booked: int
    blocked: int


class SlotsForDateResponse(BaseModel):
    date: date
    doctor_id: int
    morning: List[SlotResponse]
    evening: List[SlotResponse]
    night: List[SlotResponse]
    stats: SlotStats
    is_time_off: bool
    time_off_reason: Optional[str] = None
    is_holiday: bool
    holiday_name: Optional[str] = None
    cancelled_appointments: List[AppointmentResponse] = []


class CalendarDayResponse(BaseModel):
    date: date
    has_slots: bool
    available_count: int
    booked_count: int
    blocked_count: int

    class Config:
        from_attributes = True


class BookSlotRequest(BaseModel):
    patient_id: int
    reason_for_visit: Optional[str] = None
    notes: Optional[str] = None
    booked_by: Optional[int] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class RescheduleRequest(BaseModel):
    new_slot_id: int


class BlockRequest(BaseModel):
    reason: Optional[str] = None


class RegenerateRequest(BaseModel):
    doctor_id: int
    cancel_appointment_ids: List[int] = []


class RegenerateResponse(BaseModel):
    cancelled: int
    slots_deleted: int
    slots_generated: int


class ConflictCheckRequest(BaseModel):
    doctor_id: int
    change_type: Literal["schedule", "duration", "time_off"]
    schedules: Optional[List[ScheduleDayInput]] = None
    shift_timing_config: Optional[ShiftTimingConfig] = None
    appointment_duration_minutes: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None


class AffectedAppointment(BaseModel):
    appointment: AppointmentResponse
    has_queue_entry: bool


class ConflictCheckResponse(BaseModel):
    has_conflicts: bool
    affected_appointments: List[AffectedAppointment]
    slots_to_delete: int


class LatestSlotDateResponse(BaseModel):
    doctor_id: int
    latest_slot_date: Optional[date] = None


# Queue schemas
class WalkInInfo(BaseModel):
    patient_id: Optional[int] = None
    name: Optional[str] = None
    phone: Optional[str] = None
    reason: Optional[str] = None


class CheckInRequest(BaseModel):
    doctor_id: int
    queue_date: Optional[date] = None
    appointment_id: Optional[int] = None
    walk_in: Optional[WalkInInfo] = None
    priority: QueuePriority = QueuePriority.NORMAL
    notes: Optional[str] = None


class QueueDayRequest(BaseModel):
    doctor_id: int
    queue_date: Optional[date] = None


class PriorityUpdate(BaseModel):
    priority: QueuePriority


class QueueEntryResponse(BaseModel):
    id: int
    doctor_id: int
    queue_date: date
    queue_number: int
    appointment_id: Optional[int] = None
    patient_id: Optional[int] = None
    entry_type: QueueEntryType
    walk_in_name: Optional[str] = None
    walk_in_phone: Optional[str] = None
    reason_for_visit: Optional[str] = None
    priority: QueuePriority
    status: QueueEntryStatus
    checked_in_at: datetime
    with_doctor_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    wait_time_minutes: Optional[int] = None
    consultation_time_minutes: Optional[int] = None
    status_token: str

    class Config:
        from_attributes = True


class DoctorCheckinResponse(BaseModel):
    doctor_id: int
    checkin_date: date
    status: DoctorDailyStatus
    checked_in_at: datetime
    checked_out_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class ScheduledPatient(BaseModel):
    appointment_id: int
    patient_id: int
    start_time: str
    end_time: str
    status: AppointmentStatus
    is_checked_in: bool


class QueueStats(BaseModel):
    total_waiting: int
    total_completed: int
    total_no_show: int
    total_left: int
    total_scheduled: int
    average_wait_minutes: Optional[float] = None


class DailyQueueResponse(BaseModel):
    date: date
    doctor_id: int
    is_checked_in: bool
    with_doctor: Optional[QueueEntryResponse] = None
    queue: List[QueueEntryResponse]
    completed: List[QueueEntryResponse]
    scheduled: List[ScheduledPatient]
    stats: QueueStats
    is_hospital_holiday: bool
    holiday_name: Optional[str] = None


class PublicQueueStatus(BaseModel):
    queue_number: int
    status: QueueEntryStatus
    queue_date: date
    doctor_name: str
    now_serving: Optional[int] = None
    patients_ahead: int
    patients_behind: int
    estimated_wait_minutes: int
