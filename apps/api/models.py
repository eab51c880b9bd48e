from typing import Optional
from datetime import datetime, date
import uuid
from sqlmodel import Field, SQLModel
from sqlalchemy import Column, DateTime, JSON, String, UniqueConstraint
from enum import Enum

from utils.clock import utcnow

# Stored as UTC; SQLite hands values back naive, see utils.clock.as_utc
UTCDateTime = DateTime(timezone=True)


class SlotStatus(str, Enum):
    AVAILABLE = "AVAILABLE"
    BOOKED = "BOOKED"
    BLOCKED = "BLOCKED"


class SlotPeriod(str, Enum):
    MORNING = "MORNING"
    EVENING = "EVENING"
    NIGHT = "NIGHT"


class AppointmentStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    CONFIRMED = "CONFIRMED"
    CHECKED_IN = "CHECKED_IN"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"


class QueueEntryStatus(str, Enum):
    WAITING = "WAITING"
    WITH_DOCTOR = "WITH_DOCTOR"
    COMPLETED = "COMPLETED"
    NO_SHOW = "NO_SHOW"
    LEFT = "LEFT"


class QueueEntryType(str, Enum):
    WALK_IN = "WALK_IN"
    SCHEDULED = "SCHEDULED"


class QueuePriority(str, Enum):
    NORMAL = "NORMAL"
    URGENT = "URGENT"
    EMERGENCY = "EMERGENCY"


class DoctorDailyStatus(str, Enum):
    CHECKED_IN = "CHECKED_IN"
    CHECKED_OUT = "CHECKED_OUT"


class Hospital(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    timezone: str = Field(default="UTC")
    # {"morning": {"start": "06:00", "end": "14:00"}, ...}; None means defaults
    shift_timing_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class HospitalHoliday(SQLModel, table=True):
    """Recurring yearly holiday; suppresses slot generation hospital-wide"""
    id: Optional[int] = Field(default=None, primary_key=True)
    hospital_id: int = Field(foreign_key="hospital.id", index=True)
    month: int = Field(ge=1, le=12)
    day: int = Field(ge=1, le=31)
    name: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class DoctorProfile(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    hospital_id: int = Field(foreign_key="hospital.id", index=True)
    full_name: str
    specialization: Optional[str] = None
    appointment_duration_minutes: int = Field(default=30)
    shift_timing_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    is_active: bool = Field(default=True)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class DoctorSchedule(SQLModel, table=True):
    """Weekly working pattern, one row per doctor per weekday (0 = Monday)"""
    __table_args__ = (UniqueConstraint("doctor_id", "day_of_week"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    day_of_week: int = Field(ge=0, le=6)
    is_working: bool = Field(default=False)
    morning: bool = Field(default=False)
    evening: bool = Field(default=False)
    night: bool = Field(default=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class DoctorTimeOff(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    start_date: date
    end_date: date
    reason: Optional[str] = None
    status: str = Field(default="approved", sa_column=Column(String(20)))
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class AppointmentSlot(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("doctor_id", "slot_date", "start_time"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    hospital_id: int = Field(foreign_key="hospital.id", index=True)
    slot_date: date = Field(index=True)
    start_time: str  # HH:MM, hours >= 24 for the part of a night window past midnight
    end_time: str
    duration_minutes: int
    period: SlotPeriod
    status: SlotStatus = Field(default=SlotStatus.AVAILABLE)
    appointment_id: Optional[int] = None
    patient_id: Optional[int] = None
    block_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class Appointment(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    # Cleared when regeneration deletes the released slot of a cancelled appointment
    slot_id: Optional[int] = Field(default=None, foreign_key="appointmentslot.id", index=True)
    patient_id: int = Field(index=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    hospital_id: int = Field(foreign_key="hospital.id")
    appointment_date: date = Field(index=True)
    start_time: str
    end_time: str
    status: AppointmentStatus = Field(default=AppointmentStatus.SCHEDULED)
    reason_for_visit: Optional[str] = None
    notes: Optional[str] = None
    cancellation_reason: Optional[str] = None
    cancelled_by_time_off: bool = Field(default=False)
    time_off_id: Optional[int] = Field(default=None, foreign_key="doctortimeoff.id")
    booked_by: Optional[int] = None
    booked_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    checked_in_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    cancelled_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)


class QueueEntry(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("doctor_id", "queue_date", "queue_number"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    hospital_id: int = Field(foreign_key="hospital.id")
    queue_date: date = Field(index=True)
    queue_number: int
    # Weak link, one entry per appointment; the queue outlives appointment edits
    appointment_id: Optional[int] = Field(default=None, unique=True, index=True)
    patient_id: Optional[int] = None
    entry_type: QueueEntryType = Field(default=QueueEntryType.WALK_IN)
    walk_in_name: Optional[str] = None
    walk_in_phone: Optional[str] = None
    reason_for_visit: Optional[str] = None
    priority: QueuePriority = Field(default=QueuePriority.NORMAL)
    status: QueueEntryStatus = Field(default=QueueEntryStatus.WAITING)
    checked_in_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    with_doctor_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    completed_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    wait_time_minutes: Optional[int] = None
    consultation_time_minutes: Optional[int] = None
    status_token: str = Field(default_factory=lambda: str(uuid.uuid4()), unique=True, index=True)
    notes: Optional[str] = None
    created_by: Optional[int] = None


class DoctorCheckin(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("doctor_id", "checkin_date"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    doctor_id: int = Field(foreign_key="doctorprofile.id", index=True)
    checkin_date: date
    status: DoctorDailyStatus = Field(default=DoctorDailyStatus.CHECKED_IN)
    checked_in_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    checked_out_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
