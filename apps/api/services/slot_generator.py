"""
Slot generation: materializes resolved working windows into bookable slots.

Generation is per date and idempotent. A date that already holds any slot for
the doctor is skipped untouched, so re-running a range never duplicates slots
or disturbs bookings. The ``(doctor_id, slot_date, start_time)`` unique key
backs the skip when two generations race.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import List, Optional, Set, Tuple
import logging

from sqlalchemy import delete, func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from errors import ScheduleConflict, ValidationError, storage_guard
from models import (
    Appointment, AppointmentSlot, AppointmentStatus, DoctorProfile, Hospital, QueueEntry,
    QueueEntryStatus, SlotStatus,
)
from schemas import ScheduleDayInput, ShiftTimingConfig
from services.schedule_resolver import (
    DoctorCalendar, ShiftWindow, TimeOffRange, WeekdayShifts, flags_from_window,
    get_doctor_or_404, load_doctor_calendar, resolve, validate_shift_config,
)
from services.slot_state_machine import cancel_appointment_in_session
from utils.clock import hospital_today
from validators.business_rules import get_business_rules
from validators.time_validator import iter_dates, minutes_to_time, validate_date_range

logger = logging.getLogger(__name__)

GENERATION_ATTEMPTS = 2


@dataclass
class GenerationResult:
    doctor_id: int
    start_date: date
    end_date: date
    slots_generated: int = 0
    slots_skipped: int = 0


@dataclass
class RegenerationResult:
    cancelled: int = 0
    slots_deleted: int = 0
    slots_generated: int = 0


@dataclass
class ConflictReport:
    affected_appointments: List[dict] = field(default_factory=list)
    slots_to_delete: int = 0

    @property
    def has_conflicts(self) -> bool:
        return bool(self.affected_appointments)


def validate_duration(duration: int) -> int:
    allowed = get_business_rules().ALLOWED_SLOT_DURATIONS
    if duration not in allowed:
        raise ValidationError(
            f"Appointment duration must be one of {', '.join(str(d) for d in allowed)} minutes"
        )
    return duration


def partition_window(window: ShiftWindow, duration: int) -> List[Tuple[int, int]]:
    """Consecutive (start, end) minute pairs; the remainder becomes a short slot"""
    slots = []
    current = window.start_minute
    while current < window.end_minute:
        end = min(current + duration, window.end_minute)
        slots.append((current, end))
        current = end
    return slots


def _populated_dates(session: Session, doctor_id: int, start_date: date, end_date: date) -> Set[date]:
    rows = session.exec(
        select(AppointmentSlot.slot_date)
        .where(
            AppointmentSlot.doctor_id == doctor_id,
            AppointmentSlot.slot_date >= start_date,
            AppointmentSlot.slot_date <= end_date,
        )
        .distinct()
    ).all()
    return set(rows)


def _build_slots(
    session: Session,
    doctor: DoctorProfile,
    calendar: DoctorCalendar,
    start_date: date,
    end_date: date,
) -> GenerationResult:
    result = GenerationResult(doctor.id, start_date, end_date)
    populated = _populated_dates(session, doctor.id, start_date, end_date)
    duration = doctor.appointment_duration_minutes

    for day in iter_dates(start_date, end_date):
        if day in populated:
            result.slots_skipped += 1
            continue
        resolution = resolve(calendar, day)
        if resolution.is_off:
            continue
        for window in resolution.active_windows:
            for start, end in partition_window(window, duration):
                session.add(AppointmentSlot(
                    doctor_id=doctor.id,
                    hospital_id=doctor.hospital_id,
                    slot_date=day,
                    start_time=minutes_to_time(start),
                    end_time=minutes_to_time(end),
                    duration_minutes=end - start,
                    period=window.period,
                    status=SlotStatus.AVAILABLE,
                ))
                result.slots_generated += 1
    return result


@storage_guard
def generate_slots(session: Session, doctor_id: int, start_date: date, end_date: date) -> GenerationResult:
    """Generate AVAILABLE slots for every working date in the inclusive range"""
    validate_date_range(start_date, end_date, get_business_rules().MAX_GENERATION_DAYS)
    doctor = get_doctor_or_404(session, doctor_id)
    calendar = load_doctor_calendar(session, doctor, start_date, end_date)

    for attempt in range(GENERATION_ATTEMPTS):
        result = _build_slots(session, doctor, calendar, start_date, end_date)
        try:
            session.commit()
            break
        except IntegrityError:
            # A concurrent generation filled some of these dates first
            session.rollback()
            logger.warning(
                f"Slot generation for doctor {doctor_id} collided with a concurrent run, "
                f"retrying (attempt {attempt + 1})"
            )
    else:
        raise ScheduleConflict(f"Slot generation for doctor {doctor_id} kept colliding with concurrent runs, please retry")

    logger.info(
        f"Generated {result.slots_generated} slots for doctor {doctor_id} "
        f"({start_date} to {end_date}), skipped {result.slots_skipped} populated dates"
    )
    return result


@storage_guard
def latest_slot_date(session: Session, doctor_id: int) -> Optional[date]:
    get_doctor_or_404(session, doctor_id)
    return session.exec(
        select(func.max(AppointmentSlot.slot_date)).where(AppointmentSlot.doctor_id == doctor_id)
    ).one()


@storage_guard
def regenerate(session: Session, doctor_id: int, cancel_appointment_ids: List[int] = None) -> RegenerationResult:
    """
    Rebuild the doctor's future calendar after a schedule change.

    The chosen appointments are cancelled first, then every future AVAILABLE
    slot is deleted and the horizon is generated again. Dates that still hold
    booked or blocked slots are skipped by generation and keep them.
    """
    rules = get_business_rules()
    doctor = get_doctor_or_404(session, doctor_id)
    hospital = session.get(Hospital, doctor.hospital_id)
    today = hospital_today(hospital.timezone if hospital else "UTC")
    result = RegenerationResult()

    for appointment_id in cancel_appointment_ids or []:
        appointment = session.get(Appointment, appointment_id)
        if not appointment or appointment.doctor_id != doctor_id:
            raise ValidationError(f"Appointment {appointment_id} does not belong to doctor {doctor_id}")
        cancel_appointment_in_session(session, appointment, rules.SCHEDULE_CHANGE_CANCEL_REASON)
        result.cancelled += 1

    released = (
        AppointmentSlot.doctor_id == doctor_id,
        AppointmentSlot.slot_date >= today,
        AppointmentSlot.status == SlotStatus.AVAILABLE,
    )
    session.flush()
    session.exec(
        update(Appointment)
        .where(Appointment.slot_id.in_(select(AppointmentSlot.id).where(*released)))
        .values(slot_id=None)
        .execution_options(synchronize_session=False)
    )
    deleted = session.exec(
        delete(AppointmentSlot).where(*released).execution_options(synchronize_session=False)
    )
    result.slots_deleted = deleted.rowcount
    session.commit()
    logger.info(
        f"Regenerating doctor {doctor_id}: cancelled {result.cancelled} appointments, "
        f"deleted {result.slots_deleted} future available slots"
    )

    generated = generate_slots(session, doctor_id, today, today + timedelta(days=rules.REGENERATE_DAYS - 1))
    result.slots_generated = generated.slots_generated
    return result


def _proposed_calendar(
    session: Session,
    doctor: DoctorProfile,
    start_date: date,
    schedules: Optional[List[ScheduleDayInput]],
    shift_config: Optional[ShiftTimingConfig],
    time_off: Optional[Tuple[date, date]],
) -> DoctorCalendar:
    calendar = load_doctor_calendar(session, doctor, start_date)
    if shift_config is not None:
        calendar.shift_config = validate_shift_config(shift_config)
    if schedules is not None:
        calendar.weekly = {}
        for day in schedules:
            shifts = weekday_shifts_from_input(day, calendar.shift_config)
            if shifts.is_working:
                calendar.weekly[day.day_of_week] = shifts
    if time_off is not None:
        calendar.time_off.append(TimeOffRange(time_off[0], time_off[1]))
    return calendar


def weekday_shifts_from_input(day: ScheduleDayInput, config: ShiftTimingConfig) -> WeekdayShifts:
    """Flags win when given; otherwise derive them from the explicit window"""
    if day.morning or day.evening or day.night:
        return WeekdayShifts(day.morning, day.evening, day.night)
    if day.shift_start and day.shift_end:
        return flags_from_window(day.shift_start, day.shift_end, config)
    if day.shift_start or day.shift_end:
        raise ValidationError("Both shift_start and shift_end are required for an explicit window")
    return WeekdayShifts()


@storage_guard
def check_schedule_conflicts(
    session: Session,
    doctor_id: int,
    change_type: str,
    schedules: Optional[List[ScheduleDayInput]] = None,
    shift_config: Optional[ShiftTimingConfig] = None,
    appointment_duration_minutes: Optional[int] = None,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> ConflictReport:
    """Preview the future appointments a proposed change would disturb"""
    doctor = get_doctor_or_404(session, doctor_id)
    hospital = session.get(Hospital, doctor.hospital_id)
    today = hospital_today(hospital.timezone if hospital else "UTC")

    upcoming = session.exec(
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date >= today,
            Appointment.status.in_([AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED]),
        )
        .order_by(Appointment.appointment_date, Appointment.start_time)
    ).all()

    if change_type == "time_off":
        if start_date is None or end_date is None:
            raise ValidationError("start_date and end_date are required for a time off check")
        validate_date_range(start_date, end_date)
        affected = [a for a in upcoming if start_date <= a.appointment_date <= end_date]
    elif change_type == "duration":
        if appointment_duration_minutes is None:
            raise ValidationError("appointment_duration_minutes is required for a duration check")
        validate_duration(appointment_duration_minutes)
        affected = list(upcoming) if appointment_duration_minutes != doctor.appointment_duration_minutes else []
    elif change_type == "schedule":
        calendar = _proposed_calendar(session, doctor, today, schedules, shift_config, None)
        affected = [a for a in upcoming if not _still_covered(calendar, a)]
    else:
        raise ValidationError(f"Unknown change type: {change_type}")

    report = ConflictReport()
    queued = _queued_appointment_ids(session, [a.id for a in affected])
    for appointment in affected:
        report.affected_appointments.append({
            "appointment": appointment,
            "has_queue_entry": appointment.id in queued,
        })

    if change_type != "time_off":
        report.slots_to_delete = session.exec(
            select(func.count(AppointmentSlot.id)).where(
                AppointmentSlot.doctor_id == doctor_id,
                AppointmentSlot.slot_date >= today,
                AppointmentSlot.status == SlotStatus.AVAILABLE,
            )
        ).one()
    return report


def _still_covered(calendar: DoctorCalendar, appointment: Appointment) -> bool:
    """True when the appointment still falls inside a working window"""
    resolution = resolve(calendar, appointment.appointment_date)
    if resolution.is_off:
        return False
    start = appointment.start_time
    end = appointment.end_time
    return any(
        window.start <= start and end <= window.end
        for window in resolution.active_windows
    )


def _queued_appointment_ids(session: Session, appointment_ids: List[int]) -> Set[int]:
    if not appointment_ids:
        return set()
    rows = session.exec(
        select(QueueEntry.appointment_id).where(
            QueueEntry.appointment_id.in_(appointment_ids),
            QueueEntry.status.in_([QueueEntryStatus.WAITING, QueueEntryStatus.WITH_DOCTOR]),
        )
    ).all()
    return set(rows)
