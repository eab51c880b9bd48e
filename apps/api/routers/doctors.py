from fastapi import APIRouter, Depends, status
from sqlmodel import Session, select
from database import get_session
from errors import NotFound
from models import DoctorProfile, DoctorSchedule, Hospital
from schemas import (
    DoctorCreate, DoctorResponse, DoctorScheduleResponse, DurationUpdate, ScheduleUpdate,
    TimeOffCreate, TimeOffResponse, TimeOffResult,
)
from services.schedule_resolver import (
    WeekdayShifts, get_doctor_or_404, merge_windows, resolve_shift_config, validate_shift_config,
    windows_from_flags,
)
from services.slot_generator import validate_duration, weekday_shifts_from_input
from services import slot_state_machine
from utils.cache import ScheduleCache
from utils.clock import utcnow
from typing import List
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/doctors", tags=["Doctors"])


def _schedule_view(session: Session, doctor: DoctorProfile) -> dict:
    """Weekly pattern with flags and the merged windows they stand for"""
    config = resolve_shift_config(doctor, session.get(Hospital, doctor.hospital_id))
    rows = {
        row.day_of_week: row
        for row in session.exec(
            select(DoctorSchedule).where(DoctorSchedule.doctor_id == doctor.id)
        ).all()
    }
    schedules = []
    for day_of_week in range(7):
        row = rows.get(day_of_week)
        shifts = WeekdayShifts(row.morning, row.evening, row.night) if row else WeekdayShifts()
        schedules.append({
            "day_of_week": day_of_week,
            "is_working": shifts.is_working,
            "morning": shifts.morning,
            "evening": shifts.evening,
            "night": shifts.night,
            "windows": [
                {"start": w.start, "end": w.end, "periods": [p.value for p in w.periods]}
                for w in merge_windows(windows_from_flags(shifts, config))
            ],
        })
    return {
        "doctor_id": doctor.id,
        "schedules": schedules,
        "shift_timing_config": config.model_dump(),
    }


@router.post("", response_model=DoctorResponse, status_code=status.HTTP_201_CREATED)
def create_doctor(doctor_data: DoctorCreate, session: Session = Depends(get_session)):
    """Register a doctor profile under a hospital"""
    if not session.get(Hospital, doctor_data.hospital_id):
        raise NotFound(f"Hospital {doctor_data.hospital_id} not found")
    validate_duration(doctor_data.appointment_duration_minutes)
    shift_config = None
    if doctor_data.shift_timing_config is not None:
        shift_config = validate_shift_config(doctor_data.shift_timing_config).model_dump()

    doctor = DoctorProfile(
        hospital_id=doctor_data.hospital_id,
        full_name=doctor_data.full_name,
        specialization=doctor_data.specialization,
        appointment_duration_minutes=doctor_data.appointment_duration_minutes,
        shift_timing_config=shift_config,
    )
    session.add(doctor)
    session.commit()
    session.refresh(doctor)
    logger.info(f"Created doctor {doctor.id} in hospital {doctor.hospital_id}")
    return doctor


@router.get("/{doctor_id}", response_model=DoctorResponse)
def get_doctor(doctor_id: int, session: Session = Depends(get_session)):
    return get_doctor_or_404(session, doctor_id)


@router.put("/{doctor_id}/duration", response_model=DoctorResponse)
def update_duration(doctor_id: int, update: DurationUpdate, session: Session = Depends(get_session)):
    """Change slot length; existing slots keep theirs until regenerated"""
    doctor = get_doctor_or_404(session, doctor_id)
    doctor.appointment_duration_minutes = validate_duration(update.appointment_duration_minutes)
    session.add(doctor)
    session.commit()
    session.refresh(doctor)
    logger.info(f"Doctor {doctor_id} appointment duration -> {doctor.appointment_duration_minutes} min")
    return doctor


@router.get("/{doctor_id}/schedule", response_model=DoctorScheduleResponse)
def get_schedule(doctor_id: int, session: Session = Depends(get_session)):
    """Get the weekly schedule (cached)"""
    cached = ScheduleCache.get_schedule(doctor_id)
    if cached is not None:
        return cached

    doctor = get_doctor_or_404(session, doctor_id)
    view = _schedule_view(session, doctor)
    ScheduleCache.set_schedule(doctor_id, view)
    return view


@router.put("/{doctor_id}/schedule", response_model=DoctorScheduleResponse)
def update_schedule(doctor_id: int, update: ScheduleUpdate, session: Session = Depends(get_session)):
    """
    Replace weekly schedule rows for the given weekdays.

    Each day may be sent as period flags or as an explicit shift_start /
    shift_end window, which is converted to the periods it overlaps.
    """
    doctor = get_doctor_or_404(session, doctor_id)
    if update.shift_timing_config is not None:
        doctor.shift_timing_config = validate_shift_config(update.shift_timing_config).model_dump()
        session.add(doctor)
    config = resolve_shift_config(doctor, session.get(Hospital, doctor.hospital_id))

    existing = {
        row.day_of_week: row
        for row in session.exec(
            select(DoctorSchedule).where(DoctorSchedule.doctor_id == doctor_id)
        ).all()
    }
    for day in update.schedules:
        shifts = weekday_shifts_from_input(day, config)
        row = existing.get(day.day_of_week) or DoctorSchedule(doctor_id=doctor_id, day_of_week=day.day_of_week)
        row.morning = shifts.morning
        row.evening = shifts.evening
        row.night = shifts.night
        row.is_working = shifts.is_working
        row.updated_at = utcnow()
        session.add(row)

    session.commit()
    session.refresh(doctor)
    ScheduleCache.invalidate_schedule(doctor_id)
    logger.info(f"Updated weekly schedule for doctor {doctor_id} ({len(update.schedules)} days)")
    return _schedule_view(session, doctor)


@router.get("/{doctor_id}/time-off", response_model=List[TimeOffResponse])
def list_time_off(doctor_id: int, session: Session = Depends(get_session)):
    return slot_state_machine.list_time_off(session, doctor_id)


@router.post("/{doctor_id}/time-off", response_model=TimeOffResult, status_code=status.HTTP_201_CREATED)
def add_time_off(doctor_id: int, time_off: TimeOffCreate, session: Session = Depends(get_session)):
    """Add time off; appointments booked inside it are cancelled and returned"""
    record, cancelled = slot_state_machine.add_time_off(
        session, doctor_id, time_off.start_date, time_off.end_date, time_off.reason
    )
    return {"time_off": record, "cancelled_appointments": cancelled}


@router.delete("/time-off/{time_off_id}")
def remove_time_off(time_off_id: int, session: Session = Depends(get_session)):
    reopened = slot_state_machine.remove_time_off(session, time_off_id)
    return {"message": "Time off removed", "slots_reopened": reopened}
