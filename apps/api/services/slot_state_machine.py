"""
Slot and appointment lifecycle.

Slot:        AVAILABLE -> BOOKED -> AVAILABLE (cancel)
             AVAILABLE -> BLOCKED -> AVAILABLE (unblock)
Appointment: see APPOINTMENT_TRANSITIONS.

Every write that can race (book, block, unblock, release) is a single
conditional UPDATE keyed on the expected current status; a zero row count
means another request got there first.
"""
from datetime import date
from typing import List, Optional, Tuple
import logging

from sqlalchemy import update
from sqlmodel import Session, select

from errors import InvalidTransition, NotFound, SlotUnavailable, ValidationError, storage_guard
from models import (
    Appointment, AppointmentSlot, AppointmentStatus, DoctorTimeOff, Hospital, QueueEntry,
    QueueEntryStatus, SlotStatus,
)
from services.schedule_resolver import get_doctor_or_404
from utils.clock import hospital_now, local_datetime, utcnow
from validators.business_rules import get_business_rules
from validators.time_validator import time_to_minutes, validate_date_range

logger = logging.getLogger(__name__)

APPOINTMENT_TRANSITIONS = {
    AppointmentStatus.SCHEDULED: {
        AppointmentStatus.CONFIRMED, AppointmentStatus.CHECKED_IN,
        AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CONFIRMED: {
        AppointmentStatus.CHECKED_IN, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.CHECKED_IN: {
        AppointmentStatus.IN_PROGRESS, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.IN_PROGRESS: {
        AppointmentStatus.COMPLETED, AppointmentStatus.NO_SHOW,
    },
    AppointmentStatus.COMPLETED: set(),
    AppointmentStatus.CANCELLED: set(),
    AppointmentStatus.NO_SHOW: set(),
}

TERMINAL_STATUSES = {
    AppointmentStatus.COMPLETED, AppointmentStatus.CANCELLED, AppointmentStatus.NO_SHOW,
}

CANCELLABLE_STATUSES = {
    AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED, AppointmentStatus.CHECKED_IN,
}


def transition(appointment: Appointment, target: AppointmentStatus) -> Appointment:
    """Move an appointment to ``target`` or raise InvalidTransition"""
    current = AppointmentStatus(appointment.status)
    if target not in APPOINTMENT_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Appointment {appointment.id} cannot move from {current.value} to {target.value}"
        )
    now = utcnow()
    appointment.status = target
    appointment.updated_at = now
    if target == AppointmentStatus.CHECKED_IN:
        appointment.checked_in_at = now
    elif target == AppointmentStatus.COMPLETED:
        appointment.completed_at = now
    elif target == AppointmentStatus.CANCELLED:
        appointment.cancelled_at = now
    return appointment


def get_appointment_or_404(session: Session, appointment_id: int) -> Appointment:
    appointment = session.get(Appointment, appointment_id)
    if not appointment:
        raise NotFound(f"Appointment {appointment_id} not found")
    return appointment


def get_slot_or_404(session: Session, slot_id: int) -> AppointmentSlot:
    slot = session.get(AppointmentSlot, slot_id)
    if not slot:
        raise NotFound(f"Slot {slot_id} not found")
    return slot


def _slot_status_update(session: Session, slot_id: int, expected: SlotStatus, **values) -> int:
    """Conditional status write; returns the number of rows changed"""
    values.setdefault("updated_at", utcnow())
    result = session.exec(
        update(AppointmentSlot)
        .where(AppointmentSlot.id == slot_id, AppointmentSlot.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def _ensure_not_past(session: Session, slot: AppointmentSlot) -> None:
    hospital = session.get(Hospital, slot.hospital_id)
    tz_name = hospital.timezone if hospital else "UTC"
    starts_at = local_datetime(slot.slot_date, time_to_minutes(slot.start_time), tz_name)
    if starts_at <= hospital_now(tz_name):
        raise ValidationError("Cannot book a slot that has already started")


def _claim_slot(
    session: Session,
    slot_id: int,
    patient_id: int,
    reason_for_visit: Optional[str] = None,
    notes: Optional[str] = None,
    booked_by: Optional[int] = None,
) -> Appointment:
    """Book inside the caller's transaction; nothing is committed here"""
    slot = get_slot_or_404(session, slot_id)
    _ensure_not_past(session, slot)

    claimed = _slot_status_update(
        session, slot_id, SlotStatus.AVAILABLE, status=SlotStatus.BOOKED, patient_id=patient_id,
    )
    if claimed == 0:
        session.rollback()
        logger.warning(f"Slot {slot_id} is no longer available for patient {patient_id}")
        raise SlotUnavailable(f"Slot {slot_id} is not available")

    appointment = Appointment(
        slot_id=slot.id,
        patient_id=patient_id,
        doctor_id=slot.doctor_id,
        hospital_id=slot.hospital_id,
        appointment_date=slot.slot_date,
        start_time=slot.start_time,
        end_time=slot.end_time,
        status=AppointmentStatus.SCHEDULED,
        reason_for_visit=reason_for_visit,
        notes=notes,
        booked_by=booked_by,
    )
    session.add(appointment)
    session.flush()
    session.exec(
        update(AppointmentSlot)
        .where(AppointmentSlot.id == slot_id)
        .values(appointment_id=appointment.id)
        .execution_options(synchronize_session=False)
    )
    return appointment


def _leave_waiting_entries(session: Session, appointment_id: int) -> int:
    result = session.exec(
        update(QueueEntry)
        .where(
            QueueEntry.appointment_id == appointment_id,
            QueueEntry.status == QueueEntryStatus.WAITING,
        )
        .values(status=QueueEntryStatus.LEFT, completed_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def cancel_appointment_in_session(
    session: Session,
    appointment: Appointment,
    reason: Optional[str] = None,
    release_to: SlotStatus = SlotStatus.AVAILABLE,
    block_reason: Optional[str] = None,
) -> Appointment:
    """Cancel without committing; the slot is released or blocked"""
    current = AppointmentStatus(appointment.status)
    if current in TERMINAL_STATUSES:
        raise InvalidTransition(f"Appointment {appointment.id} is already {current.value}")
    if current == AppointmentStatus.IN_PROGRESS:
        raise InvalidTransition(f"Appointment {appointment.id} is in consultation and cannot be cancelled")

    transition(appointment, AppointmentStatus.CANCELLED)
    appointment.cancellation_reason = reason
    session.add(appointment)

    session.exec(
        update(AppointmentSlot)
        .where(
            AppointmentSlot.id == appointment.slot_id,
            AppointmentSlot.appointment_id == appointment.id,
        )
        .values(
            status=release_to,
            appointment_id=None,
            patient_id=None,
            block_reason=block_reason,
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    left = _leave_waiting_entries(session, appointment.id)
    if left:
        logger.info(f"Moved {left} waiting queue entries of appointment {appointment.id} to LEFT")
    return appointment


@storage_guard
def book_slot(
    session: Session,
    slot_id: int,
    patient_id: int,
    reason_for_visit: Optional[str] = None,
    notes: Optional[str] = None,
    booked_by: Optional[int] = None,
) -> Appointment:
    """Atomically claim an AVAILABLE slot and create a SCHEDULED appointment"""
    appointment = _claim_slot(session, slot_id, patient_id, reason_for_visit, notes, booked_by)
    session.commit()
    session.refresh(appointment)
    logger.info(f"Booked slot {slot_id} for patient {patient_id} (appointment {appointment.id})")
    return appointment


@storage_guard
def cancel_appointment(session: Session, appointment_id: int, reason: Optional[str] = None) -> Appointment:
    appointment = get_appointment_or_404(session, appointment_id)
    cancel_appointment_in_session(session, appointment, reason)
    session.commit()
    session.refresh(appointment)
    logger.info(f"Cancelled appointment {appointment_id}, slot {appointment.slot_id} released")
    return appointment


@storage_guard
def reschedule_appointment(session: Session, appointment_id: int, new_slot_id: int) -> Appointment:
    """Book the new slot and cancel the old appointment in one transaction"""
    old = get_appointment_or_404(session, appointment_id)
    if AppointmentStatus(old.status) not in (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED):
        raise InvalidTransition(f"Appointment {appointment_id} cannot be rescheduled from {old.status}")
    if old.slot_id == new_slot_id:
        raise ValidationError("New slot is the current slot")

    patient_id = old.patient_id
    new_appointment = _claim_slot(
        session, new_slot_id, patient_id, old.reason_for_visit, old.notes, old.booked_by,
    )
    cancel_appointment_in_session(session, old, f"Rescheduled to appointment {new_appointment.id}")
    session.commit()
    session.refresh(new_appointment)
    logger.info(f"Rescheduled appointment {appointment_id} to slot {new_slot_id} ({new_appointment.id})")
    return new_appointment


@storage_guard
def block_slot(session: Session, slot_id: int, reason: Optional[str] = None) -> AppointmentSlot:
    slot = get_slot_or_404(session, slot_id)
    if _slot_status_update(session, slot_id, SlotStatus.AVAILABLE, status=SlotStatus.BLOCKED, block_reason=reason) == 0:
        session.rollback()
        slot = get_slot_or_404(session, slot_id)
        if slot.status == SlotStatus.BOOKED:
            raise InvalidTransition(f"Slot {slot_id} is occupied by appointment {slot.appointment_id}")
        raise InvalidTransition(f"Slot {slot_id} is already {slot.status.value}")
    session.commit()
    session.refresh(slot)
    logger.info(f"Blocked slot {slot_id}: {reason or 'no reason'}")
    return slot


@storage_guard
def unblock_slot(session: Session, slot_id: int) -> AppointmentSlot:
    slot = get_slot_or_404(session, slot_id)
    if slot.block_reason == get_business_rules().TIME_OFF_BLOCK_REASON and _covered_by_time_off(
        session, slot.doctor_id, slot.slot_date
    ):
        raise InvalidTransition(f"Slot {slot_id} is blocked by doctor time off")
    if _slot_status_update(session, slot_id, SlotStatus.BLOCKED, status=SlotStatus.AVAILABLE, block_reason=None) == 0:
        session.rollback()
        slot = get_slot_or_404(session, slot_id)
        raise InvalidTransition(f"Slot {slot_id} is {slot.status.value}, not BLOCKED")
    session.commit()
    session.refresh(slot)
    logger.info(f"Unblocked slot {slot_id}")
    return slot


def _covered_by_time_off(session: Session, doctor_id: int, day: date) -> bool:
    return session.exec(
        select(DoctorTimeOff.id).where(
            DoctorTimeOff.doctor_id == doctor_id,
            DoctorTimeOff.start_date <= day,
            DoctorTimeOff.end_date >= day,
        )
    ).first() is not None


def _appointment_step(session: Session, appointment_id: int, target: AppointmentStatus) -> Appointment:
    appointment = get_appointment_or_404(session, appointment_id)
    transition(appointment, target)
    session.add(appointment)
    session.commit()
    session.refresh(appointment)
    logger.info(f"Appointment {appointment_id} -> {target.value}")
    return appointment


@storage_guard
def confirm_appointment(session: Session, appointment_id: int) -> Appointment:
    return _appointment_step(session, appointment_id, AppointmentStatus.CONFIRMED)


@storage_guard
def mark_checked_in(session: Session, appointment_id: int) -> Appointment:
    return _appointment_step(session, appointment_id, AppointmentStatus.CHECKED_IN)


@storage_guard
def mark_in_progress(session: Session, appointment_id: int) -> Appointment:
    return _appointment_step(session, appointment_id, AppointmentStatus.IN_PROGRESS)


@storage_guard
def mark_completed(session: Session, appointment_id: int) -> Appointment:
    return _appointment_step(session, appointment_id, AppointmentStatus.COMPLETED)


@storage_guard
def mark_no_show(session: Session, appointment_id: int) -> Appointment:
    return _appointment_step(session, appointment_id, AppointmentStatus.NO_SHOW)


@storage_guard
def add_time_off(
    session: Session,
    doctor_id: int,
    start_date: date,
    end_date: date,
    reason: Optional[str] = None,
) -> Tuple[DoctorTimeOff, List[Appointment]]:
    """
    Record time off, cancel the appointments booked inside it and block every
    slot in the range. Cancelled appointments stay as history with
    ``cancelled_by_time_off`` set and are returned to the caller.
    """
    rules = get_business_rules()
    validate_date_range(start_date, end_date)
    get_doctor_or_404(session, doctor_id)

    time_off = DoctorTimeOff(doctor_id=doctor_id, start_date=start_date, end_date=end_date, reason=reason)
    session.add(time_off)
    session.flush()

    slots = session.exec(
        select(AppointmentSlot).where(
            AppointmentSlot.doctor_id == doctor_id,
            AppointmentSlot.slot_date >= start_date,
            AppointmentSlot.slot_date <= end_date,
        )
    ).all()

    cancelled: List[Appointment] = []
    blocked = 0
    for slot in slots:
        if slot.status == SlotStatus.BOOKED and slot.appointment_id is not None:
            appointment = session.get(Appointment, slot.appointment_id)
            if appointment and AppointmentStatus(appointment.status) in CANCELLABLE_STATUSES:
                cancel_appointment_in_session(
                    session,
                    appointment,
                    f"Doctor time off: {reason or rules.DEFAULT_TIME_OFF_REASON}",
                    release_to=SlotStatus.BLOCKED,
                    block_reason=rules.TIME_OFF_BLOCK_REASON,
                )
                appointment.cancelled_by_time_off = True
                appointment.time_off_id = time_off.id
                cancelled.append(appointment)
                blocked += 1
        elif slot.status == SlotStatus.AVAILABLE:
            blocked += _slot_status_update(
                session, slot.id, SlotStatus.AVAILABLE,
                status=SlotStatus.BLOCKED, block_reason=rules.TIME_OFF_BLOCK_REASON,
            )

    session.commit()
    session.refresh(time_off)
    for appointment in cancelled:
        session.refresh(appointment)
    logger.info(
        f"Time off {start_date} to {end_date} for doctor {doctor_id}: "
        f"cancelled {len(cancelled)} appointments, blocked {blocked} slots"
    )
    return time_off, cancelled


@storage_guard
def remove_time_off(session: Session, time_off_id: int) -> int:
    """Delete time off and reopen its slots on dates nothing else covers"""
    rules = get_business_rules()
    time_off = session.get(DoctorTimeOff, time_off_id)
    if not time_off:
        raise NotFound(f"Time off {time_off_id} not found")

    doctor_id = time_off.doctor_id
    start_date, end_date = time_off.start_date, time_off.end_date
    # Cancelled appointments keep cancelled_by_time_off as their history
    session.exec(
        update(Appointment)
        .where(Appointment.time_off_id == time_off_id)
        .values(time_off_id=None)
        .execution_options(synchronize_session=False)
    )
    session.delete(time_off)
    session.flush()

    others = session.exec(
        select(DoctorTimeOff).where(
            DoctorTimeOff.doctor_id == doctor_id,
            DoctorTimeOff.end_date >= start_date,
            DoctorTimeOff.start_date <= end_date,
        )
    ).all()

    slots = session.exec(
        select(AppointmentSlot).where(
            AppointmentSlot.doctor_id == doctor_id,
            AppointmentSlot.slot_date >= start_date,
            AppointmentSlot.slot_date <= end_date,
            AppointmentSlot.status == SlotStatus.BLOCKED,
            AppointmentSlot.block_reason == rules.TIME_OFF_BLOCK_REASON,
        )
    ).all()

    reopened = 0
    for slot in slots:
        if any(o.start_date <= slot.slot_date <= o.end_date for o in others):
            continue
        reopened += _slot_status_update(
            session, slot.id, SlotStatus.BLOCKED, status=SlotStatus.AVAILABLE, block_reason=None,
        )

    session.commit()
    logger.info(f"Removed time off {time_off_id} for doctor {doctor_id}, reopened {reopened} slots")
    return reopened


@storage_guard
def list_time_off(session: Session, doctor_id: int) -> List[DoctorTimeOff]:
    get_doctor_or_404(session, doctor_id)
    return session.exec(
        select(DoctorTimeOff)
        .where(DoctorTimeOff.doctor_id == doctor_id)
        .order_by(DoctorTimeOff.start_date)
    ).all()
