"""
Live per-doctor, per-day patient queue.

Entry lifecycle: WAITING -> WITH_DOCTOR -> COMPLETED | NO_SHOW, and
WAITING -> LEFT. Queue numbers start at 1 for each doctor and day.

Number assignment and ``call_next`` are serialized by a lock per
(doctor, date). Across worker processes the unique
``(doctor_id, queue_date, queue_number)`` key and the conditional
``NOT EXISTS`` update on ``call_next`` keep the same guarantees. An
appointment joins the queue at most once: its SCHEDULED/CONFIRMED status
is moved with a conditional write and ``appointment_id`` is unique.
"""
from datetime import date
from typing import List, Optional, Tuple
import logging
import threading
import weakref

from sqlalchemy import exists, func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from sqlmodel import Session, select

from errors import DoctorBusy, InvalidTransition, NotFound, QueueEmpty, StorageError, ValidationError, storage_guard
from models import (
    Appointment, AppointmentStatus, DoctorCheckin, DoctorDailyStatus, DoctorProfile, Hospital,
    QueueEntry, QueueEntryStatus, QueueEntryType, QueuePriority,
)
from services.schedule_resolver import get_doctor_or_404, hospital_holidays
from services.slot_state_machine import APPOINTMENT_TRANSITIONS, get_appointment_or_404, transition
from utils.clock import hospital_today, utcnow
from validators.business_rules import get_business_rules
from validators.time_validator import get_duration_minutes

logger = logging.getLogger(__name__)

PRIORITY_RANK = {
    QueuePriority.EMERGENCY: 2,
    QueuePriority.URGENT: 1,
    QueuePriority.NORMAL: 0,
}

TERMINAL_ENTRY_STATUSES = (
    QueueEntryStatus.COMPLETED, QueueEntryStatus.NO_SHOW, QueueEntryStatus.LEFT,
)

ARRIVABLE_STATUSES = (AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED)

# Entries vanish once no caller holds the lock
_queue_locks: "weakref.WeakValueDictionary[Tuple[int, date], threading.Lock]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()


def queue_lock(doctor_id: int, queue_date: date) -> threading.Lock:
    with _registry_lock:
        lock = _queue_locks.get((doctor_id, queue_date))
        if lock is None:
            lock = threading.Lock()
            _queue_locks[(doctor_id, queue_date)] = lock
        return lock


def call_order(entries: List[QueueEntry]) -> List[QueueEntry]:
    """Highest priority first, then by queue number"""
    return sorted(entries, key=lambda e: (-PRIORITY_RANK[QueuePriority(e.priority)], e.queue_number))


def _doctor_today(session: Session, doctor: DoctorProfile) -> date:
    hospital = session.get(Hospital, doctor.hospital_id)
    return hospital_today(hospital.timezone if hospital else "UTC")


def _get_entry_or_404(session: Session, entry_id: int) -> QueueEntry:
    entry = session.get(QueueEntry, entry_id)
    if not entry:
        raise NotFound(f"Queue entry {entry_id} not found")
    return entry


def _next_queue_number(session: Session, doctor_id: int, queue_date: date) -> int:
    current = session.exec(
        select(func.max(QueueEntry.queue_number)).where(
            QueueEntry.doctor_id == doctor_id,
            QueueEntry.queue_date == queue_date,
        )
    ).one()
    return (current or 0) + 1


def _entries(session: Session, doctor_id: int, queue_date: date, *statuses: QueueEntryStatus) -> List[QueueEntry]:
    query = select(QueueEntry).where(
        QueueEntry.doctor_id == doctor_id,
        QueueEntry.queue_date == queue_date,
    )
    if statuses:
        query = query.where(QueueEntry.status.in_(statuses))
    return session.exec(query.order_by(QueueEntry.queue_number)).all()


def _arrive_appointment(session: Session, appointment_id: int, target: AppointmentStatus) -> None:
    """Move a SCHEDULED/CONFIRMED appointment to ``target`` with a conditional write"""
    now = utcnow()
    values = {"status": target, "updated_at": now}
    if target == AppointmentStatus.CHECKED_IN:
        values["checked_in_at"] = now
    result = session.exec(
        update(Appointment)
        .where(Appointment.id == appointment_id, Appointment.status.in_(ARRIVABLE_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.rollback()
        appointment = get_appointment_or_404(session, appointment_id)
        raise InvalidTransition(
            f"Appointment {appointment_id} is {appointment.status.value} and cannot move to {target.value}"
        )


def _insert_numbered(session: Session, doctor_id: int, queue_date: date, build_entry, before_insert=None) -> QueueEntry:
    """Assign the next number and commit, retrying when another process won it"""
    retries = get_business_rules().QUEUE_NUMBER_RETRIES
    with queue_lock(doctor_id, queue_date):
        for attempt in range(retries):
            if before_insert is not None:
                before_insert()
            entry = build_entry(_next_queue_number(session, doctor_id, queue_date))
            session.add(entry)
            try:
                session.commit()
                session.refresh(entry)
                return entry
            except IntegrityError:
                session.rollback()
                logger.warning(
                    f"Queue number collision for doctor {doctor_id} on {queue_date} "
                    f"(attempt {attempt + 1}/{retries})"
                )
    raise StorageError(f"Could not assign a queue number for doctor {doctor_id} on {queue_date}")


@storage_guard
def check_in(
    session: Session,
    doctor_id: int,
    queue_date: Optional[date] = None,
    appointment_id: Optional[int] = None,
    walk_in: Optional[dict] = None,
    priority: QueuePriority = QueuePriority.NORMAL,
    notes: Optional[str] = None,
    created_by: Optional[int] = None,
) -> QueueEntry:
    """Add a scheduled patient or a walk-in to the doctor's queue for the day"""
    doctor = get_doctor_or_404(session, doctor_id)
    queue_date = queue_date or _doctor_today(session, doctor)

    if (appointment_id is None) == (walk_in is None):
        raise ValidationError("Provide exactly one of appointment_id or walk_in")

    if appointment_id is not None:
        appointment = get_appointment_or_404(session, appointment_id)
        if appointment.doctor_id != doctor_id:
            raise ValidationError(f"Appointment {appointment_id} is not with doctor {doctor_id}")
        if appointment.appointment_date != queue_date:
            raise ValidationError(f"Appointment {appointment_id} is not scheduled for {queue_date}")
        patient_id = appointment.patient_id
        reason_for_visit = appointment.reason_for_visit

        def build_entry(number: int) -> QueueEntry:
            return QueueEntry(
                doctor_id=doctor_id,
                hospital_id=doctor.hospital_id,
                queue_date=queue_date,
                queue_number=number,
                appointment_id=appointment_id,
                patient_id=patient_id,
                entry_type=QueueEntryType.SCHEDULED,
                reason_for_visit=reason_for_visit,
                priority=priority,
                notes=notes,
                created_by=created_by,
            )

        def before_insert():
            _arrive_appointment(session, appointment_id, AppointmentStatus.CHECKED_IN)
    else:
        if not walk_in.get("name") and not walk_in.get("patient_id"):
            raise ValidationError("Walk-in patients need a name or a patient_id")

        def build_entry(number: int) -> QueueEntry:
            return QueueEntry(
                doctor_id=doctor_id,
                hospital_id=doctor.hospital_id,
                queue_date=queue_date,
                queue_number=number,
                patient_id=walk_in.get("patient_id"),
                entry_type=QueueEntryType.WALK_IN,
                walk_in_name=walk_in.get("name"),
                walk_in_phone=walk_in.get("phone"),
                reason_for_visit=walk_in.get("reason"),
                priority=priority,
                notes=notes,
                created_by=created_by,
            )
        before_insert = None

    entry = _insert_numbered(session, doctor_id, queue_date, build_entry, before_insert)
    logger.info(
        f"Checked in #{entry.queue_number} ({entry.entry_type.value}, {entry.priority.value}) "
        f"for doctor {doctor_id} on {queue_date}"
    )
    return entry


@storage_guard
def call_next(session: Session, doctor_id: int, queue_date: Optional[date] = None) -> QueueEntry:
    """Move the next waiting patient in to the doctor"""
    doctor = get_doctor_or_404(session, doctor_id)
    queue_date = queue_date or _doctor_today(session, doctor)

    with queue_lock(doctor_id, queue_date):
        if _entries(session, doctor_id, queue_date, QueueEntryStatus.WITH_DOCTOR):
            raise DoctorBusy(f"Doctor {doctor_id} already has a patient in consultation")

        waiting = call_order(_entries(session, doctor_id, queue_date, QueueEntryStatus.WAITING))
        if not waiting:
            raise QueueEmpty(f"No patients waiting for doctor {doctor_id} on {queue_date}")
        entry = waiting[0]

        busy = aliased(QueueEntry)
        result = session.exec(
            update(QueueEntry)
            .where(
                QueueEntry.id == entry.id,
                QueueEntry.status == QueueEntryStatus.WAITING,
                ~exists().where(
                    busy.doctor_id == doctor_id,
                    busy.queue_date == queue_date,
                    busy.status == QueueEntryStatus.WITH_DOCTOR,
                ),
            )
            .values(status=QueueEntryStatus.WITH_DOCTOR, with_doctor_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            logger.warning(f"call_next for doctor {doctor_id} lost a race on entry {entry.id}")
            raise DoctorBusy(f"Doctor {doctor_id} already has a patient in consultation")

        if entry.appointment_id is not None:
            appointment = session.get(Appointment, entry.appointment_id)
            if appointment is not None and appointment.status == AppointmentStatus.CHECKED_IN:
                session.add(transition(appointment, AppointmentStatus.IN_PROGRESS))

        session.commit()
        session.refresh(entry)

    logger.info(f"Doctor {doctor_id} called #{entry.queue_number} on {queue_date}")
    return entry


def _finish(
    session: Session,
    entry_id: int,
    expected: QueueEntryStatus,
    target: QueueEntryStatus,
    appointment_target: AppointmentStatus,
) -> QueueEntry:
    entry = _get_entry_or_404(session, entry_id)
    now = utcnow()
    values = {"status": target, "completed_at": now}
    if target == QueueEntryStatus.COMPLETED:
        values["wait_time_minutes"] = get_duration_minutes(entry.checked_in_at, entry.with_doctor_at or now)
        values["consultation_time_minutes"] = get_duration_minutes(entry.with_doctor_at or now, now)

    result = session.exec(
        update(QueueEntry)
        .where(QueueEntry.id == entry_id, QueueEntry.status == expected)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.rollback()
        entry = _get_entry_or_404(session, entry_id)
        raise InvalidTransition(
            f"Queue entry {entry_id} is {entry.status.value}, expected {expected.value}"
        )

    if entry.appointment_id is not None:
        appointment = session.get(Appointment, entry.appointment_id)
        if appointment is not None and appointment_target in APPOINTMENT_TRANSITIONS[AppointmentStatus(appointment.status)]:
            session.add(transition(appointment, appointment_target))

    session.commit()
    session.refresh(entry)
    logger.info(f"Queue entry {entry_id} (#{entry.queue_number}) -> {target.value}")
    return entry


@storage_guard
def complete(session: Session, entry_id: int) -> QueueEntry:
    return _finish(session, entry_id, QueueEntryStatus.WITH_DOCTOR, QueueEntryStatus.COMPLETED, AppointmentStatus.COMPLETED)


@storage_guard
def no_show(session: Session, entry_id: int) -> QueueEntry:
    return _finish(session, entry_id, QueueEntryStatus.WITH_DOCTOR, QueueEntryStatus.NO_SHOW, AppointmentStatus.NO_SHOW)


@storage_guard
def leave(session: Session, entry_id: int) -> QueueEntry:
    """Patient left before being called"""
    return _finish(session, entry_id, QueueEntryStatus.WAITING, QueueEntryStatus.LEFT, AppointmentStatus.NO_SHOW)


@storage_guard
def update_priority(session: Session, entry_id: int, priority: QueuePriority) -> QueueEntry:
    entry = _get_entry_or_404(session, entry_id)
    result = session.exec(
        update(QueueEntry)
        .where(QueueEntry.id == entry_id, QueueEntry.status == QueueEntryStatus.WAITING)
        .values(priority=priority)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        session.rollback()
        raise InvalidTransition(f"Priority can only change while waiting (entry {entry_id})")
    session.commit()
    session.refresh(entry)
    logger.info(f"Queue entry {entry_id} priority -> {priority.value}")
    return entry


@storage_guard
def mark_appointment_no_show(session: Session, appointment_id: int) -> QueueEntry:
    """Record a scheduled patient who never arrived"""
    appointment = get_appointment_or_404(session, appointment_id)
    doctor_id = appointment.doctor_id
    hospital_id = appointment.hospital_id
    queue_date = appointment.appointment_date
    patient_id = appointment.patient_id
    reason_for_visit = appointment.reason_for_visit

    def build_entry(number: int) -> QueueEntry:
        now = utcnow()
        return QueueEntry(
            doctor_id=doctor_id,
            hospital_id=hospital_id,
            queue_date=queue_date,
            queue_number=number,
            appointment_id=appointment_id,
            patient_id=patient_id,
            entry_type=QueueEntryType.SCHEDULED,
            reason_for_visit=reason_for_visit,
            status=QueueEntryStatus.NO_SHOW,
            checked_in_at=now,
            completed_at=now,
        )

    def before_insert():
        _arrive_appointment(session, appointment_id, AppointmentStatus.NO_SHOW)

    entry = _insert_numbered(session, doctor_id, queue_date, build_entry, before_insert)
    logger.info(f"Appointment {appointment_id} marked NO_SHOW as queue #{entry.queue_number}")
    return entry


def _set_doctor_presence(session: Session, doctor_id: int, day: Optional[date], checked_in: bool) -> DoctorCheckin:
    doctor = get_doctor_or_404(session, doctor_id)
    day = day or _doctor_today(session, doctor)
    record = session.exec(
        select(DoctorCheckin).where(DoctorCheckin.doctor_id == doctor_id, DoctorCheckin.checkin_date == day)
    ).first()

    if checked_in:
        if record is None:
            record = DoctorCheckin(doctor_id=doctor_id, checkin_date=day)
        record.status = DoctorDailyStatus.CHECKED_IN
        record.checked_in_at = utcnow()
        record.checked_out_at = None
    else:
        if record is None or record.status != DoctorDailyStatus.CHECKED_IN:
            raise InvalidTransition(f"Doctor {doctor_id} is not checked in on {day}")
        record.status = DoctorDailyStatus.CHECKED_OUT
        record.checked_out_at = utcnow()

    session.add(record)
    session.commit()
    session.refresh(record)
    logger.info(f"Doctor {doctor_id} {record.status.value} on {day}")
    return record


@storage_guard
def doctor_check_in(session: Session, doctor_id: int, day: Optional[date] = None) -> DoctorCheckin:
    return _set_doctor_presence(session, doctor_id, day, True)


@storage_guard
def doctor_check_out(session: Session, doctor_id: int, day: Optional[date] = None) -> DoctorCheckin:
    return _set_doctor_presence(session, doctor_id, day, False)


@storage_guard
def daily_queue(session: Session, doctor_id: int, queue_date: Optional[date] = None) -> dict:
    """Everything the reception desk shows for one doctor and day"""
    doctor = get_doctor_or_404(session, doctor_id)
    queue_date = queue_date or _doctor_today(session, doctor)

    entries = _entries(session, doctor_id, queue_date)
    waiting = call_order([e for e in entries if e.status == QueueEntryStatus.WAITING])
    with_doctor = next((e for e in entries if e.status == QueueEntryStatus.WITH_DOCTOR), None)
    finished = [e for e in entries if e.status in TERMINAL_ENTRY_STATUSES]

    checkin = session.exec(
        select(DoctorCheckin).where(
            DoctorCheckin.doctor_id == doctor_id, DoctorCheckin.checkin_date == queue_date,
        )
    ).first()

    queued_ids = {e.appointment_id for e in entries if e.appointment_id is not None}
    scheduled = session.exec(
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == queue_date,
            Appointment.status.in_([AppointmentStatus.SCHEDULED, AppointmentStatus.CONFIRMED]),
        )
        .order_by(Appointment.start_time)
    ).all()

    wait_times = [e.wait_time_minutes for e in finished if e.wait_time_minutes is not None]
    holiday = hospital_holidays(session, doctor.hospital_id).get((queue_date.month, queue_date.day))

    return {
        "date": queue_date,
        "doctor_id": doctor_id,
        "is_checked_in": checkin is not None and checkin.status == DoctorDailyStatus.CHECKED_IN,
        "with_doctor": with_doctor,
        "queue": waiting,
        "completed": finished,
        "scheduled": [
            {
                "appointment_id": a.id,
                "patient_id": a.patient_id,
                "start_time": a.start_time,
                "end_time": a.end_time,
                "status": a.status,
                "is_checked_in": a.id in queued_ids,
            }
            for a in scheduled
        ],
        "stats": {
            "total_waiting": len(waiting),
            "total_completed": sum(1 for e in finished if e.status == QueueEntryStatus.COMPLETED),
            "total_no_show": sum(1 for e in finished if e.status == QueueEntryStatus.NO_SHOW),
            "total_left": sum(1 for e in finished if e.status == QueueEntryStatus.LEFT),
            "total_scheduled": len(scheduled),
            "average_wait_minutes": round(sum(wait_times) / len(wait_times), 1) if wait_times else None,
        },
        "is_hospital_holiday": holiday is not None,
        "holiday_name": holiday,
    }


@storage_guard
def public_status(session: Session, status_token: str) -> dict:
    """Position of one entry for the patient-facing status page"""
    entry = session.exec(select(QueueEntry).where(QueueEntry.status_token == status_token)).first()
    if not entry:
        raise NotFound("Queue entry not found")
    doctor = get_doctor_or_404(session, entry.doctor_id)
    if entry.queue_date != _doctor_today(session, doctor):
        raise ValidationError("This queue status link is only valid on its queue date")

    waiting = call_order(_entries(session, entry.doctor_id, entry.queue_date, QueueEntryStatus.WAITING))
    with_doctor = _entries(session, entry.doctor_id, entry.queue_date, QueueEntryStatus.WITH_DOCTOR)

    ahead = 0
    behind = 0
    if entry.status == QueueEntryStatus.WAITING:
        position = [e.id for e in waiting].index(entry.id)
        ahead = position
        behind = len(waiting) - position - 1

    duration = doctor.appointment_duration_minutes or get_business_rules().DEFAULT_CONSULTATION_MINUTES
    return {
        "queue_number": entry.queue_number,
        "status": entry.status,
        "queue_date": entry.queue_date,
        "doctor_name": doctor.full_name,
        "now_serving": with_doctor[0].queue_number if with_doctor else None,
        "patients_ahead": ahead,
        "patients_behind": behind,
        "estimated_wait_minutes": ahead * duration,
    }
