"""Live queue: numbering, call order, consultations and the public status view"""
import gc
import threading
from datetime import timedelta

import pytest
from sqlmodel import Session, select

from errors import DoctorBusy, InvalidTransition, NotFound, QueueEmpty, ValidationError
from models import (
    AppointmentSlot, AppointmentStatus, DoctorDailyStatus, QueueEntry, QueueEntryStatus, QueueEntryType,
    QueuePriority,
)
from services import queue_coordinator, slot_generator, slot_state_machine
from utils.clock import as_utc, hospital_today, utcnow


def walk_in(session, doctor, day, name, priority=QueuePriority.NORMAL):
    return queue_coordinator.check_in(
        session, doctor.id, queue_date=day, walk_in={"name": name}, priority=priority,
    )


def booked_appointment(session, doctor, day, index=0, patient_id=21):
    slot_generator.generate_slots(session, doctor.id, day, day)
    slot = session.exec(
        select(AppointmentSlot)
        .where(AppointmentSlot.doctor_id == doctor.id, AppointmentSlot.slot_date == day)
        .order_by(AppointmentSlot.start_time)
    ).all()[index]
    return slot_state_machine.book_slot(session, slot.id, patient_id=patient_id, reason_for_visit="Cough")


def test_numbers_start_at_one_and_emergencies_go_first(session, doctor, next_monday):
    entries = [walk_in(session, doctor, next_monday, name) for name in ("Asha", "Ravi", "Kiran")]
    emergency = walk_in(session, doctor, next_monday, "Devi", QueuePriority.EMERGENCY)

    assert [e.queue_number for e in entries] == [1, 2, 3]
    assert emergency.queue_number == 4
    assert {e.entry_type for e in entries} == {QueueEntryType.WALK_IN}

    called = queue_coordinator.call_next(session, doctor.id, next_monday)
    assert called.id == emergency.id
    assert called.status == QueueEntryStatus.WITH_DOCTOR
    assert called.with_doctor_at is not None

    with pytest.raises(DoctorBusy):
        queue_coordinator.call_next(session, doctor.id, next_monday)

    queue_coordinator.complete(session, called.id)
    assert queue_coordinator.call_next(session, doctor.id, next_monday).queue_number == 1


def test_urgent_beats_normal_but_not_emergency(session, doctor, next_monday):
    normal = walk_in(session, doctor, next_monday, "Asha")
    urgent = walk_in(session, doctor, next_monday, "Ravi", QueuePriority.URGENT)
    emergency = walk_in(session, doctor, next_monday, "Kiran", QueuePriority.EMERGENCY)

    order = queue_coordinator.call_order([normal, urgent, emergency])

    assert [e.id for e in order] == [emergency.id, urgent.id, normal.id]


def test_queues_are_numbered_per_doctor_and_day(session, doctor, make_doctor, next_monday):
    other = make_doctor()

    assert walk_in(session, doctor, next_monday, "Asha").queue_number == 1
    assert walk_in(session, other, next_monday, "Ravi").queue_number == 1
    assert walk_in(session, doctor, next_monday + timedelta(days=1), "Kiran").queue_number == 1
    assert walk_in(session, doctor, next_monday, "Devi").queue_number == 2


def test_scheduled_patient_runs_through_the_consultation(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)

    entry = queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)
    session.refresh(appointment)
    assert entry.entry_type == QueueEntryType.SCHEDULED
    assert entry.patient_id == 21
    assert entry.reason_for_visit == "Cough"
    assert appointment.status == AppointmentStatus.CHECKED_IN

    queue_coordinator.call_next(session, doctor.id, next_monday)
    session.refresh(appointment)
    assert appointment.status == AppointmentStatus.IN_PROGRESS

    done = queue_coordinator.complete(session, entry.id)
    session.refresh(appointment)
    assert done.status == QueueEntryStatus.COMPLETED
    assert done.wait_time_minutes >= 0
    assert done.consultation_time_minutes >= 0
    assert done.completed_at is not None
    assert appointment.status == AppointmentStatus.COMPLETED


def test_appointment_check_in_is_validated(session, doctor, make_doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)
    other = make_doctor()

    with pytest.raises(ValidationError):
        queue_coordinator.check_in(
            session, doctor.id, queue_date=next_monday + timedelta(days=1), appointment_id=appointment.id,
        )
    with pytest.raises(ValidationError):
        queue_coordinator.check_in(session, other.id, queue_date=next_monday, appointment_id=appointment.id)

    queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)
    with pytest.raises(InvalidTransition):
        queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)


def test_cancelled_appointment_cannot_check_in(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)
    slot_state_machine.cancel_appointment(session, appointment.id)

    with pytest.raises(InvalidTransition):
        queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)


def test_cancelling_a_checked_in_appointment_leaves_the_queue(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)
    entry = queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)

    slot_state_machine.cancel_appointment(session, appointment.id, "Left early")

    session.refresh(entry)
    assert entry.status == QueueEntryStatus.LEFT
    with pytest.raises(NotFound):
        queue_coordinator.call_next(session, doctor.id, next_monday)


def test_check_in_needs_exactly_one_patient_source(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)

    with pytest.raises(ValidationError):
        queue_coordinator.check_in(session, doctor.id, queue_date=next_monday)
    with pytest.raises(ValidationError):
        queue_coordinator.check_in(
            session, doctor.id, queue_date=next_monday, appointment_id=appointment.id, walk_in={"name": "Asha"},
        )
    with pytest.raises(ValidationError):
        queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, walk_in={"phone": "555-0101"})


def test_empty_queue_has_nobody_to_call(session, doctor, next_monday):
    with pytest.raises(QueueEmpty):
        queue_coordinator.call_next(session, doctor.id, next_monday)


def test_leave_and_finish_are_guarded_by_status(session, doctor, next_monday):
    first = walk_in(session, doctor, next_monday, "Asha")
    second = walk_in(session, doctor, next_monday, "Ravi")

    with pytest.raises(InvalidTransition):
        queue_coordinator.complete(session, first.id)

    queue_coordinator.call_next(session, doctor.id, next_monday)
    with pytest.raises(InvalidTransition):
        queue_coordinator.leave(session, first.id)

    left = queue_coordinator.leave(session, second.id)
    assert left.status == QueueEntryStatus.LEFT

    absent = queue_coordinator.no_show(session, first.id)
    assert absent.status == QueueEntryStatus.NO_SHOW
    with pytest.raises(InvalidTransition):
        queue_coordinator.complete(session, first.id)
    with pytest.raises(NotFound):
        queue_coordinator.complete(session, 987654)


def test_leaving_marks_the_appointment_no_show(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)
    entry = queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)

    queue_coordinator.leave(session, entry.id)

    session.refresh(appointment)
    assert appointment.status == AppointmentStatus.NO_SHOW


def test_priority_changes_only_while_waiting(session, doctor, next_monday):
    first = walk_in(session, doctor, next_monday, "Asha")
    second = walk_in(session, doctor, next_monday, "Ravi")

    raised = queue_coordinator.update_priority(session, second.id, QueuePriority.URGENT)
    assert raised.priority == QueuePriority.URGENT
    assert queue_coordinator.call_next(session, doctor.id, next_monday).id == second.id

    queue_coordinator.complete(session, second.id)
    with pytest.raises(InvalidTransition):
        queue_coordinator.update_priority(session, second.id, QueuePriority.NORMAL)
    assert queue_coordinator.update_priority(session, first.id, QueuePriority.EMERGENCY).priority == QueuePriority.EMERGENCY


def test_absent_scheduled_patient_is_recorded(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday)
    walk_in(session, doctor, next_monday, "Asha")

    entry = queue_coordinator.mark_appointment_no_show(session, appointment.id)

    session.refresh(appointment)
    assert entry.queue_number == 2
    assert entry.status == QueueEntryStatus.NO_SHOW
    assert appointment.status == AppointmentStatus.NO_SHOW
    with pytest.raises(InvalidTransition):
        queue_coordinator.mark_appointment_no_show(session, appointment.id)


def test_doctor_presence(session, doctor, next_monday):
    with pytest.raises(InvalidTransition):
        queue_coordinator.doctor_check_out(session, doctor.id, next_monday)

    checked_in = queue_coordinator.doctor_check_in(session, doctor.id, next_monday)
    assert checked_in.status == DoctorDailyStatus.CHECKED_IN
    assert queue_coordinator.daily_queue(session, doctor.id, next_monday)["is_checked_in"] is True

    checked_out = queue_coordinator.doctor_check_out(session, doctor.id, next_monday)
    assert checked_out.status == DoctorDailyStatus.CHECKED_OUT
    assert checked_out.checked_out_at is not None
    assert queue_coordinator.daily_queue(session, doctor.id, next_monday)["is_checked_in"] is False


def test_daily_queue_summarizes_the_day(session, doctor, next_monday):
    appointment = booked_appointment(session, doctor, next_monday, index=0, patient_id=21)
    booked_appointment(session, doctor, next_monday, index=1, patient_id=22)
    queue_coordinator.check_in(session, doctor.id, queue_date=next_monday, appointment_id=appointment.id)
    walk_in(session, doctor, next_monday, "Asha")
    urgent = walk_in(session, doctor, next_monday, "Ravi", QueuePriority.URGENT)
    leaving = walk_in(session, doctor, next_monday, "Kiran")

    called = queue_coordinator.call_next(session, doctor.id, next_monday)
    queue_coordinator.leave(session, leaving.id)
    view = queue_coordinator.daily_queue(session, doctor.id, next_monday)

    assert called.id == urgent.id
    assert view["with_doctor"].id == urgent.id
    assert [e.queue_number for e in view["queue"]] == [1, 2]
    assert [e.id for e in view["completed"]] == [leaving.id]
    assert view["stats"]["total_waiting"] == 2
    assert view["stats"]["total_left"] == 1
    assert view["stats"]["total_scheduled"] == 1
    assert view["stats"]["average_wait_minutes"] is None
    assert [s["patient_id"] for s in view["scheduled"]] == [22]
    assert view["is_hospital_holiday"] is False


def test_public_status_shows_position_today(session, doctor):
    today = hospital_today("UTC")
    first = walk_in(session, doctor, today, "Asha")
    second = walk_in(session, doctor, today, "Ravi")
    third = walk_in(session, doctor, today, "Kiran")
    queue_coordinator.call_next(session, doctor.id, today)

    status = queue_coordinator.public_status(session, third.status_token)

    assert status["queue_number"] == 3
    assert status["now_serving"] == first.queue_number
    assert status["patients_ahead"] == 1
    assert status["patients_behind"] == 0
    assert status["estimated_wait_minutes"] == 30
    assert status["doctor_name"] == doctor.full_name
    assert queue_coordinator.public_status(session, second.status_token)["patients_behind"] == 1


def test_public_status_is_only_valid_on_its_date(session, doctor, next_monday):
    entry = walk_in(session, doctor, next_monday, "Asha")

    with pytest.raises(ValidationError):
        queue_coordinator.public_status(session, entry.status_token)
    with pytest.raises(NotFound):
        queue_coordinator.public_status(session, "no-such-token")


def test_concurrent_check_ins_get_distinct_numbers(file_engine, seed_doctor, next_monday):
    with Session(file_engine) as setup:
        doctor_id = seed_doctor(setup).id

    patients = 10
    barrier = threading.Barrier(patients)
    errors = []

    def arrive(index):
        with Session(file_engine) as session:
            barrier.wait()
            try:
                queue_coordinator.check_in(
                    session, doctor_id, queue_date=next_monday, walk_in={"name": f"Patient {index}"},
                )
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=arrive, args=(i,)) for i in range(patients)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with Session(file_engine) as check:
        numbers = sorted(check.exec(
            select(QueueEntry.queue_number).where(QueueEntry.doctor_id == doctor_id)
        ).all())

    assert errors == []
    assert numbers == list(range(1, patients + 1))


def test_concurrent_check_ins_of_one_appointment_queue_it_once(file_engine, seed_doctor, next_monday):
    with Session(file_engine) as setup:
        doctor = seed_doctor(setup)
        doctor_id = doctor.id
        appointment_id = booked_appointment(setup, doctor, next_monday).id

    arrivals = 8
    barrier = threading.Barrier(arrivals)
    rejected = []
    errors = []

    def arrive():
        with Session(file_engine) as session:
            barrier.wait()
            try:
                queue_coordinator.check_in(
                    session, doctor_id, queue_date=next_monday, appointment_id=appointment_id,
                )
            except InvalidTransition as exc:
                rejected.append(exc)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=arrive) for _ in range(arrivals)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with Session(file_engine) as check:
        entries = check.exec(select(QueueEntry).where(QueueEntry.appointment_id == appointment_id)).all()
        appointment = slot_state_machine.get_appointment_or_404(check, appointment_id)
        status = appointment.status

    assert errors == []
    assert len(entries) == 1
    assert len(rejected) == arrivals - 1
    assert status == AppointmentStatus.CHECKED_IN


def test_concurrent_calls_seat_one_patient(file_engine, seed_doctor, next_monday):
    with Session(file_engine) as setup:
        doctor = seed_doctor(setup)
        doctor_id = doctor.id
        for name in ("Asha", "Ravi", "Kiran", "Devi"):
            walk_in(setup, doctor, next_monday, name)

    callers = 6
    barrier = threading.Barrier(callers)
    called = []
    busy = []
    errors = []

    def call():
        with Session(file_engine) as session:
            barrier.wait()
            try:
                called.append(queue_coordinator.call_next(session, doctor_id, next_monday).id)
            except DoctorBusy as exc:
                busy.append(exc)
            except Exception as exc:
                errors.append(exc)

    threads = [threading.Thread(target=call) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    with Session(file_engine) as check:
        with_doctor = check.exec(
            select(QueueEntry.id).where(
                QueueEntry.doctor_id == doctor_id, QueueEntry.status == QueueEntryStatus.WITH_DOCTOR,
            )
        ).all()

    assert errors == []
    assert len(called) == 1
    assert len(busy) == callers - 1
    assert with_doctor == called


def test_queue_locks_are_dropped_when_unused(next_monday):
    key = (424242, next_monday)
    lock = queue_coordinator.queue_lock(*key)

    assert queue_coordinator.queue_lock(*key) is lock
    assert key in queue_coordinator._queue_locks

    del lock
    gc.collect()
    assert key not in queue_coordinator._queue_locks


def test_consultation_timestamps_are_utc(session, doctor, next_monday):
    entry = walk_in(session, doctor, next_monday, "Asha")
    queue_coordinator.call_next(session, doctor.id, next_monday)
    done = queue_coordinator.complete(session, entry.id)

    for stamp in (done.checked_in_at, done.with_doctor_at, done.completed_at):
        assert as_utc(stamp).utcoffset() == timedelta(0)
    assert as_utc(done.completed_at) >= as_utc(done.checked_in_at)
    assert utcnow().tzinfo is not None
    assert done.wait_time_minutes == 0
