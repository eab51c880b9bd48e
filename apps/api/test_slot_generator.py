"""Slot generation: partitioning, idempotence, off days, regeneration"""
from datetime import timedelta

import pytest
from sqlalchemy import text
from sqlmodel import select

from errors import NotFound, ValidationError
from models import (
    Appointment, AppointmentSlot, AppointmentStatus, DoctorSchedule, DoctorTimeOff, HospitalHoliday,
    SlotPeriod, SlotStatus,
)
from schemas import ScheduleDayInput
from services import slot_generator, slot_state_machine
from validators.time_validator import time_to_minutes


def slots_on(session, doctor_id, day):
    return session.exec(
        select(AppointmentSlot)
        .where(AppointmentSlot.doctor_id == doctor_id, AppointmentSlot.slot_date == day)
        .order_by(AppointmentSlot.start_time)
    ).all()


def test_monday_morning_gives_sixteen_half_hour_slots(session, doctor, next_monday):
    result = slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)

    slots = slots_on(session, doctor.id, next_monday)
    assert result.slots_generated == 16
    assert result.slots_skipped == 0
    assert len(slots) == 16
    assert slots[0].start_time == "06:00"
    assert slots[-1].start_time == "13:30"
    assert slots[-1].end_time == "14:00"
    assert {s.period for s in slots} == {SlotPeriod.MORNING}
    assert {s.status for s in slots} == {SlotStatus.AVAILABLE}
    assert {s.duration_minutes for s in slots} == {30}


def test_regeneration_is_idempotent(session, doctor, next_monday):
    week_end = next_monday + timedelta(days=6)
    first = slot_generator.generate_slots(session, doctor.id, next_monday, week_end)
    second = slot_generator.generate_slots(session, doctor.id, next_monday, week_end)

    assert first.slots_generated == 16
    assert second.slots_generated == 0
    assert second.slots_skipped == 1
    assert len(slots_on(session, doctor.id, next_monday)) == 16


def test_regeneration_keeps_bookings(session, doctor, next_monday):
    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)
    slot = slots_on(session, doctor.id, next_monday)[3]
    slot_state_machine.book_slot(session, slot.id, patient_id=42)

    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)

    session.refresh(slot)
    assert slot.status == SlotStatus.BOOKED
    assert slot.patient_id == 42


def test_trailing_remainder_becomes_short_slot(session, make_doctor, next_monday):
    doctor = make_doctor(duration=45)

    result = slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)

    slots = slots_on(session, doctor.id, next_monday)
    assert result.slots_generated == 11
    assert (slots[-1].start_time, slots[-1].end_time, slots[-1].duration_minutes) == ("13:30", "14:00", 30)
    assert slots[-1].status == SlotStatus.AVAILABLE


@pytest.mark.parametrize("duration", [15, 20, 45, 60])
def test_slots_never_overlap_and_match_their_duration(session, make_doctor, next_monday, duration):
    doctor = make_doctor(duration=duration, schedule={0: ("morning", "evening", "night")})

    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)

    slots = slots_on(session, doctor.id, next_monday)
    spans = sorted((time_to_minutes(s.start_time), time_to_minutes(s.end_time)) for s in slots)
    for (start, end), slot in zip(spans, sorted(slots, key=lambda s: time_to_minutes(s.start_time))):
        assert end - start == slot.duration_minutes
    for (_, end), (next_start, _) in zip(spans, spans[1:]):
        assert end <= next_start
    assert spans[0][0] == 6 * 60
    assert spans[-1][1] == 30 * 60


def test_night_window_stays_on_its_start_date(session, make_doctor, next_monday):
    doctor = make_doctor(schedule={0: ("night",)})

    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday + timedelta(days=1))

    slots = slots_on(session, doctor.id, next_monday)
    assert len(slots) == 16
    assert {s.period for s in slots} == {SlotPeriod.NIGHT}
    assert slots[0].start_time == "22:00"
    assert slots[-1].start_time == "29:30"
    assert slots[-1].end_time == "30:00"
    assert slots_on(session, doctor.id, next_monday + timedelta(days=1)) == []


def test_morning_and_night_skip_the_evening(session, make_doctor, next_monday):
    doctor = make_doctor(schedule={0: ("morning", "night")})

    result = slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)

    slots = slots_on(session, doctor.id, next_monday)
    assert result.slots_generated == 32
    assert SlotPeriod.EVENING not in {s.period for s in slots}


def test_time_off_and_holidays_produce_no_slots(session, doctor, next_monday):
    following_monday = next_monday + timedelta(days=7)
    session.add(DoctorTimeOff(doctor_id=doctor.id, start_date=next_monday, end_date=next_monday))
    session.add(HospitalHoliday(
        hospital_id=doctor.hospital_id, month=following_monday.month, day=following_monday.day,
        name="Harvest Festival",
    ))
    session.commit()

    result = slot_generator.generate_slots(session, doctor.id, next_monday, following_monday)

    assert result.slots_generated == 0
    assert result.slots_skipped == 0


def test_invalid_ranges_are_rejected(session, doctor, next_monday):
    with pytest.raises(ValidationError):
        slot_generator.generate_slots(session, doctor.id, next_monday, next_monday - timedelta(days=1))
    with pytest.raises(ValidationError):
        slot_generator.generate_slots(session, doctor.id, next_monday, next_monday + timedelta(days=400))
    with pytest.raises(NotFound):
        slot_generator.generate_slots(session, 9999, next_monday, next_monday)


def test_latest_slot_date(session, doctor, next_monday):
    assert slot_generator.latest_slot_date(session, doctor.id) is None

    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday + timedelta(days=13))

    assert slot_generator.latest_slot_date(session, doctor.id) == next_monday + timedelta(days=7)


def test_regenerate_applies_new_schedule(session, doctor, next_monday):
    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)
    slot = slots_on(session, doctor.id, next_monday)[0]
    appointment = slot_state_machine.book_slot(session, slot.id, patient_id=7)

    row = session.exec(
        select(DoctorSchedule).where(DoctorSchedule.doctor_id == doctor.id, DoctorSchedule.day_of_week == 0)
    ).one()
    row.morning = False
    row.evening = True
    session.add(row)
    session.commit()

    result = slot_generator.regenerate(session, doctor.id, [appointment.id])

    session.refresh(appointment)
    slots = slots_on(session, doctor.id, next_monday)
    assert result.cancelled == 1
    assert result.slots_deleted == 16
    assert result.slots_generated > 0
    assert appointment.status == AppointmentStatus.CANCELLED
    assert appointment.cancellation_reason == "Schedule change by hospital"
    assert appointment.slot_id is None
    assert {s.period for s in slots} == {SlotPeriod.EVENING}


def test_sqlite_sessions_enforce_foreign_keys(session):
    assert session.exec(text("PRAGMA foreign_keys")).first()[0] == 1


def test_conflict_preview_for_schedule_change(session, doctor, next_monday):
    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)
    slot = slots_on(session, doctor.id, next_monday)[0]
    appointment = slot_state_machine.book_slot(session, slot.id, patient_id=7)

    evening_only = [ScheduleDayInput(day_of_week=0, evening=True)]
    morning_and_evening = [ScheduleDayInput(day_of_week=0, morning=True, evening=True)]

    report = slot_generator.check_schedule_conflicts(session, doctor.id, "schedule", schedules=evening_only)
    clean = slot_generator.check_schedule_conflicts(session, doctor.id, "schedule", schedules=morning_and_evening)

    assert report.has_conflicts is True
    assert report.affected_appointments[0]["appointment"].id == appointment.id
    assert report.affected_appointments[0]["has_queue_entry"] is False
    assert report.slots_to_delete == 15
    assert clean.has_conflicts is False


def test_conflict_preview_for_time_off_and_duration(session, doctor, next_monday):
    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)
    slot = slots_on(session, doctor.id, next_monday)[0]
    slot_state_machine.book_slot(session, slot.id, patient_id=7)

    time_off = slot_generator.check_schedule_conflicts(
        session, doctor.id, "time_off", start_date=next_monday, end_date=next_monday,
    )
    same_duration = slot_generator.check_schedule_conflicts(
        session, doctor.id, "duration", appointment_duration_minutes=30,
    )
    new_duration = slot_generator.check_schedule_conflicts(
        session, doctor.id, "duration", appointment_duration_minutes=20,
    )

    assert len(time_off.affected_appointments) == 1
    assert same_duration.has_conflicts is False
    assert len(new_duration.affected_appointments) == 1
    with pytest.raises(ValidationError):
        slot_generator.check_schedule_conflicts(session, doctor.id, "duration", appointment_duration_minutes=25)


def test_booked_appointments_survive_as_history(session, doctor, next_monday):
    slot_generator.generate_slots(session, doctor.id, next_monday, next_monday)
    slot = slots_on(session, doctor.id, next_monday)[0]
    slot_state_machine.book_slot(session, slot.id, patient_id=7)

    assert len(session.exec(select(Appointment)).all()) == 1
