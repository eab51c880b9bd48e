"""Read-side projections over slots: month calendar and single-day view"""
import calendar
from dataclasses import dataclass
from datetime import date
from typing import List
import logging

from sqlalchemy import func
from sqlmodel import Session, select

from errors import ValidationError, storage_guard
from models import Appointment, AppointmentSlot, SlotPeriod, SlotStatus
from services.schedule_resolver import get_doctor_or_404, load_doctor_calendar
from validators.business_rules import get_business_rules

logger = logging.getLogger(__name__)


@dataclass
class CalendarDaySummary:
    date: date
    available_count: int = 0
    booked_count: int = 0
    blocked_count: int = 0

    @property
    def has_slots(self) -> bool:
        return (self.available_count + self.booked_count + self.blocked_count) > 0


@storage_guard
def summarize_month(session: Session, doctor_id: int, year: int, month: int) -> List[CalendarDaySummary]:
    """One summary per day of the month, counted from the slots as they are now"""
    if not 1 <= month <= 12:
        raise ValidationError(f"Invalid month: {month}")
    if not 1 <= year <= 9999:
        raise ValidationError(f"Invalid year: {year}")
    get_doctor_or_404(session, doctor_id)

    days_in_month = calendar.monthrange(year, month)[1]
    first, last = date(year, month, 1), date(year, month, days_in_month)
    summaries = {
        day: CalendarDaySummary(day)
        for day in (date(year, month, d) for d in range(1, days_in_month + 1))
    }

    rows = session.exec(
        select(AppointmentSlot.slot_date, AppointmentSlot.status, func.count(AppointmentSlot.id))
        .where(
            AppointmentSlot.doctor_id == doctor_id,
            AppointmentSlot.slot_date >= first,
            AppointmentSlot.slot_date <= last,
        )
        .group_by(AppointmentSlot.slot_date, AppointmentSlot.status)
    ).all()
    logger.debug(f"Calendar {year}-{month:02d} for doctor {doctor_id}: {len(rows)} date/status groups")

    for slot_date, slot_status, count in rows:
        summary = summaries[slot_date]
        if slot_status == SlotStatus.AVAILABLE:
            summary.available_count = count
        elif slot_status == SlotStatus.BOOKED:
            summary.booked_count = count
        elif slot_status == SlotStatus.BLOCKED:
            summary.blocked_count = count

    return [summaries[day] for day in sorted(summaries)]


@storage_guard
def slots_for_date(session: Session, doctor_id: int, day: date) -> dict:
    """Slots of one date grouped by period, with stats and the off-day context"""
    doctor = get_doctor_or_404(session, doctor_id)
    slots = session.exec(
        select(AppointmentSlot)
        .where(AppointmentSlot.doctor_id == doctor_id, AppointmentSlot.slot_date == day)
        .order_by(AppointmentSlot.start_time)
    ).all()

    grouped = {period: [] for period in SlotPeriod}
    for slot in slots:
        grouped[SlotPeriod(slot.period)].append(slot)

    rules = get_business_rules()
    doctor_calendar = load_doctor_calendar(session, doctor, day, day)
    holiday_name = doctor_calendar.holiday_name(day)
    # Time off is reported even when a holiday also closes the day
    time_off = doctor_calendar.time_off_for(day)

    cancelled = session.exec(
        select(Appointment)
        .where(
            Appointment.doctor_id == doctor_id,
            Appointment.appointment_date == day,
            Appointment.cancelled_by_time_off == True,  # noqa: E712
        )
        .order_by(Appointment.start_time)
    ).all()

    return {
        "date": day,
        "doctor_id": doctor_id,
        "morning": grouped[SlotPeriod.MORNING],
        "evening": grouped[SlotPeriod.EVENING],
        "night": grouped[SlotPeriod.NIGHT],
        "stats": {
            "total": len(slots),
            "available": sum(1 for s in slots if s.status == SlotStatus.AVAILABLE),
            "booked": sum(1 for s in slots if s.status == SlotStatus.BOOKED),
            "blocked": sum(1 for s in slots if s.status == SlotStatus.BLOCKED),
        },
        "is_time_off": time_off is not None,
        "time_off_reason": (time_off.reason or rules.DEFAULT_TIME_OFF_REASON) if time_off else None,
        "is_holiday": holiday_name is not None,
        "holiday_name": holiday_name,
        "cancelled_appointments": cancelled,
    }
