"""
Schedule resolution: turns a doctor's weekly pattern, time off and hospital
holidays into the concrete working windows of a single date.

``resolve`` is pure and works on a ``DoctorCalendar`` value; the calendar is
gathered once per date range by ``load_doctor_calendar`` so that callers can
resolve many dates without per-date queries.
"""
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Optional, Tuple
import logging

from sqlmodel import Session, select

from errors import NotFound, ValidationError
from models import (
    DoctorProfile, DoctorSchedule, DoctorTimeOff, Hospital, HospitalHoliday, SlotPeriod,
)
from schemas import ShiftTimingConfig
from validators.business_rules import get_business_rules
from validators.time_validator import MINUTES_PER_DAY, minutes_to_time, time_to_minutes
from utils.cache import ScheduleCache

logger = logging.getLogger(__name__)

TIME_OFF_APPROVED = "approved"
PERIOD_ORDER = (SlotPeriod.MORNING, SlotPeriod.EVENING, SlotPeriod.NIGHT)


@dataclass(frozen=True)
class ShiftWindow:
    """A working window in service-day minutes; end may exceed 24h"""
    period: SlotPeriod
    start_minute: int
    end_minute: int

    @property
    def start(self) -> str:
        return minutes_to_time(self.start_minute)

    @property
    def end(self) -> str:
        return minutes_to_time(self.end_minute)


@dataclass(frozen=True)
class MergedWindow:
    start_minute: int
    end_minute: int
    periods: Tuple[SlotPeriod, ...]

    @property
    def start(self) -> str:
        return minutes_to_time(self.start_minute % MINUTES_PER_DAY)

    @property
    def end(self) -> str:
        return minutes_to_time(self.end_minute % MINUTES_PER_DAY)


@dataclass
class WeekdayShifts:
    morning: bool = False
    evening: bool = False
    night: bool = False

    @property
    def is_working(self) -> bool:
        return self.morning or self.evening or self.night

    def active_periods(self) -> List[SlotPeriod]:
        return [p for p in PERIOD_ORDER if getattr(self, p.value.lower())]


@dataclass
class TimeOffRange:
    start_date: date
    end_date: date
    reason: Optional[str] = None

    def covers(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date


@dataclass
class DoctorCalendar:
    """Everything ``resolve`` needs, already loaded"""
    shift_config: ShiftTimingConfig
    weekly: Dict[int, WeekdayShifts] = field(default_factory=dict)
    time_off: List[TimeOffRange] = field(default_factory=list)
    holidays: Dict[Tuple[int, int], str] = field(default_factory=dict)

    def holiday_name(self, day: date) -> Optional[str]:
        return self.holidays.get((day.month, day.day))

    def time_off_for(self, day: date) -> Optional[TimeOffRange]:
        for time_off in self.time_off:
            if time_off.covers(day):
                return time_off
        return None


@dataclass
class Resolution:
    date: date
    is_off: bool
    reason: Optional[str] = None
    holiday_name: Optional[str] = None
    is_time_off: bool = False
    active_windows: List[ShiftWindow] = field(default_factory=list)


def period_window(config: ShiftTimingConfig, period: SlotPeriod) -> ShiftWindow:
    """Configured window of a period; a wrapping window ends past 24:00"""
    window = config.window(period)
    start = time_to_minutes(window.start)
    end = time_to_minutes(window.end)
    if end <= start:
        end += MINUTES_PER_DAY
    return ShiftWindow(period, start, end)


def _overlaps(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    """Interval overlap on the 24h circle"""
    for shift in (-MINUTES_PER_DAY, 0, MINUTES_PER_DAY):
        if a_start < b_end + shift and b_start + shift < a_end:
            return True
    return False


def validate_shift_config(config: ShiftTimingConfig) -> ShiftTimingConfig:
    """Reject configs whose period windows overlap on the 24-hour clock"""
    windows = [period_window(config, p) for p in PERIOD_ORDER]
    for i, first in enumerate(windows):
        for second in windows[i + 1:]:
            if _overlaps(first.start_minute, first.end_minute, second.start_minute, second.end_minute):
                raise ValidationError(
                    f"Shift windows {first.period.value} ({first.start}-{first.end}) and "
                    f"{second.period.value} ({second.start}-{second.end}) overlap"
                )
    return config


def resolve_shift_config(doctor: DoctorProfile, hospital: Optional[Hospital]) -> ShiftTimingConfig:
    """Doctor override, then hospital config, then the defaults"""
    if doctor.shift_timing_config:
        return ShiftTimingConfig(**doctor.shift_timing_config)
    if hospital is not None and hospital.shift_timing_config:
        return ShiftTimingConfig(**hospital.shift_timing_config)
    return ShiftTimingConfig()


def windows_from_flags(shifts: WeekdayShifts, config: ShiftTimingConfig) -> List[ShiftWindow]:
    """Active periods as disjoint windows in chronological order"""
    windows = [period_window(config, p) for p in shifts.active_periods()]
    return sorted(windows, key=lambda w: w.start_minute)


def merge_windows(windows: List[ShiftWindow]) -> List[MergedWindow]:
    """Join windows that touch; morning + night stay two windows"""
    merged: List[MergedWindow] = []
    for window in sorted(windows, key=lambda w: w.start_minute):
        if merged and merged[-1].end_minute == window.start_minute:
            last = merged.pop()
            merged.append(MergedWindow(last.start_minute, window.end_minute, last.periods + (window.period,)))
        else:
            merged.append(MergedWindow(window.start_minute, window.end_minute, (window.period,)))
    return merged


def flags_from_window(shift_start: str, shift_end: str, config: ShiftTimingConfig) -> WeekdayShifts:
    """A period is active iff its configured window overlaps the explicit one"""
    start = time_to_minutes(shift_start)
    end = time_to_minutes(shift_end)
    if end <= start:
        end += MINUTES_PER_DAY
    shifts = WeekdayShifts()
    for period in PERIOD_ORDER:
        window = period_window(config, period)
        if _overlaps(start, end, window.start_minute, window.end_minute):
            setattr(shifts, period.value.lower(), True)
    return shifts


def resolve(calendar: DoctorCalendar, day: date) -> Resolution:
    """Resolve one date: holiday, then time off, then the weekly pattern"""
    rules = get_business_rules()

    holiday = calendar.holiday_name(day)
    if holiday:
        return Resolution(day, True, rules.HOLIDAY_REASON, holiday_name=holiday)

    time_off = calendar.time_off_for(day)
    if time_off is not None:
        return Resolution(
            day, True, time_off.reason or rules.DEFAULT_TIME_OFF_REASON, is_time_off=True
        )

    shifts = calendar.weekly.get(day.weekday())
    if shifts is None or not shifts.is_working:
        return Resolution(day, True, rules.NOT_SCHEDULED_REASON)

    return Resolution(day, False, active_windows=windows_from_flags(shifts, calendar.shift_config))


def get_doctor_or_404(session: Session, doctor_id: int) -> DoctorProfile:
    doctor = session.get(DoctorProfile, doctor_id)
    if not doctor:
        raise NotFound(f"Doctor {doctor_id} not found")
    return doctor


def hospital_holidays(session: Session, hospital_id: int) -> Dict[Tuple[int, int], str]:
    cached = ScheduleCache.get_holidays(hospital_id)
    if cached is not None:
        return {(h["month"], h["day"]): h["name"] for h in cached}

    rows = session.exec(
        select(HospitalHoliday).where(HospitalHoliday.hospital_id == hospital_id)
    ).all()
    logger.debug(f"Loaded {len(rows)} holidays for hospital {hospital_id} from the database")
    ScheduleCache.set_holidays(
        hospital_id, [{"month": h.month, "day": h.day, "name": h.name} for h in rows]
    )
    return {(h.month, h.day): h.name for h in rows}


def load_doctor_calendar(
    session: Session,
    doctor: DoctorProfile,
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
) -> DoctorCalendar:
    """Gather resolver inputs; time off is limited to the range when given"""
    hospital = session.get(Hospital, doctor.hospital_id)

    weekly = {
        row.day_of_week: WeekdayShifts(row.morning, row.evening, row.night)
        for row in session.exec(
            select(DoctorSchedule).where(DoctorSchedule.doctor_id == doctor.id)
        ).all()
        if row.is_working
    }

    query = select(DoctorTimeOff).where(
        DoctorTimeOff.doctor_id == doctor.id, DoctorTimeOff.status == TIME_OFF_APPROVED
    )
    if start_date is not None:
        query = query.where(DoctorTimeOff.end_date >= start_date)
    if end_date is not None:
        query = query.where(DoctorTimeOff.start_date <= end_date)
    time_off = [
        TimeOffRange(t.start_date, t.end_date, t.reason)
        for t in session.exec(query).all()
    ]

    return DoctorCalendar(
        shift_config=resolve_shift_config(doctor, hospital),
        weekly=weekly,
        time_off=time_off,
        holidays=hospital_holidays(session, doctor.hospital_id),
    )
