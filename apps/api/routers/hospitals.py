from fastapi import APIRouter, Depends, status
from sqlmodel import Session, select
from database import get_session
from errors import NotFound, ValidationError
from models import Hospital, HospitalHoliday
from schemas import HolidayCreate, HolidayResponse, HospitalCreate, HospitalResponse, ShiftTimingConfig
from services.schedule_resolver import validate_shift_config
from utils.cache import ScheduleCache
from typing import List
import calendar
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/hospitals", tags=["Hospitals"])


def _get_hospital_or_404(session: Session, hospital_id: int) -> Hospital:
    hospital = session.get(Hospital, hospital_id)
    if not hospital:
        raise NotFound(f"Hospital {hospital_id} not found")
    return hospital


@router.post("", response_model=HospitalResponse, status_code=status.HTTP_201_CREATED)
def create_hospital(hospital_data: HospitalCreate, session: Session = Depends(get_session)):
    shift_config = None
    if hospital_data.shift_timing_config is not None:
        shift_config = validate_shift_config(hospital_data.shift_timing_config).model_dump()
    hospital = Hospital(
        name=hospital_data.name,
        timezone=hospital_data.timezone,
        shift_timing_config=shift_config,
    )
    session.add(hospital)
    session.commit()
    session.refresh(hospital)
    logger.info(f"Created hospital {hospital.id} ({hospital.timezone})")
    return hospital


@router.get("/{hospital_id}", response_model=HospitalResponse)
def get_hospital(hospital_id: int, session: Session = Depends(get_session)):
    return _get_hospital_or_404(session, hospital_id)


@router.put("/{hospital_id}/shift-timing", response_model=HospitalResponse)
def update_shift_timing(hospital_id: int, config: ShiftTimingConfig, session: Session = Depends(get_session)):
    """Hospital-wide shift windows; doctor overrides still win"""
    hospital = _get_hospital_or_404(session, hospital_id)
    hospital.shift_timing_config = validate_shift_config(config).model_dump()
    session.add(hospital)
    session.commit()
    session.refresh(hospital)
    ScheduleCache.invalidate_hospital_schedules()
    logger.info(f"Updated shift timing for hospital {hospital_id}")
    return hospital


@router.get("/{hospital_id}/holidays", response_model=List[HolidayResponse])
def list_holidays(hospital_id: int, session: Session = Depends(get_session)):
    _get_hospital_or_404(session, hospital_id)
    return session.exec(
        select(HospitalHoliday)
        .where(HospitalHoliday.hospital_id == hospital_id)
        .order_by(HospitalHoliday.month, HospitalHoliday.day)
    ).all()


@router.post("/{hospital_id}/holidays", response_model=HolidayResponse, status_code=status.HTTP_201_CREATED)
def add_holiday(hospital_id: int, holiday: HolidayCreate, session: Session = Depends(get_session)):
    """Add a recurring yearly holiday"""
    _get_hospital_or_404(session, hospital_id)
    # Leap-year check so that 29 February is accepted
    if holiday.day > calendar.monthrange(2000, holiday.month)[1]:
        raise ValidationError(f"Invalid holiday date: {holiday.month}/{holiday.day}")

    record = HospitalHoliday(hospital_id=hospital_id, **holiday.model_dump())
    session.add(record)
    session.commit()
    session.refresh(record)
    ScheduleCache.invalidate_holidays(hospital_id)
    logger.info(f"Added holiday {record.name} ({record.month}/{record.day}) to hospital {hospital_id}")
    return record


@router.delete("/holidays/{holiday_id}")
def delete_holiday(holiday_id: int, session: Session = Depends(get_session)):
    record = session.get(HospitalHoliday, holiday_id)
    if not record:
        raise NotFound(f"Holiday {holiday_id} not found")
    hospital_id = record.hospital_id
    session.delete(record)
    session.commit()
    ScheduleCache.invalidate_holidays(hospital_id)
    logger.info(f"Deleted holiday {holiday_id} from hospital {hospital_id}")
    return {"message": "Holiday deleted"}
