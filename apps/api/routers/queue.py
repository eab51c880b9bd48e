from fastapi import APIRouter, Depends, Request, status
from sqlmodel import Session
from database import get_session
from schemas import (
    CheckInRequest, DailyQueueResponse, DoctorCheckinResponse, PriorityUpdate, PublicQueueStatus,
    QueueDayRequest, QueueEntryResponse,
)
from services import queue_coordinator
from validators.business_rules import get_business_rules, RATE_LIMIT_ENABLED
from datetime import date
from typing import Optional
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/queue", tags=["Queue"])
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
rules = get_business_rules()


@router.post("/check-in", response_model=QueueEntryResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(rules.CHECK_IN_RATE_LIMIT)
def check_in(request: Request, check_in_data: CheckInRequest, session: Session = Depends(get_session)):
    """Add a scheduled patient or a walk-in to today's queue"""
    return queue_coordinator.check_in(
        session,
        check_in_data.doctor_id,
        queue_date=check_in_data.queue_date,
        appointment_id=check_in_data.appointment_id,
        walk_in=check_in_data.walk_in.model_dump() if check_in_data.walk_in else None,
        priority=check_in_data.priority,
        notes=check_in_data.notes,
    )


@router.post("/call-next", response_model=QueueEntryResponse)
def call_next(day: QueueDayRequest, session: Session = Depends(get_session)):
    """Send the next waiting patient in (priority first, then arrival)"""
    return queue_coordinator.call_next(session, day.doctor_id, day.queue_date)


@router.get("/daily", response_model=DailyQueueResponse)
def get_daily_queue(doctor_id: int, date: Optional[date] = None, session: Session = Depends(get_session)):
    return queue_coordinator.daily_queue(session, doctor_id, date)


@router.post("/doctor-check-in", response_model=DoctorCheckinResponse)
def doctor_check_in(day: QueueDayRequest, session: Session = Depends(get_session)):
    return queue_coordinator.doctor_check_in(session, day.doctor_id, day.queue_date)


@router.post("/doctor-check-out", response_model=DoctorCheckinResponse)
def doctor_check_out(day: QueueDayRequest, session: Session = Depends(get_session)):
    return queue_coordinator.doctor_check_out(session, day.doctor_id, day.queue_date)


@router.get("/status/{token}", response_model=PublicQueueStatus)
def get_public_status(token: str, session: Session = Depends(get_session)):
    """Public queue position for the patient status page"""
    return queue_coordinator.public_status(session, token)


@router.post("/appointments/{appointment_id}/no-show", response_model=QueueEntryResponse)
def mark_appointment_no_show(appointment_id: int, session: Session = Depends(get_session)):
    """Scheduled patient never arrived"""
    return queue_coordinator.mark_appointment_no_show(session, appointment_id)


@router.post("/{entry_id}/complete", response_model=QueueEntryResponse)
def complete_consultation(entry_id: int, session: Session = Depends(get_session)):
    return queue_coordinator.complete(session, entry_id)


@router.post("/{entry_id}/no-show", response_model=QueueEntryResponse)
def mark_no_show(entry_id: int, session: Session = Depends(get_session)):
    return queue_coordinator.no_show(session, entry_id)


@router.post("/{entry_id}/leave", response_model=QueueEntryResponse)
def leave_queue(entry_id: int, session: Session = Depends(get_session)):
    return queue_coordinator.leave(session, entry_id)


@router.post("/{entry_id}/priority", response_model=QueueEntryResponse)
def update_priority(entry_id: int, update: PriorityUpdate, session: Session = Depends(get_session)):
    return queue_coordinator.update_priority(session, entry_id, update.priority)
