from fastapi import APIRouter, Depends, Query, Request, status
from sqlmodel import Session
from database import get_session
from schemas import (
    AppointmentResponse, BlockRequest, BookSlotRequest, CalendarDayResponse, CancelRequest,
    ConflictCheckRequest, ConflictCheckResponse, GenerateSlotsRequest, GenerateSlotsResponse,
    LatestSlotDateResponse, RegenerateRequest, RegenerateResponse, RescheduleRequest,
    SlotResponse, SlotsForDateResponse,
)
from services import calendar_aggregator, slot_generator, slot_state_machine
from validators.business_rules import get_business_rules, RATE_LIMIT_ENABLED
from datetime import date
from typing import List
from slowapi import Limiter
from slowapi.util import get_remote_address
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/appointments", tags=["Appointments"])
limiter = Limiter(key_func=get_remote_address, enabled=RATE_LIMIT_ENABLED)
rules = get_business_rules()


@router.post("/slots/generate", response_model=GenerateSlotsResponse)
def generate_slots(request_data: GenerateSlotsRequest, session: Session = Depends(get_session)):
    """Generate bookable slots for a doctor over an inclusive date range"""
    return slot_generator.generate_slots(
        session, request_data.doctor_id, request_data.start_date, request_data.end_date
    )


@router.get("/slots", response_model=SlotsForDateResponse)
def get_slots_for_date(
    doctor_id: int,
    date: date = Query(..., description="Slot date (YYYY-MM-DD)"),
    session: Session = Depends(get_session)
):
    """Slots of one date grouped by period"""
    return calendar_aggregator.slots_for_date(session, doctor_id, date)


@router.get("/calendar", response_model=List[CalendarDayResponse])
def get_calendar(
    doctor_id: int,
    year: int,
    month: int,
    session: Session = Depends(get_session)
):
    """Per-day slot counts for a month"""
    return [
        CalendarDayResponse.model_validate(day)
        for day in calendar_aggregator.summarize_month(session, doctor_id, year, month)
    ]


@router.get("/latest-slot-date", response_model=LatestSlotDateResponse)
def get_latest_slot_date(doctor_id: int, session: Session = Depends(get_session)):
    return {
        "doctor_id": doctor_id,
        "latest_slot_date": slot_generator.latest_slot_date(session, doctor_id),
    }


@router.post("/slots/{slot_id}/book", response_model=AppointmentResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(rules.BOOKING_RATE_LIMIT)
def book_slot(
    request: Request,
    slot_id: int,
    booking: BookSlotRequest,
    session: Session = Depends(get_session)
):
    """Book an available slot"""
    return slot_state_machine.book_slot(
        session,
        slot_id,
        booking.patient_id,
        reason_for_visit=booking.reason_for_visit,
        notes=booking.notes,
        booked_by=booking.booked_by,
    )


@router.post("/slots/{slot_id}/block", response_model=SlotResponse)
def block_slot(slot_id: int, block: BlockRequest = None, session: Session = Depends(get_session)):
    return slot_state_machine.block_slot(session, slot_id, block.reason if block else None)


@router.post("/slots/{slot_id}/unblock", response_model=SlotResponse)
def unblock_slot(slot_id: int, session: Session = Depends(get_session)):
    return slot_state_machine.unblock_slot(session, slot_id)


@router.post("/regenerate", response_model=RegenerateResponse)
def regenerate_slots(request_data: RegenerateRequest, session: Session = Depends(get_session)):
    """Cancel the chosen appointments and rebuild the doctor's future slots"""
    return slot_generator.regenerate(
        session, request_data.doctor_id, request_data.cancel_appointment_ids
    )


@router.post("/conflicts", response_model=ConflictCheckResponse)
def check_conflicts(request_data: ConflictCheckRequest, session: Session = Depends(get_session)):
    """Preview the appointments a schedule, duration or time off change would affect"""
    report = slot_generator.check_schedule_conflicts(
        session,
        request_data.doctor_id,
        request_data.change_type,
        schedules=request_data.schedules,
        shift_config=request_data.shift_timing_config,
        appointment_duration_minutes=request_data.appointment_duration_minutes,
        start_date=request_data.start_date,
        end_date=request_data.end_date,
    )
    return {
        "has_conflicts": report.has_conflicts,
        "affected_appointments": report.affected_appointments,
        "slots_to_delete": report.slots_to_delete,
    }


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment(appointment_id: int, session: Session = Depends(get_session)):
    return slot_state_machine.get_appointment_or_404(session, appointment_id)


@router.post("/{appointment_id}/cancel", response_model=AppointmentResponse)
def cancel_appointment(
    appointment_id: int,
    cancel: CancelRequest = None,
    session: Session = Depends(get_session)
):
    """Cancel an appointment and release its slot"""
    return slot_state_machine.cancel_appointment(session, appointment_id, cancel.reason if cancel else None)


@router.post("/{appointment_id}/reschedule", response_model=AppointmentResponse)
def reschedule_appointment(
    appointment_id: int,
    reschedule: RescheduleRequest,
    session: Session = Depends(get_session)
):
    """Move an appointment to another slot; returns the new appointment"""
    return slot_state_machine.reschedule_appointment(session, appointment_id, reschedule.new_slot_id)
