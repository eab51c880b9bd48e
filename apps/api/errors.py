"""Domain errors raised by the scheduling services.

Routers never translate these by hand: ``main.py`` registers a single
exception handler that turns any ``SchedulingError`` into a JSON response
with the status code carried by the error class.
"""
from functools import wraps
from typing import Callable, TypeVar
import logging

from fastapi import status
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class SchedulingError(Exception):
    """Base class for every error the engine reports to callers"""
    status_code: int = status.HTTP_400_BAD_REQUEST
    code: str = "scheduling_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class SlotUnavailable(SchedulingError):
    """Lost a booking race, or the slot is already booked/blocked"""
    status_code = status.HTTP_409_CONFLICT
    code = "slot_unavailable"


class InvalidTransition(SchedulingError):
    """Operation not legal for the current slot/appointment/queue state"""
    status_code = status.HTTP_409_CONFLICT
    code = "invalid_transition"


class DoctorBusy(SchedulingError):
    status_code = status.HTTP_409_CONFLICT
    code = "doctor_busy"


class NotFound(SchedulingError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "not_found"


class QueueEmpty(NotFound):
    code = "queue_empty"


class ScheduleConflict(SchedulingError):
    """Generation kept colliding with concurrent runs over the same dates.

    Populated dates themselves are never an error: generation counts them
    as skipped.
    """
    status_code = status.HTTP_409_CONFLICT
    code = "schedule_conflict"


class ValidationError(SchedulingError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "validation_error"


class StorageError(SchedulingError):
    """Persistence failure, kept apart from the domain errors above"""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    code = "storage_error"


def storage_guard(func: Callable[..., T]) -> Callable[..., T]:
    """
    Wrap a service function taking ``session`` as first argument so that
    SQLAlchemy failures roll the session back and surface as StorageError.

    Usage:
        @storage_guard
        def book_slot(session, slot_id, patient_id):
            ...
    """
    @wraps(func)
    def wrapper(session, *args, **kwargs) -> T:
        try:
            return func(session, *args, **kwargs)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Storage error in {func.__name__}: {e}")
            raise StorageError("Storage backend failed, please retry") from e
    return wrapper
