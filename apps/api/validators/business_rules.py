"""Business rule configuration for slot generation, booking and the queue"""
import os
from typing import Dict, Tuple
from pydantic import BaseModel


class BusinessRules(BaseModel):
    """Business rules configuration"""
    # Slot generation rules
    ALLOWED_SLOT_DURATIONS: Tuple[int, ...] = (15, 20, 30, 45, 60)
    DEFAULT_SLOT_DURATION_MINUTES: int = 30
    MAX_GENERATION_DAYS: int = 366
    REGENERATE_DAYS: int = 90

    # Default shift boundaries, used when neither doctor nor hospital configures them
    DEFAULT_SHIFT_TIMINGS: Dict[str, Dict[str, str]] = {
        "morning": {"start": "06:00", "end": "14:00"},
        "evening": {"start": "14:00", "end": "22:00"},
        "night": {"start": "22:00", "end": "06:00"},
    }

    # Reasons reported by the schedule resolver
    HOLIDAY_REASON: str = "Holiday"
    DEFAULT_TIME_OFF_REASON: str = "Day Off"
    NOT_SCHEDULED_REASON: str = "Not Scheduled"

    # Time-off and schedule change side effects
    TIME_OFF_BLOCK_REASON: str = "Time off"
    SCHEDULE_CHANGE_CANCEL_REASON: str = "Schedule change by hospital"

    # Queue rules
    QUEUE_NUMBER_RETRIES: int = 3
    DEFAULT_CONSULTATION_MINUTES: int = 30

    # Rate limits (slowapi syntax)
    BOOKING_RATE_LIMIT: str = "30/minute"
    CHECK_IN_RATE_LIMIT: str = "60/minute"


# Global instance - can be loaded from database
business_rules = BusinessRules()

RATE_LIMIT_ENABLED = os.getenv("RATE_LIMIT_ENABLED", "true").lower() == "true"


def get_business_rules() -> BusinessRules:
    """Get current business rules"""
    return business_rules
