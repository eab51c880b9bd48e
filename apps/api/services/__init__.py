"""
Services package for the Clinic Scheduling API
Scheduling engine: schedule resolution, slot generation, the slot and
appointment state machine, calendar projections and the live queue.
"""

from . import schedule_resolver, slot_state_machine, slot_generator, calendar_aggregator, queue_coordinator

__all__ = [
    'schedule_resolver',
    'slot_state_machine',
    'slot_generator',
    'calendar_aggregator',
    'queue_coordinator',
]
