"""Scheduled-trigger engine for time reminders, location reminders and alarms.

Uses APScheduler date triggers for exact wake-ups and SQLite persistence.
"""

from .errors import InvalidInput, PersistenceError, SchedulingError, TriggerEngineError, UnknownError
from .types import (
    Alarm,
    Category,
    FirePayload,
    LocationData,
    LocationRecurrence,
    Priority,
    RecurrenceRule,
    RecurrenceType,
    Reminder,
    ReminderKind,
    ReminderStatus,
    SnoozeAction,
    TimeConstraint,
    Transition,
    TriggerDirection,
)
from .store import ReminderStore
from .services import (
    APSchedulerTimeService,
    LocationFeedSpatialService,
    Region,
    SpatialTriggerService,
    TimeTriggerService,
)
from .events import AlarmTriggerEvent, EventQueue, SpatialTransitionEvent, TimeTriggerEvent
from .time_scheduler import TimeTriggerScheduler
from .spatial import SpatialTriggerController
from .dispatcher import TriggerDispatcher
from .snooze import SnoozeCoordinator
from .presenter import CallbackPresenter, LogPresenter, Presenter, WebhookPresenter
from .manager import ReminderManager

__all__ = [
    "TriggerEngineError",
    "InvalidInput",
    "SchedulingError",
    "PersistenceError",
    "UnknownError",
    "Alarm",
    "Category",
    "FirePayload",
    "LocationData",
    "LocationRecurrence",
    "Priority",
    "RecurrenceRule",
    "RecurrenceType",
    "Reminder",
    "ReminderKind",
    "ReminderStatus",
    "SnoozeAction",
    "TimeConstraint",
    "Transition",
    "TriggerDirection",
    "ReminderStore",
    "TimeTriggerService",
    "APSchedulerTimeService",
    "SpatialTriggerService",
    "LocationFeedSpatialService",
    "Region",
    "EventQueue",
    "TimeTriggerEvent",
    "AlarmTriggerEvent",
    "SpatialTransitionEvent",
    "TimeTriggerScheduler",
    "SpatialTriggerController",
    "TriggerDispatcher",
    "SnoozeCoordinator",
    "Presenter",
    "LogPresenter",
    "WebhookPresenter",
    "CallbackPresenter",
    "ReminderManager",
]
