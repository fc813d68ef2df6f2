"""Inbound commands: create, cancel, snooze and recover reminders and alarms.

`ReminderManager` wires the store, the two trigger controllers, the event
queue and the dispatcher together. Every public command either succeeds or
raises a `TriggerEngineError` subclass.
"""

import asyncio
import functools
from datetime import datetime
from typing import Callable, Iterable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

import config as app_config
from logger import logger
from .dispatcher import TriggerDispatcher
from .errors import InvalidInput, SchedulingError, TriggerEngineError, UnknownError
from .events import EventQueue
from .presenter import Presenter, default_presenter
from .recurrence import next_alarm_trigger
from .services import (
    APSchedulerTimeService,
    LocationFeedSpatialService,
    SpatialTriggerService,
    TimeTriggerService,
)
from .snooze import SnoozeCoordinator
from .spatial import SpatialTriggerController
from .store import ReminderStore
from .time_scheduler import TimeTriggerScheduler
from .types import (
    Alarm,
    Category,
    LocationData,
    Priority,
    RecurrenceRule,
    Reminder,
    ReminderKind,
    ReminderStatus,
    local_now,
    local_tz,
)


def _typed_errors(func):
    """Re-raise engine errors as-is, wrap anything else in UnknownError."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        try:
            return func(self, *args, **kwargs)
        except TriggerEngineError:
            raise
        except Exception as e:
            logger.error(f"{func.__name__} failed unexpectedly: {e}")
            raise UnknownError(f"{func.__name__} failed: {e}") from e

    return wrapper


class ReminderManager:
    """Facade used by the command producer (voice/chat parser, API)."""

    def __init__(
        self,
        store: ReminderStore,
        time_service: TimeTriggerService,
        spatial_service: SpatialTriggerService,
        presenter: Optional[Presenter] = None,
        clock: Callable[[], datetime] = local_now,
        slot_policy: Optional[str] = None,
    ):
        self.store = store
        self._clock = clock
        self.queue = EventQueue()
        self.time_scheduler = TimeTriggerScheduler(time_service, store, self.queue, clock)
        self.spatial = SpatialTriggerController(spatial_service, store, self.queue, slot_policy)
        self.presenter = presenter or default_presenter()
        self.dispatcher = TriggerDispatcher(store, self.time_scheduler, self.spatial, self.presenter, clock)
        self.snoozer = SnoozeCoordinator(store, self.time_scheduler, self.spatial, clock)
        self.queue.bind(self.dispatcher)
        self._runner: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        scheduler: AsyncIOScheduler,
        spatial_service: Optional[SpatialTriggerService] = None,
        presenter: Optional[Presenter] = None,
    ) -> "ReminderManager":
        """Build a manager on the configured database and an APScheduler instance."""
        return cls(
            store=ReminderStore(app_config.TRIGGER_DB_PATH),
            time_service=APSchedulerTimeService(scheduler),
            spatial_service=spatial_service or LocationFeedSpatialService(),
            presenter=presenter,
        )

    # -- event loop --------------------------------------------------------

    def start(self) -> asyncio.Task:
        """Start draining the event queue on the running loop."""
        if self._runner is None or self._runner.done():
            self._runner = asyncio.get_running_loop().create_task(self.queue.run())
            logger.info("Trigger dispatch started")
        return self._runner

    async def stop(self) -> None:
        if self._runner is not None:
            self._runner.cancel()
            try:
                await self._runner
            except asyncio.CancelledError:
                pass
            self._runner = None
            logger.info("Trigger dispatch stopped")

    # -- reminders ---------------------------------------------------------

    @_typed_errors
    def create_time_reminder(
        self,
        message: str,
        scheduled_time: datetime,
        recurrence_rule: Optional[RecurrenceRule] = None,
        priority: Priority = Priority.MEDIUM,
        category: Category = Category.PERSONAL,
        notes: Optional[str] = None,
    ) -> int:
        """Create and arm a time-based reminder.

        Naive datetimes are taken as local time.

        Returns:
            The new reminder id

        Raises:
            InvalidInput: Empty message or a time that is not in the future
            SchedulingError: The wake-up could not be armed (nothing is stored)
        """
        if scheduled_time.tzinfo is None:
            scheduled_time = scheduled_time.replace(tzinfo=local_tz())
        if scheduled_time <= self._clock():
            raise InvalidInput(f"Scheduled time {scheduled_time} is in the past")

        reminder = Reminder(
            message=message.strip() if message else message,
            kind=ReminderKind.TIME_BASED,
            scheduled_time=scheduled_time,
            recurrence_rule=recurrence_rule,
            priority=priority,
            category=category,
            notes=notes,
        )
        created = self.store.create(reminder)

        try:
            self.time_scheduler.arm(created)
        except TriggerEngineError as e:
            self.store.delete(created.id)
            logger.error(f"Failed to arm reminder {created.id}, removed: {e}")
            raise SchedulingError(f"Failed to schedule reminder: {e}") from e

        logger.info(f"Created time reminder {created.id}: '{created.message}' at {scheduled_time}")
        return created.id

    @_typed_errors
    def create_location_reminder(
        self,
        message: str,
        location: LocationData,
        priority: Priority = Priority.MEDIUM,
        category: Category = Category.PERSONAL,
        notes: Optional[str] = None,
    ) -> int:
        """Create a location-based reminder and register its region.

        Raises:
            InvalidInput: Empty message, missing or out-of-range coordinates
            SchedulingError: The region could not be registered (nothing is stored)
        """
        if location.latitude is None or location.longitude is None:
            raise InvalidInput("Location reminders need coordinates")
        if not -90 <= location.latitude <= 90 or not -180 <= location.longitude <= 180:
            raise InvalidInput(f"Invalid coordinates ({location.latitude}, {location.longitude})")
        if location.radius_meters <= 0:
            raise InvalidInput(f"Radius must be positive, got {location.radius_meters}")

        reminder = Reminder(
            message=message.strip() if message else message,
            kind=ReminderKind.LOCATION_BASED,
            location=location,
            priority=priority,
            category=category,
            notes=notes,
        )
        created = self.store.create(reminder)

        try:
            self.spatial.register(created)
        except TriggerEngineError as e:
            self.store.delete(created.id)
            logger.error(f"Failed to register reminder {created.id}, removed: {e}")
            raise SchedulingError(f"Failed to register location reminder: {e}") from e

        logger.info(f"Created location reminder {created.id}: '{created.message}' at {location.display_name}")
        return created.id

    def _release(self, reminder: Reminder) -> None:
        if reminder.is_time_based:
            self.time_scheduler.disarm(reminder.id)
        else:
            self.spatial.unregister(reminder.id)

    @_typed_errors
    def delete(self, reminder_id: int) -> bool:
        """Release the trigger, then delete the row."""
        reminder = self.store.get(reminder_id)
        if reminder is None:
            return False
        self._release(reminder)
        deleted = self.store.delete(reminder_id)
        logger.info(f"Deleted reminder {reminder_id}")
        return deleted

    @_typed_errors
    def cancel(self, reminder_id: int) -> bool:
        reminder = self.store.get(reminder_id)
        if reminder is None:
            return False
        self.store.set_status(reminder_id, ReminderStatus.CANCELLED)
        self._release(reminder)
        logger.info(f"Cancelled reminder {reminder_id}")
        return True

    @_typed_errors
    def mark_completed(self, reminder_id: int) -> bool:
        reminder = self.store.get(reminder_id)
        if reminder is None:
            return False
        self.store.set_status(reminder_id, ReminderStatus.COMPLETED)
        self._release(reminder)
        logger.info(f"Marked reminder {reminder_id} completed")
        return True

    @_typed_errors
    def snooze(self, reminder_id: int, minutes: Optional[int] = None) -> datetime:
        return self.snoozer.snooze(reminder_id, minutes)

    @_typed_errors
    def snooze_until_leave(self, reminder_id: int) -> None:
        self.snoozer.snooze_until_leave(reminder_id)

    @_typed_errors
    def postpone(self, reminder_id: int, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=local_tz())
        self.snoozer.postpone(reminder_id, when)

    @_typed_errors
    def reset_snooze(self, reminder_id: int) -> None:
        self.snoozer.reset_snooze(reminder_id)

    def get(self, reminder_id: int) -> Optional[Reminder]:
        return self.store.get(reminder_id)

    def active_reminders(self) -> list[Reminder]:
        return [r for r in self.store.all_reminders() if r.is_pending]

    def upcoming(self, limit: int = 10) -> list[Reminder]:
        return self.store.upcoming(limit)

    # -- alarms ------------------------------------------------------------

    @_typed_errors
    def create_alarm(
        self,
        hour: int,
        minute: int,
        repeat_days: Iterable[int] = (),
        label: str = "Alarm",
        vibrate: bool = True,
        snooze_duration_minutes: int = 5,
        sound_ref: Optional[str] = None,
    ) -> int:
        """Create and arm an alarm at the next local hh:mm."""
        alarm = Alarm(
            hour=hour,
            minute=minute,
            label=label,
            repeat_days=frozenset(repeat_days),
            vibrate=vibrate,
            snooze_duration_minutes=snooze_duration_minutes,
            sound_ref=sound_ref,
        )
        now = self._clock()
        alarm.created_at = now
        alarm.next_trigger_at = next_alarm_trigger(hour, minute, alarm.repeat_days, now)
        created = self.store.create_alarm(alarm)

        try:
            self.time_scheduler.arm_alarm(created)
        except TriggerEngineError as e:
            self.store.delete_alarm(created.id)
            logger.error(f"Failed to arm alarm {created.id}, removed: {e}")
            raise SchedulingError(f"Failed to schedule alarm: {e}") from e

        logger.info(f"Created alarm {created.id} ({created.label}) {created.time_24h}, {created.repeat_description()}")
        return created.id

    @_typed_errors
    def toggle_alarm(self, alarm_id: int, enabled: bool) -> bool:
        alarm = self.store.get_alarm(alarm_id)
        if alarm is None:
            return False

        alarm.enabled = enabled
        if enabled:
            alarm.snooze_count = 0
            alarm.next_trigger_at = next_alarm_trigger(alarm.hour, alarm.minute, alarm.repeat_days, self._clock())
            self.store.update_alarm(alarm)
            self.time_scheduler.arm_alarm(alarm)
        else:
            alarm.next_trigger_at = None
            self.store.update_alarm(alarm)
            self.time_scheduler.disarm_alarm(alarm_id)

        logger.info(f"Alarm {alarm_id} {'enabled' if enabled else 'disabled'}")
        return True

    @_typed_errors
    def delete_alarm(self, alarm_id: int) -> bool:
        self.time_scheduler.disarm_alarm(alarm_id)
        deleted = self.store.delete_alarm(alarm_id)
        if deleted:
            logger.info(f"Deleted alarm {alarm_id}")
        return deleted

    @_typed_errors
    def snooze_alarm(self, alarm_id: int, minutes: Optional[int] = None) -> datetime:
        return self.snoozer.snooze_alarm(alarm_id, minutes)

    def alarms(self) -> list[Alarm]:
        return self.store.all_alarms()

    # -- recovery ----------------------------------------------------------

    @_typed_errors
    def recover(self) -> dict[str, int]:
        """Re-arm everything after boot or app resume. Safe to call repeatedly.

        Returns:
            New registrations per kind
        """
        counts = {
            "time": self.time_scheduler.rearm_all(self.store.active_time_based()),
            "alarms": self.time_scheduler.rearm_all((), self.store.enabled_alarms()),
            "location": self.spatial.detect_removed()
            + self.spatial.rearm_all(self.store.active_location_based()),
        }
        logger.info(
            f"Recovery complete: {counts['time']} time, {counts['alarms']} alarm, "
            f"{counts['location']} location registrations"
        )
        return counts
