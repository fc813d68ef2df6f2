"""Arm and disarm exact wake-ups for time reminders and alarms."""

from datetime import datetime, timedelta
from typing import Callable, Iterable, Optional

from logger import logger
from . import config
from .errors import InvalidInput, SchedulingError, TriggerEngineError
from .events import AlarmTriggerEvent, EventQueue, TimeTriggerEvent
from .recurrence import next_alarm_trigger
from .services import TimeTriggerService
from .store import ReminderStore
from .types import Alarm, Reminder, local_now


def reminder_key(reminder_id: int) -> str:
    return f"reminder:{reminder_id}"


def alarm_key(alarm_id: int) -> str:
    return f"alarm:{alarm_id}"


class TimeTriggerScheduler:
    """Keeps at most one wake-up per reminder/alarm on the time service.

    Keys are derived from record ids, so arming an already armed record
    replaces its registration.
    """

    def __init__(
        self,
        service: TimeTriggerService,
        store: ReminderStore,
        queue: Optional[EventQueue] = None,
        clock: Callable[[], datetime] = local_now,
    ):
        self.service = service
        self.store = store
        self.queue = queue
        self._clock = clock
        service.set_listener(self._on_fire)

    def _on_fire(self, key: str) -> None:
        """Translate a service callback into a queued event."""
        if self.queue is None:
            logger.warning(f"Time trigger {key} fired with no event queue")
            return

        kind, _, raw_id = key.partition(":")
        try:
            record_id = int(raw_id)
        except ValueError:
            logger.warning(f"Ignoring unknown time trigger key {key}")
            return

        if kind == "reminder":
            self.queue.submit(TimeTriggerEvent(record_id))
        elif kind == "alarm":
            self.queue.submit(AlarmTriggerEvent(record_id))
        else:
            logger.warning(f"Ignoring unknown time trigger key {key}")

    def _schedule(self, key: str, run_at: datetime) -> None:
        if not self.service.can_schedule_exact():
            raise SchedulingError("Exact wake-up permission denied")
        try:
            self.service.schedule(key, run_at)
        except Exception as e:
            raise SchedulingError(f"Failed to arm {key}: {e}") from e

    def arm(self, reminder: Reminder) -> None:
        """Arm the reminder at its effective due time (snooze wins over schedule)."""
        if not reminder.is_time_based:
            raise InvalidInput(f"Reminder {reminder.id} is not time-based")

        due = reminder.due_at
        if due <= self._clock():
            raise InvalidInput(f"Reminder {reminder.id} due time {due} is not in the future")

        self._schedule(reminder_key(reminder.id), due)
        logger.info(f"Armed reminder {reminder.id} at {due}")

    def arm_at(self, reminder_id: int, run_at: datetime) -> None:
        """One-off override, used by snooze."""
        if run_at <= self._clock():
            raise InvalidInput(f"Cannot arm reminder {reminder_id} in the past ({run_at})")
        self._schedule(reminder_key(reminder_id), run_at)
        logger.info(f"Armed reminder {reminder_id} at {run_at} (override)")

    def disarm(self, reminder_id: int) -> bool:
        removed = self.service.cancel(reminder_key(reminder_id))
        if removed:
            logger.info(f"Disarmed reminder {reminder_id}")
        return removed

    def is_armed(self, reminder_id: int) -> bool:
        return self.service.is_scheduled(reminder_key(reminder_id))

    def arm_alarm(self, alarm: Alarm) -> None:
        if alarm.next_trigger_at is None or alarm.next_trigger_at <= self._clock():
            raise InvalidInput(f"Alarm {alarm.id} has no future trigger time")
        self._schedule(alarm_key(alarm.id), alarm.next_trigger_at)
        logger.info(f"Armed alarm {alarm.id} ({alarm.label}) at {alarm.next_trigger_at}")

    def disarm_alarm(self, alarm_id: int) -> bool:
        removed = self.service.cancel(alarm_key(alarm_id))
        if removed:
            logger.info(f"Disarmed alarm {alarm_id}")
        return removed

    def is_alarm_armed(self, alarm_id: int) -> bool:
        return self.service.is_scheduled(alarm_key(alarm_id))

    def rearm_all(self, reminders: Iterable[Reminder], alarms: Iterable[Alarm] = ()) -> int:
        """Re-register wake-ups after boot or resume.

        Each record is reloaded first. Anything already armed is left alone,
        so calling this twice adds nothing the second time. Triggers that
        were missed while the process was down fire shortly after now.

        Returns:
            Count of new registrations
        """
        now = self._clock()
        missed_at = now + timedelta(seconds=config.MISSED_TRIGGER_DELAY_SECONDS)
        armed = 0

        for reminder in reminders:
            try:
                fresh = self.store.get(reminder.id)
                if fresh is None or not fresh.is_pending or not fresh.is_time_based:
                    continue
                if self.is_armed(fresh.id):
                    continue

                run_at = fresh.due_at
                if run_at <= now:
                    logger.warning(f"Reminder {fresh.id} missed at {run_at}, firing at {missed_at}")
                    run_at = missed_at

                self._schedule(reminder_key(fresh.id), run_at)
                armed += 1
            except TriggerEngineError as e:
                logger.error(f"Failed to re-arm reminder {reminder.id}: {e}")

        for alarm in alarms:
            try:
                fresh = self.store.get_alarm(alarm.id)
                if fresh is None or not fresh.enabled:
                    continue
                if self.is_alarm_armed(fresh.id):
                    continue

                if fresh.next_trigger_at is None:
                    fresh.next_trigger_at = next_alarm_trigger(fresh.hour, fresh.minute, fresh.repeat_days, now)
                    self.store.update_alarm(fresh)

                run_at = fresh.next_trigger_at
                if run_at <= now:
                    logger.warning(f"Alarm {fresh.id} missed at {run_at}, firing at {missed_at}")
                    run_at = missed_at

                self._schedule(alarm_key(fresh.id), run_at)
                armed += 1
            except TriggerEngineError as e:
                logger.error(f"Failed to re-arm alarm {alarm.id}: {e}")

        logger.info(f"Re-armed {armed} time triggers")
        return armed
