"""Snooze, snooze-until-leave and postpone for reminders and alarms."""

from datetime import datetime, timedelta
from typing import Callable, Optional

from logger import logger
from . import config
from .errors import InvalidInput, TriggerEngineError
from .spatial import SpatialTriggerController
from .store import ReminderStore
from .time_scheduler import TimeTriggerScheduler
from .types import Reminder, ReminderStatus, local_now


class SnoozeCoordinator:
    """Owns the suppression window on reminders and the snooze re-arm on alarms."""

    def __init__(
        self,
        store: ReminderStore,
        time_scheduler: TimeTriggerScheduler,
        spatial: SpatialTriggerController,
        clock: Callable[[], datetime] = local_now,
    ):
        self.store = store
        self.time_scheduler = time_scheduler
        self.spatial = spatial
        self._clock = clock

    @staticmethod
    def snooze_options() -> list[int]:
        return list(config.SNOOZE_OPTIONS_MINUTES)

    def _load_snoozable(self, reminder_id: int) -> Reminder:
        reminder = self.store.get(reminder_id)
        if reminder is None:
            raise InvalidInput(f"Reminder {reminder_id} not found")
        if reminder.status == ReminderStatus.CANCELLED:
            raise InvalidInput(f"Reminder {reminder_id} is cancelled")
        return reminder

    def _reopen(self, reminder: Reminder) -> None:
        """A just-fired one-shot goes back to PENDING so the snooze can fire it again."""
        if reminder.status == ReminderStatus.COMPLETED:
            self.store.set_status(reminder.id, ReminderStatus.PENDING)
            logger.info(f"Reopened reminder {reminder.id} for snooze")

    def snooze(self, reminder_id: int, minutes: Optional[int] = None) -> datetime:
        """Suppress the reminder for `minutes`.

        Time reminders are re-armed once at the end of the window without
        touching scheduled_time. Location reminders keep their region; the
        dispatcher ignores transitions until the window elapses.

        Returns:
            The end of the snooze window
        """
        if minutes is None:
            minutes = config.DEFAULT_SNOOZE_MINUTES
        if minutes <= 0:
            raise InvalidInput(f"Snooze minutes must be positive, got {minutes}")

        reminder = self._load_snoozable(reminder_id)
        until = self._clock() + timedelta(minutes=minutes)

        # Arm first: a failed arm leaves nothing persisted
        if reminder.is_time_based:
            self.time_scheduler.arm_at(reminder_id, until)
        try:
            self._reopen(reminder)
            self.store.set_snooze(reminder_id, until, reminder.snooze_count + 1)
        except TriggerEngineError:
            if reminder.is_time_based:
                self._restore(reminder)
            raise

        if not reminder.is_time_based and not self.spatial.is_registered(reminder_id):
            self.spatial.register(self.store.get(reminder_id))

        logger.info(f"Snoozed reminder {reminder_id} for {minutes} min (until {until})")
        return until

    def _restore(self, reminder: Reminder) -> None:
        """Put back the status and wake-up a failed snooze replaced."""
        try:
            if reminder.status == ReminderStatus.COMPLETED:
                self.store.set_status(reminder.id, ReminderStatus.COMPLETED)
            if reminder.is_pending and reminder.due_at > self._clock():
                self.time_scheduler.arm(reminder)
            else:
                self.time_scheduler.disarm(reminder.id)
        except TriggerEngineError as e:
            logger.error(f"Failed to restore reminder {reminder.id} after snooze failure: {e}")

    def snooze_until_leave(self, reminder_id: int) -> None:
        """Fire again only after the user has left, then resume the original direction."""
        reminder = self._load_snoozable(reminder_id)
        if reminder.is_time_based:
            raise InvalidInput(f"Reminder {reminder_id} is not location-based")

        self._reopen(reminder)
        self.store.set_snooze(
            reminder_id, reminder.snoozed_until, reminder.snooze_count + 1, awaiting_exit=True
        )
        self.spatial.refresh(reminder_id)
        logger.info(f"Reminder {reminder_id} snoozed until leaving {reminder.location.display_name}")

    def postpone(self, reminder_id: int, new_time: datetime) -> None:
        """Move a time reminder to a new future time."""
        reminder = self._load_snoozable(reminder_id)
        if not reminder.is_time_based:
            raise InvalidInput(f"Reminder {reminder_id} is not time-based")
        if new_time <= self._clock():
            raise InvalidInput(f"Cannot postpone reminder {reminder_id} to the past ({new_time})")

        reminder.scheduled_time = new_time
        reminder.snoozed_until = None
        reminder.status = ReminderStatus.PENDING
        self.store.update(reminder)
        self.time_scheduler.arm(reminder)
        logger.info(f"Postponed reminder {reminder_id} to {new_time}")

    def reset_snooze(self, reminder_id: int) -> None:
        """Clear the snooze window and count, and restore the normal trigger."""
        reminder = self._load_snoozable(reminder_id)
        self.store.set_snooze(
            reminder_id, None, 0, awaiting_exit=False if not reminder.is_time_based else None
        )
        if not reminder.is_pending:
            return

        if reminder.is_time_based:
            now = self._clock()
            if reminder.scheduled_time > now:
                self.time_scheduler.arm(self.store.get(reminder_id))
            else:
                self.time_scheduler.arm_at(
                    reminder_id, now + timedelta(seconds=config.MISSED_TRIGGER_DELAY_SECONDS)
                )
        elif reminder.location.awaiting_exit:
            self.spatial.refresh(reminder_id)
        logger.info(f"Reset snooze on reminder {reminder_id}")

    def snooze_alarm(self, alarm_id: int, minutes: Optional[int] = None) -> datetime:
        """Ring the alarm again in `minutes` (defaults to its own snooze duration)."""
        alarm = self.store.get_alarm(alarm_id)
        if alarm is None:
            raise InvalidInput(f"Alarm {alarm_id} not found")

        minutes = minutes if minutes is not None else alarm.snooze_duration_minutes
        if minutes <= 0:
            raise InvalidInput(f"Snooze minutes must be positive, got {minutes}")

        alarm.snooze_count += 1
        alarm.enabled = True
        alarm.next_trigger_at = self._clock() + timedelta(minutes=minutes)
        self.store.update_alarm(alarm)
        self.time_scheduler.arm_alarm(alarm)

        logger.info(f"Snoozed alarm {alarm_id} for {minutes} min (snooze #{alarm.snooze_count})")
        return alarm.next_trigger_at
