"""Decide what fires when a trigger is delivered.

Deliveries are at-least-once and may be late, duplicated or replayed after a
reboot. Every handler reloads the record, treats "no longer PENDING" or
"still snoozed" as a silent no-op, commits with a compare-and-set, re-arms,
and only then presents the payload.
"""

from datetime import datetime, timedelta
from typing import Callable, Optional

from logger import logger
from . import config
from .events import AlarmTriggerEvent, SpatialTransitionEvent, TimeTriggerEvent, TriggerEvent
from .presenter import (
    Presenter,
    build_alarm_payload,
    build_location_payload,
    build_time_payload,
)
from .recurrence import next_alarm_trigger, next_occurrence_after
from .spatial import SpatialTriggerController, transition_matches
from .store import ReminderStore
from .time_scheduler import TimeTriggerScheduler
from .types import (
    FirePayload,
    LocationData,
    LocationRecurrence,
    ReminderStatus,
    Transition,
    local_now,
)

_CALENDAR_DAY_POLICIES = (
    LocationRecurrence.DAILY,
    LocationRecurrence.WEEKDAYS,
    LocationRecurrence.WEEKENDS,
)


def cooldown_blocks(location: LocationData, now: datetime) -> bool:
    """Whether the location's recurrence policy suppresses a firing at `now`."""
    policy = location.recurrence_policy
    if policy == LocationRecurrence.EVERY_TIME:
        return False

    weekday = now.isoweekday()
    if policy == LocationRecurrence.WEEKDAYS and weekday > 5:
        return True
    if policy == LocationRecurrence.WEEKENDS and weekday < 6:
        return True

    last = location.last_triggered_at
    if last is None:
        return False

    if policy in _CALENDAR_DAY_POLICIES and last.astimezone(now.tzinfo).date() == now.date():
        return True

    minutes = config.COOLDOWN_MINUTES.get(policy.value, 0)
    return bool(minutes) and now - last < timedelta(minutes=minutes)


class TriggerDispatcher:
    """The per-record state machine run on every delivered trigger."""

    def __init__(
        self,
        store: ReminderStore,
        time_scheduler: TimeTriggerScheduler,
        spatial: SpatialTriggerController,
        presenter: Presenter,
        clock: Callable[[], datetime] = local_now,
    ):
        self.store = store
        self.time_scheduler = time_scheduler
        self.spatial = spatial
        self.presenter = presenter
        self._clock = clock

    async def dispatch(self, event: TriggerEvent) -> Optional[FirePayload]:
        """Queue entry point. Failures are logged and the event is dropped."""
        try:
            if isinstance(event, TimeTriggerEvent):
                return await self.handle_time_trigger(event.reminder_id)
            if isinstance(event, SpatialTransitionEvent):
                return await self.handle_spatial_transition(event.reminder_id, event.transition)
            if isinstance(event, AlarmTriggerEvent):
                return await self.handle_alarm_trigger(event.alarm_id)
            logger.warning(f"Unknown trigger event {event!r}, discarded")
        except Exception as e:
            logger.error(f"Failed to dispatch {event}: {e}")
        return None

    def _after_commit(self, action: Callable[[], object], what: str) -> None:
        """Apply a registration change for a committed firing.

        The firing is already durable, so a failure here is logged and left
        for the next recover(); the payload is still presented.
        """
        try:
            action()
        except Exception as e:
            logger.error(f"Failed to {what} after firing: {e}")

    def _rearm(self, reminder_id: int) -> None:
        self._after_commit(
            lambda: self.time_scheduler.arm(self.store.get(reminder_id)),
            f"re-arm reminder {reminder_id}",
        )

    async def _present(self, payload: FirePayload) -> None:
        try:
            await self.presenter.present(payload)
        except Exception as e:
            logger.error(f"Presenter failed for {payload.kind} {payload.reminder_id}: {e}")

    async def handle_time_trigger(self, reminder_id: int) -> Optional[FirePayload]:
        reminder = self.store.get(reminder_id)
        if reminder is None or not reminder.is_pending:
            logger.debug(f"Time trigger for reminder {reminder_id}: not pending, discarded")
            return None
        if not reminder.is_time_based:
            logger.warning(f"Time trigger for location reminder {reminder_id}, discarded")
            return None

        now = self._clock()
        if reminder.is_snoozed(now):
            logger.debug(f"Time trigger for reminder {reminder_id}: snoozed until {reminder.snoozed_until}, discarded")
            return None
        if reminder.due_at > now:
            logger.debug(f"Time trigger for reminder {reminder_id}: due {reminder.due_at}, stale delivery discarded")
            return None

        recurring = reminder.recurrence_rule is not None and reminder.recurrence_rule.is_recurring
        if recurring and reminder.snoozed_until is not None and reminder.scheduled_time > now:
            # Snooze elapsed on a recurring reminder that already moved on:
            # fire, keep the schedule
            if not self.store.mark_fired(reminder_id, ReminderStatus.PENDING, fired_at=now, count_occurrence=False):
                logger.debug(f"Reminder {reminder_id} changed concurrently, discarded")
                return None
            self._rearm(reminder_id)
            logger.info(f"Fired snoozed reminder {reminder_id}, next at {reminder.scheduled_time}")
        else:
            next_time = next_occurrence_after(
                reminder.scheduled_time,
                reminder.recurrence_rule,
                now,
                occurrence_count=reminder.occurrence_count + 1,
            )
            if next_time is not None:
                if not self.store.mark_fired(reminder_id, ReminderStatus.PENDING, next_time=next_time, fired_at=now):
                    logger.debug(f"Reminder {reminder_id} changed concurrently, discarded")
                    return None
                self._rearm(reminder_id)
                logger.info(f"Fired reminder {reminder_id}, next occurrence {next_time}")
            else:
                if not self.store.mark_fired(reminder_id, ReminderStatus.COMPLETED, fired_at=now):
                    logger.debug(f"Reminder {reminder_id} changed concurrently, discarded")
                    return None
                self._after_commit(lambda: self.time_scheduler.disarm(reminder_id), f"disarm reminder {reminder_id}")
                logger.info(f"Fired reminder {reminder_id}, completed")

        payload = build_time_payload(reminder)
        await self._present(payload)
        return payload

    async def handle_spatial_transition(self, reminder_id: int, transition: Transition) -> Optional[FirePayload]:
        reminder = self.store.get(reminder_id)
        if reminder is None or not reminder.is_pending or reminder.location is None:
            logger.debug(f"{transition.value} for reminder {reminder_id}: not pending, discarded")
            return None

        location = reminder.location
        if location.awaiting_exit:
            if transition != Transition.EXIT:
                logger.debug(f"{transition.value} for reminder {reminder_id}: awaiting exit, discarded")
                return None
            self.store.set_snooze(reminder_id, reminder.snoozed_until, reminder.snooze_count, awaiting_exit=False)
            self.spatial.refresh(reminder_id)
            logger.info(f"Reminder {reminder_id} left {location.display_name}, re-armed {location.trigger_direction.value}")
            return None

        if not transition_matches(location, transition):
            logger.debug(f"{transition.value} for reminder {reminder_id}: direction mismatch, discarded")
            return None

        now = self._clock()
        if location.time_constraint is not None and not location.time_constraint.allows(now):
            logger.debug(f"{transition.value} for reminder {reminder_id}: outside time window, discarded")
            return None
        if reminder.is_snoozed(now):
            logger.debug(f"{transition.value} for reminder {reminder_id}: snoozed until {reminder.snoozed_until}, discarded")
            return None
        if cooldown_blocks(location, now):
            logger.debug(f"{transition.value} for reminder {reminder_id}: {location.recurrence_policy.value} cooldown, discarded")
            return None

        once = location.recurrence_policy == LocationRecurrence.ONCE
        new_status = ReminderStatus.COMPLETED if once else ReminderStatus.PENDING
        if not self.store.mark_fired(reminder_id, new_status, fired_at=now):
            logger.debug(f"Reminder {reminder_id} changed concurrently, discarded")
            return None

        if once:
            self._after_commit(lambda: self.spatial.unregister(reminder_id), f"unregister reminder {reminder_id}")
        logger.info(f"Fired location reminder {reminder_id} on {transition.value} at {location.display_name}")

        payload = build_location_payload(reminder, transition)
        await self._present(payload)
        return payload

    async def handle_alarm_trigger(self, alarm_id: int) -> Optional[FirePayload]:
        alarm = self.store.get_alarm(alarm_id)
        if alarm is None or not alarm.enabled:
            logger.debug(f"Alarm {alarm_id}: missing or disabled, discarded")
            return None

        now = self._clock()
        if alarm.next_trigger_at is None or alarm.next_trigger_at > now:
            logger.debug(f"Alarm {alarm_id}: due {alarm.next_trigger_at}, stale delivery discarded")
            return None

        alarm.last_triggered_at = now
        if alarm.is_repeating:
            alarm.next_trigger_at = next_alarm_trigger(alarm.hour, alarm.minute, alarm.repeat_days, now)
        else:
            alarm.enabled = False
            alarm.next_trigger_at = None
        self.store.update_alarm(alarm)

        if alarm.is_repeating:
            self._after_commit(lambda: self.time_scheduler.arm_alarm(alarm), f"re-arm alarm {alarm_id}")
            logger.info(f"Fired alarm {alarm_id} ({alarm.label}), next at {alarm.next_trigger_at}")
        else:
            self._after_commit(lambda: self.time_scheduler.disarm_alarm(alarm_id), f"disarm alarm {alarm_id}")
            logger.info(f"Fired alarm {alarm_id} ({alarm.label}), disabled")

        payload = build_alarm_payload(alarm)
        await self._present(payload)
        return payload
