"""Tests for the SQLite reminder store.

Each test gets a fresh temp-file database from the `store` fixture.
"""

import os
import sys
from datetime import datetime, time, timedelta
from zoneinfo import ZoneInfo

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import config as app_config
from triggers import config
from triggers.errors import InvalidInput, PersistenceError
from triggers.store import ReminderStore
from triggers.types import (
    Alarm,
    Category,
    LocationData,
    LocationRecurrence,
    Priority,
    RecurrenceRule,
    Reminder,
    ReminderKind,
    ReminderStatus,
    TimeConstraint,
    TriggerDirection,
)


def time_reminder(clock, minutes=30, **kwargs):
    return Reminder(
        message=kwargs.pop("message", "call mom"),
        kind=ReminderKind.TIME_BASED,
        scheduled_time=clock() + timedelta(minutes=minutes),
        **kwargs,
    )


def location_reminder(**kwargs):
    return Reminder(
        message="buy milk",
        kind=ReminderKind.LOCATION_BASED,
        location=LocationData(
            latitude=51.5,
            longitude=-0.12,
            place_name="Tesco",
            recurrence_policy=kwargs.pop("policy", LocationRecurrence.ONCE),
            time_constraint=kwargs.pop("time_constraint", None),
        ),
        **kwargs,
    )


def test_create_assigns_id_and_ignores_caller_id(store, clock):
    reminder = time_reminder(clock)
    reminder.id = 999

    created = store.create(reminder)

    assert created.id != 999
    assert created.id is not None
    assert created.status == ReminderStatus.PENDING
    assert created.created_at == clock()


def test_round_trip_preserves_fields(store, clock):
    rule = RecurrenceRule.weekly([1, 3], interval=2)
    created = store.create(time_reminder(
        clock, recurrence_rule=rule, priority=Priority.HIGH, category=Category.HEALTH, notes="weekly pill"
    ))

    loaded = store.get(created.id)

    assert loaded.message == "call mom"
    assert loaded.scheduled_time == clock() + timedelta(minutes=30)
    assert loaded.recurrence_rule == rule
    assert loaded.priority == Priority.HIGH
    assert loaded.category == Category.HEALTH
    assert loaded.notes == "weekly pill"
    assert loaded.location is None


def test_location_round_trip(store):
    constraint = TimeConstraint(start_time=time(17), end_time=time(20), days_of_week=(1, 2, 3, 4, 5))
    created = store.create(location_reminder(policy=LocationRecurrence.WEEKDAYS, time_constraint=constraint))

    loaded = store.get(created.id)

    assert loaded.scheduled_time is None
    assert loaded.location.place_name == "Tesco"
    assert loaded.location.trigger_direction == TriggerDirection.ENTER
    assert loaded.location.recurrence_policy == LocationRecurrence.WEEKDAYS
    assert loaded.location.time_constraint == constraint


def test_reload_uses_local_zone(store, monkeypatch):
    monkeypatch.setattr(app_config, "TIMEZONE", "Europe/London")
    london = ZoneInfo("Europe/London")
    created = store.create(Reminder(
        message="stand up",
        kind=ReminderKind.TIME_BASED,
        scheduled_time=datetime(2026, 10, 24, 9, 0, tzinfo=london),
        recurrence_rule=RecurrenceRule.daily(end_date=datetime(2026, 11, 1, 9, 0, tzinfo=london)),
    ))

    loaded = store.get(created.id)

    assert loaded.scheduled_time.tzinfo == london
    assert loaded.recurrence_rule.end_date.tzinfo == london
    assert loaded.created_at.tzinfo == london


def test_naive_end_date_is_localized():
    rule = RecurrenceRule.daily(end_date=datetime(2025, 3, 20, 23, 0))
    assert rule.end_date == datetime(2025, 3, 20, 23, 0, tzinfo=ZoneInfo("UTC"))


def test_location_radius_defaults_from_config():
    loaded = LocationData.from_json('{"latitude": 51.5, "longitude": -0.12}')
    assert loaded.radius_meters == config.DEFAULT_RADIUS_METERS


def test_time_constraint_days():
    assert TimeConstraint(days_of_week=(5, 1, 1)).days_of_week == (1, 5)
    with pytest.raises(InvalidInput):
        TimeConstraint(days_of_week=(0, 3))
    with pytest.raises(InvalidInput):
        TimeConstraint.from_dict({"daysOfWeek": [8]})


def test_reminder_invariants():
    with pytest.raises(InvalidInput):
        Reminder(message="  ", kind=ReminderKind.LOCATION_BASED, location=LocationData(1.0, 1.0))
    with pytest.raises(InvalidInput):
        Reminder(message="x", kind=ReminderKind.TIME_BASED)
    with pytest.raises(InvalidInput):
        Reminder(message="x", kind=ReminderKind.LOCATION_BASED)


def test_active_queries_filter_by_kind_and_status(store, clock):
    t1 = store.create(time_reminder(clock))
    t2 = store.create(time_reminder(clock, minutes=60))
    loc = store.create(location_reminder())
    store.set_status(t2.id, ReminderStatus.CANCELLED)

    assert [r.id for r in store.active_time_based()] == [t1.id]
    assert [r.id for r in store.active_location_based()] == [loc.id]
    assert store.pending_count() == 2
    assert len(store.all_reminders()) == 3


def test_upcoming_orders_by_due_time(store, clock):
    later = store.create(time_reminder(clock, minutes=90, message="later"))
    sooner = store.create(time_reminder(clock, minutes=10, message="sooner"))

    assert [r.id for r in store.upcoming(limit=5)] == [sooner.id, later.id]
    assert len(store.upcoming(limit=1)) == 1


def test_spatial_handle_lookup(store):
    created = store.create(location_reminder())

    store.set_spatial_handle(created.id, "region-x")
    assert store.find_by_spatial_handle("region-x").id == created.id

    store.set_spatial_handle(created.id, None)
    assert store.find_by_spatial_handle("region-x") is None


def test_mark_fired_is_compare_and_set(store, clock):
    created = store.create(time_reminder(clock))

    assert store.mark_fired(created.id, ReminderStatus.COMPLETED) is True
    # Second delivery of the same trigger finds it already completed
    assert store.mark_fired(created.id, ReminderStatus.COMPLETED) is False

    loaded = store.get(created.id)
    assert loaded.status == ReminderStatus.COMPLETED
    assert loaded.occurrence_count == 1


def test_mark_fired_advances_schedule_and_clears_snooze(store, clock):
    created = store.create(time_reminder(clock))
    store.set_snooze(created.id, clock() + timedelta(minutes=5), 1)
    next_time = clock() + timedelta(days=1)

    assert store.mark_fired(created.id, ReminderStatus.PENDING, next_time=next_time)

    loaded = store.get(created.id)
    assert loaded.status == ReminderStatus.PENDING
    assert loaded.scheduled_time == next_time
    assert loaded.snoozed_until is None
    assert loaded.snooze_count == 1


def test_mark_fired_stamps_location_history(store, clock):
    created = store.create(location_reminder(policy=LocationRecurrence.EVERY_TIME))

    store.mark_fired(created.id, ReminderStatus.PENDING, fired_at=clock())
    store.mark_fired(created.id, ReminderStatus.PENDING, fired_at=clock())

    loaded = store.get(created.id)
    assert loaded.location.trigger_count == 2
    assert loaded.location.last_triggered_at == clock()


def test_mark_fired_missing_row(store):
    assert store.mark_fired(12345, ReminderStatus.COMPLETED) is False


def test_set_snooze_awaiting_exit(store, clock):
    created = store.create(location_reminder())

    store.set_snooze(created.id, None, 1, awaiting_exit=True)
    assert store.get(created.id).location.awaiting_exit is True

    store.set_snooze(created.id, None, 1)
    assert store.get(created.id).location.awaiting_exit is True

    store.set_snooze(created.id, None, 0, awaiting_exit=False)
    assert store.get(created.id).location.awaiting_exit is False


def test_update_and_delete(store, clock):
    created = store.create(time_reminder(clock))
    created.message = "call dad"
    clock.advance(minutes=1)

    assert store.update(created) is True
    loaded = store.get(created.id)
    assert loaded.message == "call dad"
    assert loaded.updated_at == clock()

    assert store.delete(created.id) is True
    assert store.get(created.id) is None
    assert store.delete(created.id) is False


def test_alarm_crud(store, clock):
    alarm = store.create_alarm(Alarm(hour=7, minute=30, repeat_days=frozenset({1, 2, 3, 4, 5}), label="Work"))

    loaded = store.get_alarm(alarm.id)
    assert loaded.time_24h == "07:30"
    assert loaded.repeat_days == frozenset({1, 2, 3, 4, 5})
    assert loaded.repeat_description() == "Weekdays"
    assert loaded.enabled is True

    loaded.enabled = False
    loaded.next_trigger_at = clock()
    store.update_alarm(loaded)
    assert store.enabled_alarms() == []
    assert store.get_alarm(alarm.id).next_trigger_at == clock()

    assert store.delete_alarm(alarm.id) is True
    assert store.all_alarms() == []


def test_alarm_validation():
    with pytest.raises(InvalidInput):
        Alarm(hour=24, minute=0)
    with pytest.raises(InvalidInput):
        Alarm(hour=7, minute=60)
    assert Alarm(hour=7, minute=0, label="  ").label == "Alarm"


def test_survives_reopen(tmp_path, clock):
    path = str(tmp_path / "reopen.db")
    first = ReminderStore(path, clock=clock)
    created = first.create(time_reminder(clock))
    first.close()

    second = ReminderStore(path, clock=clock)
    assert second.get(created.id).message == "call mom"
    second.close()


def test_sqlite_errors_become_persistence_errors(store, clock):
    store.close()
    with pytest.raises(PersistenceError):
        store.create(time_reminder(clock))
    with pytest.raises(PersistenceError):
        store.get(1)


def test_unopenable_path_raises_persistence_error(tmp_path):
    # A directory can't be opened as a database file
    with pytest.raises(PersistenceError):
        ReminderStore(str(tmp_path))
