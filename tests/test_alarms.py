"""Tests for alarm scheduling, firing and snooze."""

import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from triggers.errors import InvalidInput
from triggers.time_scheduler import alarm_key
from triggers.types import Alarm


def at(clock, day, hour, minute=0):
    return datetime(2025, 3, day, hour, minute, tzinfo=clock().tzinfo)


class TestAlarmModel:

    def test_validation(self):
        with pytest.raises(InvalidInput):
            Alarm(hour=24, minute=0)
        with pytest.raises(InvalidInput):
            Alarm(hour=7, minute=60)
        with pytest.raises(InvalidInput):
            Alarm(hour=7, minute=0, repeat_days={0})
        with pytest.raises(InvalidInput):
            Alarm(hour=7, minute=0, snooze_duration_minutes=0)

    def test_blank_label(self):
        assert Alarm(hour=7, minute=0, label="  ").label == "Alarm"

    @pytest.mark.parametrize("days,expected", [
        ((), "One time"),
        ((1, 2, 3, 4, 5), "Weekdays"),
        ((6, 7), "Weekends"),
        ((1, 2, 3, 4, 5, 6, 7), "Every day"),
        ((3, 1), "Mon, Wed"),
    ])
    def test_repeat_description(self, days, expected):
        assert Alarm(hour=7, minute=0, repeat_days=days).repeat_description() == expected

    def test_time_24h(self):
        assert Alarm(hour=7, minute=5).time_24h == "07:05"


class TestAlarmLifecycle:

    def test_create_arms_next_trigger(self, engine, store, clock, time_service):
        # Monday 09:00: 08:00 has passed, so tomorrow
        aid = engine.create_alarm(8, 0, label="Gym")

        alarm = store.get_alarm(aid)
        assert alarm.next_trigger_at == at(clock, 11, 8)
        assert time_service.jobs[alarm_key(aid)] == alarm.next_trigger_at

    def test_create_skips_to_repeat_day(self, engine, store, clock):
        aid = engine.create_alarm(10, 0, repeat_days={6, 7})
        assert store.get_alarm(aid).next_trigger_at == at(clock, 15, 10)

    def test_create_rejects_bad_time(self, engine, store):
        with pytest.raises(InvalidInput):
            engine.create_alarm(25, 0)
        assert engine.alarms() == []

    @pytest.mark.asyncio
    async def test_weekday_alarm_through_a_week(self, engine, clock, presenter, run_until):
        engine.create_alarm(7, 30, repeat_days={1, 2, 3, 4, 5}, label="Work")

        # Tuesday through the following Monday
        for day in range(11, 18):
            await run_until(at(clock, day, 7, 30))

        assert len(presenter.payloads) == 5
        assert all(p.title == "Work" for p in presenter.payloads)

    @pytest.mark.asyncio
    async def test_one_time_alarm_fires_once(self, engine, store, clock, presenter, run_until):
        aid = engine.create_alarm(9, 30)

        await run_until(at(clock, 10, 9, 30))
        await run_until(at(clock, 11, 9, 30))

        assert len(presenter.payloads) == 1
        alarm = store.get_alarm(aid)
        assert alarm.enabled is False
        assert alarm.last_triggered_at == at(clock, 10, 9, 30)

    @pytest.mark.asyncio
    async def test_snooze_rings_again(self, engine, store, clock, presenter, run_until):
        aid = engine.create_alarm(9, 30, snooze_duration_minutes=9)
        await run_until(at(clock, 10, 9, 30))

        ring_at = engine.snooze_alarm(aid)

        assert ring_at == at(clock, 10, 9, 39)
        alarm = store.get_alarm(aid)
        assert alarm.enabled is True
        assert alarm.snooze_count == 1

        assert await run_until(at(clock, 10, 9, 38)) == 0
        await run_until(ring_at)
        assert len(presenter.payloads) == 2
        assert presenter.payloads[-1].snooze_actions[0].minutes == 9

    def test_snooze_with_explicit_minutes(self, engine, clock, time_service):
        aid = engine.create_alarm(9, 30)

        ring_at = engine.snooze_alarm(aid, 15)

        assert ring_at == clock() + timedelta(minutes=15)
        assert time_service.jobs[alarm_key(aid)] == ring_at

    def test_snooze_invalid(self, engine):
        aid = engine.create_alarm(9, 30)
        with pytest.raises(InvalidInput):
            engine.snooze_alarm(aid, 0)
        with pytest.raises(InvalidInput):
            engine.snooze_alarm(404)

    def test_toggle(self, engine, store, clock, time_service):
        aid = engine.create_alarm(9, 30)
        engine.snooze_alarm(aid)

        assert engine.toggle_alarm(aid, False) is True
        alarm = store.get_alarm(aid)
        assert alarm.enabled is False
        assert alarm.next_trigger_at is None
        assert alarm_key(aid) not in time_service.jobs

        engine.toggle_alarm(aid, True)
        alarm = store.get_alarm(aid)
        assert alarm.enabled is True
        assert alarm.snooze_count == 0
        assert time_service.jobs[alarm_key(aid)] == at(clock, 10, 9, 30)

        assert engine.toggle_alarm(404, True) is False

    def test_delete(self, engine, store, time_service):
        aid = engine.create_alarm(9, 30)

        assert engine.delete_alarm(aid) is True
        assert engine.delete_alarm(aid) is False
        assert store.get_alarm(aid) is None
        assert time_service.jobs == {}

    def test_disabled_alarm_not_recovered(self, engine, time_service):
        keep = engine.create_alarm(9, 30)
        off = engine.create_alarm(10, 0)
        engine.toggle_alarm(off, False)
        time_service.reboot()

        assert engine.recover()["alarms"] == 1
        assert list(time_service.jobs) == [alarm_key(keep)]
