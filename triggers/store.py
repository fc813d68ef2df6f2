"""SQLite persistence for reminders and alarms.

The store is the single source of truth: every dispatcher decision starts by
reloading the row from here. Writes run inside `_transaction()` under a
re-entrant lock so a compare-and-set can't interleave with another writer.
"""

import json
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from dateutil.parser import isoparse

from logger import logger
from .errors import PersistenceError
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
    localize,
)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse(value: Optional[str]) -> Optional[datetime]:
    return localize(isoparse(value)) if value else None


class ReminderStore:
    """Reminder and alarm tables on one WAL-mode SQLite connection."""

    def __init__(self, db_path: str, clock: Callable[[], datetime] = local_now):
        self.db_path = db_path
        self._clock = clock
        self._lock = threading.RLock()

        try:
            if db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(db_path, check_same_thread=False, timeout=10.0)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
            self._init_schema()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to open reminder store {db_path}: {e}") from e

        logger.info(f"Reminder store initialized: {db_path}")

    def _init_schema(self) -> None:
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS reminders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                message TEXT NOT NULL,
                kind TEXT NOT NULL,
                scheduled_time TEXT,
                location_data TEXT,
                status TEXT NOT NULL DEFAULT 'PENDING',
                recurrence_rule TEXT,
                priority TEXT NOT NULL DEFAULT 'MEDIUM',
                category TEXT NOT NULL DEFAULT 'PERSONAL',
                spatial_handle TEXT,
                snoozed_until TEXT,
                snooze_count INTEGER NOT NULL DEFAULT 0,
                occurrence_count INTEGER NOT NULL DEFAULT 0,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_reminders_status ON reminders(status);
            CREATE INDEX IF NOT EXISTS idx_reminders_handle ON reminders(spatial_handle);

            CREATE TABLE IF NOT EXISTS alarms (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                label TEXT NOT NULL,
                hour INTEGER NOT NULL,
                minute INTEGER NOT NULL,
                enabled INTEGER NOT NULL DEFAULT 1,
                repeat_days TEXT NOT NULL DEFAULT '[]',
                sound_ref TEXT,
                vibrate INTEGER NOT NULL DEFAULT 1,
                snooze_count INTEGER NOT NULL DEFAULT 0,
                snooze_duration_minutes INTEGER NOT NULL DEFAULT 5,
                last_triggered_at TEXT,
                next_trigger_at TEXT,
                created_at TEXT NOT NULL
            );
        """)
        self._conn.commit()

    @contextmanager
    def _transaction(self):
        """Context manager for database transactions."""
        with self._lock:
            try:
                yield self._conn
                self._conn.commit()
            except sqlite3.Error as e:
                self._rollback()
                raise PersistenceError(str(e)) from e
            except Exception:
                self._rollback()
                raise

    def _rollback(self) -> None:
        try:
            self._conn.rollback()
        except sqlite3.Error as e:
            logger.warning(f"Rollback failed on {self.db_path}: {e}")

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(str(e)) from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -- reminders ---------------------------------------------------------

    @staticmethod
    def _row_to_reminder(row: sqlite3.Row) -> Reminder:
        return Reminder(
            id=row["id"],
            message=row["message"],
            kind=ReminderKind(row["kind"]),
            scheduled_time=_parse(row["scheduled_time"]),
            location=LocationData.from_json(row["location_data"]),
            status=ReminderStatus(row["status"]),
            recurrence_rule=RecurrenceRule.from_json(row["recurrence_rule"]),
            priority=Priority(row["priority"]),
            category=Category(row["category"]),
            spatial_handle=row["spatial_handle"],
            snoozed_until=_parse(row["snoozed_until"]),
            snooze_count=row["snooze_count"],
            occurrence_count=row["occurrence_count"],
            notes=row["notes"],
            created_at=_parse(row["created_at"]),
            updated_at=_parse(row["updated_at"]),
        )

    def create(self, reminder: Reminder) -> Reminder:
        """Insert a reminder. The store assigns the id."""
        now = self._clock()
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO reminders (
                    message, kind, scheduled_time, location_data, status,
                    recurrence_rule, priority, category, spatial_handle,
                    snoozed_until, snooze_count, occurrence_count, notes,
                    created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    reminder.message,
                    reminder.kind.value,
                    _iso(reminder.scheduled_time),
                    reminder.location.to_json() if reminder.location else None,
                    reminder.status.value,
                    reminder.recurrence_rule.to_json() if reminder.recurrence_rule else None,
                    reminder.priority.value,
                    reminder.category.value,
                    reminder.spatial_handle,
                    _iso(reminder.snoozed_until),
                    reminder.snooze_count,
                    reminder.occurrence_count,
                    reminder.notes,
                    _iso(reminder.created_at or now),
                    _iso(now),
                ),
            )
            reminder_id = cursor.lastrowid

        logger.debug(f"Stored reminder {reminder_id} ({reminder.kind.value})")
        return self.get(reminder_id)

    def get(self, reminder_id: int) -> Optional[Reminder]:
        rows = self._query("SELECT * FROM reminders WHERE id = ?", (reminder_id,))
        return self._row_to_reminder(rows[0]) if rows else None

    def update(self, reminder: Reminder) -> bool:
        """Overwrite every mutable column of an existing reminder."""
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE reminders SET
                    message = ?, scheduled_time = ?, location_data = ?, status = ?,
                    recurrence_rule = ?, priority = ?, category = ?, spatial_handle = ?,
                    snoozed_until = ?, snooze_count = ?, occurrence_count = ?, notes = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    reminder.message,
                    _iso(reminder.scheduled_time),
                    reminder.location.to_json() if reminder.location else None,
                    reminder.status.value,
                    reminder.recurrence_rule.to_json() if reminder.recurrence_rule else None,
                    reminder.priority.value,
                    reminder.category.value,
                    reminder.spatial_handle,
                    _iso(reminder.snoozed_until),
                    reminder.snooze_count,
                    reminder.occurrence_count,
                    reminder.notes,
                    _iso(self._clock()),
                    reminder.id,
                ),
            )
            return cursor.rowcount > 0

    def delete(self, reminder_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM reminders WHERE id = ?", (reminder_id,))
            return cursor.rowcount > 0

    def all_reminders(self) -> list[Reminder]:
        rows = self._query("SELECT * FROM reminders ORDER BY id")
        return [self._row_to_reminder(r) for r in rows]

    def active_time_based(self) -> list[Reminder]:
        rows = self._query(
            "SELECT * FROM reminders WHERE status = ? AND kind = ? ORDER BY id",
            (ReminderStatus.PENDING.value, ReminderKind.TIME_BASED.value),
        )
        return [self._row_to_reminder(r) for r in rows]

    def active_location_based(self) -> list[Reminder]:
        rows = self._query(
            "SELECT * FROM reminders WHERE status = ? AND kind = ? ORDER BY id",
            (ReminderStatus.PENDING.value, ReminderKind.LOCATION_BASED.value),
        )
        return [self._row_to_reminder(r) for r in rows]

    def find_by_spatial_handle(self, handle: str) -> Optional[Reminder]:
        rows = self._query("SELECT * FROM reminders WHERE spatial_handle = ?", (handle,))
        return self._row_to_reminder(rows[0]) if rows else None

    def set_spatial_handle(self, reminder_id: int, handle: Optional[str]) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET spatial_handle = ?, updated_at = ? WHERE id = ?",
                (handle, _iso(self._clock()), reminder_id),
            )
            return cursor.rowcount > 0

    def set_status(self, reminder_id: int, status: ReminderStatus) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE reminders SET status = ?, updated_at = ? WHERE id = ?",
                (status.value, _iso(self._clock()), reminder_id),
            )
            return cursor.rowcount > 0

    def set_snooze(
        self,
        reminder_id: int,
        until: Optional[datetime],
        snooze_count: int,
        awaiting_exit: Optional[bool] = None,
    ) -> bool:
        """Write the snooze window. `awaiting_exit` only applies to location rows."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT location_data FROM reminders WHERE id = ?", (reminder_id,)
            ).fetchone()
            if row is None:
                return False

            location_json = row["location_data"]
            if awaiting_exit is not None and location_json:
                location = LocationData.from_json(location_json)
                location.awaiting_exit = awaiting_exit
                location_json = location.to_json()

            conn.execute(
                """
                UPDATE reminders SET snoozed_until = ?, snooze_count = ?,
                    location_data = ?, updated_at = ?
                WHERE id = ?
                """,
                (_iso(until), snooze_count, location_json, _iso(self._clock()), reminder_id),
            )
            return True

    def mark_fired(
        self,
        reminder_id: int,
        new_status: ReminderStatus,
        next_time: Optional[datetime] = None,
        fired_at: Optional[datetime] = None,
        count_occurrence: bool = True,
    ) -> bool:
        """Record a firing, only if the row is still PENDING.

        Clears the snooze window. For time rows `next_time` replaces
        scheduled_time when given; for location rows the firing is stamped on
        the location history.

        Returns:
            False when another delivery already moved the row out of PENDING
        """
        fired_at = fired_at or self._clock()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT status, kind, scheduled_time, location_data FROM reminders WHERE id = ?",
                (reminder_id,),
            ).fetchone()
            if row is None or row["status"] != ReminderStatus.PENDING.value:
                return False

            scheduled = row["scheduled_time"]
            if next_time is not None:
                scheduled = _iso(next_time)

            location_json = row["location_data"]
            if row["kind"] == ReminderKind.LOCATION_BASED.value and location_json:
                location = LocationData.from_json(location_json)
                location.last_triggered_at = fired_at
                location.trigger_count += 1
                location_json = location.to_json()

            cursor = conn.execute(
                """
                UPDATE reminders SET
                    status = ?, scheduled_time = ?, location_data = ?,
                    snoozed_until = NULL,
                    occurrence_count = occurrence_count + ?,
                    updated_at = ?
                WHERE id = ? AND status = ?
                """,
                (
                    new_status.value,
                    scheduled,
                    location_json,
                    1 if count_occurrence else 0,
                    _iso(fired_at),
                    reminder_id,
                    ReminderStatus.PENDING.value,
                ),
            )
            return cursor.rowcount > 0

    def pending_count(self) -> int:
        rows = self._query(
            "SELECT COUNT(*) AS n FROM reminders WHERE status = ?",
            (ReminderStatus.PENDING.value,),
        )
        return rows[0]["n"]

    def upcoming(self, limit: int = 10) -> list[Reminder]:
        """Pending time reminders, soonest first."""
        pending = self.active_time_based()
        pending.sort(key=lambda r: r.due_at)
        return pending[:limit]

    # -- alarms ------------------------------------------------------------

    @staticmethod
    def _row_to_alarm(row: sqlite3.Row) -> Alarm:
        return Alarm(
            id=row["id"],
            label=row["label"],
            hour=row["hour"],
            minute=row["minute"],
            enabled=bool(row["enabled"]),
            repeat_days=frozenset(json.loads(row["repeat_days"] or "[]")),
            sound_ref=row["sound_ref"],
            vibrate=bool(row["vibrate"]),
            snooze_count=row["snooze_count"],
            snooze_duration_minutes=row["snooze_duration_minutes"],
            last_triggered_at=_parse(row["last_triggered_at"]),
            next_trigger_at=_parse(row["next_trigger_at"]),
            created_at=_parse(row["created_at"]),
        )

    def create_alarm(self, alarm: Alarm) -> Alarm:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO alarms (
                    label, hour, minute, enabled, repeat_days, sound_ref, vibrate,
                    snooze_count, snooze_duration_minutes, last_triggered_at,
                    next_trigger_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    alarm.label,
                    alarm.hour,
                    alarm.minute,
                    int(alarm.enabled),
                    json.dumps(sorted(alarm.repeat_days)),
                    alarm.sound_ref,
                    int(alarm.vibrate),
                    alarm.snooze_count,
                    alarm.snooze_duration_minutes,
                    _iso(alarm.last_triggered_at),
                    _iso(alarm.next_trigger_at),
                    _iso(alarm.created_at or self._clock()),
                ),
            )
            alarm_id = cursor.lastrowid
        return self.get_alarm(alarm_id)

    def get_alarm(self, alarm_id: int) -> Optional[Alarm]:
        rows = self._query("SELECT * FROM alarms WHERE id = ?", (alarm_id,))
        return self._row_to_alarm(rows[0]) if rows else None

    def update_alarm(self, alarm: Alarm) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE alarms SET
                    label = ?, hour = ?, minute = ?, enabled = ?, repeat_days = ?,
                    sound_ref = ?, vibrate = ?, snooze_count = ?,
                    snooze_duration_minutes = ?, last_triggered_at = ?, next_trigger_at = ?
                WHERE id = ?
                """,
                (
                    alarm.label,
                    alarm.hour,
                    alarm.minute,
                    int(alarm.enabled),
                    json.dumps(sorted(alarm.repeat_days)),
                    alarm.sound_ref,
                    int(alarm.vibrate),
                    alarm.snooze_count,
                    alarm.snooze_duration_minutes,
                    _iso(alarm.last_triggered_at),
                    _iso(alarm.next_trigger_at),
                    alarm.id,
                ),
            )
            return cursor.rowcount > 0

    def delete_alarm(self, alarm_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM alarms WHERE id = ?", (alarm_id,))
            return cursor.rowcount > 0

    def all_alarms(self) -> list[Alarm]:
        rows = self._query("SELECT * FROM alarms ORDER BY hour, minute, id")
        return [self._row_to_alarm(r) for r in rows]

    def enabled_alarms(self) -> list[Alarm]:
        rows = self._query("SELECT * FROM alarms WHERE enabled = 1 ORDER BY hour, minute, id")
        return [self._row_to_alarm(r) for r in rows]
