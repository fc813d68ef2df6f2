"""Type definitions for reminders, alarms and trigger payloads."""

import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, time
from enum import Enum
from typing import Optional
from zoneinfo import ZoneInfo

from dateutil.parser import isoparse

import config as app_config
from . import config
from .errors import InvalidInput


class ReminderKind(str, Enum):
    """What arms the reminder."""
    TIME_BASED = "TIME_BASED"
    LOCATION_BASED = "LOCATION_BASED"


class ReminderStatus(str, Enum):
    """Lifecycle status of a reminder."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


class Priority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


class Category(str, Enum):
    WORK = "WORK"
    PERSONAL = "PERSONAL"
    SHOPPING = "SHOPPING"
    HEALTH = "HEALTH"
    FINANCE = "FINANCE"
    HOME = "HOME"
    CUSTOM = "CUSTOM"


class RecurrenceType(str, Enum):
    NONE = "NONE"
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"
    CUSTOM = "CUSTOM"


class TriggerDirection(str, Enum):
    """Which region transitions a location reminder reacts to."""
    ENTER = "ENTER"
    EXIT = "EXIT"
    BOTH = "BOTH"


class Transition(str, Enum):
    """A region transition reported by the spatial service."""
    ENTER = "ENTER"
    EXIT = "EXIT"
    DWELL = "DWELL"


class LocationRecurrence(str, Enum):
    ONCE = "ONCE"              # Fire once, then complete
    EVERY_TIME = "EVERY_TIME"  # Fire on every matching transition
    DAILY = "DAILY"            # At most once per calendar day
    WEEKDAYS = "WEEKDAYS"      # Mon-Fri, at most once per day
    WEEKENDS = "WEEKENDS"      # Sat-Sun, at most once per day


WEEKDAYS = (1, 2, 3, 4, 5)
WEEKENDS = (6, 7)
EVERY_DAY = (1, 2, 3, 4, 5, 6, 7)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dt_from_str(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp back into the local zone.

    isoparse only yields a fixed offset; wall-clock arithmetic across DST
    needs the zone itself.
    """
    if not value:
        return None
    return localize(isoparse(value))


@dataclass(frozen=True)
class RecurrenceRule:
    """Repeat pattern for a time-based reminder.

    days_of_week uses ISO numbering: 1=Monday, 7=Sunday.
    """
    type: RecurrenceType = RecurrenceType.NONE
    interval: int = 1
    days_of_week: Optional[tuple[int, ...]] = None
    day_of_month: Optional[int] = None
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = None

    def __post_init__(self):
        if self.interval < 1:
            raise InvalidInput(f"Recurrence interval must be >= 1, got {self.interval}")
        if self.days_of_week is not None:
            days = tuple(sorted(set(self.days_of_week)))
            if any(d < 1 or d > 7 for d in days):
                raise InvalidInput(f"days_of_week must be 1-7, got {self.days_of_week}")
            object.__setattr__(self, "days_of_week", days)
        if self.day_of_month is not None and not 1 <= self.day_of_month <= 31:
            raise InvalidInput(f"day_of_month must be 1-31, got {self.day_of_month}")
        if self.max_occurrences is not None and self.max_occurrences < 1:
            raise InvalidInput("max_occurrences must be positive")
        if self.end_date is not None and self.end_date.tzinfo is None:
            # Compared against aware occurrence times
            object.__setattr__(self, "end_date", localize(self.end_date))

    @property
    def is_recurring(self) -> bool:
        return self.type != RecurrenceType.NONE

    @classmethod
    def daily(cls, interval: int = 1, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls(RecurrenceType.DAILY, interval=interval, end_date=end_date)

    @classmethod
    def weekly(cls, days_of_week, interval: int = 1, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls(RecurrenceType.WEEKLY, interval=interval, days_of_week=tuple(days_of_week), end_date=end_date)

    @classmethod
    def weekdays(cls, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls.weekly(WEEKDAYS, end_date=end_date)

    @classmethod
    def weekends(cls, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls.weekly(WEEKENDS, end_date=end_date)

    @classmethod
    def monthly(cls, day_of_month: int, interval: int = 1, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls(RecurrenceType.MONTHLY, interval=interval, day_of_month=day_of_month, end_date=end_date)

    @classmethod
    def yearly(cls, interval: int = 1, end_date: Optional[datetime] = None) -> "RecurrenceRule":
        return cls(RecurrenceType.YEARLY, interval=interval, end_date=end_date)

    def to_json(self) -> str:
        return json.dumps({
            "type": self.type.value,
            "interval": self.interval,
            "daysOfWeek": list(self.days_of_week) if self.days_of_week is not None else None,
            "dayOfMonth": self.day_of_month,
            "endDate": _dt_to_str(self.end_date),
            "maxOccurrences": self.max_occurrences,
        })

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["RecurrenceRule"]:
        if not raw or not raw.strip():
            return None
        data = json.loads(raw)
        days = data.get("daysOfWeek")
        return cls(
            type=RecurrenceType(data.get("type", "NONE")),
            interval=data.get("interval", 1),
            days_of_week=tuple(days) if days is not None else None,
            day_of_month=data.get("dayOfMonth"),
            end_date=_dt_from_str(data.get("endDate")),
            max_occurrences=data.get("maxOccurrences"),
        )


@dataclass(frozen=True)
class TimeConstraint:
    """Time-of-day / day-of-week window for hybrid time+location reminders.

    A window whose end is earlier than its start wraps past midnight.
    """
    start_time: Optional[time] = None
    end_time: Optional[time] = None
    days_of_week: Optional[tuple[int, ...]] = None

    def __post_init__(self):
        if self.days_of_week is not None:
            days = tuple(sorted(set(self.days_of_week)))
            if any(day < 1 or day > 7 for day in days):
                raise InvalidInput(f"days_of_week must be 1-7, got {self.days_of_week}")
            object.__setattr__(self, "days_of_week", days)

    def allows(self, moment: datetime) -> bool:
        if self.days_of_week and moment.isoweekday() not in self.days_of_week:
            return False
        if self.start_time is None or self.end_time is None:
            return True
        current = moment.time().replace(tzinfo=None)
        if self.start_time <= self.end_time:
            return self.start_time <= current < self.end_time
        return current >= self.start_time or current < self.end_time

    def to_dict(self) -> dict:
        return {
            "startTime": self.start_time.strftime("%H:%M") if self.start_time else None,
            "endTime": self.end_time.strftime("%H:%M") if self.end_time else None,
            "daysOfWeek": list(self.days_of_week) if self.days_of_week else None,
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["TimeConstraint"]:
        if not data:
            return None
        start = data.get("startTime")
        end = data.get("endTime")
        days = data.get("daysOfWeek")
        return cls(
            start_time=time.fromisoformat(start) if start else None,
            end_time=time.fromisoformat(end) if end else None,
            days_of_week=tuple(days) if days else None,
        )


@dataclass
class LocationData:
    """Where and how a location reminder triggers, plus its firing history."""
    latitude: Optional[float]
    longitude: Optional[float]
    radius_meters: float = config.DEFAULT_RADIUS_METERS
    place_name: Optional[str] = None
    place_category: Optional[str] = None
    trigger_direction: TriggerDirection = TriggerDirection.ENTER
    recurrence_policy: LocationRecurrence = LocationRecurrence.ONCE
    time_constraint: Optional[TimeConstraint] = None
    last_triggered_at: Optional[datetime] = None
    trigger_count: int = 0
    # Set by snooze-until-leave: only the next EXIT is armed
    awaiting_exit: bool = False

    @property
    def display_name(self) -> str:
        return self.place_name or self.place_category or "this location"

    def to_json(self) -> str:
        return json.dumps({
            "latitude": self.latitude,
            "longitude": self.longitude,
            "radiusMeters": self.radius_meters,
            "placeName": self.place_name,
            "placeCategory": self.place_category,
            "triggerDirection": self.trigger_direction.value,
            "recurrencePolicy": self.recurrence_policy.value,
            "timeConstraint": self.time_constraint.to_dict() if self.time_constraint else None,
            "lastTriggeredAt": _dt_to_str(self.last_triggered_at),
            "triggerCount": self.trigger_count,
            "awaitingExit": self.awaiting_exit,
        })

    @classmethod
    def from_json(cls, raw: Optional[str]) -> Optional["LocationData"]:
        if not raw:
            return None
        data = json.loads(raw)
        return cls(
            latitude=data.get("latitude"),
            longitude=data.get("longitude"),
            radius_meters=data.get("radiusMeters", config.DEFAULT_RADIUS_METERS),
            place_name=data.get("placeName"),
            place_category=data.get("placeCategory"),
            trigger_direction=TriggerDirection(data.get("triggerDirection", "ENTER")),
            recurrence_policy=LocationRecurrence(data.get("recurrencePolicy", "ONCE")),
            time_constraint=TimeConstraint.from_dict(data.get("timeConstraint")),
            last_triggered_at=_dt_from_str(data.get("lastTriggeredAt")),
            trigger_count=data.get("triggerCount", 0),
            awaiting_exit=data.get("awaitingExit", False),
        )


@dataclass
class Reminder:
    """A time- or location-based reminder."""
    message: str
    kind: ReminderKind
    scheduled_time: Optional[datetime] = None
    location: Optional[LocationData] = None
    status: ReminderStatus = ReminderStatus.PENDING
    recurrence_rule: Optional[RecurrenceRule] = None
    priority: Priority = Priority.MEDIUM
    category: Category = Category.PERSONAL
    spatial_handle: Optional[str] = None
    snoozed_until: Optional[datetime] = None
    snooze_count: int = 0
    occurrence_count: int = 0
    notes: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if not self.message or not self.message.strip():
            raise InvalidInput("Reminder message cannot be empty")
        if self.kind == ReminderKind.TIME_BASED:
            if self.scheduled_time is None or self.location is not None:
                raise InvalidInput("Time-based reminders need a scheduled time and no location")
            if self.scheduled_time.tzinfo is None:
                raise InvalidInput("scheduled_time must be timezone-aware")
        else:
            if self.location is None or self.scheduled_time is not None:
                raise InvalidInput("Location-based reminders need a location and no scheduled time")
            if self.recurrence_rule is not None and self.recurrence_rule.is_recurring:
                raise InvalidInput("Location-based reminders use recurrence_policy, not recurrence_rule")

    @property
    def is_time_based(self) -> bool:
        return self.kind == ReminderKind.TIME_BASED

    @property
    def is_pending(self) -> bool:
        return self.status == ReminderStatus.PENDING

    def is_snoozed(self, now: datetime) -> bool:
        return self.snoozed_until is not None and self.snoozed_until > now

    @property
    def due_at(self) -> Optional[datetime]:
        """When the next time trigger is expected (snooze overrides schedule)."""
        return self.snoozed_until or self.scheduled_time


@dataclass
class Alarm:
    """A local-clock alarm. Empty repeat_days means one-time."""
    hour: int
    minute: int
    label: str = "Alarm"
    enabled: bool = True
    repeat_days: frozenset[int] = field(default_factory=frozenset)
    sound_ref: Optional[str] = None
    vibrate: bool = True
    snooze_count: int = 0
    snooze_duration_minutes: int = 5
    last_triggered_at: Optional[datetime] = None
    next_trigger_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    id: Optional[int] = None

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise InvalidInput(f"Invalid alarm time {self.hour}:{self.minute}")
        days = frozenset(self.repeat_days)
        if any(d < 1 or d > 7 for d in days):
            raise InvalidInput(f"repeat_days must be 1-7, got {sorted(days)}")
        self.repeat_days = days
        if self.snooze_duration_minutes <= 0:
            raise InvalidInput("snooze_duration_minutes must be positive")
        self.label = self.label.strip() if self.label and self.label.strip() else "Alarm"

    @property
    def is_repeating(self) -> bool:
        return bool(self.repeat_days)

    @property
    def time_24h(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"

    def repeat_description(self) -> str:
        days = sorted(self.repeat_days)
        if not days:
            return "One time"
        if tuple(days) == WEEKDAYS:
            return "Weekdays"
        if tuple(days) == WEEKENDS:
            return "Weekends"
        if tuple(days) == EVERY_DAY:
            return "Every day"
        return ", ".join(DAY_ABBREVIATIONS[d] for d in days)


DAY_ABBREVIATIONS = {1: "Mon", 2: "Tue", 3: "Wed", 4: "Thu", 5: "Fri", 6: "Sat", 7: "Sun"}


@dataclass(frozen=True)
class SnoozeAction:
    """An action button offered with a fired notification."""
    label: str
    minutes: Optional[int] = None
    until_leave: bool = False


@dataclass
class FirePayload:
    """What the presentation layer receives when something fires."""
    reminder_id: int
    kind: str  # "time", "location" or "alarm"
    title: str
    body: str
    snooze_actions: list[SnoozeAction] = field(default_factory=list)
    priority: Priority = Priority.MEDIUM

    def to_dict(self) -> dict:
        data = asdict(self)
        data["priority"] = self.priority.value
        return data


def local_tz() -> ZoneInfo:
    """The configured local timezone."""
    return ZoneInfo(app_config.TIMEZONE)


def local_now() -> datetime:
    """Current time, aware, in the configured local timezone."""
    return datetime.now(local_tz())


def localize(value: datetime) -> datetime:
    """Aware datetime in the local zone. Naive values are taken as local time."""
    if value.tzinfo is None:
        return value.replace(tzinfo=local_tz())
    return value.astimezone(local_tz())
