"""Trigger engine tunables - snooze, cooldown and spatial slot settings."""

import os
from typing import Final


def _int_env(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return int(raw)


def _int_list_env(name: str, default: list[int]) -> list[int]:
    raw = os.environ.get(name, "")
    if not raw.strip():
        return default
    return [int(v.strip()) for v in raw.split(",") if v.strip()]


# Snooze durations offered on time-based and alarm notifications
SNOOZE_OPTIONS_MINUTES: Final[list[int]] = _int_list_env("SNOOZE_OPTIONS_MINUTES", [5, 10, 15, 30, 60])
DEFAULT_SNOOZE_MINUTES: Final[int] = _int_env("DEFAULT_SNOOZE_MINUTES", 15)

# Location notifications offer a single "snooze" plus "remind me when I leave"
LOCATION_SNOOZE_MINUTES: Final[int] = _int_env("LOCATION_SNOOZE_MINUTES", 60)

# Minimum minutes between two firings of the same location reminder.
# EVERY_TIME is never cooled down; calendar-day rules for DAILY / WEEKDAYS /
# WEEKENDS apply on top of these windows.
COOLDOWN_MINUTES: Final[dict[str, int]] = {
    "ONCE": _int_env("COOLDOWN_MINUTES_ONCE", 0),
    "DAILY": _int_env("COOLDOWN_MINUTES_DAILY", 0),
    "WEEKDAYS": _int_env("COOLDOWN_MINUTES_WEEKDAYS", 0),
    "WEEKENDS": _int_env("COOLDOWN_MINUTES_WEEKENDS", 0),
}

# Spatial registration slots (Android caps geofences at 100 per app)
MAX_SPATIAL_REGIONS: Final[int] = _int_env("MAX_SPATIAL_REGIONS", 100)
# "reject" refuses new registrations when full, "evict_oldest" frees the
# earliest registered region
SPATIAL_SLOT_POLICY: Final[str] = os.environ.get("SPATIAL_SLOT_POLICY", "reject").strip().lower()

DEFAULT_RADIUS_METERS: Final[float] = float(os.environ.get("DEFAULT_RADIUS_METERS", "100"))
DWELL_LOITERING_SECONDS: Final[int] = _int_env("DWELL_LOITERING_SECONDS", 300)
DWELL_COUNTS_AS_ENTER: Final[bool] = os.environ.get("DWELL_COUNTS_AS_ENTER", "0").lower() in ("1", "true", "yes")

# Triggers missed while the device was off are delivered this long after recovery
MISSED_TRIGGER_DELAY_SECONDS: Final[int] = _int_env("MISSED_TRIGGER_DELAY_SECONDS", 5)

# Presentation
WEBHOOK_TIMEOUT_SECONDS: Final[float] = float(os.environ.get("WEBHOOK_TIMEOUT_SECONDS", "10"))

# Calendar expansion cap (one year of daily occurrences)
MAX_RANGE_ITERATIONS: Final[int] = 366
