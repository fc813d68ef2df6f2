"""Capability ports for exact-time wake-ups and region monitoring.

The engine only talks to these interfaces. `APSchedulerTimeService` and
`LocationFeedSpatialService` are the shipped implementations; tests inject
fakes with a controllable clock.
"""

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

from logger import logger
from . import config
from .types import Transition, local_now

TimeListener = Callable[[str], None]
TransitionListener = Callable[[str, Transition], None]


class TimeTriggerService(ABC):
    """Exact wake-up registrations keyed by a string."""

    def __init__(self):
        self._listener: Optional[TimeListener] = None

    def set_listener(self, listener: TimeListener) -> None:
        self._listener = listener

    def _emit(self, key: str) -> None:
        if self._listener is None:
            logger.warning(f"Time trigger {key} fired with no listener attached")
            return
        self._listener(key)

    def can_schedule_exact(self) -> bool:
        return True

    @abstractmethod
    def schedule(self, key: str, run_at: datetime) -> None:
        """Register (or replace) the wake-up for `key`."""

    @abstractmethod
    def cancel(self, key: str) -> bool:
        """Cancel the wake-up for `key`. Returns False if none was registered."""

    @abstractmethod
    def is_scheduled(self, key: str) -> bool: ...

    @abstractmethod
    def scheduled_keys(self) -> list[str]: ...


class APSchedulerTimeService(TimeTriggerService):
    """One APScheduler DateTrigger job per key.

    Jobs added before the scheduler starts are held as pending jobs and run
    as soon as it starts, however late.
    """

    def __init__(self, scheduler: AsyncIOScheduler):
        super().__init__()
        self.scheduler = scheduler

    async def _fire(self, key: str) -> None:
        self._emit(key)

    def schedule(self, key: str, run_at: datetime) -> None:
        # A stopped scheduler queues add_job calls without replacing by id
        if not self.scheduler.running:
            self.cancel(key)
        self.scheduler.add_job(
            self._fire,
            trigger=DateTrigger(run_date=run_at),
            args=[key],
            id=key,
            name=key,
            replace_existing=True,
            misfire_grace_time=None,
            coalesce=True,
        )

    def cancel(self, key: str) -> bool:
        try:
            self.scheduler.remove_job(key)
            return True
        except JobLookupError:
            return False

    def is_scheduled(self, key: str) -> bool:
        return self.scheduler.get_job(key) is not None

    def scheduled_keys(self) -> list[str]:
        return [job.id for job in self.scheduler.get_jobs()]


@dataclass(frozen=True)
class Region:
    """A circular monitored region."""
    region_id: str
    latitude: float
    longitude: float
    radius_meters: float
    transitions: frozenset[Transition]
    loitering_delay_seconds: int = config.DWELL_LOITERING_SECONDS
    initial_trigger_enter: bool = True


class SpatialTriggerService(ABC):
    """Region registrations with enter/exit/dwell callbacks."""

    max_regions: int = config.MAX_SPATIAL_REGIONS

    def __init__(self):
        self._listener: Optional[TransitionListener] = None

    def set_listener(self, listener: TransitionListener) -> None:
        self._listener = listener

    def _emit(self, region_id: str, transition: Transition) -> None:
        if self._listener is None:
            logger.warning(f"Region {region_id} {transition.value} with no listener attached")
            return
        self._listener(region_id, transition)

    def has_permission(self) -> bool:
        return True

    @abstractmethod
    def add_region(self, region: Region) -> None:
        """Start monitoring `region`, replacing any region with the same id."""

    @abstractmethod
    def remove_region(self, region_id: str) -> bool: ...

    @abstractmethod
    def remove_all(self) -> None: ...

    @abstractmethod
    def active_region_ids(self) -> list[str]:
        """Monitored region ids, oldest registration first."""


def haversine_meters(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance between two points in meters."""
    earth_radius = 6371000.0
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(dlambda / 2) ** 2
    return 2 * earth_radius * math.asin(math.sqrt(a))


class LocationFeedSpatialService(SpatialTriggerService):
    """Computes region transitions from a stream of position fixes.

    Feed it with `update_position()`. ENTER fires when a fix lands inside a
    region the previous fix was outside of, EXIT on the way out, and DWELL
    once per visit after the region's loitering delay.
    """

    def __init__(
        self,
        max_regions: int = config.MAX_SPATIAL_REGIONS,
        permission_granted: bool = True,
        clock: Callable[[], datetime] = local_now,
    ):
        super().__init__()
        self.max_regions = max_regions
        self.permission_granted = permission_granted
        self._clock = clock
        self._regions: dict[str, Region] = {}
        self._entered_at: dict[str, datetime] = {}
        self._dwelled: set[str] = set()
        self._last_fix: Optional[tuple[float, float]] = None

    def has_permission(self) -> bool:
        return self.permission_granted

    def _contains(self, region: Region, latitude: float, longitude: float) -> bool:
        distance = haversine_meters(region.latitude, region.longitude, latitude, longitude)
        return distance <= region.radius_meters

    def add_region(self, region: Region) -> None:
        if not self.permission_granted:
            raise PermissionError("Location permission not granted")
        if region.region_id not in self._regions and len(self._regions) >= self.max_regions:
            raise RuntimeError(f"Region limit reached ({self.max_regions})")

        self._forget(region.region_id)
        self._regions[region.region_id] = region

        if self._last_fix is not None and self._contains(region, *self._last_fix):
            # Already inside: only announced when the region asks for it
            self._entered_at[region.region_id] = self._clock()
            if region.initial_trigger_enter and Transition.ENTER in region.transitions:
                self._emit(region.region_id, Transition.ENTER)

    def _forget(self, region_id: str) -> None:
        self._regions.pop(region_id, None)
        self._entered_at.pop(region_id, None)
        self._dwelled.discard(region_id)

    def remove_region(self, region_id: str) -> bool:
        existed = region_id in self._regions
        self._forget(region_id)
        return existed

    def remove_all(self) -> None:
        self._regions.clear()
        self._entered_at.clear()
        self._dwelled.clear()

    def active_region_ids(self) -> list[str]:
        return list(self._regions)

    def update_position(self, latitude: float, longitude: float, at: Optional[datetime] = None) -> None:
        """Process a position fix and emit any resulting transitions."""
        at = at or self._clock()
        self._last_fix = (latitude, longitude)

        for region in list(self._regions.values()):
            region_id = region.region_id
            inside = self._contains(region, latitude, longitude)
            was_inside = region_id in self._entered_at

            if inside and not was_inside:
                self._entered_at[region_id] = at
                if Transition.ENTER in region.transitions:
                    self._emit(region_id, Transition.ENTER)
            elif not inside and was_inside:
                self._entered_at.pop(region_id, None)
                self._dwelled.discard(region_id)
                if Transition.EXIT in region.transitions:
                    self._emit(region_id, Transition.EXIT)
            elif inside and region_id not in self._dwelled:
                loitered = (at - self._entered_at[region_id]).total_seconds()
                if loitered >= region.loitering_delay_seconds:
                    self._dwelled.add(region_id)
                    if Transition.DWELL in region.transitions:
                        self._emit(region_id, Transition.DWELL)
