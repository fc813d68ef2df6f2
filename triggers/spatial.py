"""Region registration for location reminders.

This is the only place that creates or destroys spatial registrations and
writes `spatial_handle`. Transition callbacks from the service are filtered
here and queued for the dispatcher.
"""

from typing import Iterable, Optional

from logger import logger
from . import config
from .errors import InvalidInput, SchedulingError
from .events import EventQueue, SpatialTransitionEvent
from .services import Region, SpatialTriggerService
from .store import ReminderStore
from .types import LocationData, Reminder, Transition, TriggerDirection

SLOT_POLICY_REJECT = "reject"
SLOT_POLICY_EVICT_OLDEST = "evict_oldest"


def region_id_for(reminder_id: int) -> str:
    return f"region-{reminder_id}"


def transition_mask(location: LocationData) -> frozenset[Transition]:
    """Transitions the service should report for this location."""
    if location.awaiting_exit:
        return frozenset({Transition.EXIT})
    if location.trigger_direction == TriggerDirection.ENTER:
        mask = {Transition.ENTER}
    elif location.trigger_direction == TriggerDirection.EXIT:
        mask = {Transition.EXIT}
    else:
        mask = {Transition.ENTER, Transition.EXIT}
    if config.DWELL_COUNTS_AS_ENTER and Transition.ENTER in mask:
        mask.add(Transition.DWELL)
    return frozenset(mask)


def transition_matches(location: LocationData, transition: Transition) -> bool:
    """Whether a reported transition is one this location reacts to."""
    if location.awaiting_exit:
        return transition == Transition.EXIT

    direction = location.trigger_direction
    if transition == Transition.DWELL:
        if not config.DWELL_COUNTS_AS_ENTER:
            return False
        transition = Transition.ENTER

    if transition == Transition.ENTER:
        return direction in (TriggerDirection.ENTER, TriggerDirection.BOTH)
    return direction in (TriggerDirection.EXIT, TriggerDirection.BOTH)


class SpatialTriggerController:
    """Keeps one region per pending location reminder on the spatial service."""

    def __init__(
        self,
        service: SpatialTriggerService,
        store: ReminderStore,
        queue: Optional[EventQueue] = None,
        slot_policy: Optional[str] = None,
    ):
        self.service = service
        self.store = store
        self.queue = queue
        self.slot_policy = slot_policy or config.SPATIAL_SLOT_POLICY
        if self.slot_policy not in (SLOT_POLICY_REJECT, SLOT_POLICY_EVICT_OLDEST):
            raise ValueError(f"Unknown spatial slot policy: {self.slot_policy}")
        service.set_listener(self.on_transition)

    def is_registered(self, reminder_id: int) -> bool:
        return region_id_for(reminder_id) in self.service.active_region_ids()

    def register(self, reminder: Reminder, evict: bool = True) -> str:
        """Register the reminder's region and store the handle.

        With the evict_oldest policy a full service gives up its oldest
        region, unless `evict` is False.

        Returns:
            The region handle

        Raises:
            InvalidInput: If the reminder has no coordinates
            SchedulingError: If permission is denied, slots are full or the service fails
        """
        location = reminder.location
        if location is None or location.latitude is None or location.longitude is None:
            raise InvalidInput(f"Reminder {reminder.id} has no coordinates")

        handle = region_id_for(reminder.id)
        active = self.service.active_region_ids()
        if reminder.spatial_handle == handle and handle in active:
            return handle

        if not self.service.has_permission():
            raise SchedulingError("Location permission denied")

        if handle not in active and len(active) >= self.service.max_regions:
            if evict and self.slot_policy == SLOT_POLICY_EVICT_OLDEST:
                self._evict(active[0])
            else:
                raise SchedulingError(
                    f"Spatial trigger slots exhausted ({self.service.max_regions} regions)"
                )

        # Stored before add_region: an initial ENTER is resolved by handle
        self.store.set_spatial_handle(reminder.id, handle)
        try:
            self._add(handle, location)
        except Exception as e:
            self.store.set_spatial_handle(reminder.id, None)
            raise SchedulingError(f"Failed to register region for reminder {reminder.id}: {e}") from e

        logger.info(
            f"Registered {handle} ({location.display_name}, {location.radius_meters:.0f}m, "
            f"{location.trigger_direction.value}{', awaiting exit' if location.awaiting_exit else ''})"
        )
        return handle

    def _add(self, handle: str, location: LocationData) -> None:
        self.service.add_region(Region(
            region_id=handle,
            latitude=location.latitude,
            longitude=location.longitude,
            radius_meters=location.radius_meters,
            transitions=transition_mask(location),
            loitering_delay_seconds=config.DWELL_LOITERING_SECONDS,
            initial_trigger_enter=True,
        ))

    def _evict(self, handle: str) -> None:
        victim = self.store.find_by_spatial_handle(handle)
        self.service.remove_region(handle)
        if victim is not None:
            self.store.set_spatial_handle(victim.id, None)
            logger.warning(f"Evicted {handle} (reminder {victim.id}) to free a region slot")
        else:
            logger.warning(f"Evicted orphan region {handle}")

    def refresh(self, reminder_id: int) -> Optional[str]:
        """Re-register with the reminder's current transition mask."""
        reminder = self.store.get(reminder_id)
        if reminder is None or not reminder.is_pending or reminder.location is None:
            return None
        handle = region_id_for(reminder_id)
        self.service.remove_region(handle)
        reminder.spatial_handle = None
        return self.register(reminder)

    def unregister(self, reminder_id: int) -> bool:
        """Remove the region and clear the stored handle. Idempotent."""
        handle = region_id_for(reminder_id)
        removed = self.service.remove_region(handle)
        self.store.set_spatial_handle(reminder_id, None)
        if removed:
            logger.info(f"Unregistered {handle}")

        remaining = [r for r in self.store.active_location_based() if r.id != reminder_id]
        if not remaining:
            self.service.remove_all()
            logger.info("No active location reminders, stopped region monitoring")
        return removed

    def on_transition(self, handle: str, transition: Transition) -> None:
        """Service listener: filter the transition and queue it for dispatch."""
        reminder = self.store.find_by_spatial_handle(handle)
        if reminder is None:
            logger.warning(f"Transition {transition.value} for unknown region {handle}, discarded")
            return
        if not reminder.is_pending:
            logger.debug(f"Transition {transition.value} for reminder {reminder.id} ({reminder.status.value}), discarded")
            return
        if not transition_matches(reminder.location, transition):
            logger.debug(f"Transition {transition.value} does not match reminder {reminder.id}, discarded")
            return
        if self.queue is None:
            logger.warning(f"Transition for reminder {reminder.id} with no event queue, discarded")
            return

        self.queue.submit(SpatialTransitionEvent(reminder.id, transition))

    def rearm_all(self, reminders: Iterable[Reminder]) -> int:
        """Register pending location reminders that have no live region.

        Returns:
            Count of new registrations
        """
        registered = 0
        for reminder in reminders:
            try:
                fresh = self.store.get(reminder.id)
                if fresh is None or not fresh.is_pending or fresh.is_time_based:
                    continue
                if self.is_registered(fresh.id):
                    continue
                fresh.spatial_handle = None
                self.register(fresh, evict=False)
                registered += 1
            except (InvalidInput, SchedulingError) as e:
                logger.error(f"Failed to re-register reminder {reminder.id}: {e}")

        logger.info(f"Re-registered {registered} location triggers")
        return registered

    def detect_removed(self) -> int:
        """Re-register reminders whose stored handle the service dropped."""
        active = set(self.service.active_region_ids())
        dropped = [
            r for r in self.store.active_location_based()
            if r.spatial_handle and r.spatial_handle not in active
        ]
        if dropped:
            logger.warning(f"{len(dropped)} regions were removed by the system, re-registering")
        return self.rearm_all(dropped)
