"""Build fire payloads and hand them to the presentation layer."""

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import httpx

import config as app_config
from logger import logger
from . import config
from .types import Alarm, FirePayload, Priority, Reminder, SnoozeAction, Transition


def time_snooze_actions() -> list[SnoozeAction]:
    return [SnoozeAction(label=f"{m} min", minutes=m) for m in config.SNOOZE_OPTIONS_MINUTES]


def location_snooze_actions() -> list[SnoozeAction]:
    minutes = config.LOCATION_SNOOZE_MINUTES
    label = f"Snooze {minutes // 60}h" if minutes % 60 == 0 else f"Snooze {minutes} min"
    return [
        SnoozeAction(label=label, minutes=minutes),
        SnoozeAction(label="Remind me when I leave", until_leave=True),
    ]


def build_time_payload(reminder: Reminder) -> FirePayload:
    title = "Reminder" if reminder.priority != Priority.HIGH else "Important reminder"
    return FirePayload(
        reminder_id=reminder.id,
        kind="time",
        title=title,
        body=reminder.message,
        snooze_actions=time_snooze_actions(),
        priority=reminder.priority,
    )


def build_location_payload(reminder: Reminder, transition: Transition) -> FirePayload:
    place = reminder.location.display_name
    if transition == Transition.EXIT:
        title = f"Leaving {place}"
    else:
        title = f"Arrived at {place}"
    return FirePayload(
        reminder_id=reminder.id,
        kind="location",
        title=title,
        body=reminder.message,
        snooze_actions=location_snooze_actions(),
        priority=reminder.priority,
    )


def build_alarm_payload(alarm: Alarm) -> FirePayload:
    minutes = alarm.snooze_duration_minutes
    return FirePayload(
        reminder_id=alarm.id,
        kind="alarm",
        title=alarm.label,
        body=alarm.time_24h,
        snooze_actions=[SnoozeAction(label=f"Snooze {minutes} min", minutes=minutes)],
        priority=Priority.HIGH,
    )


class Presenter(ABC):
    """Receives payloads after the state change has been committed."""

    @abstractmethod
    async def present(self, payload: FirePayload) -> None: ...


class LogPresenter(Presenter):
    async def present(self, payload: FirePayload) -> None:
        logger.info(f"FIRE [{payload.kind}] {payload.reminder_id}: {payload.title} - {payload.body}")


class CallbackPresenter(Presenter):
    """Forwards payloads to any async callable."""

    def __init__(self, callback: Callable[[FirePayload], Awaitable[None]]):
        self.callback = callback

    async def present(self, payload: FirePayload) -> None:
        await self.callback(payload)


class WebhookPresenter(Presenter):
    """POSTs payloads as JSON to a notification endpoint.

    Delivery failures are logged, never raised: the firing is already
    committed and re-sending would duplicate it.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        token: Optional[str] = None,
        timeout: float = config.WEBHOOK_TIMEOUT_SECONDS,
    ):
        self.url = url or app_config.NOTIFY_WEBHOOK_URL
        self.token = token if token is not None else app_config.NOTIFY_WEBHOOK_TOKEN
        self.timeout = timeout
        if not self.url:
            raise ValueError("WebhookPresenter needs a URL (set NOTIFY_WEBHOOK_URL)")

    async def present(self, payload: FirePayload) -> None:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=payload.to_dict(), headers=headers)
                response.raise_for_status()
            logger.info(f"Delivered {payload.kind} payload for {payload.reminder_id}")
        except httpx.HTTPError as e:
            logger.error(f"Webhook delivery failed for {payload.kind} {payload.reminder_id}: {e}")


def default_presenter() -> Presenter:
    """Webhook when NOTIFY_WEBHOOK_URL is configured, logging otherwise."""
    if app_config.NOTIFY_WEBHOOK_URL:
        return WebhookPresenter()
    return LogPresenter()
