"""Typed trigger events and the queue that feeds them to the dispatcher.

Service callbacks only ever call `EventQueue.submit()`; all business logic
runs when the queue hands the event to the dispatcher.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional, Protocol, Union

from logger import logger
from .types import Transition


@dataclass(frozen=True)
class TimeTriggerEvent:
    reminder_id: int


@dataclass(frozen=True)
class AlarmTriggerEvent:
    alarm_id: int


@dataclass(frozen=True)
class SpatialTransitionEvent:
    reminder_id: int
    transition: Transition


TriggerEvent = Union[TimeTriggerEvent, AlarmTriggerEvent, SpatialTransitionEvent]


class EventHandler(Protocol):
    async def dispatch(self, event: TriggerEvent): ...


class EventQueue:
    """FIFO of trigger events, processed one at a time."""

    def __init__(self, handler: Optional[EventHandler] = None):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._handler = handler

    def bind(self, handler: EventHandler) -> None:
        self._handler = handler

    def submit(self, event: TriggerEvent) -> None:
        self._queue.put_nowait(event)
        logger.debug(f"Queued {event}")

    def pending(self) -> int:
        return self._queue.qsize()

    async def _handle(self, event: TriggerEvent) -> None:
        if self._handler is None:
            logger.warning(f"Dropping {event}: no dispatcher bound")
            return
        await self._handler.dispatch(event)

    async def run(self) -> None:
        """Process events until cancelled."""
        while True:
            event = await self._queue.get()
            try:
                await self._handle(event)
            finally:
                self._queue.task_done()

    async def drain(self) -> int:
        """Process everything queued right now, including events queued while draining."""
        processed = 0
        while not self._queue.empty():
            event = self._queue.get_nowait()
            try:
                await self._handle(event)
            finally:
                self._queue.task_done()
            processed += 1
        return processed
