"""Pytest configuration and fixtures."""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, Mock, patch
from zoneinfo import ZoneInfo

import pytest

# Keep log files and the local timezone out of the developer's environment
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="trigger-engine-logs-"))
os.environ["TIMEZONE"] = "UTC"

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from triggers.manager import ReminderManager
from triggers.presenter import Presenter
from triggers.services import LocationFeedSpatialService, TimeTriggerService
from triggers.store import ReminderStore

UTC = ZoneInfo("UTC")

# Monday 10 March 2025, 09:00
START = datetime(2025, 3, 10, 9, 0, tzinfo=UTC)


class FakeClock:
    """Controllable clock, called like `datetime.now`."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, moment: datetime) -> datetime:
        self.now = moment
        return self.now


class FakeTimeService(TimeTriggerService):
    """In-memory wake-ups. `fire_due` plays the OS delivering them."""

    def __init__(self):
        super().__init__()
        self.jobs: dict[str, datetime] = {}
        self.exact_allowed = True
        self.fail = False
        self.schedule_calls = 0

    def can_schedule_exact(self) -> bool:
        return self.exact_allowed

    def schedule(self, key, run_at):
        if self.fail:
            raise RuntimeError("alarm service unavailable")
        self.schedule_calls += 1
        self.jobs[key] = run_at

    def cancel(self, key):
        return self.jobs.pop(key, None) is not None

    def is_scheduled(self, key):
        return key in self.jobs

    def scheduled_keys(self):
        return list(self.jobs)

    def fire_due(self, now: datetime) -> list[str]:
        """Deliver (and consume) every wake-up due at `now`."""
        due = sorted((k for k, at in self.jobs.items() if at <= now), key=lambda k: self.jobs[k])
        for key in due:
            del self.jobs[key]
            self._emit(key)
        return due

    def deliver(self, key: str) -> None:
        """Deliver a callback without consuming the registration (duplicate/late delivery)."""
        self._emit(key)

    def reboot(self) -> None:
        """All registrations are lost, as on device restart."""
        self.jobs.clear()


class RecordingPresenter(Presenter):
    def __init__(self):
        self.payloads = []

    async def present(self, payload):
        self.payloads.append(payload)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    """A fresh temp-file store for each test."""
    s = ReminderStore(str(tmp_path / "reminders.db"), clock=clock)
    yield s
    s.close()


@pytest.fixture
def time_service():
    return FakeTimeService()


@pytest.fixture
def spatial_service(clock):
    return LocationFeedSpatialService(max_regions=100, clock=clock)


@pytest.fixture
def presenter():
    return RecordingPresenter()


@pytest.fixture
def engine(store, time_service, spatial_service, presenter, clock):
    """A fully wired manager on fakes."""
    return ReminderManager(
        store=store,
        time_service=time_service,
        spatial_service=spatial_service,
        presenter=presenter,
        clock=clock,
        slot_policy="reject",
    )


@pytest.fixture
def run_until(engine, time_service, clock):
    """Move the clock to `when`, deliver due wake-ups and drain the queue."""

    async def _run(when: datetime) -> int:
        clock.set(when)
        time_service.fire_due(when)
        return await engine.queue.drain()

    return _run


@pytest.fixture
def move_to(engine, spatial_service, clock):
    """Report a position fix and drain the resulting transitions."""

    async def _move(position, when: datetime = None) -> int:
        if when is not None:
            clock.set(when)
        spatial_service.update_position(position[0], position[1], at=clock())
        return await engine.queue.drain()

    return _move


@pytest.fixture
def mock_httpx_client():
    """Create a mock httpx client."""
    with patch("httpx.AsyncClient") as mock:
        client = AsyncMock()
        client.post.return_value = Mock(raise_for_status=Mock())
        mock.return_value.__aenter__.return_value = client
        yield client
