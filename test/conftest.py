from pathlib import Path

import pytest
from fakes import ENDPOINT, FakeClock, ScriptedDispatcher

from capture_relay.clock import WakeTimer
from capture_relay.models import RelayConfig
from capture_relay.notifications import NotificationBridge
from capture_relay.scheduler import PollScheduler
from capture_relay.store import DurableStore
from capture_relay.tracker import RequestTracker


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> RelayConfig:
    """Defaults from the settings page, pointed at a fake backend."""
    return RelayConfig(endpoint_url=ENDPOINT, headers={"Authorization": "Bearer s3cret", "X-Client": "tests"})


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "relay.sqlite3"


@pytest.fixture
def store(db_path):
    store = DurableStore(db_path)
    yield store
    store.close()


@pytest.fixture
def tracker(store, config, clock) -> RequestTracker:
    return RequestTracker(store, config, clock)


@pytest.fixture
def dispatcher() -> ScriptedDispatcher:
    return ScriptedDispatcher()


@pytest.fixture
def events():
    return []


@pytest.fixture
def notifier(events) -> NotificationBridge:
    bridge = NotificationBridge()
    bridge.subscribe(events.append)
    return bridge


@pytest.fixture
def scheduler(tracker, dispatcher, notifier, store, clock) -> PollScheduler:
    return PollScheduler(tracker, dispatcher, notifier, WakeTimer(store, clock), clock)
