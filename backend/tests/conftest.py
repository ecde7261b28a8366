import time
from dataclasses import dataclass, field
from typing import Callable

import pytest
from sqlalchemy.orm import sessionmaker

from smarthome.core.config import Settings
from smarthome.core.database import Base, build_engine
from smarthome.models import DocumentNode  # noqa: F401
from smarthome.schemas.state import StateDocument
from smarthome.services.reconciler import TimerReconciler
from smarthome.services.runtime import HomeRuntime
from smarthome.services.store import SqlDocumentStore

ROOT = "smartHomeState"
START_MS = 1_700_000_000_000


class FakeClock:
    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


@dataclass
class ScheduledCall:
    due_at: int
    delay: float
    callback: Callable[[], None]
    cancelled: bool = field(default=False)

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Countdowns that only fire when a test runs them."""

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.calls: list[ScheduledCall] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> ScheduledCall:
        call = ScheduledCall(self.clock.now + int(round(delay_seconds * 1000)), delay_seconds, callback)
        self.calls.append(call)
        return call

    @property
    def live(self) -> list[ScheduledCall]:
        return [call for call in self.calls if not call.cancelled]

    def run_due(self) -> int:
        due = [call for call in self.live if call.due_at <= self.clock.now]
        for call in due:
            call.cancelled = True
            call.callback()
        return len(due)


def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def read_state(store: SqlDocumentStore) -> StateDocument:
    return StateDocument.from_wire(store.read(ROOT))


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'smarthome.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    store = SqlDocumentStore(session_factory)
    yield store
    store.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return ManualScheduler(clock)


@pytest.fixture
def reconciler(store, clock, scheduler):
    return TimerReconciler(store, ROOT, clock=clock, scheduler=scheduler)


@pytest.fixture
def test_settings():
    return Settings(
        store_backend="sql",
        store_root=ROOT,
        store_poll_interval=0.0,
        notifier_reconnect_delay=0.01,
        presence_timeout_ms=30000,
        presence_check_interval=3600,
    )


@pytest.fixture
def runtime(store, test_settings, clock, scheduler):
    runtime = HomeRuntime(store, test_settings, clock=clock, scheduler=scheduler)
    yield runtime
    runtime.stop()
