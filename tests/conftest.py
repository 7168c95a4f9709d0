import pytest

from observability.recorder import TraceRecorder
from storage.memory_store import InMemoryTrackingStore


class ManualTimer:
    def __init__(self, delay, callback):
        self.delay = delay
        self.callback = callback
        self.cancelled = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Buffer scheduler whose timers only fire when a test says so."""

    def __init__(self):
        self.timers = []
        self.spawned = []

    def call_later(self, delay, callback):
        timer = ManualTimer(delay, callback)
        self.timers.append(timer)
        return timer

    def spawn(self, coro):
        self.spawned.append(coro)
        return coro

    async def wait_pending(self):
        spawned, self.spawned = self.spawned, []
        for coro in spawned:
            await coro

    @property
    def armed(self):
        return [timer for timer in self.timers if not timer.cancelled]

    async def fire(self):
        """Fire every armed timer and await the flushes they spawned."""
        timers, self.timers = self.armed, []
        for timer in timers:
            timer.callback()
        await self.wait_pending()


class FakeClock:
    """Seconds-based clock that only moves when advanced."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms / 1000


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def store(clock):
    return InMemoryTrackingStore(clock=clock)


@pytest.fixture
def recorder(store, scheduler):
    return TraceRecorder(store, system="ghl", environment="test", scheduler=scheduler)


@pytest.fixture
def disabled_recorder(scheduler):
    return TraceRecorder(None, scheduler=scheduler)
