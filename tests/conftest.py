from datetime import datetime, timedelta, timezone

import pytest

from reflectline.scheduler import CallScheduler
from reflectline.session import CallSession, Prompt
from reflectline.store import EngineStore

T0 = datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock; works for both float and datetime clocks."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds: float = 0.0, **kwargs):
        if isinstance(self.now, datetime):
            self.now += timedelta(seconds=seconds, **kwargs)
        else:
            self.now += seconds


@pytest.fixture
def prompts():
    return [
        Prompt("What are you grateful for today?", prompt_id="p1"),
        Prompt("What is one thing you learned today?", prompt_id="p2"),
        Prompt("On a scale of 1 to 10, how was your day?", prompt_id="p3", is_rating=True),
    ]


@pytest.fixture
def clock():
    return FakeClock(1000.0)


@pytest.fixture
def session(prompts, clock):
    return CallSession(
        owner="user_1",
        conversation_id="conv_1",
        call_sid="CA_test_123",
        prompts=prompts,
        clock=clock,
    )


@pytest.fixture
def store():
    s = EngineStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def sched_clock():
    return FakeClock(T0)


@pytest.fixture
def scheduler(store, sched_clock):
    return CallScheduler(store, clock=sched_clock)
