"""Pytest configuration, Hypothesis profiles and shared fixtures."""

import pytest
from hypothesis import settings
from hypothesis import strategies as st

from retrystack.backends.inmemory import InMemoryBroker
from retrystack.core.config import TopologyConfig

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100, deadline=None)
settings.register_profile("dev", max_examples=20, deadline=None)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def valid_labels() -> st.SearchStrategy[str]:
    return st.from_regex(r"[a-z][a-z0-9\-]{0,15}", fullmatch=True)


_TEXT = st.characters(blacklist_categories=("Cs",))


def valid_payloads() -> st.SearchStrategy[dict]:
    return st.dictionaries(
        keys=st.text(alphabet=_TEXT, min_size=1, max_size=10),
        values=st.none() | st.booleans() | st.integers() | st.text(alphabet=_TEXT, max_size=20),
        max_size=5,
    )


@pytest.fixture
def config() -> TopologyConfig:
    """Default topology with no admin backoff so races resolve instantly."""
    return TopologyConfig(admin_base_delay=0.0, retry_delay=60.0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def broker(clock: FakeClock) -> InMemoryBroker:
    return InMemoryBroker(lock_duration=30.0, clock=clock)


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"
