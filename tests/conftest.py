"""
Shared fixtures for vaultsync tests.
"""

import pytest

from vaultsync.store.memory import InMemoryDocumentStore

T0 = 1_700_000_000_000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = T0) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
async def store():
    """Connected in-memory document store."""
    s = InMemoryDocumentStore()
    await s.connect()
    yield s
    await s.close()
