"""Shared fixtures for relay tests."""

import pytest

from instancerelay.cache import InstanceCache, Item


class FakeClock:
    """Manually advanced clock (seconds since epoch)."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InstanceCache(max_entries=100, ttl_seconds=3600, min_value=3_000_000, clock=clock)


def make_item(value, name="Dog", generation="G1", rarity="rare"):
    return Item(display_name=name, value=value, generation=generation, rarity=rarity)
