"""Shared fixtures for the LetTalky node tests."""

from __future__ import annotations

import pytest

from lettalky_node.network.discovery import DiscoveryService
from lettalky_node.network.registry import RegistryStore

# Meters per degree of latitude on the haversine sphere
METERS_PER_DEGREE = 111_194.93


class FakeClock:
    """Manually advanced stand-in for time.time()."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def north_of(latitude: float, meters: float) -> float:
    """Latitude *meters* due north of *latitude*."""
    return latitude + meters / METERS_PER_DEGREE


def loc(latitude: float, longitude: float, **extra) -> dict:
    return {"latitude": latitude, "longitude": longitude, **extra}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> RegistryStore:
    return RegistryStore()


@pytest.fixture
def service(store, clock) -> DiscoveryService:
    return DiscoveryService(store, clock=clock)
