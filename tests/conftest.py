"""
Shared fixtures: a temporary registry database and a controllable clock.
"""

import pytest

from assetgate.core.registry import AuthorizationRegistry


class FakeClock:
    """Manually advanced time source, usable wherever time.time is expected."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "registry.db")


@pytest.fixture
def registry(db_path, clock):
    return AuthorizationRegistry(db_path, clock=clock)


@pytest.fixture
def door(registry):
    """A registry with 'door-1' owned by 0xowner."""
    registry.create_asset("door-1", "Front door", "0xowner")
    return registry
