"""Shared fixtures for the Browse Digest test suite."""

from datetime import datetime

import pytest

from browsedigest.config import ConfigManager, StorageConfig
from browsedigest.privacy import PrivacyFilter
from browsedigest.storage import StateStorage
from browsedigest.store import EventStore


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, when: datetime) -> float:
        self.now = when.timestamp()
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 2, 12, 9, 0, 0).timestamp())


@pytest.fixture
def storage(tmp_path):
    return StateStorage(tmp_path / "state.db")


@pytest.fixture
def privacy():
    return PrivacyFilter()


@pytest.fixture
def store(storage, privacy, clock):
    return EventStore(storage, privacy, StorageConfig(), clock=clock)


@pytest.fixture
def config_manager(tmp_path):
    return ConfigManager(tmp_path / "config.yaml")
