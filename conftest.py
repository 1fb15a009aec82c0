"""Shared fixtures: a file-backed store under tmp_path and a controllable clock."""
from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from echo_tracker.config import TrackerConfig
from echo_tracker.database import Database
from echo_tracker.services.activity_service import ActivityService
from echo_tracker.services.page_service import PageService
from echo_tracker.services.project_service import ProjectService
from echo_tracker.services.user_service import UserService
from echo_tracker.dashboard.engines.stats_engine import StatsEngine


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # Wednesday
    return FrozenClock(datetime(2024, 1, 17, 12, 0, 0))


@pytest.fixture
def config(tmp_path):
    return TrackerConfig(db_path=tmp_path / "tracker.db")


@pytest.fixture
def db(config):
    return Database(config.db_path).initialize()


@pytest.fixture
def users(db, clock):
    return UserService(db, clock)


@pytest.fixture
def user_id(users):
    user, _token = users.create_user("alice")
    return user.id


@pytest.fixture
def pages(db, config, clock):
    return PageService(db, config, clock)


@pytest.fixture
def projects(db, clock):
    return ProjectService(db, clock)


@pytest.fixture
def activity(db, config, clock):
    return ActivityService(db, config, clock)


@pytest.fixture
def stats(db, config, clock):
    return StatsEngine(db, config, clock)
