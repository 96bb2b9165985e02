from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from coordinator.config import CoordinatorConfig
from coordinator.scheduler import Coordinator
from coordinator.storage import init_storage


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


def make_definition(*jobs: dict[str, Any], name: str = "ci") -> dict[str, Any]:
    return {"name": name, "jobs": list(jobs)}


def make_job(name: str, *steps: str, **extra: Any) -> dict[str, Any]:
    return {"name": name, "steps": list(steps) or ["true"], **extra}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> CoordinatorConfig:
    return CoordinatorConfig(heartbeat_interval=10, heartbeat_timeout=30, cancel_grace=10)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "cirelay.db"


@pytest.fixture
def storage(db_path):
    store = init_storage(db_path)
    yield store
    store.close()


@pytest.fixture
def coordinator(storage, config, clock) -> Coordinator:
    return Coordinator(storage, config, clock=clock)
