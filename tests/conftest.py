"""Shared fixtures: a movable clock, upload metadata and configuration."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from queryguard.config import Config, reset_config
from queryguard.modes.uploads import InMemoryUploadMetadataProvider, UploadTableInfo

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOW) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


@pytest.fixture(autouse=True)
def _isolated_config(monkeypatch: pytest.MonkeyPatch):
    """Keep QUERYGUARD_* variables from the environment out of the tests."""
    import os

    for key in list(os.environ):
        if key.startswith("QUERYGUARD_"):
            monkeypatch.delenv(key, raising=False)
    reset_config()
    yield
    reset_config()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> Config:
    return Config()


@pytest.fixture
def uploads() -> InMemoryUploadMetadataProvider:
    """
    Client c1 owns two active uploads and one archived upload; c2 owns one.

    upload_c1_q2 is small (50 rows) and 120 days old.
    """
    return InMemoryUploadMetadataProvider([
        UploadTableInfo(
            table_name="upload_c1_q1",
            client_id="c1",
            upload_date=NOW - timedelta(days=10),
            record_count=5000,
        ),
        UploadTableInfo(
            table_name="upload_c1_q2",
            client_id="c1",
            upload_date=NOW - timedelta(days=120),
            record_count=50,
        ),
        UploadTableInfo(
            table_name="upload_c1_old",
            client_id="c1",
            upload_date=NOW - timedelta(days=400),
            record_count=800,
            status="archived",
        ),
        UploadTableInfo(
            table_name="upload_c2_q1",
            client_id="c2",
            upload_date=NOW - timedelta(days=5),
            record_count=1200,
        ),
    ])
