from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from evogate.core.registry import InstanceRegistry
from evogate.telemetry import InMemoryTelemetry


class FakeClock:
    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def evogate_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "home"
    monkeypatch.setenv("EVOGATE_HOME", str(home))
    return home


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def telemetry() -> InMemoryTelemetry:
    return InMemoryTelemetry()


@pytest.fixture
def registry(clock: FakeClock, telemetry: InMemoryTelemetry) -> InstanceRegistry:
    return InstanceRegistry(qr_ttl_seconds=60, clock=clock, telemetry=telemetry)
