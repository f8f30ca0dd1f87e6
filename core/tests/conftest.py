"""Shared fixtures for pathway engine tests."""

import asyncio
import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from pathway.config import EngineConfig

EXAMPLES_DIR = Path(__file__).resolve().parents[2] / "examples" / "pathways"


class FakeClock:
    """Manually advanced time source for deadline tests."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Keep the user's ~/.pathway configuration and AI_* variables out of tests."""
    monkeypatch.setenv("PATHWAY_CONFIG", str(tmp_path / "missing-configuration.json"))
    monkeypatch.delenv("AI_DEFAULT_MODEL", raising=False)
    monkeypatch.delenv("AI_DEFAULT_TEMPERATURE", raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wait_until():
    return _wait_until


@pytest.fixture
def engine_config() -> EngineConfig:
    """Fast settings: no real backoff, short input polling."""
    return EngineConfig(
        default_model="openai/gpt-4o-mini",
        default_temperature=0.3,
        ai_backoff_base_seconds=0.0,
        input_poll_interval_seconds=0.01,
    )


@pytest.fixture
def load_example() -> Callable[[str], dict]:
    def load(name: str) -> dict:
        return json.loads((EXAMPLES_DIR / name).read_text(encoding="utf-8"))

    return load
