"""Shared pytest fixtures for idlc tests."""

from __future__ import annotations

import json
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any

import pytest
from click.testing import CliRunner

from idlc.collaborators import InMemoryStore
from idlc.config import FRAGMENTS_DIRNAME, IDLC_DIR_NAME, TEAMS_DIRNAME, write_config
from idlc.core import Lifecycle
from idlc.engine import TransitionEngine
from idlc.events import EventDispatcher
from idlc.registry import ConfigRegistry
from tests._clock import FakeClock


def _linear_team(team_id: str = "abc", statuses: tuple[str, ...] = ("A", "B", "C")) -> dict[str, Any]:
    """Single-stage team with a straight chain of statuses."""
    return {
        "team": {"id": team_id},
        "stages": [{"id": "work", "name": "Work"}],
        "statuses": [{"id": s, "stage_id": "work"} for s in statuses],
        "transitions": [{"from": a, "to": [b]} for a, b in zip(statuses, statuses[1:])],
    }


@pytest.fixture
def linear_team() -> Callable[..., dict[str, Any]]:
    """Factory for single-stage teams: linear_team("abc", ("A", "B", "C"))."""
    return _linear_team


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def registry(store: InMemoryStore) -> Generator[ConfigRegistry, None, None]:
    reg = ConfigRegistry(store, store=store)
    yield reg
    reg.close()


@pytest.fixture
def dispatcher() -> Generator[EventDispatcher, None, None]:
    d = EventDispatcher(timeout=2.0)
    yield d
    d.close()


@pytest.fixture
def engine(
    registry: ConfigRegistry, store: InMemoryStore, dispatcher: EventDispatcher, clock: FakeClock
) -> TransitionEngine:
    """Engine over the shared store; tests activate the teams they need."""
    return TransitionEngine(registry, store, dispatcher, clock=clock)


@pytest.fixture
def platform_team() -> dict[str, Any]:
    """Team extending the default template with the progressive-rollout fragment."""
    return {
        "team": {"id": "platform", "name": "Platform"},
        "extends": "default",
        "stages": [{"$ref": "progressive-rollout"}],
        "statuses": [{"$ref": "progressive-rollout"}],
        "transitions": [{"$ref": "progressive-rollout"}],
        "automation": [{"$ref": "progressive-rollout"}],
    }


@pytest.fixture
def lifecycle(
    store: InMemoryStore, clock: FakeClock, platform_team: dict[str, Any]
) -> Generator[Lifecycle, None, None]:
    """Wired Lifecycle with ``default`` and ``platform`` active."""
    store.put_team_config(platform_team)
    lc = Lifecycle(store, store=store, clock=clock)
    lc.activate("default")
    lc.activate("platform")
    yield lc
    lc.close()


@pytest.fixture
def idlc_project(tmp_path: Path, platform_team: dict[str, Any]) -> Path:
    """A tmp directory set up as an idlc project with one team.

    Returns the project root (parent of .idlc/).
    """
    idlc_dir = tmp_path / IDLC_DIR_NAME
    (idlc_dir / TEAMS_DIRNAME).mkdir(parents=True)
    (idlc_dir / FRAGMENTS_DIRNAME).mkdir()
    write_config(idlc_dir, {"tick_interval": 5})
    (idlc_dir / TEAMS_DIRNAME / "platform.json").write_text(json.dumps(platform_team))
    return tmp_path


@pytest.fixture
def cli_runner() -> CliRunner:
    """Click CLI test runner."""
    return CliRunner()
