"""Shared test fixtures."""

from __future__ import annotations

import itertools
from collections.abc import Iterator
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from agent_hive.config import Settings
from agent_hive.orchestrator.dispatch import DeferredDispatcher
from agent_hive.orchestrator.engine import Orchestrator
from agent_hive.orchestrator.repository import OrchestratorRepository


class FakeClock:
    """Manually advanced clock injected into the repository."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 3, 2, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "hive.db"


@pytest.fixture()
def repository(db_path: Path, clock: FakeClock) -> Iterator[OrchestratorRepository]:
    # Sequential ids keep created_at ties ordered deterministically.
    counter = itertools.count(1)
    repo = OrchestratorRepository(
        db_path,
        clock=clock,
        id_factory=lambda: f"id-{next(counter):05d}",
    )
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def settings(db_path: Path) -> Settings:
    return Settings(db_path=db_path)


@pytest.fixture()
def dispatcher() -> DeferredDispatcher:
    return DeferredDispatcher()


@pytest.fixture()
def orchestrator(
    repository: OrchestratorRepository,
    settings: Settings,
    dispatcher: DeferredDispatcher,
) -> Orchestrator:
    return Orchestrator(repository=repository, settings=settings, dispatcher=dispatcher)
