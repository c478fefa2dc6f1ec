from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_hive.config import ConsensusSettings, QueueSettings, RegistrySettings, Settings

pytestmark = [
    allure.epic("Agent Orchestration"),
    allure.feature("Configuration"),
]


def test_from_env_uses_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AGENT_HIVE_DB_PATH", raising=False)
    monkeypatch.delenv("AGENT_HIVE_HEARTBEAT_STALE_SECONDS", raising=False)

    settings = Settings.from_env()

    assert settings.db_path == Path(".agent_hive.db")
    assert settings.registry.heartbeat_stale_seconds == 600
    assert settings.queue.retry_base_seconds == 30.0
    assert settings.verification.pass_threshold == 60.0
    assert settings.consensus.agreement_threshold == 0.7
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_HIVE_DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_HIVE_HEARTBEAT_STALE_SECONDS", "120")
    monkeypatch.setenv("AGENT_HIVE_DEFAULT_MAX_RETRIES", "1")
    monkeypatch.setenv("AGENT_HIVE_CONSENSUS_THRESHOLD", "0.5")
    monkeypatch.setenv("AGENT_HIVE_BATCH_SIZE", "25")

    settings = Settings.from_env()

    assert settings.db_path == tmp_path / "env.db"
    assert settings.registry.heartbeat_stale_seconds == 120
    assert settings.queue.default_max_retries == 1
    assert settings.consensus.agreement_threshold == 0.5
    assert settings.supervisor.batch_size == 25


def test_explicit_db_path_wins_over_environment(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("AGENT_HIVE_DB_PATH", str(tmp_path / "env.db"))

    settings = Settings.from_env(db_path=tmp_path / "cli.db")

    assert settings.db_path == tmp_path / "cli.db"


def test_validate_rejects_non_positive_stale_threshold() -> None:
    settings = Settings(registry=RegistrySettings(heartbeat_stale_seconds=0))

    with pytest.raises(ValueError, match="HEARTBEAT_STALE_SECONDS"):
        settings.validate()


def test_validate_rejects_out_of_range_percentage() -> None:
    settings = Settings(registry=RegistrySettings(high_performer_floor=120.0))

    with pytest.raises(ValueError, match="HIGH_PERFORMER_FLOOR must be within"):
        settings.validate()


def test_validate_rejects_negative_retry_budget() -> None:
    settings = Settings(queue=QueueSettings(default_max_retries=-1))

    with pytest.raises(ValueError, match="DEFAULT_MAX_RETRIES"):
        settings.validate()


def test_validate_rejects_consensus_threshold_outside_unit_interval() -> None:
    settings = Settings(consensus=ConsensusSettings(agreement_threshold=0.0))

    with pytest.raises(ValueError, match="CONSENSUS_THRESHOLD"):
        settings.validate()
