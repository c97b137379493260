"""Unit tests for configuration."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from process_orchestrator.config import CoreSettings


def test_core_settings_defaults(monkeypatch: pytest.MonkeyPatch) -> None:
    """Test settings default values."""
    monkeypatch.delenv("ORCHESTRATOR_STATE_PATH", raising=False)
    config = CoreSettings(_env_file=None)

    assert config.log_level == "INFO"
    assert config.state_path == Path("orchestrator_state")
    assert config.runtime_retry_attempts == 3
    assert config.max_trigger_chain_depth == 5
    assert config.scheduler_enabled is True


def test_core_settings_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Test settings are read from environment variables."""
    monkeypatch.setenv("ORCHESTRATOR_STATE_PATH", str(tmp_path))
    monkeypatch.setenv("ORCHESTRATOR_RUNTIME_BASE_URL", "http://zeebe:8080")
    monkeypatch.setenv("ORCHESTRATOR_SCHEDULER_ENABLED", "false")
    monkeypatch.setenv("ORCHESTRATOR_PRIVILEGED_ACTORS", "admin, ops ,")

    config = CoreSettings(_env_file=None)

    assert config.state_path == tmp_path
    assert config.runtime_base_url == "http://zeebe:8080"
    assert config.scheduler_enabled is False
    assert config.parsed_privileged_actors() == {"admin", "ops"}
    assert config.collection_file("tasks") == tmp_path / "tasks.json"


def test_core_settings_from_env_file(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Test settings are read from a .env file."""
    monkeypatch.delenv("ORCHESTRATOR_CORS_ORIGINS", raising=False)
    env_file = tmp_path / ".env"
    env_file.write_text(
        "ORCHESTRATOR_CORS_ORIGINS=http://a.test, http://b.test\nLOG_LEVEL=DEBUG\n",
        encoding="utf-8",
    )

    config = CoreSettings(_env_file=env_file)

    assert config.parsed_cors_origins() == ["http://a.test", "http://b.test"]
    assert config.log_level == "DEBUG"


def test_core_settings_rejects_out_of_range_values() -> None:
    """Test numeric bounds are enforced."""
    with pytest.raises(ValidationError):
        CoreSettings(_env_file=None, ORCHESTRATOR_RUNTIME_RETRY_ATTEMPTS="0")
    with pytest.raises(ValidationError):
        CoreSettings(_env_file=None, ORCHESTRATOR_SLA_TICK_SECONDS="-1")
