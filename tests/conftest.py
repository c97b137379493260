"""Test configuration and fixtures."""

from __future__ import annotations

import itertools
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import Mock

import pytest

from process_orchestrator.config import CoreSettings
from process_orchestrator.core import OrchestrationCore
from process_orchestrator.processes import ProcessDefinitionRecord
from process_orchestrator.runtime import ProcessRuntime


class FrozenClock:
    """A clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2024, 3, 4, 9, 0, tzinfo=UTC))


@pytest.fixture
def settings(tmp_path: Path) -> CoreSettings:
    return CoreSettings(
        _env_file=None,
        ORCHESTRATOR_STATE_PATH=str(tmp_path / "state"),
        ORCHESTRATOR_PRIVILEGED_ACTORS="admin",
        ORCHESTRATOR_SCHEDULER_ENABLED="false",
        ORCHESTRATOR_MAX_TRIGGER_CHAIN_DEPTH="3",
    )


@pytest.fixture
def runtime() -> Mock:
    """A runtime that deploys and starts successfully, handing out increasing keys."""

    mock = Mock(spec=ProcessRuntime)
    counter = itertools.count(1)
    mock.deploy.return_value = "def-key-1"
    mock.start_instance.side_effect = lambda *_a, **_k: f"pi-{next(counter)}"
    mock.complete_user_task.return_value = None
    return mock


@pytest.fixture
def core(settings: CoreSettings, runtime: Mock, clock: FrozenClock) -> OrchestrationCore:
    return OrchestrationCore(settings=settings, runtime=runtime, clock=clock)


@pytest.fixture
def deployed_definition(core: OrchestrationCore) -> ProcessDefinitionRecord:
    record = core.processes.save_definition(
        workspace_id="ws-1", name="Onboarding", bpmn_xml="<definitions/>"
    )
    return core.processes.deploy(record.id)
