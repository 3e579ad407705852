import itertools
import threading
from typing import Any, Dict, List, Tuple

import pytest
from fastapi.testclient import TestClient

from app.services.experiments.domain import Arm, ExperimentConfig
from app.services.experiments.events import EventDispatcher
from app.services.experiments.registry import ExperimentRegistry
from app.services.experiments.service import ExperimentService


class ScriptedRandomSource:
    """Returns the given draws in order, starting over when exhausted."""

    def __init__(self, draws):
        self._draws = itertools.cycle(draws)
        self._lock = threading.Lock()

    def uniform(self) -> float:
        with self._lock:
            return next(self._draws)


class RecordingSink:
    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self._lock = threading.Lock()

    def emit(self, event_name: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self.events.append((event_name, payload))

    def named(self, event_name: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [payload for name, payload in self.events if name == event_name]


def make_config(**overrides) -> ExperimentConfig:
    values = {
        "name": "Question wording test",
        "description": "Shorter wording for the data-maturity question",
        "target_metric": "assessment_completed",
        "variants": ["control", "variant"],
        "min_sample_size": 100,
        "significance_threshold": 0.05,
    }
    values.update(overrides)
    return ExperimentConfig(**values)


@pytest.fixture
def config_factory():
    return make_config


@pytest.fixture
def registry():
    return ExperimentRegistry()


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def dispatcher(sink):
    dispatcher = EventDispatcher(sink)
    dispatcher.start()
    yield dispatcher
    dispatcher.stop()


@pytest.fixture
def alternating_random():
    # control, variant, control, variant, ...
    return ScriptedRandomSource([0.1, 0.9])


@pytest.fixture
def service(registry, alternating_random, dispatcher):
    return ExperimentService(registry, alternating_random, dispatcher)


@pytest.fixture
def expose():
    """Assign ``per_arm`` users to each arm; needs the alternating random source."""

    def _expose(service: ExperimentService, experiment_id: str, per_arm: int):
        users = {Arm.CONTROL: [], Arm.VARIANT: []}
        for i in range(per_arm * 2):
            user_id = f"user_{i}"
            arm = service.assign(experiment_id, user_id, session_id=f"session_{i}")
            users[arm].append(user_id)
        assert len(users[Arm.CONTROL]) == per_arm
        assert len(users[Arm.VARIANT]) == per_arm
        return users

    return _expose


@pytest.fixture
def client():
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
