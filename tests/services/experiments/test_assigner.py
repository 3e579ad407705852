import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from app.services.experiments.assigner import VariantAssigner
from app.services.experiments.domain import Arm, ArmCounts, ExperimentStatus
from app.services.experiments.errors import ExperimentNotFound
from app.services.experiments.events import ASSIGNMENT_EVENT
from app.services.experiments.randomness import SystemRandomSource


class SlowRandomSource:
    """Sleeps inside the draw to widen any check-then-act window."""

    def __init__(self, value: float):
        self.value = value
        self.calls = 0

    def uniform(self) -> float:
        self.calls += 1
        threading.Event().wait(0.01)
        return self.value


class TestAssign:
    def test_draw_below_half_is_control(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        assigner = VariantAssigner(registry, SlowRandomSource(0.4999))

        assert assigner.assign(experiment_id, "user_1") == Arm.CONTROL

    def test_draw_at_half_is_variant(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        assigner = VariantAssigner(registry, SlowRandomSource(0.5))

        assert assigner.assign(experiment_id, "user_1") == Arm.VARIANT

    def test_repeated_calls_return_same_arm(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        assigner = VariantAssigner(registry, SystemRandomSource(seed=7))

        arms = {assigner.assign(experiment_id, "user_1") for _ in range(25)}

        assert len(arms) == 1
        counts = registry.get(experiment_id).counts
        assert counts[Arm.CONTROL].exposed + counts[Arm.VARIANT].exposed == 1

    def test_exposure_counted_on_first_assignment_only(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        source = SlowRandomSource(0.9)
        assigner = VariantAssigner(registry, source)

        assigner.assign(experiment_id, "user_1")
        assigner.assign(experiment_id, "user_1")

        assert source.calls == 1
        assert registry.get(experiment_id).counts[Arm.VARIANT] == ArmCounts(1, 0)

    def test_assignment_stores_session(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        VariantAssigner(registry, SlowRandomSource(0.1)).assign(
            experiment_id, "user_1", session_id="sess_42"
        )

        assignment = registry.get_assignment(experiment_id, "user_1")
        assert assignment.session_id == "sess_42"
        assert assignment.arm == Arm.CONTROL
        assert not assignment.converted

    def test_unknown_experiment(self, registry):
        assigner = VariantAssigner(registry, SystemRandomSource())

        with pytest.raises(ExperimentNotFound):
            assigner.assign("exp_missing", "user_1")

    def test_split_is_roughly_even(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        assigner = VariantAssigner(registry, SystemRandomSource(seed=1234))

        for i in range(2000):
            assigner.assign(experiment_id, f"user_{i}")

        control_share = registry.get(experiment_id).counts[Arm.CONTROL].exposed / 2000
        assert 0.45 <= control_share <= 0.55


class TestCompletedExperiment:
    def test_new_user_gets_control_without_exposure(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        with registry.locked(experiment_id) as state:
            state.status = ExperimentStatus.COMPLETED
            state.winner = Arm.VARIANT
        before = registry.get(experiment_id)
        source = SlowRandomSource(0.9)
        assigner = VariantAssigner(registry, source)

        assert assigner.assign(experiment_id, "late_user") == Arm.CONTROL

        snapshot = registry.get(experiment_id)
        assert source.calls == 0
        assert snapshot.counts[Arm.CONTROL].exposed == 0
        assert snapshot.participants == 0
        assert snapshot.late_events == 1
        assert registry.get_assignment(experiment_id, "late_user") is None
        assert snapshot.version == before.version


class TestConcurrency:
    def test_concurrent_first_calls_yield_one_assignment(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        source = SlowRandomSource(0.9)
        assigner = VariantAssigner(registry, source)
        barrier = threading.Barrier(8)

        def call():
            barrier.wait()
            return assigner.assign(experiment_id, "user1")

        with ThreadPoolExecutor(max_workers=8) as pool:
            arms = list(pool.map(lambda _: call(), range(8)))

        assert set(arms) == {Arm.VARIANT}
        assert source.calls == 1
        snapshot = registry.get(experiment_id)
        assert snapshot.counts[Arm.VARIANT].exposed == 1
        assert snapshot.counts[Arm.CONTROL].exposed == 0

    def test_concurrent_users_all_counted(self, registry, config_factory):
        experiment_id = registry.create(config_factory())
        assigner = VariantAssigner(registry, SystemRandomSource(seed=3))

        with ThreadPoolExecutor(max_workers=16) as pool:
            list(pool.map(lambda i: assigner.assign(experiment_id, f"user_{i}"), range(500)))

        snapshot = registry.get(experiment_id)
        assert snapshot.participants == 500
        assert snapshot.counts[Arm.CONTROL].exposed + snapshot.counts[Arm.VARIANT].exposed == 500


class TestAssignmentEvents:
    def test_event_emitted_once_per_new_assignment(self, registry, config_factory, dispatcher, sink):
        experiment_id = registry.create(config_factory(name="Flow test"))
        assigner = VariantAssigner(registry, SlowRandomSource(0.1), dispatcher)

        assigner.assign(experiment_id, "user_1", session_id="sess_1")
        assigner.assign(experiment_id, "user_1", session_id="sess_1")
        dispatcher.drain()

        events = sink.named(ASSIGNMENT_EVENT)
        assert events == [
            {
                "experiment_id": experiment_id,
                "user_id": "user_1",
                "session_id": "sess_1",
                "arm": "control",
                "experiment_name": "Flow test",
            }
        ]
