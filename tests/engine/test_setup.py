# tests/engine/test_setup.py
"""Tests for component setup scheduling."""

import pytest

from factories import DeferredExecutor, ImmediateExecutor, SampleSystem
from netsynth.contracts import InvalidSetupTransition, SetupState
from netsynth.core.graph import ComponentGraph
from netsynth.engine.setup import schedule_setup


@pytest.fixture
def node(system: SampleSystem):
    return ComponentGraph().add_node(system.camera)


class TestScheduleSetup:
    """schedule_setup() drives the node state machine."""

    def test_node_is_setting_up_until_the_future_completes(self, node) -> None:
        executor = DeferredExecutor()

        future = schedule_setup(node, executor, lambda: None)

        assert node.setup_state == SetupState.SETTING_UP
        assert executor.futures == [future]

    def test_success(self, node) -> None:
        executor = DeferredExecutor()
        future = schedule_setup(node, executor, lambda: None)

        future.set_result(None)

        assert node.setup_state == SetupState.SETUP

    def test_failure(self, node) -> None:
        executor = DeferredExecutor()
        future = schedule_setup(node, executor, lambda: None)

        future.set_exception(RuntimeError("driver not found"))

        assert node.setup_state == SetupState.SETUP_FAILED

    def test_cancelled(self, node) -> None:
        executor = DeferredExecutor()
        future = schedule_setup(node, executor, lambda: None)

        assert future.cancel()

        assert node.setup_state == SetupState.SETUP_FAILED

    def test_immediate_executor(self, node) -> None:
        calls = []
        executor = ImmediateExecutor()

        future = schedule_setup(node, executor, lambda: calls.append(node.node_id))

        assert future.done()
        assert calls == [node.node_id]
        assert node.setup_state == SetupState.SETUP
        assert executor.submitted == 1

    @pytest.mark.parametrize(
        "state",
        [SetupState.SETTING_UP, SetupState.SETUP, SetupState.SETUP_FAILED],
    )
    def test_only_not_setup_nodes_can_start(self, node, state: SetupState) -> None:
        node.setup_state = state
        executor = DeferredExecutor()

        with pytest.raises(InvalidSetupTransition):
            schedule_setup(node, executor, lambda: None)

        assert node.setup_state == state
        assert executor.futures == []

    def test_failed_setup_can_be_reset(self, node) -> None:
        executor = ImmediateExecutor()
        schedule_setup(node, executor, _raise)

        node.reset_setup()
        schedule_setup(node, executor, lambda: None)

        assert node.setup_state == SetupState.SETUP


def _raise() -> None:
    raise OSError("device busy")
