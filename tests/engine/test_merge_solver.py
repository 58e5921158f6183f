# tests/engine/test_merge_solver.py
"""Tests for structural node deduplication."""

from factories import SampleSystem


def _set_up(node) -> None:
    node.start_setup()
    node.setup_succeeded()


class TestCanAbsorb:
    """Merge conditions between two nodes."""

    def test_identical_nodes(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        a = graph.add_node(system.camera, {"rate": 10})
        b = graph.add_node(system.camera, {"rate": 10})

        solver = MergeSolver(graph)

        assert solver.can_absorb(a, b)
        assert not solver.can_absorb(a, a)

    def test_different_arguments(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        a = graph.add_node(system.camera, {"rate": 10})
        b = graph.add_node(system.camera, {"rate": 20})

        assert not MergeSolver(graph).can_absorb(a, b)

    def test_ignored_argument(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        a = graph.add_node(system.camera, {"conf": "fast"})
        b = graph.add_node(system.camera, {"conf": "slow"})

        assert MergeSolver(graph, ignore_arguments=["conf"]).can_absorb(a, b)

    def test_concrete_node_never_absorbed_by_placeholder(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        placeholder = graph.add_node(system.image)
        cam = graph.add_node(system.camera)
        solver = MergeSolver(graph)

        assert solver.can_absorb(placeholder, cam)
        assert not solver.can_absorb(cam, placeholder)

    def test_running_node_is_not_absorbed(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        running = graph.add_node(system.camera)
        fresh = graph.add_node(system.camera)
        _set_up(running)
        solver = MergeSolver(graph)

        assert not solver.can_absorb(running, fresh)
        assert solver.can_absorb(fresh, running)

    def test_stopping_node_does_not_absorb(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        stopping = graph.add_node(system.camera, stop_requested=True)
        fresh = graph.add_node(system.camera)

        assert not MergeSolver(graph).can_absorb(fresh, stopping)

    def test_stopping_node_is_not_absorbed_into_its_replacement(
        self, system: SampleSystem
    ) -> None:
        from netsynth.core.graph import ComponentGraph, PrecedenceEdge
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        stopping = graph.add_node(system.camera, stop_requested=True)
        replacement = graph.add_node(system.camera)
        graph.configure_after(replacement, stopping, "stop")
        solver = MergeSolver(graph)

        assert not solver.can_absorb(stopping, replacement)
        assert len(solver.merge_identical_tasks()) == 0
        assert graph.precedences(replacement) == [
            PrecedenceEdge(replacement.node_id, stopping.node_id, "stop")
        ]

    def test_different_deployments(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph, DeployedComponent
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        a = graph.add_node(system.camera, deployed=DeployedComponent("left", "camera"))
        b = graph.add_node(system.camera, deployed=DeployedComponent("right", "camera"))

        assert not MergeSolver(graph).can_absorb(a, b)

    def test_different_input_sources(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        cam1 = graph.add_node(system.camera, {"rate": 1})
        cam2 = graph.add_node(system.camera, {"rate": 2})
        p1 = graph.add_node(system.processor)
        p2 = graph.add_node(system.processor)
        graph.add_connection(cam1, "image", p1, "in")
        graph.add_connection(cam2, "image", p2, "in")

        assert not MergeSolver(graph).can_absorb(p1, p2)

    def test_endpoint_key_compares_sources(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        cam1 = graph.add_node(system.camera, {"rate": 1})
        cam2 = graph.add_node(system.camera, {"rate": 2})
        p1 = graph.add_node(system.processor)
        p2 = graph.add_node(system.processor)
        graph.add_connection(cam1, "image", p1, "in")
        graph.add_connection(cam2, "image", p2, "in")

        solver = MergeSolver(graph, endpoint_key=lambda node_id: graph[node_id].model.name)

        assert solver.can_absorb(p1, p2)

    def test_ancestor_is_not_absorbed(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        outer = graph.add_node(system.pipeline)
        inner = graph.add_node(system.pipeline)
        graph.add_dependency(outer, inner, "nested")

        assert not MergeSolver(graph).can_absorb(inner, outer)


class TestMerge:
    """Merging and the merge fixpoint."""

    def test_placeholder_replaced_with_port_mapping(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import merge_identical_tasks

        graph = ComponentGraph()
        placeholder = graph.add_node(system.image)
        cam = graph.add_node(system.camera)
        proc = graph.add_node(system.processor)
        graph.add_connection(placeholder, "frame", proc, "in")

        group = merge_identical_tasks(graph)

        assert placeholder not in graph
        assert group.replacement_for(placeholder.node_id) == cam.node_id
        conn = graph.concrete_input_connections(proc)[0]
        assert (conn.source, conn.source_port) == (cam.node_id, "image")

    def test_identical_subgraphs_collapse(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import merge_identical_tasks

        graph = ComponentGraph()
        cam1 = graph.add_node(system.camera)
        cam2 = graph.add_node(system.camera)
        p1 = graph.add_node(system.processor)
        p2 = graph.add_node(system.processor)
        graph.add_connection(cam1, "image", p1, "in")
        graph.add_connection(cam2, "image", p2, "in")

        group = merge_identical_tasks(graph)

        assert graph.node_count == 2
        assert len(group) == 2
        assert len(list(graph.each_connection())) == 1

    def test_merge_is_idempotent(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        for _ in range(3):
            cam = graph.add_node(system.camera)
            proc = graph.add_node(system.processor)
            graph.add_connection(cam, "image", proc, "in")
        solver = MergeSolver(graph)

        solver.merge_identical_tasks()
        ids = {n.node_id for n in graph.nodes()}
        merged = len(solver.group)
        solver.merge_identical_tasks()

        assert {n.node_id for n in graph.nodes()} == ids
        assert len(solver.group) == merged == 4

    def test_running_node_survives(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import merge_identical_tasks

        graph = ComponentGraph()
        fresh = graph.add_node(system.camera)
        running = graph.add_node(system.camera)
        _set_up(running)

        merge_identical_tasks(graph)

        assert graph.nodes() == [running]
        assert fresh not in graph

    def test_merge_keeps_hints_and_arguments(self, system: SampleSystem) -> None:
        from netsynth.core.graph import ComponentGraph
        from netsynth.engine.merge_solver import MergeSolver

        graph = ComponentGraph()
        a = graph.add_node(system.camera, {"rate": 1}, deployment_hints=("left",))
        b = graph.add_node(system.camera, {"mode": "rgb"}, deployment_hints=("cam",))

        survivor = MergeSolver(graph).merge(a, b)

        assert survivor is b
        assert b.arguments == {"mode": "rgb", "rate": 1}
        assert b.deployment_hints == ("cam", "left")


class TestMergeGroup:
    """Replacement chains."""

    def test_chain_is_followed(self) -> None:
        from netsynth.engine.merge_solver import MergeGroup

        group = MergeGroup()
        group.record("a", "b")
        group.record("b", "c")

        assert group.replacement_for("a") == "c"
        assert group.replacement_for("z") == "z"
        assert dict(group.items()) == {"a": "c", "b": "c"}

    def test_self_replacement_rejected(self) -> None:
        import pytest

        from netsynth.contracts import InternalError
        from netsynth.engine.merge_solver import MergeGroup

        with pytest.raises(InternalError):
            MergeGroup().record("a", "a")
