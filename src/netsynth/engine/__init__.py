"""Synthesis engine: Generator, MergeSolver, Deployer, Reconciler, Engine."""

from netsynth.engine.dataflow import DataflowPolicyPropagator
from netsynth.engine.deployer import Deployer, DeploymentGroup
from netsynth.engine.engine import Engine, ResolutionRegistry, ResolutionResult
from netsynth.engine.generator import GeneratedNetwork, SystemNetworkGenerator
from netsynth.engine.hookspecs import NetworkContext, PostprocessingManager, hookimpl
from netsynth.engine.merge_solver import MergeGroup, MergeSolver, merge_identical_tasks
from netsynth.engine.reconciler import DeploymentReconciler, ReconciliationResult
from netsynth.engine.specialization import SpecializationResolver

__all__ = [
    "DataflowPolicyPropagator",
    "Deployer",
    "DeploymentGroup",
    "DeploymentReconciler",
    "Engine",
    "GeneratedNetwork",
    "MergeGroup",
    "MergeSolver",
    "NetworkContext",
    "PostprocessingManager",
    "ReconciliationResult",
    "ResolutionRegistry",
    "ResolutionResult",
    "SpecializationResolver",
    "SystemNetworkGenerator",
    "hookimpl",
    "merge_identical_tasks",
]
