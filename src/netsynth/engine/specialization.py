# src/netsynth/engine/specialization.py
"""Composition specialization.

A specialization narrows the allowed models of one child role of a
composition. Applying a set of compatible specializations yields a variant
descriptor: a CompositionModel whose `root` is the specialized composition
and whose `applied` lists the specializations used.

Variants are organized as a tree. Each tree node is keyed by
(parent variant, role, refining models) and points to its parent; walking
down from the root applies one specialization per step. Two paths that end
with the same effective role constraints share the same variant object, so
that nodes created from equivalent selections have identical models and can
be merged.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass

from netsynth.contracts import (
    AmbiguousSpecialization,
    CompositionChild,
    CompositionModel,
    Model,
    ModelComparison,
    Specialization,
    SpecError,
)
from netsynth.core.logging import get_logger
from netsynth.core.registry import ModelRegistry

logger = get_logger(__name__)


def compare_model_sets(base: Iterable[Model], test: Iterable[Model]) -> ModelComparison:
    """Compare two sets of models.

    For each model of base, test must contain either the same model or a
    model that fulfills it.

    Returns:
        EQUAL if every base model is in test, STRICTLY_SPECIALIZES if every
        base model is matched and at least one only through a proper subtype,
        UNRELATED otherwise
    """
    test = list(test)
    strict = False
    for base_model in base:
        if any(t is base_model for t in test):
            continue
        if any(t.fullfills(base_model) for t in test):
            strict = True
            continue
        return ModelComparison.UNRELATED
    return ModelComparison.STRICTLY_SPECIALIZES if strict else ModelComparison.EQUAL


def merge_model_sets(*sets: Iterable[Model]) -> frozenset[Model]:
    """Union of model sets, keeping only the most specific models."""
    union = {m for s in sets for m in s}
    return frozenset(
        m for m in union if not any(o is not m and o.fullfills(m) for o in union)
    )


def _refines(base: Iterable[Model], test: Iterable[Model]) -> bool:
    return compare_model_sets(base, test) != ModelComparison.UNRELATED


def _models_key(models: Iterable[Model]) -> tuple[str, ...]:
    return tuple(sorted(m.name for m in models))


@dataclass(frozen=True)
class _TreeKey:
    parent: str
    role: str
    models: tuple[str, ...]


class SpecializationResolver:
    """Registers specializations and resolves variants for selections.

    The resolver keeps the variant tree for the lifetime of the engine that
    owns it: the same selection always returns the same variant object.
    """

    def __init__(self, registry: ModelRegistry) -> None:
        self._registry = registry
        self._tree: dict[_TreeKey, CompositionModel] = {}
        self._parents: dict[str, CompositionModel] = {}
        self._variants: dict[tuple[str, tuple[tuple[str, tuple[str, ...]], ...]], CompositionModel] = {}

    def specialize(
        self,
        composition: CompositionModel,
        child_role: str,
        models: Iterable[Model],
        exclusions: Iterable[Model] = (),
        default: bool = False,
    ) -> Specialization:
        """Declare a specialization of composition on child_role.

        Raises:
            SpecError: If the role does not exist, or if models do not refine
                the models the role already requires
        """
        root = composition.root_model
        child = root.find_child(child_role)
        if child is None:
            raise SpecError(f"{root.name} has no child named {child_role}")
        models = frozenset(models)
        if not models:
            raise SpecError(f"specialization of {root.name}.{child_role} needs at least one model")
        if not _refines(child.models, models):
            raise SpecError(
                f"cannot specialize {root.name}.{child_role} on "
                f"{', '.join(_models_key(models))}: it must fullfill "
                f"{', '.join(child.model_names())}"
            )
        spec = Specialization(
            composition=root,
            role=child_role,
            models=models,
            exclusions=frozenset(exclusions),
            default=default,
        )
        self._registry.add_specialization(spec)
        logger.debug("specialization declared", specialization=spec.name)
        return spec

    def matching_specializations(
        self, composition: CompositionModel, selections: Mapping[str, Model]
    ) -> list[Specialization]:
        """Specializations that apply to the selection and refine composition."""
        result = []
        for spec in self._registry.specializations_of(composition):
            selected = selections.get(spec.role)
            if selected is None:
                continue
            if not _refines(spec.models, [selected]):
                continue
            if any(selected.fullfills(excluded) for excluded in spec.exclusions):
                continue
            current = composition.find_child(spec.role)
            if current is None or not _refines(current.models, spec.models):
                continue
            if spec in composition.applied:
                continue
            result.append(spec)
        return result

    def find_specializations(
        self,
        composition: CompositionModel,
        selections: Mapping[str, Model],
        hints: Mapping[str, Model] | None = None,
    ) -> CompositionModel:
        """Return the most specific variant of composition for selections.

        Args:
            composition: Composition (or variant) being instantiated
            selections: Child role -> selected model
            hints: Child role -> model, used to break ties

        Raises:
            AmbiguousSpecialization: If more than one variant remains after
                tie-breaking
        """
        hints = hints or {}
        matching = self.matching_specializations(composition, selections)
        if not matching:
            return composition

        per_role: dict[str, list[Specialization]] = {}
        for spec in matching:
            per_role.setdefault(spec.role, []).append(spec)
        per_role = {role: _maximal(specs) for role, specs in sorted(per_role.items())}

        candidates = [frozenset(combo) for combo in itertools.product(*per_role.values())]
        if len(candidates) > 1:
            candidates = self._filter_by_role(
                candidates,
                per_role,
                lambda spec: spec.role in hints and _refines(spec.models, [hints[spec.role]]),
                composition,
                selections,
            )
        if len(candidates) > 1:
            candidates = self._filter_by_role(
                candidates, per_role, lambda spec: spec.default, composition, selections
            )
        if len(candidates) > 1:
            variants = [self.specialized_model(composition, c) for c in candidates]
            raise AmbiguousSpecialization(
                composition.name, {k: v.name for k, v in selections.items()}, variants
            )

        variant = self.specialized_model(composition, candidates[0])
        logger.debug(
            "specialization selected",
            composition=composition.name,
            variant=variant.name,
        )
        return variant

    @staticmethod
    def _filter_by_role(
        candidates: list[frozenset[Specialization]],
        per_role: Mapping[str, list[Specialization]],
        accept: Callable[[Specialization], bool],
        composition: CompositionModel,
        selections: Mapping[str, Model],
    ) -> list[frozenset[Specialization]]:
        """One tie-breaking pass.

        Each role whose candidates are tied is filtered on its own; a role
        where the filter accepts nothing keeps all of its candidates. The
        surviving combinations are the intersection of the per-role results.
        """
        result = set(candidates)
        for specs in per_role.values():
            if len(specs) < 2:
                continue
            accepted = {s for s in specs if accept(s)}
            if not accepted:
                continue
            result &= {c for c in candidates if c & accepted}
        if not result:
            raise AmbiguousSpecialization(
                composition.name,
                {k: v.name for k, v in selections.items()},
                [s for specs in per_role.values() for s in specs],
            )
        return [c for c in candidates if c in result]

    def specialized_model(
        self, composition: CompositionModel, specializations: Iterable[Specialization]
    ) -> CompositionModel:
        """Variant of composition with the given specializations applied.

        Walks the variant tree one specialization at a time, sorted by role
        then by model names, creating missing tree nodes on the way.
        """
        variant = composition
        ordered = sorted(specializations, key=lambda s: (s.role, _models_key(s.models)))
        for spec in ordered:
            if spec in variant.applied:
                continue
            key = _TreeKey(variant.name, spec.role, _models_key(spec.models))
            child = self._tree.get(key)
            if child is None:
                child = self._derive(variant, spec)
                self._tree[key] = child
                self._parents.setdefault(child.name, variant)
            variant = child
        return variant

    def parent_of(self, variant: CompositionModel) -> CompositionModel | None:
        """Variant this one was first derived from in the tree."""
        return self._parents.get(variant.name)

    def _derive(self, parent: CompositionModel, spec: Specialization) -> CompositionModel:
        root = parent.root_model
        current = parent.children[spec.role]
        children = dict(parent.children)
        children[spec.role] = CompositionChild(
            role=current.role,
            models=merge_model_sets(current.models, spec.models),
            optional=current.optional,
            arguments=current.arguments,
        )
        constraints = tuple(
            (role, _models_key(children[role].models))
            for role in sorted(children)
            if children[role].models != root.children[role].models
        )
        if not constraints:
            return parent
        signature = (root.name, constraints)
        existing = self._variants.get(signature)
        if existing is not None:
            return existing

        name = root.name + "/" + ",".join(
            f"{role}.is_a?({','.join(models)})" for role, models in constraints
        )
        variant = CompositionModel(
            name=name,
            children=children,
            connections=root.connections,
            exports=root.exports,
            services=root.services,
            autoconnect=root.autoconnect,
            supermodel=root.supermodel,
            root=root,
            applied=tuple(sorted((*parent.applied, spec), key=lambda s: s.name)),
        )
        self._variants[signature] = variant
        logger.debug("specialized model created", variant=name)
        return variant


def _maximal(specs: list[Specialization]) -> list[Specialization]:
    """Drop the specializations that another one on the same role refines."""
    result = []
    for spec in specs:
        dominated = any(
            other is not spec
            and compare_model_sets(spec.models, other.models)
            == ModelComparison.STRICTLY_SPECIALIZES
            for other in specs
        )
        if not dominated:
            result.append(spec)
    return result
