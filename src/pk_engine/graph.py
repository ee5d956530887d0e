# src/pk_engine/graph.py
"""Demand-driven evaluation graph over the VariableStore.

The graph maps (field key, time tag) to the Evaluator that produces it and is
the single point of truth for staleness:

- ensure_compatibility(key) resolves the evaluator chain for key, propagates
  shape requirements to dependencies and detects cycles. It runs during Setup
  and is idempotent.
- has_field_changed(key, requester) brings key up to date (recomputing stale
  dependencies depth-first, post-order) and reports whether key's version
  advanced since requester last asked.
- get_derivative(key, wrt) assembles d(key)/d(wrt) by chain rule over the
  dependency graph, caching each derivative against the versions of key and
  wrt.

Within one top-level request (an "evaluation pass") each evaluator is updated
at most once, so diamond-shaped graphs are walked once per request.
"""

from __future__ import annotations

import logging
import warnings
from contextlib import contextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .errors import (
    ConfigurationError,
    raise_cyclic_dependency,
    raise_missing_evaluator,
)
from .variable_store import TimeTag
from .vectors import CompositeVector

if TYPE_CHECKING:
    from collections.abc import Iterator

    from .evaluators import Evaluator
    from .variable_store import VariableStore

logger = logging.getLogger(__name__)

_DUPLICATE_EVALUATOR_ERROR = (
    "An evaluator for field '{key}' at tag '{tag}' is already registered"
)
_DUPLICATE_EVALUATOR_WARNING = (
    "Replacing the evaluator for field '{key}' at tag '{tag}'"
)
_NOT_COMPATIBLE_ERROR = (
    "Field '{key}' at tag '{tag}' was evaluated before ensure_compatibility"
)
_DERIVATIVE_SHAPE_ERROR = (
    "Cannot chain d({key})/d({dep}) with d({dep})/d({wrt}): component "
    "'{component}' is missing"
)

_GRAPH_REQUESTER = "__graph__"


@dataclass(slots=True)
class _DerivativeEntry:
    value: CompositeVector
    key_version: int
    wrt_version: int
    stamp: int


class EvaluationGraph:
    """Registry of evaluators plus staleness and derivative bookkeeping."""

    def __init__(self, store: VariableStore, *, strict: bool = True) -> None:
        """Initialize an empty graph.

        Args:
            store: Shared variable store.
            strict: If True, registering a second evaluator for the same
                (key, tag) is an error; otherwise it replaces the first with a
                RuntimeWarning.
        """
        self.store = store
        self.strict = strict
        self._evaluators: dict[tuple[str, TimeTag], Evaluator] = {}
        self._compatible: set[tuple[str, TimeTag]] = set()
        self._fresh: set[tuple[str, TimeTag]] = set()
        self._pass_depth = 0
        self._derivatives: dict[tuple[str, str, TimeTag], _DerivativeEntry] = {}
        self._derivative_seen: dict[tuple[str, str, str, TimeTag], int] = {}
        self._derivative_stamp = 0

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, evaluator: Evaluator) -> Evaluator:
        """Register an evaluator under (evaluator.key, evaluator.tag).

        Args:
            evaluator: Evaluator to register.

        Raises:
            ConfigurationError: If strict and the slot is already taken.

        Returns:
            The registered evaluator.
        """
        slot = (evaluator.key, evaluator.tag)
        if slot in self._evaluators:
            fmt = {"key": evaluator.key, "tag": evaluator.tag.value}
            if self.strict:
                raise ConfigurationError(_DUPLICATE_EVALUATOR_ERROR.format(**fmt))
            warnings.warn(
                _DUPLICATE_EVALUATOR_WARNING.format(**fmt),
                RuntimeWarning,
                stacklevel=2,
            )
            self._compatible.discard(slot)
        self._evaluators[slot] = evaluator
        return evaluator

    def has_evaluator(self, key: str, tag: TimeTag = TimeTag.NEW) -> bool:
        """Whether an evaluator is registered for (key, tag)."""
        return (key, TimeTag(tag)) in self._evaluators

    def evaluator(
        self,
        key: str,
        tag: TimeTag = TimeTag.NEW,
        *,
        requester: str | None = None,
    ) -> Evaluator:
        """Return the evaluator for (key, tag).

        An evaluator registered only at NEW is cloned on first request at OLD.

        Raises:
            MissingEvaluatorError: If no evaluator produces key.
        """
        tag = TimeTag(tag)
        ev = self._evaluators.get((key, tag))
        if ev is None and tag is not TimeTag.NEW:
            template = self._evaluators.get((key, TimeTag.NEW))
            if template is not None:
                ev = self.register(template.clone(tag))
        if ev is None:
            raise_missing_evaluator(key=key, requester=requester)
        return ev

    def keys(self) -> list[tuple[str, TimeTag]]:
        """Registered (key, tag) slots in registration order."""
        return list(self._evaluators)

    # ------------------------------------------------------------------
    # Compatibility (Setup)
    # ------------------------------------------------------------------

    def ensure_compatibility(
        self,
        key: str,
        tag: TimeTag = TimeTag.NEW,
        *,
        kernel: str | None = None,
    ) -> None:
        """Resolve the evaluator chain for key, propagating shapes.

        Args:
            key: Field key.
            tag: Time tag.
            kernel: Name of the kernel that needs key, reported by errors.

        Raises:
            MissingEvaluatorError: If key or any dependency has no evaluator.
            CyclicDependencyError: If the chain contains a cycle.
            ConfigurationError: If a propagated shape conflicts.
        """
        self._ensure(key, TimeTag(tag), [], kernel, kernel)

    def _ensure(
        self,
        key: str,
        tag: TimeTag,
        stack: list[tuple[str, TimeTag]],
        requester: str | None,
        kernel: str | None,
    ) -> None:
        slot = (key, tag)
        if slot in stack:
            start = stack.index(slot)
            raise_cyclic_dependency(
                [k for k, _ in stack[start:]] + [key], kernel=kernel
            )
        if slot in self._compatible:
            return
        ev = self.evaluator(key, tag, requester=requester)
        ev.ensure_compatibility(self.store)
        stack.append(slot)
        try:
            for dep in sorted(ev.dependencies):
                self._ensure(dep, ev.dependency_tag(dep), stack, key, kernel)
        finally:
            stack.pop()
        self._compatible.add(slot)
        logger.debug("Resolved evaluator for '%s' at %s", key, tag.value)

    def ensure_all_compatibility(self) -> None:
        """Resolve every field some kernel or evaluator asked an evaluator for."""
        for (key, tag), requester in self.store.evaluator_requests.items():
            self._ensure(key, tag, [], requester, requester)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @contextmanager
    def _evaluation_pass(self) -> Iterator[None]:
        if self._pass_depth == 0:
            self._fresh.clear()
        self._pass_depth += 1
        try:
            yield
        finally:
            self._pass_depth -= 1

    def _refresh(self, key: str, tag: TimeTag) -> Evaluator:
        slot = (key, tag)
        ev = self.evaluator(key, tag)
        if slot not in self._compatible:
            raise ConfigurationError(
                _NOT_COMPATIBLE_ERROR.format(key=key, tag=tag.value)
            )
        if slot not in self._fresh:
            if ev.update(self):
                logger.debug("Recomputed '%s' at %s", key, tag.value)
            self._fresh.add(slot)
        return ev

    def has_field_changed(
        self,
        key: str,
        requester: str,
        tag: TimeTag = TimeTag.NEW,
    ) -> bool:
        """Update key if stale and report whether it changed for requester.

        Args:
            key: Field key.
            requester: Name of the caller; each requester sees every change
                exactly once.
            tag: Time tag.

        Returns:
            True if key's version advanced since requester last asked.
        """
        tag = TimeTag(tag)
        with self._evaluation_pass():
            ev = self._refresh(key, tag)
            return ev.report_changed(self.store, requester)

    def update(self, key: str, tag: TimeTag = TimeTag.NEW) -> None:
        """Bring key up to date without consuming any requester's change."""
        tag = TimeTag(tag)
        with self._evaluation_pass():
            self._refresh(key, tag)

    def get_field(self, key: str, tag: TimeTag = TimeTag.NEW) -> CompositeVector:
        """Up-to-date read-only value of key."""
        self.update(key, tag)
        return self.store.get_field_data(key, tag)

    # ------------------------------------------------------------------
    # Structure queries
    # ------------------------------------------------------------------

    def is_dependency(self, key: str, wrt: str, tag: TimeTag = TimeTag.NEW) -> bool:
        """Whether wrt is in the transitive dependency closure of key."""
        tag = TimeTag(tag)
        seen: set[str] = set()
        pending = [key]
        while pending:
            current = pending.pop()
            ev = self._evaluators.get((current, tag))
            if ev is None:
                continue
            for dep in ev.dependencies:
                if ev.dependency_tag(dep) is not tag or dep in seen:
                    continue
                if dep == wrt:
                    return True
                seen.add(dep)
                pending.append(dep)
        return False

    def evaluation_order(self, key: str, tag: TimeTag = TimeTag.NEW) -> list[str]:
        """Keys in the order they are refreshed for key (post-order DFS)."""
        tag = TimeTag(tag)
        order: list[str] = []
        visited: set[str] = set()

        def _visit(current: str) -> None:
            if current in visited:
                return
            visited.add(current)
            ev = self._evaluators.get((current, tag))
            if ev is not None:
                for dep in sorted(ev.dependencies):
                    if ev.dependency_tag(dep) is tag:
                        _visit(dep)
            order.append(current)

        _visit(key)
        return order

    # ------------------------------------------------------------------
    # Derivatives
    # ------------------------------------------------------------------

    def _ones_like(self, key: str, tag: TimeTag) -> CompositeVector:
        out = CompositeVector.zeros_like(self.store.get_field_data(key, tag))
        out.put_scalar(1.0)
        return out

    def _derivative(self, key: str, wrt: str, tag: TimeTag) -> _DerivativeEntry:
        ev = self._refresh(key, tag)
        store = self.store
        key_version = store.field_version(key, tag)
        wrt_version = store.field_version(wrt, tag) if store.has_field(wrt) else 0
        slot = (key, wrt, tag)
        entry = self._derivatives.get(slot)
        if (
            entry is not None
            and entry.key_version == key_version
            and entry.wrt_version == wrt_version
        ):
            return entry

        if key == wrt:
            value = self._ones_like(key, tag)
        else:
            value = CompositeVector.zeros_like(store.get_field_data(key, tag))
            for dep in sorted(ev.dependencies):
                if ev.dependency_tag(dep) is not tag:
                    continue
                if dep != wrt and not self.is_dependency(dep, wrt, tag):
                    continue
                partial = ev.partial_derivative(dep, store)
                if partial is None:
                    continue
                inner = (
                    None if dep == wrt else self._derivative(dep, wrt, tag).value
                )
                for name, out in value.items():
                    if inner is None:
                        out += partial[name]
                        continue
                    if name not in inner:
                        raise ConfigurationError(
                            _DERIVATIVE_SHAPE_ERROR.format(
                                key=key, dep=dep, wrt=wrt, component=name
                            )
                        )
                    out += partial[name] * inner[name]

        self._derivative_stamp += 1
        entry = _DerivativeEntry(value, key_version, wrt_version, self._derivative_stamp)
        self._derivatives[slot] = entry
        return entry

    def get_derivative(
        self,
        key: str,
        wrt: str,
        tag: TimeTag = TimeTag.NEW,
    ) -> CompositeVector:
        """Total derivative d(key)/d(wrt), elementwise per entity.

        Outside the dependency closure the derivative is exactly zero.

        Args:
            key: Field key.
            wrt: Field the derivative is taken with respect to.
            tag: Time tag.

        Returns:
            A read-only CompositeVector shaped like key.
        """
        tag = TimeTag(tag)
        with self._evaluation_pass():
            return self._derivative(key, wrt, tag).value.readonly()

    def has_field_derivative_changed(
        self,
        key: str,
        wrt: str,
        requester: str,
        tag: TimeTag = TimeTag.NEW,
    ) -> bool:
        """Update d(key)/d(wrt) if stale; report whether it changed for requester."""
        tag = TimeTag(tag)
        with self._evaluation_pass():
            entry = self._derivative(key, wrt, tag)
        seen_slot = (key, wrt, requester, tag)
        if entry.stamp > self._derivative_seen.get(seen_slot, 0):
            self._derivative_seen[seen_slot] = entry.stamp
            return True
        return False

    def derivative_is_zero(self, key: str, wrt: str, tag: TimeTag = TimeTag.NEW) -> bool:
        """Whether d(key)/d(wrt) is structurally zero (wrt outside the closure)."""
        return key != wrt and not self.is_dependency(key, wrt, TimeTag(tag))

    def reset_caches(self) -> None:
        """Drop all derivative caches (values stay versioned in the store)."""
        self._derivatives.clear()
        self._derivative_seen.clear()
        self._fresh.clear()


def finite_difference_derivative(
    graph: EvaluationGraph,
    key: str,
    wrt: str,
    *,
    writer: str | None = None,
    eps: float = 1e-6,
    tag: TimeTag = TimeTag.NEW,
) -> CompositeVector:
    """Central finite-difference estimate of d(key)/d(wrt), entity by entity.

    Perturbs every entry of wrt at once, which is exact for pointwise
    evaluators. wrt is restored before returning.

    Args:
        graph: Evaluation graph.
        key: Field key.
        wrt: Field to perturb (must be writable by writer).
        writer: Owner name used to write wrt.
        eps: Relative perturbation size.
        tag: Time tag.

    Returns:
        CompositeVector shaped like key.
    """
    store = graph.store
    base = store.get_field_data(wrt, tag).copy()
    step = CompositeVector({n: eps * np.maximum(1.0, np.abs(a)) for n, a in base.items()})

    def _value_at(sign: float) -> CompositeVector:
        shifted = base.copy()
        shifted.update(sign, step, 1.0)
        store.set_field_data(wrt, shifted, tag, writer=writer)
        return graph.get_field(key, tag).copy()

    plus = _value_at(1.0)
    minus = _value_at(-1.0)
    store.set_field_data(wrt, base, tag, writer=writer)

    out = CompositeVector.zeros_like(plus)
    for name, arr in out.items():
        arr[...] = (plus[name] - minus[name]) / (2.0 * step[name])
    return out
