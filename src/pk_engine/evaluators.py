# src/pk_engine/evaluators.py
"""Evaluators: named computations that each produce one field.

Two families:

- Independent evaluators have no dependencies. Their value is supplied from
  outside the graph: written by the owning process kernel (primary
  variables), computed once (constants such as cell volume), or computed from
  a function of time on a fixed update interval (forcing data).
- Secondary evaluators compute their field from a declared dependency set
  through a pure function, and provide partial derivatives with respect to
  each dependency through the same pure-function contract.

Evaluators never decide *when* to run; the EvaluationGraph calls update() at
most once per evaluation pass and the evaluator compares version vectors to
decide whether a recompute is needed. Every evaluator remembers, per
requester, the field version it last reported, so has_field_changed is
idempotent for a given requester.
"""

from __future__ import annotations

import copy
import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any, ClassVar, TypeAlias

import numpy as np
import numpy.typing as npt

from .errors import ConfigurationError
from .mesh import EntityKind
from .variable_store import TimeTag
from .vectors import CompositeVector

if TYPE_CHECKING:
    from collections.abc import Iterable

    from .graph import EvaluationGraph
    from .mesh import MeshService
    from .variable_store import FieldSpec, VariableStore

FloatArray = npt.NDArray[np.floating[Any]]

# value(values) -> array, where values maps dependency key -> component array
ComponentFunction: TypeAlias = Callable[[Mapping[str, FloatArray]], npt.ArrayLike]
# function(t, mesh) -> array or {component: array}
TimeFunction: TypeAlias = Callable[
    [float, "MeshService"], "npt.ArrayLike | Mapping[str, npt.ArrayLike]"
]

_SELF_DEPENDENCY_ERROR = "Evaluator '{key}' lists itself as a dependency"
_UNKNOWN_PARTIAL_ERROR = "Evaluator '{key}' has no dependency '{wrt}'"
_UNKNOWN_TYPE_ERROR = "Unknown evaluator type '{name}'; registered: {known}"
_DUPLICATE_TYPE_ERROR = "Evaluator type '{name}' is already registered"
_INTERVAL_ERROR = "update_interval must be positive; got {interval}"


# =============================================================================
# Factory registry
# =============================================================================

_EVALUATOR_TYPES: dict[str, type[Evaluator]] = {}


def register_evaluator_type(name: str) -> Callable[[type[Evaluator]], type[Evaluator]]:
    """Class decorator registering an evaluator type under a config name.

    Args:
        name: Name used by create_evaluator (e.g. "algebraic").

    Returns:
        Decorator that registers and returns the class unchanged.
    """

    def _register(cls: type[Evaluator]) -> type[Evaluator]:
        if name in _EVALUATOR_TYPES and _EVALUATOR_TYPES[name] is not cls:
            raise ConfigurationError(_DUPLICATE_TYPE_ERROR.format(name=name))
        _EVALUATOR_TYPES[name] = cls
        cls.type_name = name
        return cls

    return _register


def create_evaluator(type_name: str, key: str, **params: Any) -> Evaluator:
    """Build a registered evaluator type from resolved configuration values.

    Args:
        type_name: Registered evaluator type name.
        key: Field key the evaluator produces.
        **params: Constructor keyword arguments.

    Raises:
        ConfigurationError: If type_name is not registered.

    Returns:
        The new evaluator.
    """
    cls = _EVALUATOR_TYPES.get(type_name)
    if cls is None:
        raise ConfigurationError(
            _UNKNOWN_TYPE_ERROR.format(name=type_name, known=sorted(_EVALUATOR_TYPES))
        )
    return cls(key, **params)


def registered_evaluator_types() -> list[str]:
    """Names accepted by create_evaluator."""
    return sorted(_EVALUATOR_TYPES)


# =============================================================================
# Base class
# =============================================================================


class Evaluator(ABC):
    """A named computation producing one field at one time tag."""

    type_name: ClassVar[str] = ""

    def __init__(
        self,
        key: str,
        *,
        tag: TimeTag = TimeTag.NEW,
        mesh: str | None = None,
        components: Mapping[str, EntityKind | str] | None = None,
        io_vis: bool | None = None,
        io_checkpoint: bool | None = None,
    ) -> None:
        """Initialize common evaluator state.

        Args:
            key: Field key produced.
            tag: Time tag the evaluator computes at.
            mesh: Optional mesh the field lives on.
            components: Optional components (name -> entity kind) the evaluator
                itself requires on its field.
            io_vis: Optional visualization flag for the field.
            io_checkpoint: Optional checkpoint flag for the field.
        """
        self.key = key
        self.tag = TimeTag(tag)
        self.mesh = mesh
        self.components = dict(components or {})
        self.io_vis = io_vis
        self.io_checkpoint = io_checkpoint
        self._seen: dict[str, int] = {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(key={self.key!r}, tag={self.tag.value!r})"

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def dependencies(self) -> frozenset[str]:
        """Field keys this evaluator reads (empty for independent data)."""
        return frozenset()

    def dependency_tag(self, dep: str) -> TimeTag:  # noqa: ARG002
        """Time tag at which a dependency is read."""
        return self.tag

    @property
    def owns_field(self) -> bool:
        """Whether the evaluator writes (and therefore owns) its field."""
        return True

    def clone(self, tag: TimeTag | None = None) -> Evaluator:
        """Independent copy with empty caches, optionally for another tag."""
        other = copy.deepcopy(self)
        other.reset()
        if tag is not None:
            other.tag = TimeTag(tag)
        return other

    def reset(self) -> None:
        """Forget every cached version and requester."""
        self._seen.clear()

    # ------------------------------------------------------------------
    # Compatibility
    # ------------------------------------------------------------------

    def require_own_field(self, store: VariableStore) -> FieldSpec:
        """Require this evaluator's field with its own shape detail."""
        spec = store.require_field(
            self.key,
            owner=self.key if self.owns_field else None,
            requester=self.key,
            io_vis=self.io_vis,
            io_checkpoint=self.io_checkpoint,
        )
        if self.mesh is not None:
            spec.set_mesh(self.mesh)
        for name, kind in self.components.items():
            spec.add_component(name, kind)
        return spec

    def ensure_compatibility(self, store: VariableStore) -> None:
        """Declare the field (and, for secondaries, dependency shapes)."""
        self.require_own_field(store)

    # ------------------------------------------------------------------
    # Evaluation
    # ------------------------------------------------------------------

    @abstractmethod
    def update(self, graph: EvaluationGraph) -> bool:
        """Make the field current; return True if it was rewritten."""

    def report_changed(self, store: VariableStore, requester: str) -> bool:
        """True if the field version advanced since requester last asked."""
        version = store.field_version(self.key, self.tag)
        if version > self._seen.get(requester, -1):
            self._seen[requester] = version
            return True
        return False

    def partial_derivative(
        self,
        wrt: str,  # noqa: ARG002
        store: VariableStore,
    ) -> CompositeVector | None:
        """Partial derivative w.r.t. a direct dependency (None means zero)."""
        del store
        return None


def _write_values(
    store: VariableStore,
    key: str,
    tag: TimeTag,
    writer: str | None,
    values: npt.ArrayLike | Mapping[str, npt.ArrayLike] | CompositeVector,
) -> None:
    """Write a mapping, CompositeVector, or broadcast array into every component."""
    if isinstance(values, (Mapping, CompositeVector)):
        store.set_field_data(key, values, tag, writer=writer)
        return
    arr = np.asarray(values, dtype=np.float64)
    names = store.field_spec(key).components
    store.set_field_data(key, {name: arr for name in names}, tag, writer=writer)


# =============================================================================
# Independent evaluators
# =============================================================================


class IndependentEvaluator(Evaluator):
    """Leaf evaluator whose value comes from outside the graph."""

    def update(self, graph: EvaluationGraph) -> bool:
        """Refresh from the external source if it advanced."""
        return self.update_independent(graph.store)

    @abstractmethod
    def update_independent(self, store: VariableStore) -> bool:
        """Write a new value if the external source advanced."""


@register_evaluator_type("primary variable")
class PrimaryVariableEvaluator(IndependentEvaluator):
    """Leaf for a kernel-owned solution field.

    The owning kernel writes the field through the store; the evaluator only
    reports version changes to requesters.
    """

    @property
    def owns_field(self) -> bool:
        """The process kernel, not the evaluator, owns the field."""
        return False

    def update_independent(self, store: VariableStore) -> bool:  # noqa: ARG002
        """Nothing to compute; writes happen in the owning kernel."""
        return False


@register_evaluator_type("constant")
class ConstantEvaluator(IndependentEvaluator):
    """Leaf evaluated once, e.g. cell volume or base porosity."""

    def __init__(
        self,
        key: str,
        *,
        value: float | npt.ArrayLike | Mapping[str, npt.ArrayLike]
        | Callable[[MeshService], Any],
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            key: Field key produced.
            value: Constant value, per-component mapping, or a callable of the
                mesh returning either.
            **kwargs: Passed to Evaluator.
        """
        super().__init__(key, **kwargs)
        self.value = value
        self._written = False

    def reset(self) -> None:
        """Forget caches so the value is written again."""
        super().reset()
        self._written = False

    def update_independent(self, store: VariableStore) -> bool:
        """Write the value the first time only."""
        if self._written and store.is_initialized(self.key, self.tag):
            return False
        value = self.value
        if callable(value):
            value = value(store.mesh(store.field_spec(self.key).mesh))
        _write_values(store, self.key, self.tag, self.key, value)
        self._written = True
        return True


@register_evaluator_type("independent function")
class FunctionEvaluator(IndependentEvaluator):
    """Leaf computed from a function of time, e.g. meteorological forcing.

    With update_interval=None the function is re-evaluated whenever the tag's
    time changes. Otherwise it is re-evaluated only when the time enters a new
    interval [k * update_interval, (k + 1) * update_interval), and the function
    is evaluated at the interval start.
    """

    def __init__(
        self,
        key: str,
        *,
        function: TimeFunction,
        update_interval: float | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            key: Field key produced.
            function: f(t, mesh) -> array or {component: array}.
            update_interval: Optional fixed update interval in seconds.
            **kwargs: Passed to Evaluator.
        """
        super().__init__(key, **kwargs)
        if update_interval is not None and update_interval <= 0.0:
            raise ConfigurationError(_INTERVAL_ERROR.format(interval=update_interval))
        self.function = function
        self.update_interval = update_interval
        self._last_stamp: float | None = None

    def reset(self) -> None:
        """Forget caches so the function runs again."""
        super().reset()
        self._last_stamp = None

    def _stamp(self, t: float) -> float:
        if self.update_interval is None:
            return t
        return math.floor(t / self.update_interval) * self.update_interval

    def update_independent(self, store: VariableStore) -> bool:
        """Re-evaluate when the clock crosses into a new update interval."""
        stamp = self._stamp(store.time(self.tag))
        if stamp == self._last_stamp and store.is_initialized(self.key, self.tag):
            return False
        mesh = store.mesh(store.field_spec(self.key).mesh)
        _write_values(store, self.key, self.tag, self.key, self.function(stamp, mesh))
        self._last_stamp = stamp
        return True


# =============================================================================
# Secondary evaluators
# =============================================================================


class SecondaryEvaluator(Evaluator):
    """Evaluator computing its field from other fields.

    Subclasses implement evaluate_field (and evaluate_partial_derivative for
    each dependency they are not constant in). Both receive read-only
    dependency values and write into a result vector that already has the
    field's shape.
    """

    def __init__(
        self,
        key: str,
        *,
        dependencies: Iterable[str],
        dependency_tags: Mapping[str, TimeTag] | None = None,
        propagate_shape: bool = True,
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            key: Field key produced.
            dependencies: Keys read by the evaluator.
            dependency_tags: Optional explicit tag offsets per dependency.
            propagate_shape: Whether this field's shape requirement is imposed
                on its dependencies.
            **kwargs: Passed to Evaluator.

        Raises:
            ConfigurationError: If the evaluator depends on itself.
        """
        super().__init__(key, **kwargs)
        deps = frozenset(dependencies)
        tags = {k: TimeTag(v) for k, v in (dependency_tags or {}).items()}
        if key in deps and tags.get(key, self.tag) == self.tag:
            raise ConfigurationError(_SELF_DEPENDENCY_ERROR.format(key=key))
        self._dependencies = deps
        self._dependency_tags = tags
        self.propagate_shape = propagate_shape
        self._dep_versions: dict[tuple[str, TimeTag], int] | None = None

    @property
    def dependencies(self) -> frozenset[str]:
        """Keys read by this evaluator."""
        return self._dependencies

    def dependency_tag(self, dep: str) -> TimeTag:
        """Tag at which dep is read (same tag unless offset explicitly)."""
        return self._dependency_tags.get(dep, self.tag)

    def reset(self) -> None:
        """Forget cached dependency versions; next update recomputes."""
        super().reset()
        self._dep_versions = None

    def ensure_compatibility(self, store: VariableStore) -> None:
        """Require own field and propagate its shape to dependencies."""
        spec = self.require_own_field(store)
        for dep in sorted(self._dependencies):
            dep_spec = store.require_field_evaluator(
                dep, requester=self.key, tag=self.dependency_tag(dep)
            )
            if self.propagate_shape:
                dep_spec.update(spec)

    def dependency_values(self, store: VariableStore) -> dict[str, CompositeVector]:
        """Read-only values of every dependency."""
        return {
            dep: store.get_field_data(dep, self.dependency_tag(dep))
            for dep in self._dependencies
        }

    def _current_versions(self, store: VariableStore) -> dict[tuple[str, TimeTag], int]:
        return {
            (dep, self.dependency_tag(dep)): store.field_version(
                dep, self.dependency_tag(dep)
            )
            for dep in self._dependencies
        }

    def update(self, graph: EvaluationGraph) -> bool:
        """Refresh dependencies depth-first, then recompute if any moved."""
        store = graph.store
        for dep in sorted(self._dependencies):
            graph.has_field_changed(dep, self.key, tag=self.dependency_tag(dep))
        versions = self._current_versions(store)
        if (
            self._dep_versions is not None
            and versions == self._dep_versions
            and store.is_initialized(self.key, self.tag)
        ):
            return False
        values = self.dependency_values(store)
        result = store.get_field_data_mutable(self.key, self.tag, writer=self.key)
        self.evaluate_field(values, result)
        store.mark_initialized(self.key, self.tag)
        self._dep_versions = versions
        return True

    def partial_derivative(
        self,
        wrt: str,
        store: VariableStore,
    ) -> CompositeVector | None:
        """Partial derivative of this field w.r.t. a direct dependency."""
        if wrt not in self._dependencies:
            raise ConfigurationError(_UNKNOWN_PARTIAL_ERROR.format(key=self.key, wrt=wrt))
        result = CompositeVector.zeros_like(store.get_field_data(self.key, self.tag))
        if not self.evaluate_partial_derivative(wrt, self.dependency_values(store), result):
            return None
        return result

    @abstractmethod
    def evaluate_field(
        self,
        values: Mapping[str, CompositeVector],
        result: CompositeVector,
    ) -> None:
        """Compute the field from dependency values into result."""

    def evaluate_partial_derivative(
        self,
        wrt: str,  # noqa: ARG002
        values: Mapping[str, CompositeVector],  # noqa: ARG002
        result: CompositeVector,  # noqa: ARG002
    ) -> bool:
        """Write d(field)/d(wrt) into result; return False if identically zero."""
        return False


@register_evaluator_type("algebraic")
class AlgebraicEvaluator(SecondaryEvaluator):
    """Pointwise secondary evaluator built from vectorized functions.

    Example:
        AlgebraicEvaluator(
            "density",
            dependencies=["water_content", "cell_volume"],
            function=lambda v: v["water_content"] / v["cell_volume"],
            derivatives={
                "water_content": lambda v: 1.0 / v["cell_volume"],
                "cell_volume": lambda v: -v["water_content"] / v["cell_volume"] ** 2,
            },
        )

    Functions are applied component by component; each receives a mapping of
    dependency key to that component's array.
    """

    def __init__(
        self,
        key: str,
        *,
        function: ComponentFunction,
        derivatives: Mapping[str, ComponentFunction] | None = None,
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            key: Field key produced.
            function: Value function.
            derivatives: Partial-derivative functions keyed by dependency;
                dependencies without one are treated as non-influential.
            **kwargs: Passed to SecondaryEvaluator.
        """
        super().__init__(key, **kwargs)
        self.function = function
        self.derivatives = dict(derivatives or {})
        unknown = set(self.derivatives) - set(self.dependencies)
        if unknown:
            raise ConfigurationError(
                _UNKNOWN_PARTIAL_ERROR.format(key=key, wrt=sorted(unknown)[0])
            )

    @staticmethod
    def _component_values(
        values: Mapping[str, CompositeVector],
        component: str,
    ) -> dict[str, FloatArray]:
        return {dep: vec[component] for dep, vec in values.items() if component in vec}

    def evaluate_field(
        self,
        values: Mapping[str, CompositeVector],
        result: CompositeVector,
    ) -> None:
        """Apply the value function to each component."""
        for name, out in result.items():
            out[...] = self.function(self._component_values(values, name))

    def evaluate_partial_derivative(
        self,
        wrt: str,
        values: Mapping[str, CompositeVector],
        result: CompositeVector,
    ) -> bool:
        """Apply the partial-derivative function for wrt, if any."""
        func = self.derivatives.get(wrt)
        if func is None:
            return False
        for name, out in result.items():
            out[...] = func(self._component_values(values, name))
        return True
