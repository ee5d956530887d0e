# tests/test_graph.py
"""Unit tests for pk_engine.graph.

This module verifies:
- Demand-driven recomputation and strictly increasing versions.
- Idempotent has_field_changed per requester.
- Chain-rule derivatives against finite differences.
- Structurally zero derivatives outside the dependency closure.
- Cycle and missing-evaluator detection at compatibility time, naming the
  kernel whose request reached the cycle.
- Each evaluator runs at most once per evaluation pass (diamond graphs).
- OLD-tag evaluators cloned from NEW registrations.
"""

from __future__ import annotations

import numpy as np
import pytest

from pk_engine.errors import (
    ConfigurationError,
    CyclicDependencyError,
    MissingEvaluatorError,
    UninitializedFieldError,
)
from pk_engine.evaluators import (
    AlgebraicEvaluator,
    ConstantEvaluator,
    PrimaryVariableEvaluator,
)
from pk_engine.graph import EvaluationGraph, finite_difference_derivative
from pk_engine.mesh import ColumnMesh
from pk_engine.variable_store import TimeTag, VariableStore

_CELL = {"cell": "cell"}


def _make_density_graph(
    store: VariableStore,
    graph: EvaluationGraph,
) -> None:
    """density = water_content / volume, also listing energy as a dependency."""
    graph.register(PrimaryVariableEvaluator("water_content"))
    graph.register(PrimaryVariableEvaluator("energy"))
    graph.register(ConstantEvaluator("volume", value=2.0))
    graph.register(
        AlgebraicEvaluator(
            "density",
            dependencies=["water_content", "energy", "volume"],
            function=lambda v: v["water_content"] / v["volume"],
            derivatives={"water_content": lambda v: 1.0 / v["volume"]},
            components=_CELL,
        )
    )
    graph.ensure_compatibility("density")
    store.allocate()
    store.set_field_data("water_content", {"cell": 10.0})
    store.set_field_data("energy", {"cell": 500.0})


def _make_chain_graph(n_cells: int = 3) -> EvaluationGraph:
    """A -> B = A**2 -> C = sin(B) on a small column."""
    store = VariableStore({"domain": ColumnMesh(n_cells)})
    graph = EvaluationGraph(store)
    graph.register(PrimaryVariableEvaluator("A"))
    graph.register(
        AlgebraicEvaluator(
            "B",
            dependencies=["A"],
            function=lambda v: v["A"] ** 2,
            derivatives={"A": lambda v: 2.0 * v["A"]},
            components=_CELL,
        )
    )
    graph.register(
        AlgebraicEvaluator(
            "C",
            dependencies=["B"],
            function=lambda v: np.sin(v["B"]),
            derivatives={"B": lambda v: np.cos(v["B"])},
            components=_CELL,
        )
    )
    graph.ensure_compatibility("C")
    store.allocate()
    store.set_field_data("A", {"cell": [0.3, 0.7, 1.1]})
    return graph


# -------------------------------------------------------------------
# Evaluation and versions
# -------------------------------------------------------------------


def test_secondary_value_follows_primary_writes(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Changing a dependency recomputes the field with a larger version."""
    _make_density_graph(store, graph)

    np.testing.assert_allclose(graph.get_field("density")["cell"], [5.0])
    v_first = store.field_version("density")

    store.set_field_data("water_content", {"cell": 12.0})
    np.testing.assert_allclose(graph.get_field("density")["cell"], [6.0])
    assert store.field_version("density") > v_first


def test_unchanged_dependencies_do_not_recompute(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """A second read without writes leaves the version alone."""
    _make_density_graph(store, graph)
    graph.update("density")
    version = store.field_version("density")

    graph.update("density")
    assert store.field_version("density") == version


def test_has_field_changed_is_idempotent_per_requester(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Each requester sees each change exactly once."""
    _make_density_graph(store, graph)

    assert graph.has_field_changed("density", "flow")
    assert not graph.has_field_changed("density", "flow")
    assert graph.has_field_changed("density", "energy_pk")

    store.set_field_data("energy", {"cell": 501.0})
    assert graph.has_field_changed("density", "flow")
    assert not graph.has_field_changed("density", "flow")


def test_reading_secondary_before_primary_is_written_raises() -> None:
    """Dependencies must be initialized before a secondary can evaluate."""
    store = VariableStore({"domain": ColumnMesh(1)})
    graph = EvaluationGraph(store)
    graph.register(PrimaryVariableEvaluator("p"))
    graph.register(
        AlgebraicEvaluator("q", dependencies=["p"], function=lambda v: v["p"], components=_CELL)
    )
    graph.ensure_compatibility("q")
    store.allocate()

    with pytest.raises(UninitializedFieldError, match="'p'"):
        graph.get_field("q")


def test_diamond_dependencies_run_once_per_pass() -> None:
    """D <- {B, C} <- A: every evaluator runs once per request."""
    store = VariableStore({"domain": ColumnMesh(2)})
    graph = EvaluationGraph(store)
    calls = {"B": 0, "C": 0, "D": 0}

    def _counted(name: str, func):
        def _wrapped(v):
            calls[name] += 1
            return func(v)

        return _wrapped

    graph.register(PrimaryVariableEvaluator("A"))
    graph.register(
        AlgebraicEvaluator(
            "B", dependencies=["A"], function=_counted("B", lambda v: v["A"] + 1.0),
            components=_CELL,
        )
    )
    graph.register(
        AlgebraicEvaluator(
            "C", dependencies=["A"], function=_counted("C", lambda v: 2.0 * v["A"]),
            components=_CELL,
        )
    )
    graph.register(
        AlgebraicEvaluator(
            "D", dependencies=["B", "C"], function=_counted("D", lambda v: v["B"] * v["C"]),
            components=_CELL,
        )
    )
    graph.ensure_compatibility("D")
    store.allocate()
    store.set_field_data("A", {"cell": 1.0})

    np.testing.assert_allclose(graph.get_field("D")["cell"], [4.0, 4.0])
    assert calls == {"B": 1, "C": 1, "D": 1}

    graph.get_field("D")
    assert calls == {"B": 1, "C": 1, "D": 1}

    store.set_field_data("A", {"cell": 2.0})
    np.testing.assert_allclose(graph.get_field("D")["cell"], [12.0, 12.0])
    assert calls == {"B": 2, "C": 2, "D": 2}


def test_evaluation_order_is_post_order() -> None:
    """Dependencies are listed before their dependents."""
    graph = _make_chain_graph()
    assert graph.evaluation_order("C") == ["A", "B", "C"]
    assert graph.is_dependency("C", "A")
    assert not graph.is_dependency("A", "C")


# -------------------------------------------------------------------
# Derivatives
# -------------------------------------------------------------------


def test_partial_derivatives_of_density(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Listed but non-influential dependencies contribute zero."""
    _make_density_graph(store, graph)

    np.testing.assert_allclose(graph.get_derivative("density", "energy")["cell"], [0.0])
    np.testing.assert_allclose(graph.get_derivative("density", "water_content")["cell"], [0.5])
    np.testing.assert_allclose(graph.get_derivative("density", "density")["cell"], [1.0])


def test_chain_rule_matches_finite_differences() -> None:
    """dC/dA = cos(A**2) * 2A through the intermediate B."""
    graph = _make_chain_graph()
    a = np.array([0.3, 0.7, 1.1])

    analytic = graph.get_derivative("C", "A")["cell"]
    numeric = finite_difference_derivative(graph, "C", "A")["cell"]

    np.testing.assert_allclose(analytic, np.cos(a**2) * 2.0 * a, rtol=1e-12)
    np.testing.assert_allclose(analytic, numeric, rtol=1e-6, atol=1e-9)
    np.testing.assert_allclose(graph.get_field("A")["cell"], a)


def test_derivative_outside_closure_is_zero() -> None:
    """A does not depend on C, so dA/dC is structurally zero."""
    graph = _make_chain_graph()

    assert graph.derivative_is_zero("A", "C")
    assert not graph.derivative_is_zero("C", "A")
    np.testing.assert_array_equal(graph.get_derivative("A", "C")["cell"], 0.0)


def test_derivative_cache_reports_changes_once() -> None:
    """has_field_derivative_changed tracks derivative recomputes."""
    graph = _make_chain_graph()

    assert graph.has_field_derivative_changed("C", "A", "energy")
    assert not graph.has_field_derivative_changed("C", "A", "energy")

    graph.store.set_field_data("A", {"cell": [0.1, 0.2, 0.3]})
    assert graph.has_field_derivative_changed("C", "A", "energy")
    np.testing.assert_allclose(
        graph.get_derivative("C", "A")["cell"],
        np.cos(np.array([0.1, 0.2, 0.3]) ** 2) * 2.0 * np.array([0.1, 0.2, 0.3]),
    )


# -------------------------------------------------------------------
# Structural errors
# -------------------------------------------------------------------


def test_cycle_is_reported_with_full_path(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """A <-> B is detected at compatibility time, naming the cycle."""
    graph.register(AlgebraicEvaluator("A", dependencies=["B"], function=lambda v: v["B"]))
    graph.register(AlgebraicEvaluator("B", dependencies=["A"], function=lambda v: v["A"]))

    with pytest.raises(CyclicDependencyError, match="A -> B -> A") as excinfo:
        graph.ensure_compatibility("A")
    assert excinfo.value.cycle == ("A", "B", "A")


def test_cycle_names_the_kernel_that_reached_it(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """A cycle found while resolving a kernel's request names that kernel."""
    graph.register(AlgebraicEvaluator("A", dependencies=["B"], function=lambda v: v["B"]))
    graph.register(AlgebraicEvaluator("B", dependencies=["A"], function=lambda v: v["A"]))
    store.require_field_evaluator("A", requester="energy_pk")

    with pytest.raises(CyclicDependencyError, match=r"A -> B -> A\. Required by: 'energy_pk'"):
        graph.ensure_all_compatibility()
    with pytest.raises(CyclicDependencyError, match="Required by: 'flow_pk'"):
        graph.ensure_compatibility("B", kernel="flow_pk")


def test_missing_evaluator_names_requester(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """An unregistered dependency is reported with who needed it."""
    graph.register(
        AlgebraicEvaluator("rho", dependencies=["temperature"], function=lambda v: v["temperature"])
    )

    with pytest.raises(MissingEvaluatorError, match="'temperature'.*'rho'"):
        graph.ensure_compatibility("rho")


def test_ensure_all_compatibility_resolves_requests(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Every recorded evaluator request must be satisfiable."""
    store.require_field_evaluator("porosity", requester="flow")

    with pytest.raises(MissingEvaluatorError, match="'flow'"):
        graph.ensure_all_compatibility()

    graph.register(ConstantEvaluator("porosity", value=0.4, components=_CELL))
    graph.ensure_all_compatibility()
    store.allocate()
    np.testing.assert_allclose(graph.get_field("porosity")["cell"], [0.4])


def test_evaluating_before_compatibility_raises(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Reads must follow ensure_compatibility."""
    graph.register(ConstantEvaluator("porosity", value=0.4, components=_CELL))

    with pytest.raises(ConfigurationError, match="before ensure_compatibility"):
        graph.update("porosity")


def test_duplicate_registration_strict_and_lenient(store: VariableStore) -> None:
    """Strict graphs reject duplicates; lenient graphs warn and replace."""
    strict = EvaluationGraph(store)
    strict.register(ConstantEvaluator("k", value=1.0))
    with pytest.raises(ConfigurationError, match="already registered"):
        strict.register(ConstantEvaluator("k", value=2.0))

    lenient = EvaluationGraph(store, strict=False)
    lenient.register(ConstantEvaluator("k", value=1.0))
    replacement = ConstantEvaluator("k", value=2.0)
    with pytest.warns(RuntimeWarning, match="Replacing"):
        lenient.register(replacement)
    assert lenient.evaluator("k") is replacement


def test_old_tag_evaluator_is_cloned_from_new(
    store: VariableStore, graph: EvaluationGraph
) -> None:
    """Requests at OLD reuse the NEW registration with separate caches."""
    new_ev = graph.register(ConstantEvaluator("k", value=3.0, components=_CELL))

    old_ev = graph.evaluator("k", TimeTag.OLD)

    assert old_ev is not new_ev
    assert old_ev.tag is TimeTag.OLD
    assert graph.has_evaluator("k", TimeTag.OLD)

    graph.ensure_compatibility("k", TimeTag.OLD)
    store.allocate()
    np.testing.assert_allclose(graph.get_field("k", TimeTag.OLD)["cell"], [3.0])
    assert not store.is_initialized("k", TimeTag.NEW)
