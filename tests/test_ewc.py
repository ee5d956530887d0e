# tests/test_ewc.py
"""Unit tests for pk_engine.ewc.

This module verifies:
- FreezingSoilModel Jacobian against finite differences.
- Graph derivatives of the model's evaluators.
- With a linear model the EWC correction equals the standard correction.
- With the nonlinear model the corrected state hits the linearized targets.
- Cells whose inversion does not converge keep the standard correction.
- Validation of options, keys and call order.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pytest

from pk_engine.errors import ConfigurationError
from pk_engine.evaluators import AlgebraicEvaluator, PrimaryVariableEvaluator
from pk_engine.ewc import EWCDelegate, EWCOptions, FreezingSoilModel
from pk_engine.graph import EvaluationGraph
from pk_engine.mesh import ColumnMesh
from pk_engine.variable_store import VariableStore

_P = np.array([101325.0, 2.0e5, 101325.0])
_T = np.array([270.0, 273.1, 280.0])


@dataclass(frozen=True)
class _LinearModel:
    """q1 = 2 u1 + u2, q2 = u1 + 3 u2."""

    def conserved(self, u1, u2):
        return 2.0 * u1 + u2, u1 + 3.0 * u2

    def jacobian(self, u1, u2):
        ones = np.ones_like(np.asarray(u1, dtype=float))
        return 2.0 * ones, ones, ones, 3.0 * ones


def _make_graph(model, p: np.ndarray, t: np.ndarray) -> EvaluationGraph:
    """Graph with primaries p/T and model-driven conserved quantities."""
    store = VariableStore({"domain": ColumnMesh(p.size)})
    graph = EvaluationGraph(store)
    graph.register(PrimaryVariableEvaluator("pressure"))
    graph.register(PrimaryVariableEvaluator("temperature"))
    jac = model.jacobian
    graph.register(
        AlgebraicEvaluator(
            "water_content",
            dependencies=["pressure", "temperature"],
            function=lambda v: model.conserved(v["pressure"], v["temperature"])[0],
            derivatives={
                "pressure": lambda v: jac(v["pressure"], v["temperature"])[0],
                "temperature": lambda v: jac(v["pressure"], v["temperature"])[1],
            },
            components={"cell": "cell"},
        )
    )
    graph.register(
        AlgebraicEvaluator(
            "energy",
            dependencies=["pressure", "temperature"],
            function=lambda v: model.conserved(v["pressure"], v["temperature"])[1],
            derivatives={
                "pressure": lambda v: jac(v["pressure"], v["temperature"])[2],
                "temperature": lambda v: jac(v["pressure"], v["temperature"])[3],
            },
            components={"cell": "cell"},
        )
    )
    graph.ensure_compatibility("water_content")
    graph.ensure_compatibility("energy")
    store.allocate()
    store.set_field_data("pressure", {"cell": p})
    store.set_field_data("temperature", {"cell": t})
    return graph


def _make_delegate(model, graph: EvaluationGraph, **kwargs) -> EWCDelegate:
    delegate = EWCDelegate(
        model,
        primary_keys=("pressure", "temperature"),
        conserved_keys=("water_content", "energy"),
        **kwargs,
    )
    delegate.update(graph)
    return delegate


# -------------------------------------------------------------------
# Model
# -------------------------------------------------------------------


def test_freezing_model_jacobian_matches_finite_differences() -> None:
    """Analytic partials agree with central differences, including near T_f."""
    model = FreezingSoilModel()
    a11, a12, a21, a22 = model.jacobian(_P, _T)
    dp, dt = 1.0, 1.0e-6

    wc_p = (model.water_content(_P + dp, _T) - model.water_content(_P - dp, _T)) / (2 * dp)
    e_p = (model.energy(_P + dp, _T) - model.energy(_P - dp, _T)) / (2 * dp)
    e_t = (model.energy(_P, _T + dt) - model.energy(_P, _T - dt)) / (2 * dt)

    np.testing.assert_allclose(a11, wc_p, rtol=1e-6)
    np.testing.assert_array_equal(a12, 0.0)
    np.testing.assert_allclose(a21, e_p, rtol=1e-6)
    np.testing.assert_allclose(a22, e_t, rtol=1e-5)


def test_latent_heat_dominates_near_the_freezing_point() -> None:
    """Apparent heat capacity peaks at the phase change."""
    model = FreezingSoilModel()
    de_dt = model.jacobian(np.full(3, 101325.0), np.array([263.15, 273.15, 283.15]))[3]

    assert de_dt[1] > 10.0 * de_dt[0]
    assert de_dt[1] > 10.0 * de_dt[2]


def test_model_evaluators_feed_graph_derivatives() -> None:
    """d(energy)/d(temperature) through the graph equals the analytic partial."""
    model = FreezingSoilModel()
    store = VariableStore({"domain": ColumnMesh(3)})
    graph = EvaluationGraph(store)
    graph.register(PrimaryVariableEvaluator("pressure"))
    graph.register(PrimaryVariableEvaluator("temperature"))
    for ev in model.evaluators():
        ev.components = {"cell": "cell"}
        graph.register(ev)
    graph.ensure_compatibility("energy")
    graph.ensure_compatibility("water_content")
    store.allocate()
    store.set_field_data("pressure", {"cell": _P})
    store.set_field_data("temperature", {"cell": _T})

    np.testing.assert_allclose(
        graph.get_derivative("energy", "temperature")["cell"], model.jacobian(_P, _T)[3]
    )
    np.testing.assert_array_equal(
        graph.get_derivative("water_content", "temperature")["cell"], 0.0
    )
    np.testing.assert_allclose(graph.get_field("energy")["cell"], model.energy(_P, _T))


# -------------------------------------------------------------------
# Delegate
# -------------------------------------------------------------------


def test_linear_model_reproduces_standard_correction() -> None:
    """When the model is linear its inversion undoes the linearization exactly."""
    model = _LinearModel()
    u1, u2 = np.array([1.0, 2.0, 3.0]), np.array([-1.0, 0.5, 4.0])
    delegate = _make_delegate(model, _make_graph(model, u1, u2))
    du1, du2 = np.array([0.1, -0.3, 0.2]), np.array([0.05, 0.0, -1.0])

    alt1, alt2 = delegate.precondition(u1, u2, du1, du2)

    np.testing.assert_allclose(alt1, du1, atol=1e-12)
    np.testing.assert_allclose(alt2, du2, atol=1e-12)
    assert delegate.last_fallback_count == 0


def test_nonlinear_model_hits_linearized_targets() -> None:
    """The corrected state reproduces q - J du for both quantities."""
    model = FreezingSoilModel()
    delegate = _make_delegate(model, _make_graph(model, _P, _T))
    du1 = np.array([10.0, -50.0, 0.0])
    du2 = np.array([0.2, 0.1, -0.5])

    alt1, alt2 = delegate.precondition(_P, _T, du1, du2)

    q1, q2 = model.conserved(_P, _T)
    a11, a12, a21, a22 = model.jacobian(_P, _T)
    target1 = q1 - (a11 * du1 + a12 * du2)
    target2 = q2 - (a21 * du1 + a22 * du2)
    got1, got2 = model.conserved(_P - alt1, _T - alt2)
    assert delegate.last_fallback_count == 0
    np.testing.assert_allclose(got1, target1, rtol=1e-9)
    np.testing.assert_allclose(got2, target2, rtol=1e-9)
    assert not np.allclose(alt2, du2)


def test_unconverged_cells_fall_back_to_standard_correction() -> None:
    """A single iteration cannot invert the nonlinear model."""
    model = FreezingSoilModel()
    t = np.array([273.1, 273.2])
    p = np.full(2, 101325.0)
    delegate = _make_delegate(
        model, _make_graph(model, p, t), options=EWCOptions(max_iterations=1)
    )
    du1, du2 = np.zeros(2), np.array([0.5, -0.5])

    alt1, alt2 = delegate.precondition(p, t, du1, du2)

    assert delegate.last_fallback_count == 2
    np.testing.assert_array_equal(alt1, du1)
    np.testing.assert_array_equal(alt2, du2)


def test_precondition_before_update_raises() -> None:
    """The delegate must be linearized first."""
    delegate = EWCDelegate(
        FreezingSoilModel(),
        primary_keys=("pressure", "temperature"),
        conserved_keys=("water_content", "energy"),
    )

    with pytest.raises(ConfigurationError, match="before update"):
        delegate.precondition(_P, _T, _P, _T)


@pytest.mark.parametrize(
    ("primary", "conserved", "match"),
    [
        (("pressure", "pressure"), ("water_content", "energy"), "primary keys"),
        (("pressure", "temperature"), ("energy",), "conserved keys"),
    ],
)
def test_key_pairs_are_validated(primary, conserved, match: str) -> None:
    """Both key pairs must hold two distinct keys."""
    with pytest.raises(ConfigurationError, match=match):
        EWCDelegate(FreezingSoilModel(), primary_keys=primary, conserved_keys=conserved)


def test_options_are_validated() -> None:
    """At least one inversion iteration is required."""
    with pytest.raises(ConfigurationError, match="max_iterations"):
        EWCOptions(max_iterations=0)
