# tests/test_integrator.py
"""Unit tests for pk_engine.integrator.

This module verifies:
- Exact-Jacobian backward Euler on linear decay converges in one correction.
- Rejections: inadmissible predictor/iterate, budget exhaustion, divergence.
- Linear predictor extrapolation from the previous accepted step.
- Configuration validation.
"""

from __future__ import annotations

import numpy as np
import pytest

from pk_engine.errors import ConfigurationError
from pk_engine.integrator import BackwardEulerIntegrator, NonlinearSolverConfig
from pk_engine.pk import CorrectionResult
from pk_engine.vectors import CompositeVector, TreeVector


class _DecaySystem:
    """F(u) = (u - u_old) / h + k u with a scaled Newton preconditioner."""

    name = "decay"

    def __init__(
        self,
        k: float = 2.0,
        *,
        precon_scale: float = 1.0,
        lower_bound: float | None = None,
    ) -> None:
        self.k = k
        self.precon_scale = precon_scale
        self.lower_bound = lower_bound
        self.h = 1.0
        self.predictors: list[np.ndarray] = []
        self.published = 0

    def functional(self, t_old, t_new, u_old, u_new, f) -> None:
        self.h = t_new - t_old
        f.data["cell"][...] = (
            (u_new.data["cell"] - u_old.data["cell"]) / self.h + self.k * u_new.data["cell"]
        )

    def error_norm(self, u, res) -> float:
        return res.norm_inf() / 1.0e-10

    def update_preconditioner(self, t, u, h) -> None:
        self.h = h

    def apply_preconditioner(self, r, pu) -> None:
        jac = 1.0 / self.h + self.k
        pu.data["cell"][...] = self.precon_scale * r.data["cell"] / jac

    def modify_predictor(self, h, u_old, u) -> bool:
        self.predictors.append(u.data["cell"].copy())
        return False

    def modify_correction(self, h, res, u, du) -> CorrectionResult:
        return CorrectionResult.NOT_MODIFIED

    def is_admissible(self, u) -> bool:
        if self.lower_bound is None:
            return True
        return bool(np.all(u.data["cell"] >= self.lower_bound))

    def changed_solution(self, u) -> None:
        self.published += 1


def _make_vector(values: list[float]) -> TreeVector:
    return TreeVector("decay", CompositeVector({"cell": values}))


def test_exact_jacobian_converges_in_one_correction() -> None:
    """u = u_old / (1 + k h) after a single Newton step."""
    system = _DecaySystem(k=2.0)
    integrator = BackwardEulerIntegrator(system)
    u_old = _make_vector([1.0, 3.0])
    u = u_old.copy()

    assert integrator.advance(0.0, 0.5, u_old, u)

    np.testing.assert_allclose(u.data["cell"], np.array([1.0, 3.0]) / 2.0)
    assert integrator.report.accepted
    assert integrator.report.iterations == 1
    assert integrator.report.reason == "converged"
    assert len(integrator.report.error_norms) == 2
    np.testing.assert_array_equal(u_old.data["cell"], [1.0, 3.0])


def test_min_iterations_forces_extra_corrections() -> None:
    """Convergence is not accepted before min_iterations."""
    system = _DecaySystem()
    integrator = BackwardEulerIntegrator(system, NonlinearSolverConfig(min_iterations=3))
    u_old = _make_vector([1.0])
    u = u_old.copy()

    assert integrator.advance(0.0, 1.0, u_old, u)
    assert integrator.report.iterations == 3


def test_inadmissible_predictor_is_rejected() -> None:
    """An invalid starting state is rejected before any residual."""
    system = _DecaySystem(lower_bound=0.0)
    integrator = BackwardEulerIntegrator(system)
    u_old = _make_vector([-1.0])
    u = u_old.copy()

    assert not integrator.advance(0.0, 1.0, u_old, u)
    assert integrator.report.reason == "inadmissible predictor"
    assert integrator.report.error_norms == []


def test_inadmissible_iterate_is_rejected() -> None:
    """An overshooting correction produces an invalid iterate."""
    system = _DecaySystem(k=2.0, precon_scale=3.0, lower_bound=0.0)
    integrator = BackwardEulerIntegrator(system)
    u_old = _make_vector([1.0])
    u = u_old.copy()

    assert not integrator.advance(0.0, 1.0, u_old, u)
    assert integrator.report.reason == "inadmissible iterate"
    assert integrator.report.iterations == 1


def test_iteration_budget_exhaustion_is_rejected() -> None:
    """A half-strength preconditioner cannot converge in one correction."""
    system = _DecaySystem(precon_scale=0.5)
    integrator = BackwardEulerIntegrator(system, NonlinearSolverConfig(max_iterations=1))
    u_old = _make_vector([1.0])
    u = u_old.copy()

    assert not integrator.advance(0.0, 1.0, u_old, u)
    assert integrator.report.reason == "iteration budget exhausted"
    assert integrator.report.iterations == 1
    assert not integrator.report.accepted


def test_growing_error_norm_is_rejected_as_diverged() -> None:
    """A correction in the wrong direction doubles the residual each time."""
    system = _DecaySystem(precon_scale=-1.0)
    integrator = BackwardEulerIntegrator(
        system, NonlinearSolverConfig(divergence_factor=4.0)
    )
    u_old = _make_vector([1.0])
    u = u_old.copy()

    assert not integrator.advance(0.0, 1.0, u_old, u)
    assert integrator.report.reason == "diverged"
    assert integrator.report.error_norms[-1] > 4.0 * integrator.report.error_norms[0]


def test_predictor_extrapolates_from_previous_step() -> None:
    """u_pred = u_old + (u_old - u_prev) for equal steps."""
    system = _DecaySystem(k=1.0)
    integrator = BackwardEulerIntegrator(
        system, NonlinearSolverConfig(extrapolate_predictor=True)
    )
    u0 = _make_vector([2.0])
    u1 = u0.copy()
    assert integrator.advance(0.0, 1.0, u0, u1)
    u2 = u1.copy()
    assert integrator.advance(1.0, 2.0, u1, u2)

    np.testing.assert_allclose(system.predictors[0], [2.0])
    np.testing.assert_allclose(system.predictors[1], [2.0 * 1.0 - 2.0])
    np.testing.assert_allclose(u2.data["cell"], [0.5])

    integrator.reset_history()
    u3 = u2.copy()
    assert integrator.advance(2.0, 3.0, u2, u3)
    np.testing.assert_allclose(system.predictors[2], [0.5])


def test_non_increasing_time_is_a_configuration_error() -> None:
    """t_new must be after t_old."""
    integrator = BackwardEulerIntegrator(_DecaySystem())
    u = _make_vector([1.0])

    with pytest.raises(ConfigurationError, match="t_new must be greater"):
        integrator.advance(1.0, 1.0, u, u.copy())


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"max_iterations": 0}, "max_iterations"),
        ({"divergence_factor": 1.0}, "divergence_factor"),
    ],
)
def test_solver_config_validation(kwargs: dict[str, float], match: str) -> None:
    """Invalid solver options raise at construction."""
    with pytest.raises(ConfigurationError, match=match):
        NonlinearSolverConfig(**kwargs)
