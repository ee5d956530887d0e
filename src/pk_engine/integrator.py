# src/pk_engine/integrator.py
"""Backward-Euler nonlinear solve driving an implicit system.

One implicit step from t_old to t_new = t_old + h solves F(u) = 0 by a
preconditioned fixed-point / Newton-like iteration:

    predictor      u = u_old (or linear extrapolation from the last step)
                   modify_predictor(h, u_old, u)
    loop           r  = functional(t_old, t_new, u_old, u)
                   stop if error_norm(u, r) < 1
                   update_preconditioner(t_new, u, h)
                   du = apply_preconditioner(r)
                   modify_correction(h, r, u, du)
                   u -= du
                   reject if not is_admissible(u)

The step is rejected (advance returns False) when the predictor or any iterate
is inadmissible, the error norm diverges, or the iteration budget runs out.
Rejection is a normal outcome, not an exception.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

import numpy as np

from .errors import ConfigurationError

if TYPE_CHECKING:
    from .pk import CorrectionResult
    from .vectors import TreeVector

logger = logging.getLogger(__name__)

_MAX_ITERATIONS_ERROR = "max_iterations must be >= 1; got {n}"
_DIVERGENCE_ERROR = "divergence_factor must be > 1; got {value}"
_STEP_ERROR = "t_new must be greater than t_old; got t_old={t_old}, t_new={t_new}"


class ImplicitSystem(Protocol):
    """Callbacks the integrator needs from an implicit kernel."""

    @property
    def name(self) -> str:
        """Kernel name used in log messages."""
        ...

    def functional(
        self,
        t_old: float,
        t_new: float,
        u_old: TreeVector,
        u_new: TreeVector,
        f: TreeVector,
    ) -> None:
        """Evaluate the residual F(u_new) into f."""
        ...

    def error_norm(self, u: TreeVector, res: TreeVector) -> float:
        """Scaled residual norm; below 1 means converged."""
        ...

    def update_preconditioner(self, t: float, u: TreeVector, h: float) -> None:
        """Rebuild the preconditioner at u."""
        ...

    def apply_preconditioner(self, r: TreeVector, pu: TreeVector) -> None:
        """Write the preconditioned residual into pu."""
        ...

    def modify_predictor(self, h: float, u_old: TreeVector, u: TreeVector) -> bool:
        """Adjust the predictor in place; return whether it changed."""
        ...

    def modify_correction(
        self,
        h: float,
        res: TreeVector,
        u: TreeVector,
        du: TreeVector,
    ) -> CorrectionResult:
        """Adjust the correction in place."""
        ...

    def is_admissible(self, u: TreeVector) -> bool:
        """Cheap global validity check of an iterate."""
        ...

    def changed_solution(self, u: TreeVector) -> None:
        """Publish the iterate to the variable store."""
        ...


@dataclass(slots=True, frozen=True)
class NonlinearSolverConfig:
    """Options for the implicit nonlinear solve.

    Attributes:
        max_iterations: Iteration budget per attempt.
        min_iterations: Iterations taken before convergence is accepted.
        divergence_factor: Reject when the error norm grows by more than this
            factor over the initial norm.
        extrapolate_predictor: Whether to extrapolate the predictor linearly
            from the previous accepted step.
    """

    max_iterations: int = 25
    min_iterations: int = 0
    divergence_factor: float = 1.0e10
    extrapolate_predictor: bool = False

    def __post_init__(self) -> None:
        """Validate options."""
        if self.max_iterations < 1:
            raise ConfigurationError(_MAX_ITERATIONS_ERROR.format(n=self.max_iterations))
        if self.divergence_factor <= 1.0:
            raise ConfigurationError(_DIVERGENCE_ERROR.format(value=self.divergence_factor))


@dataclass(slots=True)
class SolveReport:
    """Outcome of the last attempted step.

    Attributes:
        accepted: Whether the step converged to an admissible state.
        iterations: Corrections applied.
        error_norms: Error norm at every residual evaluation.
        reason: Short description of a rejection, or "converged".
    """

    accepted: bool = False
    iterations: int = 0
    error_norms: list[float] = field(default_factory=list)
    reason: str = ""


class BackwardEulerIntegrator:
    """Backward-Euler step controller for one ImplicitSystem."""

    def __init__(
        self,
        system: ImplicitSystem,
        config: NonlinearSolverConfig | None = None,
    ) -> None:
        """Initialize.

        Args:
            system: Implicit kernel providing the callbacks.
            config: Solver options.
        """
        self.system = system
        self.config = config or NonlinearSolverConfig()
        self.report = SolveReport()
        self._previous: tuple[float, float, TreeVector] | None = None

    def reset_history(self) -> None:
        """Forget the previous step (disables extrapolation once)."""
        self._previous = None

    def _predict(self, t_old: float, t_new: float, u_old: TreeVector) -> TreeVector:
        u = u_old.copy()
        if not self.config.extrapolate_predictor or self._previous is None:
            return u
        t_prev, t_prev_new, u_prev = self._previous
        if t_prev_new != t_old or t_old <= t_prev:
            return u
        # u = u_old + (t_new - t_old) / (t_old - t_prev) * (u_old - u_prev)
        ratio = (t_new - t_old) / (t_old - t_prev)
        u.update(-ratio, u_prev, 1.0 + ratio)
        return u

    def _reject(self, reason: str) -> bool:
        self.report.accepted = False
        self.report.reason = reason
        logger.debug("%s: step rejected (%s)", self.system.name, reason)
        return False

    def advance(
        self,
        t_old: float,
        t_new: float,
        u_old: TreeVector,
        u: TreeVector,
    ) -> bool:
        """Attempt one implicit step, leaving the result in u.

        Args:
            t_old: Start of the step.
            t_new: End of the step.
            u_old: Solution at t_old (not modified).
            u: Output; holds the converged solution on success.

        Raises:
            ConfigurationError: If t_new <= t_old.

        Returns:
            True if the step was accepted, False if it must be retried with a
            smaller step.
        """
        if not t_new > t_old:
            raise ConfigurationError(_STEP_ERROR.format(t_old=t_old, t_new=t_new))
        system = self.system
        cfg = self.config
        h = t_new - t_old
        self.report = SolveReport()

        u.assign(self._predict(t_old, t_new, u_old))
        if system.modify_predictor(h, u_old, u):
            logger.debug("%s: predictor modified", system.name)
        system.changed_solution(u)
        if not system.is_admissible(u):
            return self._reject("inadmissible predictor")

        res = u.copy()
        du = u.copy()
        initial_norm: float | None = None
        for iteration in range(cfg.max_iterations + 1):
            system.functional(t_old, t_new, u_old, u, res)
            norm = float(system.error_norm(u, res))
            self.report.error_norms.append(norm)
            logger.debug("%s: iteration %d, error norm %.3e", system.name, iteration, norm)

            if not np.isfinite(norm):
                return self._reject("non-finite error norm")
            if norm < 1.0 and iteration >= cfg.min_iterations:
                self.report.accepted = True
                self.report.iterations = iteration
                self.report.reason = "converged"
                self._previous = (t_old, t_new, u_old.copy())
                return True
            if initial_norm is None:
                initial_norm = max(norm, 1.0)
            elif norm > cfg.divergence_factor * initial_norm:
                return self._reject("diverged")
            if iteration == cfg.max_iterations:
                break

            system.update_preconditioner(t_new, u, h)
            system.apply_preconditioner(res, du)
            system.modify_correction(h, res, u, du)
            u.update(-1.0, du, 1.0)
            system.changed_solution(u)
            self.report.iterations = iteration + 1
            if not system.is_admissible(u):
                return self._reject("inadmissible iterate")

        return self._reject("iteration budget exhausted")
