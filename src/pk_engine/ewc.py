# src/pk_engine/ewc.py
"""Energy / water-content (EWC) correction for freeze-thaw coupled solves.

Near the phase-change point the energy content of a cell jumps by the latent
heat over a narrow temperature window, so a Newton (or Picard) correction
taken in (pressure, temperature) space overshoots badly. The EWC delegate
instead:

1. linearizes the conserved quantities (water content, energy) at the current
   iterate and applies the standard correction to them, giving target
   conserved values that the linear model trusts;
2. inverts the closed-form thermodynamic model cell by cell (a 2x2 Newton
   solve) to find the primary values that produce those targets;
3. returns the difference to the current iterate as the alternate correction.

Cells where the inversion does not converge keep the standard correction.
Face unknowns are handled by the composite kernel through each child's
face-elimination relation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
import numpy.typing as npt

from .errors import ConfigurationError
from .evaluators import AlgebraicEvaluator
from .variable_store import TimeTag

if TYPE_CHECKING:
    from .graph import EvaluationGraph

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

_NOT_UPDATED_ERROR = "EWC delegate used before update()"
_ITERATIONS_ERROR = "max_iterations must be >= 1; got {n}"
_KEYS_ERROR = "EWC needs two distinct {what}; got {keys}"


class ConservedQuantityModel(Protocol):
    """Closed-form map (u1, u2) -> (q1, q2) with its Jacobian, vectorized."""

    def conserved(self, u1: FloatArray, u2: FloatArray) -> tuple[FloatArray, FloatArray]:
        """Conserved quantities per unit volume."""
        ...

    def jacobian(
        self,
        u1: FloatArray,
        u2: FloatArray,
    ) -> tuple[FloatArray, FloatArray, FloatArray, FloatArray]:
        """(dq1/du1, dq1/du2, dq2/du1, dq2/du2)."""
        ...


@dataclass(slots=True, frozen=True)
class FreezingSoilModel:
    """Water content and energy of a freezing, slightly compressible soil.

    Primary variables are liquid pressure p [Pa] and temperature T [K].

        theta(p) = phi (1 + c (p - p_ref))
        f(T)     = (1 + tanh((T - T_f) / w)) / 2          unfrozen fraction
        e_w(T)   = f c_l (T - T_r) + (1 - f) (c_i (T - T_r) - L)
        wc       = n theta(p)
        e        = n theta(p) e_w(T) + (1 - phi) C_r (T - T_r)

    Attributes:
        porosity: phi.
        compressibility: c [1/Pa].
        reference_pressure: p_ref [Pa].
        molar_density: n [mol/m^3].
        freezing_point: T_f [K].
        freezing_width: w [K].
        heat_capacity_liquid: c_l [J/mol/K].
        heat_capacity_ice: c_i [J/mol/K].
        latent_heat: L [J/mol].
        rock_heat_capacity: C_r [J/m^3/K].
        reference_temperature: T_r [K].
    """

    porosity: float = 0.4
    compressibility: float = 1.0e-8
    reference_pressure: float = 101325.0
    molar_density: float = 55000.0
    freezing_point: float = 273.15
    freezing_width: float = 0.5
    heat_capacity_liquid: float = 76.0
    heat_capacity_ice: float = 37.0
    latent_heat: float = 6010.0
    rock_heat_capacity: float = 2.0e6
    reference_temperature: float = 273.15

    def _theta(self, p: FloatArray) -> FloatArray:
        return self.porosity * (1.0 + self.compressibility * (p - self.reference_pressure))

    def _unfrozen(self, t: FloatArray) -> tuple[FloatArray, FloatArray]:
        th = np.tanh((t - self.freezing_point) / self.freezing_width)
        return 0.5 * (1.0 + th), 0.5 * (1.0 - th * th) / self.freezing_width

    def _water_energy(self, t: FloatArray) -> tuple[FloatArray, FloatArray]:
        f, df = self._unfrozen(t)
        dt = t - self.reference_temperature
        u_l = self.heat_capacity_liquid * dt
        u_i = self.heat_capacity_ice * dt - self.latent_heat
        e_w = f * u_l + (1.0 - f) * u_i
        de_w = df * (u_l - u_i) + f * self.heat_capacity_liquid
        de_w = de_w + (1.0 - f) * self.heat_capacity_ice
        return e_w, de_w

    def water_content(self, p: FloatArray, t: FloatArray) -> FloatArray:  # noqa: ARG002
        """Total water per unit volume [mol/m^3]."""
        return self.molar_density * self._theta(np.asarray(p))

    def energy(self, p: FloatArray, t: FloatArray) -> FloatArray:
        """Energy per unit volume [J/m^3]."""
        t = np.asarray(t)
        e_w, _ = self._water_energy(t)
        rock = (1.0 - self.porosity) * self.rock_heat_capacity
        return self.water_content(p, t) * e_w + rock * (t - self.reference_temperature)

    def conserved(self, u1: FloatArray, u2: FloatArray) -> tuple[FloatArray, FloatArray]:
        """(water content, energy)."""
        return self.water_content(u1, u2), self.energy(u1, u2)

    def jacobian(
        self,
        u1: FloatArray,
        u2: FloatArray,
    ) -> tuple[FloatArray, FloatArray, FloatArray, FloatArray]:
        """Analytic partial derivatives."""
        p = np.asarray(u1, dtype=np.float64)
        t = np.asarray(u2, dtype=np.float64)
        e_w, de_w = self._water_energy(t)
        dwc_dp = np.full_like(p, self.molar_density * self.porosity * self.compressibility)
        dwc_dt = np.zeros_like(t)
        de_dp = dwc_dp * e_w
        de_dt = self.water_content(p, t) * de_w
        de_dt = de_dt + (1.0 - self.porosity) * self.rock_heat_capacity
        return dwc_dp, dwc_dt, de_dp, de_dt

    def evaluators(
        self,
        *,
        pressure_key: str = "pressure",
        temperature_key: str = "temperature",
        water_content_key: str = "water_content",
        energy_key: str = "energy",
    ) -> list[AlgebraicEvaluator]:
        """Secondary evaluators producing water content and energy."""
        p, t = pressure_key, temperature_key
        deps = [p, t]
        return [
            AlgebraicEvaluator(
                water_content_key,
                dependencies=deps,
                function=lambda v: self.water_content(v[p], v[t]),
                derivatives={
                    p: lambda v: self.jacobian(v[p], v[t])[0],
                },
            ),
            AlgebraicEvaluator(
                energy_key,
                dependencies=deps,
                function=lambda v: self.energy(v[p], v[t]),
                derivatives={
                    p: lambda v: self.jacobian(v[p], v[t])[2],
                    t: lambda v: self.jacobian(v[p], v[t])[3],
                },
            ),
        ]


@dataclass(slots=True, frozen=True)
class EWCOptions:
    """Options of the per-cell inversion.

    Attributes:
        max_iterations: Newton iterations per cell.
        tolerance: Relative tolerance on the conserved quantities.
    """

    max_iterations: int = 20
    tolerance: float = 1.0e-10

    def __post_init__(self) -> None:
        """Validate."""
        if self.max_iterations < 1:
            raise ConfigurationError(_ITERATIONS_ERROR.format(n=self.max_iterations))


class EWCDelegate:
    """Computes the alternate cell correction for a two-variable coupled solve."""

    def __init__(
        self,
        model: ConservedQuantityModel,
        *,
        primary_keys: tuple[str, str],
        conserved_keys: tuple[str, str],
        options: EWCOptions | None = None,
    ) -> None:
        """Initialize.

        Args:
            model: Closed-form model mapping primaries to conserved quantities.
            primary_keys: (u1, u2) field keys, e.g. (pressure, temperature).
            conserved_keys: (q1, q2) field keys, e.g. (water_content, energy).
            options: Inversion options.

        Raises:
            ConfigurationError: If a key pair is not two distinct keys.
        """
        for what, keys in (("primary keys", primary_keys), ("conserved keys", conserved_keys)):
            if len(keys) != 2 or keys[0] == keys[1]:
                raise ConfigurationError(_KEYS_ERROR.format(what=what, keys=keys))
        self.model = model
        self.primary_keys = tuple(primary_keys)
        self.conserved_keys = tuple(conserved_keys)
        self.options = options or EWCOptions()
        self._q: tuple[FloatArray, FloatArray] | None = None
        self._jac: tuple[FloatArray, FloatArray, FloatArray, FloatArray] | None = None
        self.last_fallback_count = 0

    def update(self, graph: EvaluationGraph) -> None:
        """Linearize the conserved quantities at the current NEW iterate."""
        q1_key, q2_key = self.conserved_keys
        u1_key, u2_key = self.primary_keys
        self._q = (
            graph.get_field(q1_key, TimeTag.NEW)["cell"].copy(),
            graph.get_field(q2_key, TimeTag.NEW)["cell"].copy(),
        )
        self._jac = (
            graph.get_derivative(q1_key, u1_key)["cell"].copy(),
            graph.get_derivative(q1_key, u2_key)["cell"].copy(),
            graph.get_derivative(q2_key, u1_key)["cell"].copy(),
            graph.get_derivative(q2_key, u2_key)["cell"].copy(),
        )

    def _invert(
        self,
        target1: FloatArray,
        target2: FloatArray,
        x1: FloatArray,
        x2: FloatArray,
    ) -> tuple[FloatArray, FloatArray, npt.NDArray[np.bool_]]:
        tol = self.options.tolerance
        scale1 = np.maximum(np.abs(target1), 1.0)
        scale2 = np.maximum(np.abs(target2), 1.0)
        converged = np.zeros(x1.shape, dtype=bool)
        for _ in range(self.options.max_iterations):
            q1, q2 = self.model.conserved(x1, x2)
            f1 = q1 - target1
            f2 = q2 - target2
            converged = (np.abs(f1) <= tol * scale1) & (np.abs(f2) <= tol * scale2)
            if np.all(converged):
                break
            a11, a12, a21, a22 = self.model.jacobian(x1, x2)
            det = a11 * a22 - a12 * a21
            with np.errstate(divide="ignore", invalid="ignore"):
                dx1 = (a22 * f1 - a12 * f2) / det
                dx2 = (a11 * f2 - a21 * f1) / det
            active = ~converged & np.isfinite(dx1) & np.isfinite(dx2)
            if not np.any(active):
                break
            x1 = np.where(active, x1 - dx1, x1)
            x2 = np.where(active, x2 - dx2, x2)
        return x1, x2, converged & np.isfinite(x1) & np.isfinite(x2)

    def precondition(
        self,
        u1: FloatArray,
        u2: FloatArray,
        du1: FloatArray,
        du2: FloatArray,
    ) -> tuple[FloatArray, FloatArray]:
        """Alternate cell corrections for a standard correction (du1, du2).

        Args:
            u1: Current iterate of the first primary variable (cells).
            u2: Current iterate of the second primary variable (cells).
            du1: Standard correction of u1 (the update is u - du).
            du2: Standard correction of u2.

        Raises:
            ConfigurationError: If update() was not called.

        Returns:
            (du1_alt, du2_alt); equal to the standard correction in cells
            where the inversion fails.
        """
        if self._q is None or self._jac is None:
            raise ConfigurationError(_NOT_UPDATED_ERROR)
        q1, q2 = self._q
        a11, a12, a21, a22 = self._jac
        target1 = q1 - (a11 * du1 + a12 * du2)
        target2 = q2 - (a21 * du1 + a22 * du2)
        x1, x2, ok = self._invert(target1, target2, u1 - du1, u2 - du2)
        self.last_fallback_count = int(np.count_nonzero(~ok))
        if self.last_fallback_count:
            logger.debug(
                "EWC inversion fell back to the standard correction in %d cells",
                self.last_fallback_count,
            )
        return np.where(ok, u1 - x1, du1), np.where(ok, u2 - x2, du2)
