# src/pk_engine/config.py
"""Configuration models for pk_engine kernels and the driver loop.

This module defines the pydantic-facing configuration objects read from
parameter files and translates them into the native frozen option objects the
core consumes.

Notes:
    - Parameter files may carry additional entries meant for other components;
      every model allows and ignores unknown fields (`extra="allow"`).
    - Coupling-strategy names are resolved in the `to_*` converters so an
      unknown name surfaces as a ConfigurationError rather than a pydantic
      ValidationError.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, ConfigDict, Field

from pk_engine.driver import StepControlConfig
from pk_engine.ewc import EWCOptions
from pk_engine.integrator import NonlinearSolverConfig
from pk_engine.mpc import CellCoupling, CompositeKernel, CouplingStrategy
from pk_engine.operators import BoundaryCondition, BoundaryKind
from pk_engine.pk import ConservationOptions, TimestepControl
from pk_engine.vegetation import VegetationOptions

if TYPE_CHECKING:
    from collections.abc import Sequence

    from pk_engine.ewc import EWCDelegate
    from pk_engine.graph import EvaluationGraph
    from pk_engine.pk import ProcessKernel
    from pk_engine.variable_store import VariableStore

BoundaryName = Literal["neumann", "dirichlet"]


class NonlinearSolverSettings(BaseModel):
    """Nonlinear solver controls shared by implicit kernels."""

    model_config = ConfigDict(extra="allow")

    max_iterations: int = Field(default=25, ge=1)
    min_iterations: int = Field(default=0, ge=0)
    divergence_factor: float = Field(default=1.0e10, gt=1.0)
    extrapolate_predictor: bool = Field(
        default=False,
        description="Extrapolate the predictor from the previous accepted step",
    )

    def to_solver_config(self) -> NonlinearSolverConfig:
        """Convert to a native NonlinearSolverConfig.

        Returns:
            Fully constructed NonlinearSolverConfig instance.
        """
        return NonlinearSolverConfig(
            max_iterations=self.max_iterations,
            min_iterations=self.min_iterations,
            divergence_factor=self.divergence_factor,
            extrapolate_predictor=self.extrapolate_predictor,
        )


class TimestepSettings(BaseModel):
    """Iteration-count step-size controller."""

    model_config = ConfigDict(extra="allow")

    initial_time_step: float = Field(default=1.0, gt=0.0)
    min_time_step: float = Field(default=1.0e-10, gt=0.0)
    max_time_step: float = Field(default=math.inf, gt=0.0)
    increase_factor: float = Field(default=1.25, ge=1.0)
    increase_iterations: int = Field(default=5, ge=0)
    reduce_factor: float = Field(default=0.8, gt=0.0, le=1.0)
    reduce_iterations: int = Field(default=12, ge=1)

    def to_timestep_control(self) -> TimestepControl:
        """Convert to a native TimestepControl.

        Returns:
            Fully constructed TimestepControl instance.
        """
        return TimestepControl(
            initial=self.initial_time_step,
            min=self.min_time_step,
            max=self.max_time_step,
            increase_factor=self.increase_factor,
            increase_iterations=self.increase_iterations,
            reduce_factor=self.reduce_factor,
            reduce_iterations=self.reduce_iterations,
        )


class BoundarySettings(BaseModel):
    """One boundary condition of a column kernel."""

    model_config = ConfigDict(extra="allow")

    type: BoundaryName = "neumann"
    value: float = 0.0

    def to_boundary_condition(self) -> BoundaryCondition:
        """Convert to a native BoundaryCondition."""
        return BoundaryCondition(BoundaryKind(self.type), self.value)


class ConservationKernelConfig(BaseModel):
    """Configuration schema of a ConservationKernel.

    Temperature-like unknowns are usually given admissible bounds of 200 K and
    330 K; no bounds are applied by default.
    """

    model_config = ConfigDict(extra="allow")

    primary_key: str
    conserved_key: str
    conductivity_key: str
    source_key: str | None = None
    mesh: str = "domain"

    top: BoundarySettings = Field(default_factory=BoundarySettings)
    bottom: BoundarySettings = Field(default_factory=BoundarySettings)

    modify_predictor_for_freezing: bool = False
    freezing_point: float = 273.15
    freezing_offset: float = Field(default=1.0e-5, gt=0.0)
    modify_predictor_with_consistent_faces: bool = False
    recompute_boundary_corrections: bool = True
    correction_limit: float | None = Field(default=None, gt=0.0)
    admissible_min: float | None = None
    admissible_max: float | None = None

    atol: float = Field(default=1.0e-6, gt=0.0)
    rtol: float = Field(default=1.0e-6, ge=0.0)

    timestep: TimestepSettings = Field(default_factory=TimestepSettings)
    solver: NonlinearSolverSettings = Field(default_factory=NonlinearSolverSettings)

    def to_options(self) -> ConservationOptions:
        """Convert to native ConservationOptions.

        Returns:
            Fully constructed ConservationOptions instance.
        """
        return ConservationOptions(
            primary_key=self.primary_key,
            conserved_key=self.conserved_key,
            conductivity_key=self.conductivity_key,
            source_key=self.source_key,
            top=self.top.to_boundary_condition(),
            bottom=self.bottom.to_boundary_condition(),
            modify_predictor_for_freezing=self.modify_predictor_for_freezing,
            freezing_point=self.freezing_point,
            freezing_offset=self.freezing_offset,
            modify_predictor_with_consistent_faces=self.modify_predictor_with_consistent_faces,
            recompute_boundary_corrections=self.recompute_boundary_corrections,
            correction_limit=self.correction_limit,
            admissible_min=self.admissible_min,
            admissible_max=self.admissible_max,
            atol=self.atol,
            rtol=self.rtol,
            timestep=self.timestep.to_timestep_control(),
            solver=self.solver.to_solver_config(),
        )


class CellCouplingSettings(BaseModel):
    """Declared cross term between two children of a composite."""

    model_config = ConfigDict(extra="allow")

    row: str
    column: str
    conserved_key: str
    wrt_key: str

    def to_coupling(self) -> CellCoupling:
        """Convert to a native CellCoupling."""
        return CellCoupling(self.row, self.column, self.conserved_key, self.wrt_key)


class CompositeKernelConfig(BaseModel):
    """Configuration schema of a strongly coupled CompositeKernel."""

    model_config = ConfigDict(extra="allow")

    preconditioner_type: str = Field(
        default="picard",
        description="One of 'none', 'block diagonal', 'picard', 'ewc'",
    )
    couplings: list[CellCouplingSettings] = Field(default_factory=list)

    ewc_max_iterations: int = Field(default=20, ge=1)
    ewc_tolerance: float = Field(default=1.0e-10, gt=0.0)

    timestep: TimestepSettings = Field(default_factory=TimestepSettings)
    solver: NonlinearSolverSettings = Field(default_factory=NonlinearSolverSettings)

    def to_strategy(self) -> CouplingStrategy:
        """Resolve the configured preconditioner name.

        Raises:
            ConfigurationError: If the name is not one of the four strategies.
        """
        return CouplingStrategy.from_name(self.preconditioner_type)

    def to_couplings(self) -> list[CellCoupling]:
        """Native coupling declarations."""
        return [c.to_coupling() for c in self.couplings]

    def to_ewc_options(self) -> EWCOptions:
        """Native options of the EWC inversion."""
        return EWCOptions(max_iterations=self.ewc_max_iterations, tolerance=self.ewc_tolerance)

    def to_kernel(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        children: Sequence[ProcessKernel],
        *,
        ewc: EWCDelegate | None = None,
    ) -> CompositeKernel:
        """Build the composite kernel described by this configuration.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            children: Child kernels in solve order.
            ewc: Delegate used by the 'ewc' strategy.

        Returns:
            The configured CompositeKernel.
        """
        return CompositeKernel(
            name,
            store,
            graph,
            children,
            strategy=self.to_strategy(),
            couplings=self.to_couplings(),
            ewc=ewc,
            solver=self.solver.to_solver_config(),
            timestep=self.timestep.to_timestep_control(),
        )


class StepControlSettings(BaseModel):
    """Driver-level step rejection policy."""

    model_config = ConfigDict(extra="allow")

    max_retries: int = Field(default=10, ge=0)
    dt_reduction_factor: float = Field(default=0.5, gt=0.0, lt=1.0)
    dt_min: float = Field(default=0.0, ge=0.0)

    def to_step_control(self) -> StepControlConfig:
        """Convert to a native StepControlConfig."""
        return StepControlConfig(
            max_retries=self.max_retries,
            dt_reduction_factor=self.dt_reduction_factor,
            dt_min=self.dt_min,
        )


class VegetationKernelConfig(BaseModel):
    """Configuration schema of a VegetationKernel."""

    model_config = ConfigDict(extra="allow")

    photosynthesis_time_step: float = Field(default=1800.0, gt=0.0)
    veg_dynamics_time_step: float = Field(default=86400.0, gt=0.0)
    max_time_step: float = Field(default=math.inf, gt=0.0)
    soil_temperature_key: str | None = None
    soil_moisture_key: str | None = None
    default_soil_moisture: float = Field(default=0.5, ge=0.0, le=1.0)
    start_year: int = 1990

    def to_options(self) -> VegetationOptions:
        """Convert to native VegetationOptions."""
        return VegetationOptions(
            photosynthesis_interval=self.photosynthesis_time_step,
            dynamics_interval=self.veg_dynamics_time_step,
            max_dt=self.max_time_step,
            soil_temperature_key=self.soil_temperature_key,
            soil_moisture_key=self.soil_moisture_key,
            default_soil_moisture=self.default_soil_moisture,
            start_year=self.start_year,
        )
