# tests/test_config.py
"""Unit tests for pk_engine.config.

This module verifies:
- Parameter-file dictionaries validate into pydantic models.
- Unknown entries are tolerated.
- to_* converters build the native option objects.
- Strategy names and cross-field bounds surface as ConfigurationError.
"""

from __future__ import annotations

import math

import pytest
from pydantic import ValidationError

from pk_engine.config import (
    CompositeKernelConfig,
    ConservationKernelConfig,
    NonlinearSolverSettings,
    StepControlSettings,
    TimestepSettings,
    VegetationKernelConfig,
)
from pk_engine.errors import ConfigurationError
from pk_engine.graph import EvaluationGraph
from pk_engine.mesh import ColumnMesh
from pk_engine.mpc import CellCoupling, CouplingStrategy
from pk_engine.operators import BoundaryCondition, BoundaryKind
from pk_engine.pk import ConservationKernel
from pk_engine.variable_store import VariableStore


def _energy_config(**overrides) -> ConservationKernelConfig:
    raw = {
        "primary_key": "temperature",
        "conserved_key": "energy",
        "conductivity_key": "thermal_conductivity",
        "top": {"type": "dirichlet", "value": 270.0},
        "timestep": {"initial_time_step": 60.0, "max_time_step": 3600.0},
        "solver": {"max_iterations": 10},
        "verbose object": {"verbosity level": "high"},
    }
    raw.update(overrides)
    return ConservationKernelConfig.model_validate(raw)


# -------------------------------------------------------------------
# Conservation kernels
# -------------------------------------------------------------------


def test_conservation_config_to_options() -> None:
    """Nested settings map onto ConservationOptions."""
    options = _energy_config(admissible_min=200.0, admissible_max=330.0).to_options()

    assert options.primary_key == "temperature"
    assert options.top == BoundaryCondition.dirichlet(270.0)
    assert options.bottom.kind is BoundaryKind.NEUMANN
    assert options.timestep.initial == 60.0
    assert options.timestep.max == 3600.0
    assert options.solver.max_iterations == 10
    assert (options.admissible_min, options.admissible_max) == (200.0, 330.0)


def test_conservation_config_defaults() -> None:
    """Bounds are off and faces are not recomputed in the predictor by default."""
    config = _energy_config()

    assert config.mesh == "domain"
    assert config.admissible_min is None
    assert config.admissible_max is None
    assert not config.modify_predictor_with_consistent_faces
    assert config.recompute_boundary_corrections


def test_unknown_boundary_type_fails_validation() -> None:
    """Only Dirichlet and Neumann boundaries exist."""
    with pytest.raises(ValidationError):
        _energy_config(top={"type": "robin", "value": 1.0})


def test_inconsistent_step_bounds_raise_configuration_error() -> None:
    """min <= initial <= max is checked by the native controller."""
    settings = TimestepSettings(initial_time_step=1.0, min_time_step=10.0)

    with pytest.raises(ConfigurationError, match="time step bounds"):
        settings.to_timestep_control()


def test_timestep_defaults_are_unbounded_above() -> None:
    """Without max_time_step the controller does not cap growth."""
    control = TimestepSettings().to_timestep_control()

    assert math.isinf(control.max)
    assert control.increase_factor == 1.25


@pytest.mark.parametrize(
    ("model", "kwargs"),
    [
        (NonlinearSolverSettings, {"max_iterations": 0}),
        (NonlinearSolverSettings, {"divergence_factor": 1.0}),
        (TimestepSettings, {"initial_time_step": 0.0}),
        (StepControlSettings, {"dt_reduction_factor": 1.0}),
        (VegetationKernelConfig, {"default_soil_moisture": 1.5}),
    ],
)
def test_field_constraints(model, kwargs) -> None:
    """Out-of-range values fail pydantic validation."""
    with pytest.raises(ValidationError):
        model(**kwargs)


# -------------------------------------------------------------------
# Composite kernels
# -------------------------------------------------------------------


@pytest.mark.parametrize(
    ("name", "expected"),
    [
        ("none", CouplingStrategy.NONE),
        ("block diagonal", CouplingStrategy.BLOCK_DIAGONAL),
        ("picard", CouplingStrategy.PICARD),
        ("ewc", CouplingStrategy.EWC),
    ],
)
def test_composite_strategy_names(name: str, expected: CouplingStrategy) -> None:
    """The four configured names resolve to strategies."""
    assert CompositeKernelConfig(preconditioner_type=name).to_strategy() is expected


def test_unknown_strategy_is_a_configuration_error() -> None:
    """Legacy or misspelled names are rejected by the converter."""
    config = CompositeKernelConfig(preconditioner_type="smart ewc")

    with pytest.raises(ConfigurationError, match="Invalid preconditioner type 'smart ewc'"):
        config.to_strategy()


def test_composite_couplings_and_ewc_options() -> None:
    """Coupling entries and EWC controls convert to native objects."""
    config = CompositeKernelConfig.model_validate(
        {
            "preconditioner_type": "ewc",
            "couplings": [
                {
                    "row": "energy_pk",
                    "column": "flow_pk",
                    "conserved_key": "energy",
                    "wrt_key": "pressure",
                }
            ],
            "ewc_max_iterations": 5,
        }
    )

    assert config.to_couplings() == [CellCoupling("energy_pk", "flow_pk", "energy", "pressure")]
    options = config.to_ewc_options()
    assert options.max_iterations == 5
    assert options.tolerance == 1.0e-10


def test_composite_to_kernel() -> None:
    """to_kernel wires strategy, solver and timestep into the composite."""
    store = VariableStore({"domain": ColumnMesh(2)})
    graph = EvaluationGraph(store)
    children = [
        ConservationKernel(name, store, graph, _energy_config().to_options())
        for name in ("a_pk", "b_pk")
    ]
    config = CompositeKernelConfig(
        preconditioner_type="block diagonal",
        solver=NonlinearSolverSettings(max_iterations=7),
        timestep=TimestepSettings(initial_time_step=2.0),
    )

    kernel = config.to_kernel("coupled", store, graph, children)

    assert kernel.name == "coupled"
    assert kernel.strategy is CouplingStrategy.BLOCK_DIAGONAL
    assert [c.name for c in kernel.children] == ["a_pk", "b_pk"]
    assert kernel.integrator.config.max_iterations == 7
    assert kernel.get_dt() == 2.0


# -------------------------------------------------------------------
# Driver and vegetation
# -------------------------------------------------------------------


def test_step_control_settings_to_native() -> None:
    """Driver settings convert to StepControlConfig."""
    native = StepControlSettings(max_retries=3, dt_min=1.0e-3).to_step_control()

    assert native.max_retries == 3
    assert native.dt_reduction_factor == 0.5
    assert native.dt_min == 1.0e-3


def test_vegetation_config_to_options() -> None:
    """Interval names follow the parameter-file vocabulary."""
    options = VegetationKernelConfig(
        photosynthesis_time_step=3600.0,
        veg_dynamics_time_step=7.0 * 86400.0,
        soil_temperature_key="surface-temperature",
    ).to_options()

    assert options.photosynthesis_interval == 3600.0
    assert options.dynamics_interval == 7.0 * 86400.0
    assert "surface-temperature" in options.forcing_keys()
    assert options.start_year == 1990
