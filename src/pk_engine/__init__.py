"""pk_engine process-kernel orchestration package."""

from __future__ import annotations

from .driver import Coordinator, StepControlConfig
from .errors import (
    ConfigurationError,
    CyclicDependencyError,
    FieldOwnershipError,
    InitializationError,
    MissingEvaluatorError,
    NonConvergenceError,
    PkEngineError,
    UninitializedFieldError,
)
from .evaluators import (
    AlgebraicEvaluator,
    ConstantEvaluator,
    Evaluator,
    FunctionEvaluator,
    IndependentEvaluator,
    PrimaryVariableEvaluator,
    SecondaryEvaluator,
    create_evaluator,
    register_evaluator_type,
    registered_evaluator_types,
)
from .ewc import EWCDelegate, EWCOptions, FreezingSoilModel
from .graph import EvaluationGraph, finite_difference_derivative
from .integrator import BackwardEulerIntegrator, NonlinearSolverConfig
from .mesh import ColumnMesh, EntityKind, SerialCommunicator
from .mpc import CellCoupling, CompositeKernel, CouplingStrategy, SequentialKernel
from .operators import BoundaryCondition, MixedOperator, build_column_diffusion_operator
from .pk import (
    ConservationKernel,
    ConservationOptions,
    CorrectionResult,
    KernelStage,
    PhysicalKernel,
    ProcessKernel,
    TimestepControl,
)
from .variable_store import FieldSpec, TimeTag, VariableStore
from .vectors import CompositeVector, TreeVector
from .vegetation import SiteRecord, VegetationKernel, VegetationModel, VegetationOptions

__all__ = [
    "AlgebraicEvaluator",
    "BackwardEulerIntegrator",
    "BoundaryCondition",
    "CellCoupling",
    "ColumnMesh",
    "CompositeKernel",
    "CompositeVector",
    "ConfigurationError",
    "ConservationKernel",
    "ConservationOptions",
    "ConstantEvaluator",
    "Coordinator",
    "CorrectionResult",
    "CouplingStrategy",
    "CyclicDependencyError",
    "EWCDelegate",
    "EWCOptions",
    "EntityKind",
    "EvaluationGraph",
    "Evaluator",
    "FieldOwnershipError",
    "FieldSpec",
    "FreezingSoilModel",
    "FunctionEvaluator",
    "IndependentEvaluator",
    "InitializationError",
    "KernelStage",
    "MissingEvaluatorError",
    "MixedOperator",
    "NonConvergenceError",
    "NonlinearSolverConfig",
    "PhysicalKernel",
    "PkEngineError",
    "PrimaryVariableEvaluator",
    "ProcessKernel",
    "SecondaryEvaluator",
    "SequentialKernel",
    "SerialCommunicator",
    "SiteRecord",
    "StepControlConfig",
    "TimeTag",
    "TimestepControl",
    "TreeVector",
    "UninitializedFieldError",
    "VariableStore",
    "VegetationKernel",
    "VegetationModel",
    "VegetationOptions",
    "build_column_diffusion_operator",
    "create_evaluator",
    "finite_difference_derivative",
    "register_evaluator_type",
    "registered_evaluator_types",
]

__version__ = "0.1.0"
