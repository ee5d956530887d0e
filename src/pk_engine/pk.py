# src/pk_engine/pk.py
"""Process kernels: the timestep-advance protocol and the physical variants.

Every kernel follows one state machine:

    CONSTRUCTED -> SETUP -> INITIALIZED -> {ADVANCED -> COMMITTED}*

- setup() declares required/owned fields and evaluator requests. It never
  reads field values and may be repeated harmlessly.
- initialize() populates owned fields at both tags exactly once.
- advance_step(t_old, t_new) writes only to NEW and returns False to request a
  smaller step.
- commit_step(t_old, t_new) promotes owned fields NEW -> OLD; it is a no-op
  unless an accepted advance_step is pending.

Capabilities are plain protocols (Steppable, Preconditionable, Admissible)
so composites can combine any kernels that provide them.
"""

from __future__ import annotations

import logging
import math
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np
import numpy.typing as npt

from .errors import (
    ConfigurationError,
    raise_invalid_kernel_config,
    raise_missing_initial_condition,
)
from .evaluators import PrimaryVariableEvaluator
from .integrator import BackwardEulerIntegrator, NonlinearSolverConfig
from .mesh import ColumnMesh, EntityKind
from .operators import BoundaryCondition, BoundaryKind, build_column_diffusion_operator
from .variable_store import DEFAULT_MESH, TimeTag
from .vectors import CompositeVector, TreeVector

if TYPE_CHECKING:
    from scipy.sparse import csr_matrix

    from .graph import EvaluationGraph
    from .operators import MixedOperator
    from .variable_store import VariableStore

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]
InitialValue = float | npt.ArrayLike | Mapping[str, npt.ArrayLike] | Callable[..., Any]

_STAGE_ERROR = "cannot {action} from stage {stage}"
_NOT_COLUMN_MESH_ERROR = "mesh '{mesh}' must be a ColumnMesh"
_NO_PRECONDITIONER_ERROR = "update_preconditioner has not been called"
_TIME_STEP_ERROR = "time step bounds must satisfy 0 < min <= initial <= max"


class KernelStage(Enum):
    """Lifecycle stages of a process kernel."""

    CONSTRUCTED = "constructed"
    SETUP = "setup"
    INITIALIZED = "initialized"
    ADVANCED = "advanced"
    COMMITTED = "committed"


class CorrectionResult(Enum):
    """Outcome of modify_correction."""

    NOT_MODIFIED = "not_modified"
    MODIFIED = "modified"

    def __or__(self, other: CorrectionResult) -> CorrectionResult:
        if CorrectionResult.MODIFIED in {self, other}:
            return CorrectionResult.MODIFIED
        return CorrectionResult.NOT_MODIFIED


# =============================================================================
# Capability protocols
# =============================================================================


@runtime_checkable
class Steppable(Protocol):
    """Surface consumed by the driver loop."""

    @property
    def name(self) -> str:
        """Kernel name."""
        ...

    def get_dt(self) -> float:
        """Largest stable step size."""
        ...

    def advance_step(self, t_old: float, t_new: float, reinit: bool = False) -> bool:  # noqa: FBT001, FBT002
        """Attempt one step; False requests a retry with a smaller step."""
        ...

    def commit_step(self, t_old: float, t_new: float) -> None:
        """Promote NEW to OLD for owned fields."""
        ...


@runtime_checkable
class Preconditionable(Protocol):
    """Kernels that can build and apply a preconditioner."""

    def update_preconditioner(self, t: float, u: TreeVector, h: float) -> None:
        """Rebuild the preconditioner at u."""
        ...

    def apply_preconditioner(self, r: TreeVector, pu: TreeVector) -> None:
        """Write the preconditioned residual into pu."""
        ...


@runtime_checkable
class Admissible(Protocol):
    """Kernels with a physical validity check."""

    def is_admissible(self, u: TreeVector) -> bool:
        """Cheap global validity check of a candidate solution."""
        ...


# =============================================================================
# Base kernel
# =============================================================================


class ProcessKernel(ABC):
    """Lifecycle bookkeeping shared by every kernel."""

    def __init__(self, name: str, store: VariableStore, graph: EvaluationGraph) -> None:
        """Initialize.

        Args:
            name: Unique kernel name; also the owner name of its fields.
            store: Shared variable store.
            graph: Shared evaluation graph over store.
        """
        self._name = name
        self.store = store
        self.graph = graph
        self.stage = KernelStage.CONSTRUCTED
        self._pending_commit = False

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self._name!r}, stage={self.stage.value})"

    @property
    def name(self) -> str:
        """Kernel name."""
        return self._name

    @property
    def children(self) -> tuple[ProcessKernel, ...]:
        """Child kernels (empty for physical kernels)."""
        return ()

    def _require_stage(self, action: str, *allowed: KernelStage) -> None:
        if self.stage not in allowed:
            raise_invalid_kernel_config(
                kernel=self._name,
                detail=_STAGE_ERROR.format(action=action, stage=self.stage.value),
            )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """Declare fields and evaluators; idempotent before initialize."""
        self._require_stage("setup", KernelStage.CONSTRUCTED, KernelStage.SETUP)
        self._setup()
        self.stage = KernelStage.SETUP

    def initialize(self) -> None:
        """Populate owned fields at both tags."""
        self._require_stage("initialize", KernelStage.SETUP)
        self._initialize()
        self.stage = KernelStage.INITIALIZED
        logger.debug("Initialized kernel '%s'", self._name)

    def advance_step(self, t_old: float, t_new: float, reinit: bool = False) -> bool:  # noqa: FBT001, FBT002
        """Attempt to advance from t_old to t_new, writing only NEW.

        Args:
            t_old: Start of the step.
            t_new: End of the step.
            reinit: Whether this attempt restarts a previously rejected step.

        Returns:
            True if accepted; False if the step must be retried smaller.
        """
        self._require_stage(
            "advance",
            KernelStage.INITIALIZED,
            KernelStage.ADVANCED,
            KernelStage.COMMITTED,
        )
        accepted = bool(self._advance(t_old, t_new, reinit))
        self.stage = KernelStage.ADVANCED
        self._pending_commit = accepted
        return accepted

    def record_external_step(self, *, accepted: bool) -> None:
        """Record a step solved by a parent composite on this kernel's behalf."""
        self._require_stage(
            "advance",
            KernelStage.INITIALIZED,
            KernelStage.ADVANCED,
            KernelStage.COMMITTED,
        )
        self.stage = KernelStage.ADVANCED
        self._pending_commit = accepted

    def commit_step(self, t_old: float, t_new: float) -> None:
        """Finalize an accepted step; no-op without a pending accepted step."""
        if not self._pending_commit:
            return
        self._commit(t_old, t_new)
        self._pending_commit = False
        self.stage = KernelStage.COMMITTED

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _setup(self) -> None:
        """Declare requirements."""

    @abstractmethod
    def _initialize(self) -> None:
        """Set initial conditions."""

    @abstractmethod
    def _advance(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: FBT001
        """Compute NEW values."""

    @abstractmethod
    def _commit(self, t_old: float, t_new: float) -> None:
        """Promote NEW to OLD."""

    @abstractmethod
    def get_dt(self) -> float:
        """Largest step size compatible with this kernel's constraints."""

    def set_dt(self, dt: float) -> None:  # noqa: B027
        """Record a step size imposed from outside (e.g. after a rejection)."""

    @abstractmethod
    def owned_keys(self) -> list[str]:
        """Fields written by this kernel (and its children)."""


# =============================================================================
# Physical kernels
# =============================================================================


class PhysicalKernel(ProcessKernel):
    """Leaf kernel owning fields on one mesh.

    Subclasses declare owned fields with require_owned_field during _setup and
    may list diagnostic keys recomputed at commit.
    """

    def __init__(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        *,
        mesh: str = DEFAULT_MESH,
        initial_conditions: Mapping[str, InitialValue] | None = None,
        diagnostics: tuple[str, ...] = (),
    ) -> None:
        """Initialize.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            mesh: Mesh the kernel lives on.
            initial_conditions: Initial values for owned fields, keyed by
                field; a value may be a scalar, an array, a component mapping
                or a callable of the mesh returning one of those.
            diagnostics: Secondary fields recomputed after each commit.
        """
        super().__init__(name, store, graph)
        self.mesh_name = mesh
        self.initial_conditions = dict(initial_conditions or {})
        self.diagnostics = tuple(diagnostics)
        self._owned: dict[str, InitialValue | None] = {}

    def require_owned_field(
        self,
        key: str,
        components: Mapping[str, EntityKind | str],
        *,
        default: InitialValue | None = None,
        io_checkpoint: bool = True,
    ) -> None:
        """Require a field written by this kernel.

        Args:
            key: Field key.
            components: Component name -> entity kind.
            default: Initial value used when no initial condition is given.
            io_checkpoint: Whether the field is needed for restart.
        """
        spec = self.store.require_field(key, owner=self.name, io_checkpoint=io_checkpoint)
        spec.set_mesh(self.mesh_name)
        for comp, kind in components.items():
            spec.add_component(comp, kind)
        self._owned.setdefault(key, default)
        if not self.graph.has_evaluator(key):
            self.graph.register(PrimaryVariableEvaluator(key))
        self.store.require_field_evaluator(key, requester=self.name)

    def owned_keys(self) -> list[str]:
        """Fields owned by this kernel."""
        return list(self._owned)

    def _initial_value(self, key: str) -> InitialValue:
        value = self.initial_conditions.get(key, self._owned.get(key))
        if value is None:
            raise_missing_initial_condition(kernel=self.name, key=key)
        if callable(value):
            value = value(self.store.mesh(self.mesh_name))
        return value

    def _initialize(self) -> None:
        unknown = set(self.initial_conditions) - set(self._owned)
        if unknown:
            raise_invalid_kernel_config(
                kernel=self.name,
                detail="initial condition given for a field the kernel does not own",
                key=sorted(unknown)[0],
            )
        for key in self._owned:
            value = self._initial_value(key)
            for tag in TimeTag:
                if isinstance(value, (Mapping, CompositeVector)):
                    self.store.set_field_data(key, value, tag, writer=self.name)
                else:
                    names = self.store.field_spec(key).components
                    arr = np.asarray(value, dtype=np.float64)
                    self.store.set_field_data(
                        key, {n: arr for n in names}, tag, writer=self.name
                    )

    def _commit(self, t_old: float, t_new: float) -> None:  # noqa: ARG002
        self.store.commit(self.owned_keys(), t_new)
        for key in self.diagnostics:
            self.graph.update(key)


# =============================================================================
# Reference implicit kernel
# =============================================================================


@dataclass(slots=True, frozen=True)
class TimestepControl:
    """Iteration-count based step-size controller.

    Attributes:
        initial: First proposed step.
        min: Smallest step the kernel proposes.
        max: Largest step the kernel proposes.
        increase_factor: Growth factor after a cheap step.
        increase_iterations: Steps converging in at most this many iterations
            grow the next step.
        reduce_factor: Reduction factor after an expensive step.
        reduce_iterations: Steps needing at least this many iterations shrink
            the next step.
    """

    initial: float = 1.0
    min: float = 1.0e-10
    max: float = math.inf
    increase_factor: float = 1.25
    increase_iterations: int = 5
    reduce_factor: float = 0.8
    reduce_iterations: int = 12

    def __post_init__(self) -> None:
        """Validate bounds."""
        if not (0.0 < self.min <= self.initial <= self.max):
            raise ConfigurationError(_TIME_STEP_ERROR)

    def next_dt(self, dt: float, iterations: int) -> float:
        """Step proposed after an accepted step of size dt."""
        if iterations <= self.increase_iterations:
            dt *= self.increase_factor
        elif iterations >= self.reduce_iterations:
            dt *= self.reduce_factor
        return min(max(dt, self.min), self.max)


@dataclass(slots=True, frozen=True)
class ConservationOptions:
    """Options of a ConservationKernel.

    Attributes:
        primary_key: Solution field (cell and face components).
        conserved_key: Conserved quantity Q(u) per unit volume.
        conductivity_key: Cell conductivity K.
        source_key: Optional volumetric source S.
        top: Condition on the top face.
        bottom: Condition on the bottom face.
        modify_predictor_for_freezing: Snap predictor values that cross the
            phase-change point to just past it.
        freezing_point: Phase-change value of the primary variable.
        freezing_offset: Distance past the phase-change point after snapping.
        modify_predictor_with_consistent_faces: Recompute predictor face
            values from cell values through the face-elimination relation.
        recompute_boundary_corrections: Recompute Neumann boundary-face
            corrections from the corrected interior cell.
        correction_limit: Maximum absolute correction per iteration.
        admissible_min: Smallest admissible primary value.
        admissible_max: Largest admissible primary value.
        atol: Absolute tolerance of the error norm.
        rtol: Relative tolerance of the error norm.
        timestep: Step-size controller.
        solver: Nonlinear solver options.
    """

    primary_key: str
    conserved_key: str
    conductivity_key: str
    source_key: str | None = None
    top: BoundaryCondition = field(default_factory=BoundaryCondition)
    bottom: BoundaryCondition = field(default_factory=BoundaryCondition)
    modify_predictor_for_freezing: bool = False
    freezing_point: float = 273.15
    freezing_offset: float = 1.0e-5
    modify_predictor_with_consistent_faces: bool = False
    recompute_boundary_corrections: bool = True
    correction_limit: float | None = None
    admissible_min: float | None = None
    admissible_max: float | None = None
    atol: float = 1.0e-6
    rtol: float = 1.0e-6
    timestep: TimestepControl = field(default_factory=TimestepControl)
    solver: NonlinearSolverConfig = field(default_factory=NonlinearSolverConfig)


class ConservationKernel(PhysicalKernel):
    """Implicit kernel for dQ(u)/dt - div(K grad u) = S on a column.

    The unknown has a "cell" and a "face" component. Cell rows are

        V (Q(u) - Q(u_old)) / h + (A u - b)_c - V S

    and face rows are the operator's face rows (flux continuity and boundary
    conditions). The preconditioner is the operator with the accumulation
    derivative V dQ/du / h added to its cell diagonal, where dQ/du comes from
    the evaluation graph.
    """

    def __init__(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        options: ConservationOptions,
        **kwargs: Any,
    ) -> None:
        """Initialize.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            options: Physics and solver options.
            **kwargs: Passed to PhysicalKernel.
        """
        super().__init__(name, store, graph, **kwargs)
        self.options = options
        self.integrator = BackwardEulerIntegrator(self, options.solver)
        self._dt = options.timestep.initial
        self._operator: MixedOperator | None = None
        self._precon: MixedOperator | None = None
        self._h = 1.0

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    @property
    def primary_key(self) -> str:
        """Solution field."""
        return self.options.primary_key

    @property
    def conserved_key(self) -> str:
        """Conserved quantity field."""
        return self.options.conserved_key

    @property
    def mesh(self) -> ColumnMesh:
        """The kernel's column mesh."""
        mesh = self.store.mesh(self.mesh_name)
        if not isinstance(mesh, ColumnMesh):
            raise_invalid_kernel_config(
                kernel=self.name, detail=_NOT_COLUMN_MESH_ERROR.format(mesh=self.mesh_name)
            )
        return mesh

    @property
    def n_cells(self) -> int:
        """Number of cell unknowns."""
        return self.mesh.n_cells

    def solution(self, tag: TimeTag = TimeTag.NEW) -> TreeVector:
        """Copy of the solution at tag as a TreeVector leaf."""
        return TreeVector(self.name, self.store.get_field_data(self.primary_key, tag).copy())

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _setup(self) -> None:
        opts = self.options
        self.require_owned_field(
            opts.primary_key, {"cell": EntityKind.CELL, "face": EntityKind.FACE}
        )
        cell_keys = [opts.conserved_key, opts.conductivity_key]
        if opts.source_key is not None:
            cell_keys.append(opts.source_key)
        for key in cell_keys:
            self.store.require_field_evaluator(key, requester=self.name).set_mesh(
                self.mesh_name
            ).add_component("cell", EntityKind.CELL)
        self.store.require_field_evaluator(
            opts.conserved_key, requester=self.name, tag=TimeTag.OLD
        )

    def _initialize(self) -> None:
        super()._initialize()
        self.integrator.reset_history()
        self._dt = self.options.timestep.initial

    def get_dt(self) -> float:
        """Step proposed by the iteration-count controller."""
        return self._dt

    def set_dt(self, dt: float) -> None:
        """Restart the controller from dt."""
        self._dt = min(max(float(dt), self.options.timestep.min), self.options.timestep.max)

    def _advance(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: FBT001
        if reinit:
            self.integrator.reset_history()
        self.store.set_time(TimeTag.NEW, t_new)
        u_old = self.solution(TimeTag.OLD)
        u = u_old.copy()
        accepted = self.integrator.advance(t_old, t_new, u_old, u)
        if accepted:
            self._dt = self.options.timestep.next_dt(
                t_new - t_old, self.integrator.report.iterations
            )
        return accepted

    # ------------------------------------------------------------------
    # Implicit system
    # ------------------------------------------------------------------

    def changed_solution(self, u: TreeVector) -> None:
        """Publish the iterate as the NEW primary field."""
        self.store.set_field_data(self.primary_key, u.data, TimeTag.NEW, writer=self.name)

    def _build_operator(self) -> MixedOperator:
        k = self.graph.get_field(self.options.conductivity_key)["cell"]
        return build_column_diffusion_operator(
            self.mesh, k, top=self.options.top, bottom=self.options.bottom
        )

    def functional(
        self,
        t_old: float,
        t_new: float,
        u_old: TreeVector,  # noqa: ARG002
        u_new: TreeVector,
        f: TreeVector,
    ) -> None:
        """Residual of the backward-Euler discretization at u_new."""
        self.changed_solution(u_new)
        h = t_new - t_old
        self._h = h
        volumes = self.mesh.cell_volumes
        q_new = self.graph.get_field(self.conserved_key, TimeTag.NEW)["cell"]
        q_old = self.graph.get_field(self.conserved_key, TimeTag.OLD)["cell"]
        op = self._build_operator()
        self._operator = op
        data = u_new.data
        r_cell, r_face = op.residual(data["cell"], data["face"])
        r_cell = r_cell + volumes * (q_new - q_old) / h
        if self.options.source_key is not None:
            r_cell = r_cell - volumes * self.graph.get_field(self.options.source_key)["cell"]
        f.data["cell"][...] = r_cell
        f.data["face"][...] = r_face

    def error_norm(self, u: TreeVector, res: TreeVector) -> float:  # noqa: ARG002
        """Max over entities of h |r| / (atol V + rtol |Q| V)."""
        h = self._h
        volumes = self.mesh.cell_volumes
        q = self.graph.get_field(self.conserved_key)["cell"]
        scale_cell = self.options.atol * volumes + self.options.rtol * np.abs(q) * volumes
        enorm_cell = h * np.abs(res.data["cell"]) / scale_cell
        scale_face = self.options.atol * float(np.mean(volumes))
        enorm_face = h * np.abs(res.data["face"]) / scale_face
        local = max(float(np.max(enorm_cell)), float(np.max(enorm_face, initial=0.0)))
        return self.mesh.comm.max_all(local)

    def accumulation_derivative(self, wrt: str, h: float) -> FloatArray:
        """V d(Q)/d(wrt) / h on cells, from the evaluation graph."""
        dq = self.graph.get_derivative(self.conserved_key, wrt)["cell"]
        return self.mesh.cell_volumes * dq / h

    def update_preconditioner(self, t: float, u: TreeVector, h: float) -> None:  # noqa: ARG002
        """Operator plus accumulation derivative on the cell diagonal."""
        self.changed_solution(u)
        op = self._build_operator()
        self._operator = op
        self._precon = op.with_cell_diagonal(self.accumulation_derivative(self.primary_key, h))

    def preconditioner_operator(self) -> MixedOperator:
        """The last preconditioner built by update_preconditioner."""
        if self._precon is None:
            raise_invalid_kernel_config(kernel=self.name, detail=_NO_PRECONDITIONER_ERROR)
        return self._precon

    def preconditioner_matrix(self) -> csr_matrix:
        """Assembled preconditioner in (cells, faces) order."""
        return self.preconditioner_operator().assemble()

    def apply_preconditioner(self, r: TreeVector, pu: TreeVector) -> None:
        """Solve the preconditioner against r."""
        pc, pf = self.preconditioner_operator().apply_inverse(r.data["cell"], r.data["face"])
        pu.data["cell"][...] = pc
        pu.data["face"][...] = pf

    def face_correction(self, r_face: FloatArray, du_cell: FloatArray) -> FloatArray:
        """Face correction consistent with du_cell through the face rows."""
        return self.preconditioner_operator().update_consistent_face_correction(
            r_face, du_cell
        )

    # ------------------------------------------------------------------
    # Predictor / corrector / admissibility
    # ------------------------------------------------------------------

    def _boundary_faces(self) -> list[int]:
        mesh = self.mesh
        return [mesh.boundary_face_to_face(bf) for bf in range(2)]

    def _snap_freezing(self, old: FloatArray, new: FloatArray) -> bool:
        tf = self.options.freezing_point
        eps = self.options.freezing_offset
        freezing = (old > tf) & (new < tf)
        thawing = (old < tf) & (new > tf)
        new[freezing] = tf - eps
        new[thawing] = tf + eps
        return bool(np.any(freezing) or np.any(thawing))

    def modify_predictor(self, h: float, u_old: TreeVector, u: TreeVector) -> bool:  # noqa: ARG002
        """Freezing snap and/or consistent faces, as configured."""
        opts = self.options
        modified = False
        if opts.modify_predictor_for_freezing:
            modified |= self._snap_freezing(u_old.data["cell"], u.data["cell"])
            bfaces = self._boundary_faces()
            old_bf = u_old.data["face"][bfaces]
            new_bf = u.data["face"][bfaces].copy()
            if self._snap_freezing(old_bf, new_bf):
                u.data["face"][bfaces] = new_bf
                modified = True
        if opts.modify_predictor_with_consistent_faces:
            self.changed_solution(u)
            u.data["face"][...] = self._build_operator().update_consistent_faces(
                u.data["cell"]
            )
            modified = True
        if modified:
            logger.debug("%s: predictor modified", self.name)
        return modified

    def modify_correction(
        self,
        h: float,  # noqa: ARG002
        res: TreeVector,  # noqa: ARG002
        u: TreeVector,
        du: TreeVector,
    ) -> CorrectionResult:
        """Recompute Neumann boundary corrections, then clip to the limit."""
        opts = self.options
        if opts.recompute_boundary_corrections and self._operator is not None:
            op = self._operator
            for bc, face in zip((opts.top, opts.bottom), self._boundary_faces(), strict=True):
                if BoundaryKind(bc.kind) is not BoundaryKind.NEUMANN:
                    continue
                cell = self.mesh.face_internal_cell(face)
                a_ff = op.a_ff[face, face]
                a_fc = op.a_fc[face, cell]
                u_c_next = u.data["cell"][cell] - du.data["cell"][cell]
                u_f_next = (op.rhs_face[face] - a_fc * u_c_next) / a_ff
                du.data["face"][face] = u.data["face"][face] - u_f_next

        limit = opts.correction_limit
        if limit is None or limit <= 0.0:
            return CorrectionResult.NOT_MODIFIED
        n_limited = 0
        for _, arr in du.data.items():
            mask = np.abs(arr) > limit
            n_limited += int(np.count_nonzero(mask))
            arr[mask] = np.sign(arr[mask]) * limit
        n_limited = int(self.mesh.comm.sum_all(n_limited))
        if n_limited > 0:
            logger.info("%s: limited %d corrections to %g", self.name, n_limited, limit)
            return CorrectionResult.MODIFIED
        return CorrectionResult.NOT_MODIFIED

    def is_admissible(self, u: TreeVector) -> bool:
        """Bounds check over cells and faces, reduced across ranks."""
        lo, hi = self.options.admissible_min, self.options.admissible_max
        if lo is None and hi is None:
            return True
        comm = self.mesh.comm
        values = [arr for _, arr in u.data.items() if arr.size]
        u_min = comm.min_all(min(float(np.min(a)) for a in values))
        u_max = comm.max_all(max(float(np.max(a)) for a in values))
        if (lo is not None and u_min < lo) or (hi is not None and u_max > hi):
            logger.info(
                "%s: not admissible, %s in [%g, %g] outside bounds [%s, %s]",
                self.name,
                self.primary_key,
                u_min,
                u_max,
                lo,
                hi,
            )
            return False
        return True
