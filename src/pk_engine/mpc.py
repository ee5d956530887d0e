# src/pk_engine/mpc.py
"""Composite kernels coupling several child kernels.

CompositeKernel solves its children's equations as one implicit system whose
unknown is the TreeVector concatenation of the children's unknowns. Residual,
predictor, correction and admissibility calls are delegated to the children
in declaration order; the preconditioner is selected by CouplingStrategy:

- NONE: identity.
- BLOCK_DIAGONAL: each child's own preconditioner, no cross terms.
- PICARD: the full block matrix of the children's preconditioners plus the
  declared cell-to-cell coupling terms V dQ_row/du_col / h.
- EWC: PICARD, then the EWC delegate's alternate cell correction, with the
  cell delta back-substituted into each child's face unknowns through its
  face-elimination relation.

SequentialKernel advances its children one after the other, each with its own
solver (weak coupling).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np
import numpy.typing as npt
from scipy.sparse import bmat, coo_matrix, csr_matrix

from .errors import ConfigurationError, raise_invalid_kernel_config
from .integrator import BackwardEulerIntegrator, NonlinearSolverConfig
from .operators import factorize
from .pk import CorrectionResult, KernelStage, ProcessKernel, TimestepControl
from .variable_store import TimeTag
from .vectors import TreeVector

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .ewc import EWCDelegate
    from .graph import EvaluationGraph
    from .mesh import ColumnMesh
    from .operators import MixedOperator, Solver
    from .variable_store import VariableStore

logger = logging.getLogger(__name__)

FloatArray = npt.NDArray[np.floating[Any]]

_UNKNOWN_STRATEGY_ERROR = "Invalid preconditioner type '{name}'; expected one of {known}"
_NO_CHILDREN_ERROR = "a composite kernel needs at least one child"
_DUPLICATE_CHILD_ERROR = "duplicate child kernel name '{name}'"
_UNKNOWN_CHILD_ERROR = "coupling refers to unknown child kernel '{name}'"
_NOT_IMPLICIT_ERROR = "child '{name}' does not provide an implicit system"
_NOT_LINEARIZED_ERROR = "strategy '{strategy}' needs child '{name}' to expose its operator"
_CELL_COUNT_ERROR = "coupled children '{row}' and '{column}' have different cell counts"
_EWC_DELEGATE_ERROR = "strategy 'ewc' requires an EWC delegate"
_EWC_PRIMARY_ERROR = "no child solves for EWC primary key '{key}'"
_NO_PRECONDITIONER_ERROR = "update_preconditioner has not been called"

# Block layout of preconditioner_matrix() for every linearized child.
_OPERATOR_LAYOUT = ("cell", "face")


class CouplingStrategy(str, Enum):
    """Preconditioner selection for a composite kernel."""

    NONE = "none"
    BLOCK_DIAGONAL = "block diagonal"
    PICARD = "picard"
    EWC = "ewc"

    @classmethod
    def from_name(cls, name: str | CouplingStrategy) -> CouplingStrategy:
        """Parse a configured name.

        Raises:
            ConfigurationError: If name is not one of the four strategies.
        """
        if isinstance(name, CouplingStrategy):
            return name
        try:
            return cls(name)
        except ValueError:
            known = [s.value for s in cls]
            raise ConfigurationError(
                _UNKNOWN_STRATEGY_ERROR.format(name=name, known=known)
            ) from None


@dataclass(slots=True, frozen=True)
class CellCoupling:
    """Cross term d(conserved_key)/d(wrt_key) between two children.

    Attributes:
        row: Child whose residual contains conserved_key.
        column: Child whose unknown is wrt_key.
        conserved_key: Conserved quantity in the row child's accumulation term.
        wrt_key: Primary variable of the column child.
    """

    row: str
    column: str
    conserved_key: str
    wrt_key: str


class ImplicitChild(Protocol):
    """Child kernel solved inside a composite."""

    name: str
    stage: KernelStage

    def solution(self, tag: TimeTag = TimeTag.NEW) -> TreeVector: ...
    def changed_solution(self, u: TreeVector) -> None: ...
    def functional(
        self, t_old: float, t_new: float, u_old: TreeVector, u_new: TreeVector, f: TreeVector
    ) -> None: ...
    def error_norm(self, u: TreeVector, res: TreeVector) -> float: ...
    def update_preconditioner(self, t: float, u: TreeVector, h: float) -> None: ...
    def apply_preconditioner(self, r: TreeVector, pu: TreeVector) -> None: ...
    def modify_predictor(self, h: float, u_old: TreeVector, u: TreeVector) -> bool: ...
    def modify_correction(
        self, h: float, res: TreeVector, u: TreeVector, du: TreeVector
    ) -> CorrectionResult: ...
    def is_admissible(self, u: TreeVector) -> bool: ...


@runtime_checkable
class LinearizedKernel(Protocol):
    """Child exposing its mixed operator, needed by PICARD and EWC."""

    primary_key: str
    mesh: ColumnMesh

    def preconditioner_operator(self) -> MixedOperator: ...
    def preconditioner_matrix(self) -> csr_matrix: ...
    def face_correction(self, r_face: FloatArray, du_cell: FloatArray) -> FloatArray: ...


_IMPLICIT_METHODS = (
    "solution",
    "changed_solution",
    "functional",
    "error_norm",
    "update_preconditioner",
    "apply_preconditioner",
    "modify_predictor",
    "modify_correction",
    "is_admissible",
)


class CompositeKernel(ProcessKernel):
    """Strongly coupled composite of implicit children."""

    def __init__(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        children: Sequence[ProcessKernel],
        *,
        strategy: CouplingStrategy | str = CouplingStrategy.PICARD,
        couplings: Sequence[CellCoupling] = (),
        ewc: EWCDelegate | None = None,
        solver: NonlinearSolverConfig | None = None,
        timestep: TimestepControl | None = None,
    ) -> None:
        """Initialize.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            children: Child kernels in solve and commit order.
            strategy: Preconditioner strategy or its configured name.
            couplings: Cross terms used by PICARD and EWC.
            ewc: Delegate required by the EWC strategy.
            solver: Nonlinear solver options.
            timestep: Step-size controller.

        Raises:
            ConfigurationError: On an unknown strategy or an empty child list.
        """
        super().__init__(name, store, graph)
        if not children:
            raise_invalid_kernel_config(kernel=name, detail=_NO_CHILDREN_ERROR)
        self._children: tuple[ProcessKernel, ...] = tuple(children)
        self.strategy = CouplingStrategy.from_name(strategy)
        self.couplings = tuple(couplings)
        self.ewc = ewc
        self.timestep = timestep or TimestepControl()
        self.integrator = BackwardEulerIntegrator(self, solver)
        self._dt = self.timestep.initial
        self._picard_solver: Solver | None = None
        self._u_precon: TreeVector | None = None

    @property
    def children(self) -> tuple[ProcessKernel, ...]:
        """Children in declaration order."""
        return self._children

    def _child(self, name: str) -> ProcessKernel:
        for child in self._children:
            if child.name == name:
                return child
        raise_invalid_kernel_config(kernel=self.name, detail=_UNKNOWN_CHILD_ERROR.format(name=name))

    def _index(self, name: str) -> int:
        return self._children.index(self._child(name))

    def _implicit(self, child: ProcessKernel) -> ImplicitChild:
        return child  # type: ignore[return-value]

    def _linearized(self, child: ProcessKernel) -> LinearizedKernel:
        return child  # type: ignore[return-value]

    def owned_keys(self) -> list[str]:
        """Fields owned by any child."""
        return [key for child in self._children for key in child.owned_keys()]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        names = [child.name for child in self._children]
        for name in names:
            if names.count(name) > 1:
                raise_invalid_kernel_config(
                    kernel=self.name, detail=_DUPLICATE_CHILD_ERROR.format(name=name)
                )
        for child in self._children:
            if not all(callable(getattr(child, m, None)) for m in _IMPLICIT_METHODS):
                raise_invalid_kernel_config(
                    kernel=self.name, detail=_NOT_IMPLICIT_ERROR.format(name=child.name)
                )
        needs_operator = self.strategy in {CouplingStrategy.PICARD, CouplingStrategy.EWC}
        if needs_operator:
            for child in self._children:
                if not isinstance(child, LinearizedKernel):
                    raise_invalid_kernel_config(
                        kernel=self.name,
                        detail=_NOT_LINEARIZED_ERROR.format(
                            strategy=self.strategy.value, name=child.name
                        ),
                    )
        for coupling in self.couplings:
            row = self._child(coupling.row)
            col = self._child(coupling.column)
            if needs_operator and (
                self._linearized(row).mesh.n_cells != self._linearized(col).mesh.n_cells
            ):
                raise_invalid_kernel_config(
                    kernel=self.name,
                    detail=_CELL_COUNT_ERROR.format(row=row.name, column=col.name),
                )
        if self.strategy is CouplingStrategy.EWC:
            if self.ewc is None:
                raise_invalid_kernel_config(kernel=self.name, detail=_EWC_DELEGATE_ERROR)
            for key in self.ewc.primary_keys:  # type: ignore[union-attr]
                self._ewc_child_index(key)

    def _ewc_child_index(self, primary_key: str) -> int:
        for i, child in enumerate(self._children):
            if getattr(child, "primary_key", None) == primary_key:
                return i
        raise_invalid_kernel_config(
            kernel=self.name, detail=_EWC_PRIMARY_ERROR.format(key=primary_key)
        )

    def _setup(self) -> None:
        for child in self._children:
            child.setup()
        self._validate()
        for coupling in self.couplings:
            self.store.require_field_evaluator(coupling.conserved_key, requester=self.name)
        if self.ewc is not None:
            for key in self.ewc.conserved_keys:
                self.store.require_field_evaluator(key, requester=self.name)

    def _initialize(self) -> None:
        for child in self._children:
            child.initialize()
        self.integrator.reset_history()
        self._dt = self.timestep.initial

    def get_dt(self) -> float:
        """Step proposed by the composite's controller."""
        return self._dt

    def set_dt(self, dt: float) -> None:
        """Restart the controller from dt."""
        self._dt = min(max(float(dt), self.timestep.min), self.timestep.max)

    def solution(self, tag: TimeTag = TimeTag.NEW) -> TreeVector:
        """Concatenated children's solutions at tag."""
        return TreeVector(
            self.name,
            subvectors=[self._implicit(c).solution(tag) for c in self._children],
        )

    def _advance(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: FBT001
        if reinit:
            self.integrator.reset_history()
        self.store.set_time(TimeTag.NEW, t_new)
        u_old = self.solution(TimeTag.OLD)
        u = u_old.copy()
        accepted = self.integrator.advance(t_old, t_new, u_old, u)
        for child in self._children:
            child.record_external_step(accepted=accepted)
        if accepted:
            self._dt = self.timestep.next_dt(t_new - t_old, self.integrator.report.iterations)
        logger.debug(
            "%s: step %s after %d iterations",
            self.name,
            "accepted" if accepted else "rejected",
            self.integrator.report.iterations,
        )
        return accepted

    def _commit(self, t_old: float, t_new: float) -> None:
        for child in self._children:
            child.commit_step(t_old, t_new)

    # ------------------------------------------------------------------
    # Implicit system (delegation)
    # ------------------------------------------------------------------

    def _pairs(self, *vectors: TreeVector) -> list[tuple[Any, ...]]:
        return [
            (self._implicit(child), *(v.sub_vector(i) for v in vectors))
            for i, child in enumerate(self._children)
        ]

    def changed_solution(self, u: TreeVector) -> None:
        """Publish every child's iterate."""
        for child, sub in self._pairs(u):
            child.changed_solution(sub)

    def functional(
        self,
        t_old: float,
        t_new: float,
        u_old: TreeVector,
        u_new: TreeVector,
        f: TreeVector,
    ) -> None:
        """Children's residuals, after publishing every child's iterate."""
        self.changed_solution(u_new)
        for child, sub_old, sub_new, sub_f in self._pairs(u_old, u_new, f):
            child.functional(t_old, t_new, sub_old, sub_new, sub_f)

    def error_norm(self, u: TreeVector, res: TreeVector) -> float:
        """Maximum of the children's norms."""
        return max(child.error_norm(su, sr) for child, su, sr in self._pairs(u, res))

    def modify_predictor(self, h: float, u_old: TreeVector, u: TreeVector) -> bool:
        """Children's predictor modifications, in order."""
        modified = False
        for child, sub_old, sub in self._pairs(u_old, u):
            modified |= bool(child.modify_predictor(h, sub_old, sub))
        if modified:
            self.changed_solution(u)
        return modified

    def modify_correction(
        self,
        h: float,
        res: TreeVector,
        u: TreeVector,
        du: TreeVector,
    ) -> CorrectionResult:
        """Children's correction modifications, in order."""
        result = CorrectionResult.NOT_MODIFIED
        for child, sr, su, sdu in self._pairs(res, u, du):
            result = result | child.modify_correction(h, sr, su, sdu)
        return result

    def is_admissible(self, u: TreeVector) -> bool:
        """Admissible only if every child is."""
        return all(child.is_admissible(sub) for child, sub in self._pairs(u))

    # ------------------------------------------------------------------
    # Preconditioning
    # ------------------------------------------------------------------

    def _coupling_block(self, coupling: CellCoupling, h: float) -> csr_matrix:
        row = self._linearized(self._child(coupling.row))
        col = self._linearized(self._child(coupling.column))
        n_rows = row.preconditioner_operator().size
        n_cols = col.preconditioner_operator().size
        dq = self.graph.get_derivative(coupling.conserved_key, coupling.wrt_key)["cell"]
        values = row.mesh.cell_volumes * dq / h
        cells = np.arange(values.size)
        return csr_matrix(
            coo_matrix((values, (cells, cells)), shape=(n_rows, n_cols))
        )

    def assemble_preconditioner(self, h: float) -> csr_matrix:
        """Children's preconditioners plus coupling blocks, as one matrix."""
        n = len(self._children)
        blocks: list[list[csr_matrix | None]] = [[None] * n for _ in range(n)]
        for i, child in enumerate(self._children):
            blocks[i][i] = self._linearized(child).preconditioner_matrix()
        for coupling in self.couplings:
            i, j = self._index(coupling.row), self._index(coupling.column)
            block = self._coupling_block(coupling, h)
            blocks[i][j] = block if blocks[i][j] is None else blocks[i][j] + block
        return csr_matrix(bmat(blocks))

    def update_preconditioner(self, t: float, u: TreeVector, h: float) -> None:
        """Rebuild the preconditioner for the selected strategy."""
        if self.strategy is CouplingStrategy.NONE:
            return
        self.changed_solution(u)
        for child, sub in self._pairs(u):
            child.update_preconditioner(t, sub, h)
        if self.strategy in {CouplingStrategy.PICARD, CouplingStrategy.EWC}:
            self._picard_solver = factorize(self.assemble_preconditioner(h))
        if self.strategy is CouplingStrategy.EWC:
            self.ewc.update(self.graph)  # type: ignore[union-attr]
            self._u_precon = u.copy()

    def apply_preconditioner(self, r: TreeVector, pu: TreeVector) -> None:
        """Apply the selected strategy to r."""
        strategy = self.strategy
        if strategy is CouplingStrategy.NONE:
            pu.assign(r)
            return
        if strategy is CouplingStrategy.BLOCK_DIAGONAL:
            for child, sr, spu in self._pairs(r, pu):
                child.apply_preconditioner(sr, spu)
            return
        if self._picard_solver is None:
            raise_invalid_kernel_config(kernel=self.name, detail=_NO_PRECONDITIONER_ERROR)
        flat = self._picard_solver(r.to_array(_OPERATOR_LAYOUT))
        pu.set_from_array(flat, _OPERATOR_LAYOUT)
        if strategy is CouplingStrategy.EWC:
            self._apply_ewc(pu)

    def _apply_ewc(self, pu: TreeVector) -> None:
        """Replace cell corrections by the EWC ones and fix faces accordingly."""
        delegate = self.ewc
        u = self._u_precon
        if delegate is None or u is None:
            raise_invalid_kernel_config(kernel=self.name, detail=_NO_PRECONDITIONER_ERROR)
        i1 = self._ewc_child_index(delegate.primary_keys[0])
        i2 = self._ewc_child_index(delegate.primary_keys[1])
        pu1, pu2 = pu.sub_vector(i1).data, pu.sub_vector(i2).data
        du1_alt, du2_alt = delegate.precondition(
            u.sub_vector(i1).data["cell"],
            u.sub_vector(i2).data["cell"],
            pu1["cell"],
            pu2["cell"],
        )
        for index, data, alt in ((i1, pu1, du1_alt), (i2, pu2, du2_alt)):
            delta_cell = alt - data["cell"]
            child = self._linearized(self._children[index])
            delta_face = child.face_correction(np.zeros_like(data["face"]), delta_cell)
            data["cell"][...] = alt
            data["face"][...] += delta_face


class SequentialKernel(ProcessKernel):
    """Weak coupling: children advance one after the other."""

    def __init__(
        self,
        name: str,
        store: VariableStore,
        graph: EvaluationGraph,
        children: Sequence[ProcessKernel],
    ) -> None:
        """Initialize.

        Args:
            name: Kernel name.
            store: Shared variable store.
            graph: Shared evaluation graph.
            children: Children in advance and commit order.
        """
        super().__init__(name, store, graph)
        if not children:
            raise_invalid_kernel_config(kernel=name, detail=_NO_CHILDREN_ERROR)
        self._children = tuple(children)

    @property
    def children(self) -> tuple[ProcessKernel, ...]:
        """Children in declaration order."""
        return self._children

    def owned_keys(self) -> list[str]:
        """Fields owned by any child."""
        return [key for child in self._children for key in child.owned_keys()]

    def _setup(self) -> None:
        for child in self._children:
            child.setup()

    def _initialize(self) -> None:
        for child in self._children:
            child.initialize()

    def get_dt(self) -> float:
        """Smallest step any child allows."""
        return min(child.get_dt() for child in self._children)

    def set_dt(self, dt: float) -> None:
        """Forward an imposed step to every child."""
        for child in self._children:
            child.set_dt(dt)

    def _advance(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: FBT001
        self.store.set_time(TimeTag.NEW, t_new)
        for child in self._children:
            if not child.advance_step(t_old, t_new, reinit):
                logger.debug("%s: child '%s' rejected the step", self.name, child.name)
                return False
        return True

    def _commit(self, t_old: float, t_new: float) -> None:
        for child in self._children:
            child.commit_step(t_old, t_new)
