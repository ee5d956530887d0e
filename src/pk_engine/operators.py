# src/pk_engine/operators.py
"""Discrete operators on mixed (cell + face) unknowns.

A mixed discretization carries one unknown per cell and one per face. Its
linear operator has the block form

    [ A_cc  A_cf ] [ u_c ]   [ b_c ]
    [ A_fc  A_ff ] [ u_f ] = [ b_f ]

where the face rows express flux continuity (interior faces) or boundary
conditions (boundary faces). Because A_ff is cheap to invert, face unknowns
can be eliminated given cell unknowns. This "face-elimination relation" is
used to:

- derive face values consistent with cell values (predictor modification),
- back-substitute a cell correction into face corrections (EWC),
- recompute boundary corrections from interior ones (correction modification).

Design notes:
    * Blocks are CSR matrices; assembly uses scipy.sparse.bmat.
    * Factorizations are built lazily and cached on the operator instance.
      Small systems use dense LU (scipy.linalg.lu_factor), larger ones a
      sparse factorization (scipy.sparse.linalg.factorized).
    * Operators are immutable once built; adding a cell diagonal returns a
      new operator.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, TypeAlias, cast

import numpy as np
import numpy.typing as npt
from scipy.linalg import lu_factor, lu_solve
from scipy.sparse import bmat, csr_matrix, diags, issparse
from scipy.sparse.linalg import factorized as sparse_factorized

if TYPE_CHECKING:
    from collections.abc import Callable

    from .mesh import ColumnMesh

FloatArray = npt.NDArray[np.floating[Any]]
Solver: TypeAlias = "Callable[[FloatArray], FloatArray]"

# Below this size dense LU is faster than a sparse factorization.
_DISPATCH_THRESHOLD = 350

_SQUARE_ERROR = "Operator must be square; got shape {shape}"
_BLOCK_SHAPE_ERROR = "Block {name} has shape {actual}; expected {expected}"
_RHS_SHAPE_ERROR = "{name} has shape {actual}; expected ({expected},)"
_UNKNOWN_BC_ERROR = "Unknown boundary condition kind: {kind}"
_COEFFICIENT_SHAPE_ERROR = "Coefficient must have length n_cells={n}; got shape {shape}"


# =============================================================================
# Factorized solves
# =============================================================================


def factorize(matrix: csr_matrix | FloatArray) -> Solver:
    """Build a reusable solver for matrix @ x = b.

    Args:
        matrix: Square sparse or dense matrix.

    Raises:
        ValueError: If the matrix is not square.

    Returns:
        A callable mapping b (1D) to x.
    """
    shape = cast("tuple[int, int]", matrix.shape)
    if shape[0] != shape[1]:
        raise ValueError(_SQUARE_ERROR.format(shape=shape))

    if issparse(matrix) and shape[0] > _DISPATCH_THRESHOLD:
        solve = sparse_factorized(csr_matrix(matrix).tocsc())

        def sparse_solver(b: FloatArray) -> FloatArray:
            return np.asarray(solve(np.asarray(b, dtype=np.float64)), dtype=np.float64)

        return sparse_solver

    dense = matrix.toarray() if issparse(matrix) else np.asarray(matrix, dtype=np.float64)
    lu, piv = lu_factor(dense)

    def dense_solver(b: FloatArray) -> FloatArray:
        return np.asarray(lu_solve((lu, piv), np.asarray(b, dtype=np.float64)))

    return dense_solver


# =============================================================================
# Mixed operator
# =============================================================================


class MixedOperator:
    """Block operator on (cell, face) unknowns with a right-hand side."""

    def __init__(
        self,
        a_cc: csr_matrix,
        a_cf: csr_matrix,
        a_fc: csr_matrix,
        a_ff: csr_matrix,
        rhs_cell: npt.ArrayLike | None = None,
        rhs_face: npt.ArrayLike | None = None,
    ) -> None:
        """Initialize from the four blocks and optional right-hand sides.

        Args:
            a_cc: Cell-cell block (n_cells x n_cells).
            a_cf: Cell-face block (n_cells x n_faces).
            a_fc: Face-cell block (n_faces x n_cells).
            a_ff: Face-face block (n_faces x n_faces).
            rhs_cell: Cell right-hand side (zeros if None).
            rhs_face: Face right-hand side (zeros if None).

        Raises:
            ValueError: On inconsistent block shapes.
        """
        self.a_cc = csr_matrix(a_cc, dtype=np.float64)
        self.a_ff = csr_matrix(a_ff, dtype=np.float64)
        self.n_cells = int(self.a_cc.shape[0])
        self.n_faces = int(self.a_ff.shape[0])
        self.a_cf = csr_matrix(a_cf, dtype=np.float64)
        self.a_fc = csr_matrix(a_fc, dtype=np.float64)
        expected = {
            "a_cc": (self.n_cells, self.n_cells),
            "a_cf": (self.n_cells, self.n_faces),
            "a_fc": (self.n_faces, self.n_cells),
            "a_ff": (self.n_faces, self.n_faces),
        }
        for name, shape in expected.items():
            actual = getattr(self, name).shape
            if actual != shape:
                raise ValueError(
                    _BLOCK_SHAPE_ERROR.format(name=name, actual=actual, expected=shape)
                )
        self.rhs_cell = self._as_rhs(rhs_cell, self.n_cells, "rhs_cell")
        self.rhs_face = self._as_rhs(rhs_face, self.n_faces, "rhs_face")
        self._face_solver: Solver | None = None
        self._full_solver: Solver | None = None

    @staticmethod
    def _as_rhs(values: npt.ArrayLike | None, n: int, name: str) -> FloatArray:
        if values is None:
            return np.zeros(n, dtype=np.float64)
        arr = np.asarray(values, dtype=np.float64).ravel()
        if arr.shape != (n,):
            raise ValueError(_RHS_SHAPE_ERROR.format(name=name, actual=arr.shape, expected=n))
        return arr

    @property
    def size(self) -> int:
        """Total number of unknowns."""
        return self.n_cells + self.n_faces

    def assemble(self) -> csr_matrix:
        """Full block matrix in (cells, faces) order."""
        return csr_matrix(bmat([[self.a_cc, self.a_cf], [self.a_fc, self.a_ff]]))

    def with_cell_diagonal(self, diagonal: npt.ArrayLike) -> MixedOperator:
        """Return a copy with diag(diagonal) added to the cell-cell block."""
        diag = np.broadcast_to(np.asarray(diagonal, dtype=np.float64), (self.n_cells,))
        return MixedOperator(
            self.a_cc + diags(diag),
            self.a_cf,
            self.a_fc,
            self.a_ff,
            self.rhs_cell,
            self.rhs_face,
        )

    # ------------------------------------------------------------------
    # Application
    # ------------------------------------------------------------------

    def apply(self, u_cell: FloatArray, u_face: FloatArray) -> tuple[FloatArray, FloatArray]:
        """Return A u (without the right-hand side)."""
        r_cell = self.a_cc @ u_cell + self.a_cf @ u_face
        r_face = self.a_fc @ u_cell + self.a_ff @ u_face
        return np.asarray(r_cell), np.asarray(r_face)

    def residual(
        self,
        u_cell: FloatArray,
        u_face: FloatArray,
    ) -> tuple[FloatArray, FloatArray]:
        """Return A u - b."""
        r_cell, r_face = self.apply(u_cell, u_face)
        return r_cell - self.rhs_cell, r_face - self.rhs_face

    def apply_inverse(
        self,
        r_cell: FloatArray,
        r_face: FloatArray,
    ) -> tuple[FloatArray, FloatArray]:
        """Solve A x = r for the full (cell, face) system."""
        if self._full_solver is None:
            self._full_solver = factorize(self.assemble())
        x = self._full_solver(np.concatenate([np.ravel(r_cell), np.ravel(r_face)]))
        return x[: self.n_cells].copy(), x[self.n_cells :].copy()

    # ------------------------------------------------------------------
    # Face elimination
    # ------------------------------------------------------------------

    def _solve_faces(self, rhs: FloatArray) -> FloatArray:
        if self._face_solver is None:
            self._face_solver = factorize(self.a_ff)
        return self._face_solver(rhs)

    def update_consistent_faces(self, u_cell: FloatArray) -> FloatArray:
        """Face values satisfying the face rows exactly given cell values.

        Solves A_ff u_f = b_f - A_fc u_c.
        """
        return self._solve_faces(self.rhs_face - self.a_fc @ u_cell)

    def update_consistent_face_correction(
        self,
        r_face: FloatArray,
        du_cell: FloatArray,
    ) -> FloatArray:
        """Face correction consistent with a cell correction.

        Solves A_ff du_f = r_f - A_fc du_c.
        """
        return self._solve_faces(np.asarray(r_face, dtype=np.float64) - self.a_fc @ du_cell)

    def face_elimination_residual(
        self,
        u_cell: FloatArray,
        u_face: FloatArray,
        rhs_face: FloatArray | None = None,
    ) -> FloatArray:
        """A_fc u_c + A_ff u_f - rhs (rhs defaults to the operator's b_f)."""
        rhs = self.rhs_face if rhs_face is None else rhs_face
        return np.asarray(self.a_fc @ u_cell + self.a_ff @ u_face - rhs)


# =============================================================================
# Column diffusion assembly
# =============================================================================


class BoundaryKind(str, Enum):
    """Boundary condition kinds supported by the column operator."""

    DIRICHLET = "dirichlet"
    NEUMANN = "neumann"


@dataclass(frozen=True, slots=True)
class BoundaryCondition:
    """Boundary condition on one boundary face.

    Attributes:
        kind: Dirichlet (prescribed value) or Neumann (prescribed flux into
            the domain).
        value: Prescribed value or flux.
    """

    kind: BoundaryKind = BoundaryKind.NEUMANN
    value: float = 0.0

    @classmethod
    def dirichlet(cls, value: float) -> BoundaryCondition:
        """Prescribed boundary value."""
        return cls(BoundaryKind.DIRICHLET, float(value))

    @classmethod
    def neumann(cls, flux: float = 0.0) -> BoundaryCondition:
        """Prescribed inward flux (zero flux by default)."""
        return cls(BoundaryKind.NEUMANN, float(flux))


def build_column_diffusion_operator(
    mesh: ColumnMesh,
    conductivity: npt.ArrayLike,
    *,
    top: BoundaryCondition | None = None,
    bottom: BoundaryCondition | None = None,
) -> MixedOperator:
    """Assemble the mixed diffusion operator -div(K grad u) on a column.

    Each cell c exchanges flux t_c (u_c - u_f) with each of its two faces,
    where t_c = 2 K_c A / dz_c is the half-cell transmissibility. Interior face
    rows enforce flux continuity; boundary face rows enforce the boundary
    condition.

    Args:
        mesh: Column mesh.
        conductivity: Per-cell conductivity K.
        top: Condition on the top face (zero flux if None).
        bottom: Condition on the bottom face (zero flux if None).

    Raises:
        ValueError: On a malformed coefficient or unknown condition kind.

    Returns:
        The assembled MixedOperator.
    """
    n = mesh.n_cells
    k = np.asarray(conductivity, dtype=np.float64).ravel()
    if k.shape != (n,):
        raise ValueError(_COEFFICIENT_SHAPE_ERROR.format(n=n, shape=k.shape))
    trans = 2.0 * k * mesh.area / mesh.cell_thickness

    cells = np.arange(n)
    a_cc = diags(2.0 * trans)
    rows_cf = np.concatenate([cells, cells])
    cols_cf = np.concatenate([cells, cells + 1])
    vals_cf = np.concatenate([-trans, -trans])
    a_cf = csr_matrix((vals_cf, (rows_cf, cols_cf)), shape=(n, n + 1))

    a_fc = a_cf.T.tolil()
    a_ff_diag = np.zeros(n + 1)
    a_ff_diag[:-1] += trans
    a_ff_diag[1:] += trans
    a_ff = diags(a_ff_diag).tolil()
    rhs_face = np.zeros(n + 1)

    for boundary_face, bc in enumerate((top, bottom)):
        if bc is None:
            continue
        face = mesh.boundary_face_to_face(boundary_face)
        kind = BoundaryKind(bc.kind)
        if kind is BoundaryKind.DIRICHLET:
            # scaled by the adjacent transmissibility so face rows stay fluxes
            t_in = trans[mesh.face_internal_cell(face)]
            a_fc[face, :] = 0.0
            a_ff[face, face] = t_in
            rhs_face[face] = t_in * bc.value
        elif kind is BoundaryKind.NEUMANN:
            rhs_face[face] = bc.value
        else:
            raise ValueError(_UNKNOWN_BC_ERROR.format(kind=bc.kind))

    return MixedOperator(
        csr_matrix(a_cc),
        a_cf,
        csr_matrix(a_fc),
        csr_matrix(a_ff),
        rhs_cell=None,
        rhs_face=rhs_face,
    )
