# src/pk_engine/mesh.py
"""Mesh and communicator interfaces consumed by the core.

The spatial mesh and parallel decomposition are external collaborators; the
core only needs entity counts per kind (to allocate fields) and, inside
physical kernels, a little adjacency/geometry. This module defines those
narrow interfaces plus:

- ColumnMesh: a reference 1D columnar mesh (cells stacked top to bottom, one
  face above each cell plus one at the bottom), enough for the reference
  kernels and tests.
- SerialCommunicator: collective reductions for a single rank. Multi-rank
  implementations only need to provide the same three reductions; they block
  until all ranks arrive.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

import numpy as np
import numpy.typing as npt

FloatArray = npt.NDArray[np.floating[Any]]

_N_CELLS_ERROR = "ColumnMesh requires at least one cell; got {n}"
_DZ_SHAPE_ERROR = "dz must be a scalar or have length n_cells={n}; got shape {shape}"
_DZ_POSITIVE_ERROR = "dz must be strictly positive"
_UNKNOWN_KIND_ERROR = "Unknown entity kind: {kind}"
_FACE_OOB_ERROR = "Face index out of bounds: {face}"


class EntityKind(str, Enum):
    """Mesh entity kinds a field component can live on."""

    CELL = "cell"
    FACE = "face"
    BOUNDARY_FACE = "boundary_face"
    NODE = "node"


class MeshService(Protocol):
    """Minimal mesh interface required to allocate fields."""

    def num_entities(self, kind: EntityKind, *, ghosted: bool = False) -> int:
        """Return the number of entities of kind (owned, or owned+ghost)."""
        ...


class Communicator(Protocol):
    """Collective reductions used at admissibility and convergence checks."""

    def min_all(self, value: float) -> float:
        """Global minimum."""
        ...

    def max_all(self, value: float) -> float:
        """Global maximum."""
        ...

    def sum_all(self, value: float) -> float:
        """Global sum."""
        ...


class SerialCommunicator:
    """Single-rank communicator; reductions are the identity."""

    def min_all(self, value: float) -> float:
        """Global minimum on one rank."""
        return float(value)

    def max_all(self, value: float) -> float:
        """Global maximum on one rank."""
        return float(value)

    def sum_all(self, value: float) -> float:
        """Global sum on one rank."""
        return float(value)


@dataclass(slots=True)
class ColumnMesh:
    """A vertical column of cells, numbered top to bottom.

    Face f lies above cell f, and face n_cells is the bottom face, so cell c is
    bounded by faces c (top) and c + 1 (bottom). Boundary face 0 is the top
    face and boundary face 1 is the bottom face.

    Attributes:
        n_cells: Number of cells in the column.
        dz: Cell thickness, scalar or per cell.
        area: Horizontal cross-section area of every cell/face.
        z_top: Elevation of the top face.
        comm: Communicator used for collective reductions.
    """

    n_cells: int
    dz: float | FloatArray = 1.0
    area: float = 1.0
    z_top: float = 0.0
    comm: Communicator = field(default_factory=SerialCommunicator)
    _dz: FloatArray = field(init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate geometry."""
        if int(self.n_cells) < 1:
            raise ValueError(_N_CELLS_ERROR.format(n=self.n_cells))
        self.n_cells = int(self.n_cells)
        dz_arr = np.asarray(self.dz, dtype=np.float64)
        if dz_arr.ndim == 0:
            dz_arr = np.full(self.n_cells, float(dz_arr))
        if dz_arr.shape != (self.n_cells,):
            raise ValueError(
                _DZ_SHAPE_ERROR.format(n=self.n_cells, shape=dz_arr.shape)
            )
        if np.any(dz_arr <= 0.0):
            raise ValueError(_DZ_POSITIVE_ERROR)
        self._dz = dz_arr

    # ------------------------------------------------------------------
    # Counts
    # ------------------------------------------------------------------

    @property
    def n_faces(self) -> int:
        """Number of faces (n_cells + 1)."""
        return self.n_cells + 1

    def num_entities(self, kind: EntityKind, *, ghosted: bool = False) -> int:  # noqa: ARG002
        """Return entity counts; a serial column has no ghost entities.

        Args:
            kind: Entity kind.
            ghosted: Whether to include ghost entities.

        Raises:
            ValueError: If the kind is unknown.

        Returns:
            Number of entities.
        """
        kind = EntityKind(kind)
        if kind is EntityKind.CELL:
            return self.n_cells
        if kind is EntityKind.FACE:
            return self.n_faces
        if kind is EntityKind.BOUNDARY_FACE:
            return 2
        if kind is EntityKind.NODE:
            return self.n_faces
        raise ValueError(_UNKNOWN_KIND_ERROR.format(kind=kind))

    # ------------------------------------------------------------------
    # Geometry / adjacency
    # ------------------------------------------------------------------

    @property
    def cell_thickness(self) -> FloatArray:
        """Per-cell thickness dz."""
        return self._dz

    @property
    def cell_volumes(self) -> FloatArray:
        """Per-cell volume dz * area."""
        return self._dz * self.area

    @property
    def face_areas(self) -> FloatArray:
        """Per-face area."""
        return np.full(self.n_faces, float(self.area))

    @property
    def face_elevations(self) -> FloatArray:
        """Elevation of every face, top to bottom."""
        return self.z_top - np.concatenate(([0.0], np.cumsum(self._dz)))

    @property
    def cell_centroids(self) -> FloatArray:
        """Elevation of every cell centroid."""
        z_f = self.face_elevations
        return 0.5 * (z_f[:-1] + z_f[1:])

    def face_get_cells(self, face: int) -> tuple[int, ...]:
        """Cells adjacent to a face (one for boundary faces, two otherwise)."""
        if not (0 <= face <= self.n_cells):
            raise IndexError(_FACE_OOB_ERROR.format(face=face))
        return tuple(c for c in (face - 1, face) if 0 <= c < self.n_cells)

    def boundary_face_to_face(self, boundary_face: int) -> int:
        """Map a boundary-face index (0 top, 1 bottom) to its face index."""
        return 0 if boundary_face == 0 else self.n_cells

    def face_internal_cell(self, face: int) -> int:
        """The single cell adjacent to a boundary face."""
        return 0 if face == 0 else self.n_cells - 1
