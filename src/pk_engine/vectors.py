# src/pk_engine/vectors.py
"""Composite and tree-structured vectors for field data and solutions.

A CompositeVector holds one NumPy array per named component (e.g. "cell",
"face", "boundary_face"). A TreeVector nests CompositeVectors following the
process-kernel tree so that a composite kernel's unknown is the concatenation of
its children's unknowns.

Flattening contract:
    - CompositeVector.to_array concatenates components in insertion order,
      or with the names given in `order` first.
    - TreeVector.to_array concatenates its own data (if any) then each
      subvector, in declaration order.
    - set_from_array is the exact inverse of to_array.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping, Sequence
from typing import Any

import numpy as np
import numpy.typing as npt

FloatArray = npt.NDArray[np.floating[Any]]

_COMPONENT_UNKNOWN_ERROR = "Unknown component '{name}'; available: {available}"
_COMPONENT_SHAPE_ERROR = (
    "Component '{name}' shape {actual} does not match expected {expected}"
)
_FLAT_SIZE_ERROR = "Flat array has size {actual}; expected {expected}"
_TREE_STRUCTURE_ERROR = "TreeVector structures do not match"
_TREE_EMPTY_ERROR = "TreeVector has neither data nor subvectors"


class CompositeVector:
    """Ordered collection of named component arrays."""

    __slots__ = ("_components",)

    def __init__(self, components: Mapping[str, npt.ArrayLike]) -> None:
        """Initialize from a mapping of component name to array.

        Args:
            components: Component arrays; they are stored as float arrays
                without copying when already float64.
        """
        self._components: dict[str, FloatArray] = {
            str(name): np.asarray(arr, dtype=np.float64)
            for name, arr in components.items()
        }

    @classmethod
    def zeros_like(cls, other: CompositeVector) -> CompositeVector:
        """Return a zero vector with the same components and shapes."""
        return cls({name: np.zeros_like(arr) for name, arr in other.items()})

    # ------------------------------------------------------------------
    # Mapping-like access
    # ------------------------------------------------------------------

    def __getitem__(self, name: str) -> FloatArray:
        try:
            return self._components[name]
        except KeyError as exc:
            raise KeyError(
                _COMPONENT_UNKNOWN_ERROR.format(
                    name=name, available=list(self._components)
                )
            ) from exc

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __iter__(self) -> Iterator[str]:
        return iter(self._components)

    def __len__(self) -> int:
        return len(self._components)

    def __repr__(self) -> str:
        shapes = {name: arr.shape for name, arr in self._components.items()}
        return f"CompositeVector({shapes})"

    @property
    def component_names(self) -> tuple[str, ...]:
        """Component names in insertion order."""
        return tuple(self._components)

    def has_component(self, name: str) -> bool:
        """Return True if the component exists."""
        return name in self._components

    def items(self) -> Iterator[tuple[str, FloatArray]]:
        """Iterate over (name, array) pairs."""
        return iter(self._components.items())

    @property
    def size(self) -> int:
        """Total number of scalar entries across components."""
        return int(sum(arr.size for arr in self._components.values()))

    # ------------------------------------------------------------------
    # Copies / views
    # ------------------------------------------------------------------

    def copy(self) -> CompositeVector:
        """Deep copy."""
        return CompositeVector({k: v.copy() for k, v in self._components.items()})

    def readonly(self) -> CompositeVector:
        """Return a view whose arrays reject writes."""
        views: dict[str, FloatArray] = {}
        for name, arr in self._components.items():
            view = arr.view()
            view.flags.writeable = False
            views[name] = view
        return CompositeVector(views)

    def assign(self, other: CompositeVector) -> None:
        """Copy other's values into self in place."""
        for name, arr in self._components.items():
            src = other[name]
            if src.shape != arr.shape:
                raise ValueError(
                    _COMPONENT_SHAPE_ERROR.format(
                        name=name, actual=src.shape, expected=arr.shape
                    )
                )
            np.copyto(arr, src)

    # ------------------------------------------------------------------
    # Linear algebra
    # ------------------------------------------------------------------

    def put_scalar(self, value: float) -> None:
        """Set every entry to value."""
        for arr in self._components.values():
            arr.fill(value)

    def update(self, alpha: float, other: CompositeVector, beta: float) -> None:
        """self <- alpha * other + beta * self."""
        for name, arr in self._components.items():
            arr *= beta
            arr += alpha * other[name]

    def norm_inf(self) -> float:
        """Max absolute entry (0.0 for an empty vector)."""
        vals = [float(np.max(np.abs(a))) for a in self._components.values() if a.size]
        return max(vals, default=0.0)

    def dot(self, other: CompositeVector) -> float:
        """Euclidean inner product."""
        return float(
            sum(np.vdot(arr, other[name]) for name, arr in self._components.items())
        )

    def ordered_names(self, order: Sequence[str] | None = None) -> list[str]:
        """Component names with those listed in order first.

        Names in order that the vector does not hold are skipped; the
        remaining components follow in insertion order.
        """
        if order is None:
            return list(self._components)
        first = [name for name in order if name in self._components]
        return first + [name for name in self._components if name not in first]

    def to_array(self, order: Sequence[str] | None = None) -> FloatArray:
        """Flatten into a 1D array, by default in insertion order."""
        if not self._components:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate(
            [self._components[name].ravel() for name in self.ordered_names(order)]
        )

    def set_from_array(
        self, flat: npt.ArrayLike, order: Sequence[str] | None = None
    ) -> None:
        """Inverse of to_array with the same order, writing in place."""
        flat_arr = np.asarray(flat, dtype=np.float64).ravel()
        if flat_arr.size != self.size:
            raise ValueError(
                _FLAT_SIZE_ERROR.format(actual=flat_arr.size, expected=self.size)
            )
        offset = 0
        for name in self.ordered_names(order):
            arr = self._components[name]
            n = arr.size
            arr.reshape(-1)[...] = flat_arr[offset : offset + n]
            offset += n


class TreeVector:
    """Nested vector following the process-kernel tree."""

    __slots__ = ("data", "name", "subvectors")

    def __init__(
        self,
        name: str,
        data: CompositeVector | None = None,
        subvectors: list[TreeVector] | None = None,
    ) -> None:
        """Initialize a tree node.

        Args:
            name: Name of the kernel this node belongs to.
            data: Leaf data, or None for an interior node.
            subvectors: Child nodes in declaration order.
        """
        self.name = name
        self.data = data
        self.subvectors: list[TreeVector] = list(subvectors or [])
        if self.data is None and not self.subvectors:
            raise ValueError(_TREE_EMPTY_ERROR)

    def __repr__(self) -> str:
        return (
            f"TreeVector(name={self.name!r}, data={self.data!r}, "
            f"subvectors={self.subvectors!r})"
        )

    def sub_vector(self, index: int) -> TreeVector:
        """Return the child node at index."""
        return self.subvectors[index]

    def _nodes(self) -> Iterator[CompositeVector]:
        if self.data is not None:
            yield self.data
        for sub in self.subvectors:
            yield from sub._nodes()

    def _paired(self, other: TreeVector) -> Iterator[tuple[CompositeVector, CompositeVector]]:
        mine = list(self._nodes())
        theirs = list(other._nodes())
        if len(mine) != len(theirs):
            raise ValueError(_TREE_STRUCTURE_ERROR)
        return zip(mine, theirs, strict=True)

    def copy(self) -> TreeVector:
        """Deep copy."""
        return TreeVector(
            self.name,
            None if self.data is None else self.data.copy(),
            [sub.copy() for sub in self.subvectors],
        )

    def assign(self, other: TreeVector) -> None:
        """Copy other's values into self in place."""
        for mine, theirs in self._paired(other):
            mine.assign(theirs)

    def put_scalar(self, value: float) -> None:
        """Set every entry to value."""
        for node in self._nodes():
            node.put_scalar(value)

    def update(self, alpha: float, other: TreeVector, beta: float) -> None:
        """self <- alpha * other + beta * self."""
        for mine, theirs in self._paired(other):
            mine.update(alpha, theirs, beta)

    def norm_inf(self) -> float:
        """Max absolute entry over all leaves."""
        return max((node.norm_inf() for node in self._nodes()), default=0.0)

    def dot(self, other: TreeVector) -> float:
        """Euclidean inner product over all leaves."""
        return float(sum(m.dot(t) for m, t in self._paired(other)))

    @property
    def size(self) -> int:
        """Total number of scalar entries."""
        return int(sum(node.size for node in self._nodes()))

    def to_array(self, order: Sequence[str] | None = None) -> FloatArray:
        """Flatten all leaves into a 1D array.

        Args:
            order: Component names to place first within every leaf. Used
                to match an operator's fixed layout, which may differ from
                the order components were declared in.

        Returns:
            The concatenated leaf arrays.
        """
        parts = [node.to_array(order) for node in self._nodes()]
        if not parts:
            return np.zeros(0, dtype=np.float64)
        return np.concatenate(parts)

    def set_from_array(
        self, flat: npt.ArrayLike, order: Sequence[str] | None = None
    ) -> None:
        """Inverse of to_array with the same order, writing in place."""
        flat_arr = np.asarray(flat, dtype=np.float64).ravel()
        if flat_arr.size != self.size:
            raise ValueError(
                _FLAT_SIZE_ERROR.format(actual=flat_arr.size, expected=self.size)
            )
        offset = 0
        for node in self._nodes():
            n = node.size
            node.set_from_array(flat_arr[offset : offset + n], order)
            offset += n
