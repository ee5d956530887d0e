# src/pk_engine/variable_store.py
"""Process-wide registry of named field values at two time tags.

The store is deliberately passive: it records *requirements* during Setup,
allocates arrays once every requirement is known, and then serves versioned
reads and ownership-checked writes. It never computes anything itself; derived
quantities are produced by evaluators through the EvaluationGraph.

Lifecycle:
    1. require_field / require_field_evaluator / require_scalar (Setup, any
       number of times, idempotent; later callers may only add compatible
       detail)
    2. allocate()
    3. set_field_data / get_field_data_mutable + mark_initialized (Initialize)
    4. get_field_data reads, versioned writes, copy_tag / commit (stepping)

Versions come from one store-wide counter so that every write produces a
strictly larger version than any earlier write of any field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

import numpy as np
import numpy.typing as npt

from .errors import (
    ConfigurationError,
    raise_incompatible_field,
    raise_ownership_error,
    raise_uninitialized_field,
)
from .mesh import EntityKind
from .vectors import CompositeVector

if TYPE_CHECKING:
    from collections.abc import Iterable, Mapping

    from .mesh import MeshService

FloatArray = npt.NDArray[np.floating[Any]]

DEFAULT_MESH = "domain"

_UNKNOWN_MESH_ERROR = "Field '{key}' requires unknown mesh '{mesh}'"
_NO_COMPONENTS_ERROR = "Field '{key}' was required without any component"
_ALREADY_ALLOCATED_ERROR = "Cannot require new field '{key}' after allocation"
_FROZEN_SPEC_ERROR = "Field '{key}' shape cannot change after allocation"
_NUM_DOFS_ERROR = "num_dofs must be >= 1; got {n}"
_NOT_REQUIRED_DETAIL = "field was never required"
_NOT_ALLOCATED_DETAIL = "store has not been allocated"
_NOT_INITIALIZED_DETAIL = "field has not been initialized"
_SCALAR_NOT_REQUIRED_DETAIL = "scalar was never required"
_SCALAR_NOT_SET_DETAIL = "scalar has not been set"


class TimeTag(str, Enum):
    """Time levels at which every field is stored."""

    OLD = "old"
    NEW = "new"


@dataclass(frozen=True, slots=True)
class ComponentSpec:
    """Shape of one field component.

    Attributes:
        kind: Mesh entity kind the component lives on.
        num_dofs: Degrees of freedom per entity.
    """

    kind: EntityKind
    num_dofs: int = 1

    def __str__(self) -> str:
        return f"{EntityKind(self.kind).value}x{self.num_dofs}"


class FieldSpec:
    """Mergeable shape requirement for one field key.

    All mutators return self so requirements chain naturally:

        store.require_field("pressure", owner="flow").set_mesh("domain") \
            .add_component("cell", EntityKind.CELL, 1).set_ghosted()
    """

    def __init__(self, key: str) -> None:
        """Initialize an empty requirement for key."""
        self.key = key
        self.mesh: str | None = None
        self.components: dict[str, ComponentSpec] = {}
        self.ghosted = False
        self.owner: str | None = None
        self.requester: str | None = None
        self.io_vis = True
        self.io_checkpoint = False
        self._frozen = False

    def __repr__(self) -> str:
        return f"FieldSpec({self.key!r}, {self.describe()})"

    def describe(self) -> str:
        """Human readable shape, used in conflict messages."""
        comps = ", ".join(f"{n}:{c}" for n, c in self.components.items())
        ghost = " ghosted" if self.ghosted else ""
        return f"mesh={self.mesh} [{comps}]{ghost}"

    def _check_mutable(self) -> None:
        if self._frozen:
            raise ConfigurationError(_FROZEN_SPEC_ERROR.format(key=self.key))

    def freeze(self) -> None:
        """Forbid further shape changes (called at allocation)."""
        self._frozen = True

    def set_mesh(self, mesh: str) -> FieldSpec:
        """Require the field to live on mesh."""
        if self.mesh is None:
            self._check_mutable()
            self.mesh = mesh
        elif self.mesh != mesh:
            raise_incompatible_field(
                key=self.key,
                existing=self.describe(),
                requested=f"mesh={mesh}",
                kernel=self.requester,
            )
        return self

    def add_component(
        self,
        name: str,
        kind: EntityKind | str,
        num_dofs: int = 1,
    ) -> FieldSpec:
        """Require a component; identical re-requests are no-ops."""
        if int(num_dofs) < 1:
            raise ConfigurationError(_NUM_DOFS_ERROR.format(n=num_dofs))
        comp = ComponentSpec(EntityKind(kind), int(num_dofs))
        existing = self.components.get(name)
        if existing is None:
            self._check_mutable()
            self.components[name] = comp
        elif existing != comp:
            raise_incompatible_field(
                key=self.key,
                existing=self.describe(),
                requested=f"{name}:{comp}",
                kernel=self.requester,
            )
        return self

    def set_ghosted(self, ghosted: bool = True) -> FieldSpec:  # noqa: FBT001, FBT002
        """Require ghost entities; a ghosted requirement is never downgraded."""
        if ghosted and not self.ghosted:
            self._check_mutable()
            self.ghosted = True
        return self

    def update(self, other: FieldSpec) -> FieldSpec:
        """Merge another requirement's shape into this one."""
        if other.mesh is not None:
            self.set_mesh(other.mesh)
        for name, comp in other.components.items():
            self.add_component(name, comp.kind, comp.num_dofs)
        self.set_ghosted(other.ghosted)
        return self

    def is_compatible(self, other: FieldSpec) -> bool:
        """Return True if other's shape could be merged without conflict."""
        if self.mesh is not None and other.mesh is not None and self.mesh != other.mesh:
            return False
        return all(
            self.components.get(name, comp) == comp
            for name, comp in other.components.items()
        )


@dataclass(slots=True)
class Field:
    """Data and bookkeeping for one (key, tag) pair."""

    data: CompositeVector
    version: int = 0
    initialized: bool = False


@dataclass(slots=True)
class _Scalar:
    owner: str | None = None
    value: float | None = None
    version: int = 0


@dataclass(slots=True)
class _TagState:
    time: float = 0.0
    fields: dict[str, Field] = field(default_factory=dict)


class VariableStore:
    """Shared, explicitly passed registry of named fields."""

    def __init__(
        self,
        meshes: Mapping[str, MeshService],
        *,
        default_mesh: str = DEFAULT_MESH,
    ) -> None:
        """Initialize the store.

        Args:
            meshes: Mesh services keyed by name.
            default_mesh: Mesh used when a requirement names none.
        """
        self._meshes = dict(meshes)
        self.default_mesh = default_mesh
        self._specs: dict[str, FieldSpec] = {}
        self._evaluator_requests: dict[tuple[str, TimeTag], str | None] = {}
        self._scalars: dict[str, _Scalar] = {}
        self._tags: dict[TimeTag, _TagState] = {tag: _TagState() for tag in TimeTag}
        self._clock = 0
        self._allocated = False

    # ------------------------------------------------------------------
    # Requirements (Setup)
    # ------------------------------------------------------------------

    def require_field(
        self,
        key: str,
        owner: str | None = None,
        *,
        requester: str | None = None,
        io_vis: bool | None = None,
        io_checkpoint: bool | None = None,
    ) -> FieldSpec:
        """Require a field and return its mergeable shape spec.

        Shape conflicts raised by the returned spec name the requester, which
        defaults to the owner.

        Args:
            key: Field key.
            owner: Name of the writer that owns the field, or None if the field
                is owned by the store (forcing / independent data).
            requester: Name of the kernel or evaluator making this request.
            io_vis: Optional override for the visualization flag.
            io_checkpoint: Optional override for the checkpoint flag.

        Returns:
            The shared FieldSpec for key (mutated in place by callers).
        """
        spec = self._specs.get(key)
        if spec is None:
            if self._allocated:
                raise ConfigurationError(_ALREADY_ALLOCATED_ERROR.format(key=key))
            spec = FieldSpec(key)
            self._specs[key] = spec
        spec.requester = requester if requester is not None else owner
        if owner is not None:
            if spec.owner is None:
                spec.owner = owner
            elif spec.owner != owner:
                raise_ownership_error(key=key, owner=spec.owner, writer=owner)
        if io_vis is not None:
            spec.io_vis = bool(io_vis)
        if io_checkpoint is not None:
            spec.io_checkpoint = bool(io_checkpoint)
        return spec

    def require_field_evaluator(
        self,
        key: str,
        requester: str | None = None,
        tag: TimeTag = TimeTag.NEW,
    ) -> FieldSpec:
        """Record that an evaluator must exist for key; resolved later by name.

        Args:
            key: Field key.
            requester: Optional name of who needs it (for error messages).
            tag: Time tag the evaluator is needed at.

        Returns:
            The FieldSpec for key.
        """
        self._evaluator_requests.setdefault((key, TimeTag(tag)), requester)
        return self.require_field(key, requester=requester)

    @property
    def evaluator_requests(self) -> dict[tuple[str, TimeTag], str | None]:
        """(key, tag) pairs that need an evaluator, mapped to the first requester."""
        return dict(self._evaluator_requests)

    def require_scalar(self, key: str, owner: str | None = None) -> None:
        """Require a process-wide scalar (e.g. atmospheric pressure)."""
        scalar = self._scalars.setdefault(key, _Scalar())
        if owner is not None:
            if scalar.owner is None:
                scalar.owner = owner
            elif scalar.owner != owner:
                raise_ownership_error(key=key, owner=scalar.owner, writer=owner)

    def has_field(self, key: str) -> bool:
        """Return True if key was required."""
        return key in self._specs

    def field_spec(self, key: str) -> FieldSpec:
        """Return the spec for key."""
        spec = self._specs.get(key)
        if spec is None:
            raise_uninitialized_field(
                key=key, tag="-", detail=_NOT_REQUIRED_DETAIL
            )
        return spec

    def owner(self, key: str) -> str | None:
        """Declared owner of key."""
        return self.field_spec(key).owner

    def keys(self) -> list[str]:
        """All required field keys in requirement order."""
        return list(self._specs)

    def mesh(self, name: str | None = None) -> MeshService:
        """Return a mesh by name (default mesh if None)."""
        return self._meshes[name or self.default_mesh]

    def io_fields(self, *, checkpoint: bool = False) -> list[str]:
        """Keys flagged for visualization (or checkpointing)."""
        if checkpoint:
            return [k for k, s in self._specs.items() if s.io_checkpoint]
        return [k for k, s in self._specs.items() if s.io_vis]

    # ------------------------------------------------------------------
    # Allocation
    # ------------------------------------------------------------------

    @property
    def allocated(self) -> bool:
        """Whether allocate() has run."""
        return self._allocated

    def _allocate_one(self, spec: FieldSpec) -> CompositeVector:
        mesh_name = spec.mesh or self.default_mesh
        if mesh_name not in self._meshes:
            raise ConfigurationError(
                _UNKNOWN_MESH_ERROR.format(key=spec.key, mesh=mesh_name)
            )
        if not spec.components:
            raise ConfigurationError(_NO_COMPONENTS_ERROR.format(key=spec.key))
        mesh = self._meshes[mesh_name]
        arrays: dict[str, FloatArray] = {}
        for name, comp in spec.components.items():
            n = mesh.num_entities(comp.kind, ghosted=spec.ghosted)
            shape = (n,) if comp.num_dofs == 1 else (n, comp.num_dofs)
            arrays[name] = np.zeros(shape, dtype=np.float64)
        return CompositeVector(arrays)

    def allocate(self) -> None:
        """Allocate arrays for every required field at both tags.

        Raises:
            ConfigurationError: If a field names an unknown mesh or has no
                components.
        """
        if self._allocated:
            return
        for key, spec in self._specs.items():
            if spec.mesh is None:
                spec.set_mesh(self.default_mesh)
            for tag in TimeTag:
                self._tags[tag].fields[key] = Field(self._allocate_one(spec))
            spec.freeze()
        self._allocated = True

    # ------------------------------------------------------------------
    # Time
    # ------------------------------------------------------------------

    def time(self, tag: TimeTag = TimeTag.NEW) -> float:
        """Time associated with tag."""
        return self._tags[tag].time

    def set_time(self, tag: TimeTag, t: float) -> None:
        """Set the time associated with tag."""
        self._tags[tag].time = float(t)

    # ------------------------------------------------------------------
    # Reads / writes
    # ------------------------------------------------------------------

    def _field(self, key: str, tag: TimeTag) -> Field:
        if key not in self._specs:
            raise_uninitialized_field(key=key, tag=tag, detail=_NOT_REQUIRED_DETAIL)
        if not self._allocated:
            raise_uninitialized_field(key=key, tag=tag, detail=_NOT_ALLOCATED_DETAIL)
        return self._tags[tag].fields[key]

    def _bump(self, fld: Field) -> int:
        self._clock += 1
        fld.version = self._clock
        return fld.version

    def _check_writer(self, key: str, writer: str | None) -> None:
        owner = self._specs[key].owner
        if owner is not None and writer != owner:
            raise_ownership_error(key=key, owner=owner, writer=writer)

    def get_field_data(self, key: str, tag: TimeTag = TimeTag.NEW) -> CompositeVector:
        """Return a read-only view of an initialized field.

        Raises:
            UninitializedFieldError: If the field was never required, the store
                is not allocated, or the field is not initialized.
        """
        fld = self._field(key, tag)
        if not fld.initialized:
            raise_uninitialized_field(key=key, tag=tag, detail=_NOT_INITIALIZED_DETAIL)
        return fld.data.readonly()

    def get_field_data_mutable(
        self,
        key: str,
        tag: TimeTag = TimeTag.NEW,
        *,
        writer: str | None = None,
    ) -> CompositeVector:
        """Return the writable field data, bumping its version.

        Args:
            key: Field key.
            tag: Time tag.
            writer: Name of the writer; must match the declared owner.

        Returns:
            The live CompositeVector (writes are visible to all readers).
        """
        fld = self._field(key, tag)
        self._check_writer(key, writer)
        self._bump(fld)
        return fld.data

    def set_field_data(
        self,
        key: str,
        values: CompositeVector | Mapping[str, npt.ArrayLike],
        tag: TimeTag = TimeTag.NEW,
        *,
        writer: str | None = None,
        initialize: bool = True,
    ) -> int:
        """Copy values into a field, bump its version and mark it initialized.

        Args:
            key: Field key.
            values: Component values; missing components are left untouched.
            tag: Time tag.
            writer: Name of the writer; must match the declared owner.
            initialize: Whether to mark the field initialized.

        Returns:
            The new version of the field.
        """
        fld = self._field(key, tag)
        self._check_writer(key, writer)
        for name, arr in values.items():
            target = fld.data[name]
            target[...] = np.asarray(arr, dtype=np.float64)
        if initialize:
            fld.initialized = True
        return self._bump(fld)

    def mark_initialized(self, key: str, tag: TimeTag | None = None) -> None:
        """Mark a field initialized at tag (both tags if None)."""
        tags = list(TimeTag) if tag is None else [tag]
        for t in tags:
            self._field(key, t).initialized = True

    def is_initialized(self, key: str, tag: TimeTag = TimeTag.NEW) -> bool:
        """Whether the field holds valid data at tag."""
        if key not in self._specs or not self._allocated:
            return False
        return self._tags[tag].fields[key].initialized

    def field_version(self, key: str, tag: TimeTag = TimeTag.NEW) -> int:
        """Current version of the field at tag (0 if never written)."""
        return self._field(key, tag).version

    def uninitialized_fields(self, tag: TimeTag = TimeTag.NEW) -> list[str]:
        """Keys that are allocated but not initialized at tag."""
        return [
            k for k, f in self._tags[tag].fields.items() if not f.initialized
        ]

    def copy_tag(
        self,
        src: TimeTag,
        dst: TimeTag,
        keys: Iterable[str] | None = None,
    ) -> None:
        """Copy initialized fields from src to dst, bumping dst versions."""
        selected = list(self._specs) if keys is None else list(keys)
        for key in selected:
            src_fld = self._field(key, src)
            if not src_fld.initialized:
                continue
            dst_fld = self._field(key, dst)
            dst_fld.data.assign(src_fld.data)
            dst_fld.initialized = True
            self._bump(dst_fld)
        self._tags[dst].time = self._tags[src].time

    def commit(self, keys: Iterable[str], t_new: float | None = None) -> None:
        """Promote NEW to OLD for keys and advance the OLD time."""
        for key in keys:
            src_fld = self._field(key, TimeTag.NEW)
            if not src_fld.initialized:
                continue
            dst_fld = self._field(key, TimeTag.OLD)
            dst_fld.data.assign(src_fld.data)
            dst_fld.initialized = True
            self._bump(dst_fld)
        self._tags[TimeTag.OLD].time = (
            self._tags[TimeTag.NEW].time if t_new is None else float(t_new)
        )

    # ------------------------------------------------------------------
    # Scalars
    # ------------------------------------------------------------------

    def set_scalar(self, key: str, value: float, *, writer: str | None = None) -> None:
        """Set a required scalar."""
        scalar = self._scalars.get(key)
        if scalar is None:
            raise_uninitialized_field(
                key=key, tag="scalar", detail=_SCALAR_NOT_REQUIRED_DETAIL
            )
        if scalar.owner is not None and writer != scalar.owner:
            raise_ownership_error(key=key, owner=scalar.owner, writer=writer)
        scalar.value = float(value)
        self._clock += 1
        scalar.version = self._clock

    def get_scalar(self, key: str) -> float:
        """Read a required, set scalar."""
        scalar = self._scalars.get(key)
        if scalar is None:
            raise_uninitialized_field(
                key=key, tag="scalar", detail=_SCALAR_NOT_REQUIRED_DETAIL
            )
        if scalar.value is None:
            raise_uninitialized_field(
                key=key, tag="scalar", detail=_SCALAR_NOT_SET_DETAIL
            )
        return float(scalar.value)
