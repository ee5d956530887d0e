# src/pk_engine/errors.py
"""Error types and standardized raise helpers for pk_engine.

This module centralizes:
- explicit error classes with actionable messages, and
- small helpers that format the offending kernel name / field key / cycle path.

Design intent:
- configuration-time errors are fatal and surface before time stepping begins
- step rejection is *not* an error; it is a boolean returned by advance_step
  and is_admissible, handled by the driver's step-control loop
- requesting a derivative outside a field's dependency closure is defined to
  be zero, so there is deliberately no "derivative undefined" error
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Final, NoReturn

if TYPE_CHECKING:
    from collections.abc import Sequence

_CYCLE_ARROW: Final[str] = " -> "


class PkEngineError(Exception):
    """Base exception for pk_engine errors."""


class ConfigurationError(PkEngineError, ValueError):
    """Raised when the kernel tree, fields, or evaluators are misconfigured."""


class InitializationError(ConfigurationError):
    """Raised when a required initial condition is absent and has no default."""


class MissingEvaluatorError(ConfigurationError, KeyError):
    """Raised when a field requires an evaluator but none is registered."""

    def __str__(self) -> str:
        # KeyError quotes its message; keep it readable.
        return str(self.args[0]) if self.args else ""


class CyclicDependencyError(ConfigurationError):
    """Raised when evaluator dependencies form a cycle."""

    def __init__(self, message: str, cycle: Sequence[str]) -> None:
        """Initialize with the message and the full cycle path.

        Args:
            message: Human readable message.
            cycle: Keys along the cycle, first key repeated at the end.
        """
        super().__init__(message)
        self.cycle = tuple(cycle)


class FieldOwnershipError(ConfigurationError):
    """Raised when a kernel writes a field it does not own."""


class UninitializedFieldError(PkEngineError, RuntimeError):
    """Raised when reading a field that was never required or initialized."""


class NonConvergenceError(PkEngineError, RuntimeError):
    """Raised when the driver exhausts its retry budget for one step."""


def raise_incompatible_field(
    *,
    key: str,
    existing: object,
    requested: object,
    kernel: str | None = None,
) -> NoReturn:
    """Raise a standardized ConfigurationError for conflicting field shapes.

    Args:
        key: Field key.
        existing: Shape already recorded for the key.
        requested: Conflicting shape requested now.
        kernel: Optional name of the kernel/evaluator making the request.

    Raises:
        ConfigurationError: Always.
    """
    msg = (
        f"Field '{key}' was required with incompatible shapes. "
        f"Existing: {existing}. Requested: {requested}."
    )
    if kernel:
        msg += f" Required by: '{kernel}'."
    raise ConfigurationError(msg)


def raise_missing_evaluator(*, key: str, requester: str | None = None) -> NoReturn:
    """Raise a standardized MissingEvaluatorError.

    Args:
        key: Field key that has no evaluator.
        requester: Optional name of the kernel/evaluator that needed it.

    Raises:
        MissingEvaluatorError: Always.
    """
    parts = [f"No evaluator registered for field '{key}'."]
    if requester:
        parts.append(f"Required by: '{requester}'.")
    raise MissingEvaluatorError(" ".join(parts))


def raise_cyclic_dependency(cycle: Sequence[str], *, kernel: str | None = None) -> NoReturn:
    """Raise a standardized CyclicDependencyError.

    Args:
        cycle: Keys along the cycle, first key repeated at the end.
        kernel: Optional name of the kernel whose request reached the cycle.

    Raises:
        CyclicDependencyError: Always.
    """
    path = _CYCLE_ARROW.join(cycle)
    msg = f"Cyclic evaluator dependency detected: {path}"
    if kernel:
        msg += f". Required by: '{kernel}'."
    raise CyclicDependencyError(msg, cycle)


def raise_uninitialized_field(*, key: str, tag: object, detail: str) -> NoReturn:
    """Raise a standardized UninitializedFieldError.

    Args:
        key: Field key.
        tag: Time tag being read.
        detail: Why the read is invalid.

    Raises:
        UninitializedFieldError: Always.
    """
    msg = f"Field '{key}' at tag {tag} cannot be read: {detail}."
    raise UninitializedFieldError(msg)


def raise_ownership_error(*, key: str, owner: str | None, writer: str | None) -> NoReturn:
    """Raise a standardized FieldOwnershipError.

    Args:
        key: Field key.
        owner: Declared owner of the field.
        writer: Name that attempted the write.

    Raises:
        FieldOwnershipError: Always.
    """
    msg = (
        f"'{writer}' attempted to write field '{key}', which is owned by "
        f"'{owner}'."
    )
    raise FieldOwnershipError(msg)


def raise_invalid_kernel_config(
    *,
    kernel: str,
    detail: str,
    key: str | None = None,
) -> NoReturn:
    """Raise a standardized ConfigurationError for a kernel.

    Args:
        kernel: Failing kernel name.
        detail: What is wrong.
        key: Optional field key involved.

    Raises:
        ConfigurationError: Always.
    """
    parts: list[str] = [f"Invalid configuration for kernel '{kernel}'."]
    if key is not None:
        parts.append(f"Field: '{key}'.")
    parts.append(f"Detail: {detail}")
    raise ConfigurationError(" ".join(parts))


def raise_missing_initial_condition(*, kernel: str, key: str) -> NoReturn:
    """Raise a standardized InitializationError.

    Args:
        kernel: Kernel that owns the field.
        key: Field lacking an initial condition.

    Raises:
        InitializationError: Always.
    """
    msg = (
        f"Kernel '{kernel}' has no initial condition for owned field '{key}' "
        "and the field has no default."
    )
    raise InitializationError(msg)


def raise_non_convergence(
    *,
    kernel: str,
    t_old: float,
    dt: float,
    retries: int,
) -> NoReturn:
    """Raise a standardized NonConvergenceError.

    Args:
        kernel: Top-level kernel name.
        t_old: Start time of the failing step.
        dt: Last attempted step size.
        retries: Number of rejected attempts.

    Raises:
        NonConvergenceError: Always.
    """
    msg = (
        f"Kernel '{kernel}' failed to advance from t={t_old!r} after "
        f"{retries} rejected attempts (last dt={dt!r})."
    )
    raise NonConvergenceError(msg)
