# src/pk_engine/driver.py
"""Top-level time-stepping loop around one process kernel.

Coordinator owns the outer protocol every kernel tree is run with:

    setup()       kernel Setup, evaluator compatibility, store allocation
    initialize()  kernel Initialize, then every requested field is evaluated
                  once and checked for initialization
    advance(t)    get_dt / advance_step / commit_step until t is reached,
                  retrying rejected steps with a reduced dt

A rejected step is retried from the committed OLD state: owned fields are
copied OLD -> NEW before every attempt, so no partial iterate survives a
rejection.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from .errors import ConfigurationError, InitializationError, raise_non_convergence
from .variable_store import TimeTag

if TYPE_CHECKING:
    from .graph import EvaluationGraph
    from .pk import ProcessKernel
    from .variable_store import VariableStore

logger = logging.getLogger(__name__)

Observer = Callable[["VariableStore", float], None]

_RETRIES_ERROR = "max_retries must be >= 0; got {n}"
_REDUCTION_ERROR = "dt_reduction_factor must be in (0, 1); got {value}"
_DT_MIN_ERROR = "dt_min must be >= 0; got {value}"
_UNINITIALIZED_ERROR = "Fields not initialized after Initialize: {keys}"
_NOT_SETUP_ERROR = "Coordinator.setup() must run before initialize()"
_NOT_INITIALIZED_ERROR = "Coordinator.initialize() must run before advance()"
_TIMES_INCREASING_ERROR = "Output times must be strictly increasing"
_BAD_DT_ERROR = "Kernel '{kernel}' proposed a non-positive step dt={dt!r}"

# Relative tolerance when deciding that t_end has been reached.
_TIME_EPS = 1e-12


@dataclass(slots=True, frozen=True)
class StepControlConfig:
    """Step-rejection policy of the driver loop.

    Attributes:
        max_retries: Rejected attempts tolerated per step.
        dt_reduction_factor: Multiplier applied to dt after a rejection.
        dt_min: Abort when a retry would use a smaller step.
    """

    max_retries: int = 10
    dt_reduction_factor: float = 0.5
    dt_min: float = 0.0

    def __post_init__(self) -> None:
        """Validate."""
        if self.max_retries < 0:
            raise ConfigurationError(_RETRIES_ERROR.format(n=self.max_retries))
        if not (0.0 < self.dt_reduction_factor < 1.0):
            raise ConfigurationError(
                _REDUCTION_ERROR.format(value=self.dt_reduction_factor)
            )
        if self.dt_min < 0.0:
            raise ConfigurationError(_DT_MIN_ERROR.format(value=self.dt_min))


class Coordinator:
    """Drives one (possibly composite) kernel through time."""

    def __init__(
        self,
        pk: ProcessKernel,
        store: VariableStore,
        graph: EvaluationGraph,
        config: StepControlConfig | None = None,
    ) -> None:
        """Initialize.

        Args:
            pk: Top-level kernel.
            store: Shared variable store.
            graph: Shared evaluation graph.
            config: Step-rejection policy.
        """
        self.pk = pk
        self.store = store
        self.graph = graph
        self.config = config or StepControlConfig()
        self.steps_taken = 0
        self.rejections = 0
        self._observers: list[Observer] = []
        self._is_setup = False
        self._is_initialized = False

    @property
    def time(self) -> float:
        """Time of the last committed state."""
        return self.store.time(TimeTag.OLD)

    def add_observer(self, observer: Observer) -> None:
        """Call observer(store, t) after every committed step."""
        self._observers.append(observer)

    # ------------------------------------------------------------------
    # Setup / Initialize
    # ------------------------------------------------------------------

    def setup(self) -> None:
        """Declare, resolve and allocate every field."""
        self.pk.setup()
        self.graph.ensure_all_compatibility()
        self.store.allocate()
        self._is_setup = True
        logger.info(
            "Set up kernel '%s' with %d fields", self.pk.name, len(self.store.keys())
        )

    def initialize(self, t0: float = 0.0) -> None:
        """Initialize the kernel at t0 and check every field holds data.

        Args:
            t0: Start time.

        Raises:
            InitializationError: If setup() did not run or a field is still
                uninitialized after every evaluator was updated.
        """
        if not self._is_setup:
            raise InitializationError(_NOT_SETUP_ERROR)
        for tag in TimeTag:
            self.store.set_time(tag, t0)
        self.pk.initialize()
        for key, tag in self.store.evaluator_requests:
            self.graph.update(key, tag)
        missing = self.store.uninitialized_fields(TimeTag.NEW)
        if missing:
            raise InitializationError(_UNINITIALIZED_ERROR.format(keys=missing))
        self._is_initialized = True
        logger.info("Initialized kernel '%s' at t=%g", self.pk.name, t0)

    # ------------------------------------------------------------------
    # Stepping
    # ------------------------------------------------------------------

    def _attempt(self, t_old: float, t_new: float, reinit: bool) -> bool:  # noqa: FBT001
        self.store.copy_tag(TimeTag.OLD, TimeTag.NEW, keys=self.pk.owned_keys())
        self.store.set_time(TimeTag.NEW, t_new)
        return self.pk.advance_step(t_old, t_new, reinit)

    def step(self, t_end: float | None = None) -> float:
        """Take one accepted step, retrying rejected attempts.

        Args:
            t_end: Optional time the step must not overshoot.

        Raises:
            NonConvergenceError: After max_retries rejected attempts, or when
                a retry would fall below dt_min.

        Returns:
            The new committed time.
        """
        cfg = self.config
        t_old = self.time
        dt = float(self.pk.get_dt())
        if not (dt > 0.0 and np.isfinite(dt)):
            raise ConfigurationError(_BAD_DT_ERROR.format(kernel=self.pk.name, dt=dt))
        if t_end is not None:
            dt = min(dt, t_end - t_old)

        rejected = 0
        while True:
            t_new = t_old + dt
            if self._attempt(t_old, t_new, reinit=rejected > 0):
                break
            rejected += 1
            self.rejections += 1
            logger.warning(
                "Kernel '%s' rejected step t=%g, dt=%g (attempt %d)",
                self.pk.name,
                t_old,
                dt,
                rejected,
            )
            dt *= cfg.dt_reduction_factor
            if rejected > cfg.max_retries or dt < cfg.dt_min:
                raise_non_convergence(kernel=self.pk.name, t_old=t_old, dt=dt, retries=rejected)
            self.pk.set_dt(dt)

        self.pk.commit_step(t_old, t_new)
        self.store.set_time(TimeTag.OLD, t_new)
        self.steps_taken += 1
        logger.info("Kernel '%s' advanced to t=%g (dt=%g)", self.pk.name, t_new, dt)
        for observer in self._observers:
            observer(self.store, t_new)
        return t_new

    def advance(self, t_end: float) -> float:
        """Step until t_end.

        Args:
            t_end: Target time.

        Raises:
            InitializationError: If initialize() did not run.

        Returns:
            The committed time, equal to t_end.
        """
        if not self._is_initialized:
            raise InitializationError(_NOT_INITIALIZED_ERROR)
        tol = _TIME_EPS * max(abs(t_end), 1.0)
        while self.time < t_end - tol:
            self.step(t_end)
        return self.time

    def run(self, output_times: Iterable[float], observer: Observer | None = None) -> None:
        """Advance through increasing output times, calling observer at each.

        Args:
            output_times: Strictly increasing times after the current time.
            observer: Optional callback observer(store, t).

        Raises:
            ValueError: If output_times is not strictly increasing.
        """
        times = np.asarray(list(output_times), dtype=float)
        if times.size and (np.any(np.diff(times) <= 0.0) or times[0] <= self.time):
            raise ValueError(_TIMES_INCREASING_ERROR)
        for t_out in times:
            self.advance(float(t_out))
            if observer is not None:
                observer(self.store, float(t_out))
