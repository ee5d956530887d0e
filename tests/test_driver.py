# tests/test_driver.py
"""Unit tests for pk_engine.driver.

This module verifies:
- Coordinator steps to t_end without overshooting and notifies observers.
- Rejected attempts are retried smaller from the committed state.
- Retry exhaustion and dt_min raise NonConvergenceError.
- Lifecycle ordering and post-Initialize field checks.
- Output-time validation in run().
- StepControlConfig validation.
"""

from __future__ import annotations

import numpy as np
import pytest

from pk_engine.driver import Coordinator, StepControlConfig
from pk_engine.errors import ConfigurationError, InitializationError, NonConvergenceError
from pk_engine.evaluators import PrimaryVariableEvaluator
from pk_engine.graph import EvaluationGraph
from pk_engine.mesh import ColumnMesh
from pk_engine.pk import PhysicalKernel
from pk_engine.variable_store import TimeTag, VariableStore


class _ClockKernel(PhysicalKernel):
    """Owns u with du/dt = 1; optionally rejects its first attempts."""

    def __init__(self, store, graph, *, dt=0.3, reject_first=0, needs_forcing=False):
        super().__init__("clock", store, graph, initial_conditions={"u": 0.0})
        self.dt = dt
        self.reject_first = reject_first
        self.needs_forcing = needs_forcing
        self.attempts: list[tuple[float, float, bool]] = []
        self.imposed_dt: list[float] = []

    def _setup(self) -> None:
        self.require_owned_field("u", {"cell": "cell"})
        if self.needs_forcing:
            self.graph.register(PrimaryVariableEvaluator("forcing"))
            self.store.require_field_evaluator("forcing", requester=self.name).add_component(
                "cell", "cell"
            )

    def _advance(self, t_old, t_new, reinit) -> bool:
        self.attempts.append((t_old, t_new, reinit))
        u = self.store.get_field_data("u", TimeTag.NEW)["cell"]
        if len(self.attempts) <= self.reject_first:
            self.store.set_field_data("u", {"cell": [999.0]}, writer=self.name)
            return False
        self.store.set_field_data("u", {"cell": u + (t_new - t_old)}, writer=self.name)
        return True

    def get_dt(self) -> float:
        return self.dt

    def set_dt(self, dt: float) -> None:
        self.imposed_dt.append(dt)


def _make_coordinator(config: StepControlConfig | None = None, **kernel_kwargs):
    store = VariableStore({"domain": ColumnMesh(1)})
    graph = EvaluationGraph(store)
    pk = _ClockKernel(store, graph, **kernel_kwargs)
    return Coordinator(pk, store, graph, config), pk, store


def _u_old(store: VariableStore) -> float:
    return float(store.get_field_data("u", TimeTag.OLD)["cell"][0])


# -------------------------------------------------------------------
# Stepping
# -------------------------------------------------------------------


def test_advance_reaches_t_end_without_overshoot() -> None:
    """The last step is shortened to land on t_end."""
    coordinator, _, store = _make_coordinator()
    seen: list[float] = []
    coordinator.add_observer(lambda _store, t: seen.append(t))
    coordinator.setup()
    coordinator.initialize(0.0)

    t = coordinator.advance(1.0)

    assert t == pytest.approx(1.0)
    assert coordinator.steps_taken == 4
    assert coordinator.rejections == 0
    assert seen == pytest.approx([0.3, 0.6, 0.9, 1.0])
    assert _u_old(store) == pytest.approx(1.0)


def test_rejected_attempt_is_retried_from_committed_state() -> None:
    """A rejection halves dt, reinitializes, and discards the partial iterate."""
    coordinator, pk, store = _make_coordinator(reject_first=1)
    coordinator.setup()
    coordinator.initialize(0.0)

    t = coordinator.step()

    assert t == pytest.approx(0.15)
    assert coordinator.rejections == 1
    assert pk.imposed_dt == [pytest.approx(0.15)]
    assert [reinit for *_, reinit in pk.attempts] == [False, True]
    assert _u_old(store) == pytest.approx(0.15)


def test_retry_exhaustion_raises_non_convergence() -> None:
    """After max_retries rejections the driver gives up."""
    coordinator, pk, _ = _make_coordinator(
        StepControlConfig(max_retries=2), reject_first=100
    )
    coordinator.setup()
    coordinator.initialize(0.0)

    with pytest.raises(NonConvergenceError, match="after 3 rejected attempts"):
        coordinator.advance(1.0)
    assert len(pk.attempts) == 3


def test_dt_min_stops_retries() -> None:
    """A retry smaller than dt_min is not attempted."""
    coordinator, pk, _ = _make_coordinator(
        StepControlConfig(dt_min=0.2), reject_first=100
    )
    coordinator.setup()
    coordinator.initialize(0.0)

    with pytest.raises(NonConvergenceError, match="clock"):
        coordinator.step()
    assert len(pk.attempts) == 1


def test_non_positive_dt_is_a_configuration_error() -> None:
    """Kernels must propose a positive, finite step."""
    coordinator, _, _ = _make_coordinator(dt=0.0)
    coordinator.setup()
    coordinator.initialize(0.0)

    with pytest.raises(ConfigurationError, match="non-positive step"):
        coordinator.step()


# -------------------------------------------------------------------
# Lifecycle
# -------------------------------------------------------------------


def test_initialize_before_setup_raises() -> None:
    """setup() must come first."""
    coordinator, _, _ = _make_coordinator()

    with pytest.raises(InitializationError, match=r"setup\(\) must run"):
        coordinator.initialize(0.0)


def test_advance_before_initialize_raises() -> None:
    """initialize() must come before time stepping."""
    coordinator, _, _ = _make_coordinator()
    coordinator.setup()

    with pytest.raises(InitializationError, match=r"initialize\(\) must run"):
        coordinator.advance(1.0)


def test_initialize_sets_both_tag_times() -> None:
    """OLD and NEW start at t0."""
    coordinator, _, store = _make_coordinator()
    coordinator.setup()
    coordinator.initialize(5.0)

    assert coordinator.time == 5.0
    assert store.time(TimeTag.NEW) == 5.0


def test_field_left_uninitialized_is_reported() -> None:
    """A requested field nothing writes fails Initialize."""
    coordinator, _, _ = _make_coordinator(needs_forcing=True)
    coordinator.setup()

    with pytest.raises(InitializationError, match="forcing"):
        coordinator.initialize(0.0)


# -------------------------------------------------------------------
# run()
# -------------------------------------------------------------------


def test_run_calls_observer_at_output_times() -> None:
    """Each output time is hit exactly."""
    coordinator, _, store = _make_coordinator(dt=0.4)
    coordinator.setup()
    coordinator.initialize(0.0)
    outputs: list[tuple[float, float]] = []

    coordinator.run([0.5, 1.0], observer=lambda s, t: outputs.append((t, _u_old(s))))

    assert [t for t, _ in outputs] == [0.5, 1.0]
    np.testing.assert_allclose([u for _, u in outputs], [0.5, 1.0])
    assert _u_old(store) == pytest.approx(1.0)


@pytest.mark.parametrize("times", [[1.0, 0.5], [0.5, 0.5], [0.0, 1.0]])
def test_run_rejects_non_increasing_times(times: list[float]) -> None:
    """Output times must increase strictly from the current time."""
    coordinator, _, _ = _make_coordinator()
    coordinator.setup()
    coordinator.initialize(0.0)

    with pytest.raises(ValueError, match="strictly increasing"):
        coordinator.run(times)


@pytest.mark.parametrize(
    ("kwargs", "match"),
    [
        ({"max_retries": -1}, "max_retries"),
        ({"dt_reduction_factor": 1.0}, "dt_reduction_factor"),
        ({"dt_reduction_factor": 0.0}, "dt_reduction_factor"),
        ({"dt_min": -1.0}, "dt_min"),
    ],
)
def test_step_control_validation(kwargs: dict[str, float], match: str) -> None:
    """Invalid retry policies raise at construction."""
    with pytest.raises(ConfigurationError, match=match):
        StepControlConfig(**kwargs)
