"""Global pytest configuration and shared fixtures for pk_engine."""

from __future__ import annotations

import pytest

from pk_engine.graph import EvaluationGraph
from pk_engine.mesh import ColumnMesh
from pk_engine.variable_store import VariableStore

# -----------------------------------------------------------------------------
# Global markers registration safety (for local pytest runs)
# -----------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers used by the test suite."""
    config.addinivalue_line(
        "markers",
        "slow: multi-step integration runs",
    )


# -----------------------------------------------------------------------------
# Shared fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def one_cell_mesh() -> ColumnMesh:
    """A single cell with unit volume."""
    return ColumnMesh(1)


@pytest.fixture
def store(one_cell_mesh: ColumnMesh) -> VariableStore:
    """Store over the single-cell mesh."""
    return VariableStore({"domain": one_cell_mesh})


@pytest.fixture
def graph(store: VariableStore) -> EvaluationGraph:
    """Strict evaluation graph over the single-cell store."""
    return EvaluationGraph(store)
