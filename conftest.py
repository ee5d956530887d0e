"""Pytest configuration for the pk_engine documentation examples."""

from os import chdir
from pathlib import Path
from tempfile import mkdtemp
from typing import Any

from sybil import Sybil
from sybil.parsers.markdown import PythonCodeBlockParser, SkipParser


def documentation_setup(namespace: dict[str, Any]) -> None:  # noqa: ARG001
    """Run every documentation page from a fresh scratch directory."""
    chdir(Path(mkdtemp(prefix="pk_engine-docs-")))


pytest_collect_file = Sybil(
    parsers=[
        PythonCodeBlockParser(),
        SkipParser(),
    ],
    path=str(Path(__file__).parent / "docs"),
    pattern="**/*.md",
    setup=documentation_setup,
).pytest()
