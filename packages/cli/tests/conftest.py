"""Pytest fixtures for CLI tests."""

import pytest
from typer.testing import CliRunner


@pytest.fixture
def cli_runner() -> CliRunner:
    """Typer test runner."""
    return CliRunner()
