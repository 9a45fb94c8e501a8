"""Fixtures for CLI interface tests."""

from __future__ import annotations

import os
from collections.abc import Generator
from pathlib import Path

import pytest
from click.testing import CliRunner


@pytest.fixture
def cli_in_project(idlc_project: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    """Run inside an idlc project with a ``platform`` team; yields (runner, project_root)."""
    original_cwd = os.getcwd()
    os.chdir(str(idlc_project))
    yield cli_runner, idlc_project
    os.chdir(original_cwd)


@pytest.fixture
def cli_in_empty_dir(tmp_path: Path, cli_runner: CliRunner) -> Generator[tuple[CliRunner, Path], None, None]:
    original_cwd = os.getcwd()
    os.chdir(str(tmp_path))
    yield cli_runner, tmp_path
    os.chdir(original_cwd)
