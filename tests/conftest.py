"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from collections.abc import Callable
from pathlib import Path

import pytest

from veriscopectl.config import AppConfig, load_config


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip expensive tests during mutation runs."""
    if not os.environ.get("MUTANT_UNDER_TEST"):
        return
    skip_marker = pytest.mark.skip(reason="Skipped during mutation run to avoid timeouts.")
    for item in items:
        if "mutation_timeout" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., AppConfig]:
    """Return a factory for configs rooted in ``tmp_path``."""

    def factory(**overrides: object) -> AppConfig:
        values: dict[str, object] = {
            "project_root": str(tmp_path / "veriscope"),
            "logs_dir": str(tmp_path / "logs"),
            "backups": {"root": str(tmp_path / "backups")},
        }
        values.update(overrides)
        return load_config(config_file=tmp_path / "missing.yml", env={}, overrides=values)

    return factory


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create the deployment directory layout."""
    root = tmp_path / "veriscope"
    (root / "veriscope_ta_dashboard").mkdir(parents=True)
    (root / "veriscope_ta_node").mkdir(parents=True)
    return root
