# Copyright (c) Syntropy Systems
"""Pytest fixtures for simstudy tests."""

import os
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import yaml

# Store original cwd at module load time
_original_cwd = Path.cwd()

TWO_SAMPLE = "simstudy.procedures.two_sample"
META = "simstudy.procedures.meta"


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def simstudy_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary simstudy project directory."""
    project_dir = temp_dir / ".simstudy"
    project_dir.mkdir()
    (project_dir / "cache").mkdir()
    with (project_dir / "config.yaml").open("w") as f:
        yaml.dump({"seed": 123, "workers": 1}, f)

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def flat_study() -> dict[str, object]:
    """A small two-group study definition."""
    return {
        "name": "welch-small",
        "seed": 7,
        "grid": {
            "mode": "factorial",
            "iterations": 20,
            "axes": {
                "n_per_condition": [10, 30],
                "mean_control": 0,
                "mean_intervention": [0.0, 0.5],
                "sd_control": 1,
                "sd_intervention": 1,
            },
        },
        "generate": f"{TWO_SAMPLE}:generate_two_groups",
        "analyses": {
            "welch": f"{TWO_SAMPLE}:welch_t_test",
            "student": f"{TWO_SAMPLE}:student_t_test",
        },
        "summary": {
            "analysis": "welch",
            "truth": "mean_intervention",
            "ci": ["ci_lower", "ci_upper"],
        },
    }


@pytest.fixture
def nested_study() -> dict[str, object]:
    """A small studies-within-meta-analyses definition."""
    return {
        "name": "publication-bias",
        "seed": 11,
        "grid": {
            "iterations": 5,
            "axes": {
                "k_studies": [3, 6],
                "n_per_condition": 20,
                "mean_control": 0,
                "mean_intervention": 0.3,
                "sd_control": 1,
                "sd_intervention": 1,
            },
        },
        "generate": f"{TWO_SAMPLE}:generate_two_groups",
        "analyses": {"d": f"{TWO_SAMPLE}:cohens_d"},
        "nested": {
            "p_sig": 0.7,
            "p_nonsig": 0.05,
            "outer": {"fixed": f"{META}:fixed_effect"},
            "bias_tests": {"egger": f"{META}:egger_test"},
        },
        "summary": {"analysis": "publication", "estimate": "mean_estimate_published"},
    }


@pytest.fixture
def write_study(temp_dir: Path) -> Callable[[dict[str, object]], Path]:
    """Return a helper that writes a study definition to YAML."""

    def _write(study: dict[str, object], name: str = "study.yaml") -> Path:
        path = temp_dir / name
        with path.open("w") as f:
            yaml.dump(study, f, default_flow_style=False)
        return path

    return _write
