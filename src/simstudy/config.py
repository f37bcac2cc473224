# Copyright (c) Syntropy Systems
"""Configuration management for simstudy."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

PROJECT_DIR_NAME = ".simstudy"
DEFAULT_SEED = 123


@dataclass
class SimStudyConfig:
    """Configuration for simstudy."""

    # Base seed when a study does not set one
    seed: int = DEFAULT_SEED

    # Parallel workers (1 = sequential)
    workers: int = 1

    # Pool used when workers > 1: thread or process
    executor: str = "thread"

    # Random stream policy: per_row or shared
    stream: str = "per_row"

    # Default significance threshold for rejection rates
    alpha: float = 0.05

    # Log level for the CLI's console handler
    log_level: str = "WARNING"

    # Reuse cached results for identical runs
    cache: bool = True

    def to_dict(self) -> dict[str, object]:
        """Plain mapping, as written by ``simstudy init``."""
        return {
            "seed": self.seed,
            "workers": self.workers,
            "executor": self.executor,
            "stream": self.stream,
            "alpha": self.alpha,
            "log_level": self.log_level,
            "cache": self.cache,
        }


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .simstudy directory by walking up from start_path.

    Returns None if no .simstudy directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def get_global_config_dir() -> Path:
    """Get the global simstudy config directory (~/.simstudy)."""
    return Path.home() / PROJECT_DIR_NAME


def _apply(config: SimStudyConfig, data: dict[str, object]) -> None:
    seed = data.get("seed")
    if isinstance(seed, int) and not isinstance(seed, bool):
        config.seed = seed
    workers = data.get("workers")
    if isinstance(workers, int) and not isinstance(workers, bool) and workers >= 1:
        config.workers = workers
    executor = data.get("executor")
    if executor in ("thread", "process"):
        config.executor = cast("str", executor)
    stream = data.get("stream")
    if stream in ("per_row", "shared"):
        config.stream = cast("str", stream)
    alpha = data.get("alpha")
    if isinstance(alpha, (int, float)) and not isinstance(alpha, bool) and 0 < alpha < 1:
        config.alpha = float(alpha)
    log_level = data.get("log_level")
    if isinstance(log_level, str):
        config.log_level = log_level.upper()
    cache = data.get("cache")
    if isinstance(cache, bool):
        config.cache = cache


def load_config(project_dir: Path | None = None) -> SimStudyConfig:
    """Load configuration from .simstudy/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .simstudy directory walking up
    3. ~/.simstudy/config.yaml
    4. Defaults

    Keys that are unknown or have the wrong type are ignored.
    """
    config = SimStudyConfig()

    config_path = None

    if project_dir is not None:
        config_path = project_dir / "config.yaml"
    else:
        found_dir = find_project_dir()
        if found_dir is not None:
            config_path = found_dir / "config.yaml"
        else:
            global_config = get_global_config_dir() / "config.yaml"
            if global_config.exists():
                config_path = global_config

    if config_path is not None and config_path.exists():
        with config_path.open() as f:
            data = cast("dict[str, object]", yaml.safe_load(f) or {})
        _apply(config, data)

    return config


def get_cache_dir(project_dir: Path | None = None) -> Path:
    """Get the path to the result cache directory."""
    if project_dir is None:
        project_dir = require_project_dir()
    return project_dir / "cache"


def require_project_dir() -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .simstudy directory found. Run 'simstudy init' first."
        raise RuntimeError(msg)
    return project_dir
