# Copyright (c) Syntropy Systems
"""Tests for configuration loading."""

import pytest
import yaml

from simstudy.config import (
    SimStudyConfig,
    find_project_dir,
    get_cache_dir,
    load_config,
    require_project_dir,
)


class TestLoadConfig:
    """Tests for config.yaml handling."""

    def test_defaults(self):
        """Test default values."""
        config = SimStudyConfig()
        assert config.seed == 123
        assert config.workers == 1
        assert config.executor == "thread"
        assert config.stream == "per_row"
        assert config.alpha == 0.05
        assert config.cache is True

    def test_load_from_project(self, simstudy_project):
        """Test values are read from the project config."""
        config_path = simstudy_project / ".simstudy" / "config.yaml"
        config_path.write_text(
            yaml.dump({"seed": 7, "workers": 4, "executor": "process", "alpha": 0.01,
                       "log_level": "info", "cache": False})
        )
        config = load_config()

        assert config.seed == 7
        assert config.workers == 4
        assert config.executor == "process"
        assert config.alpha == 0.01
        assert config.log_level == "INFO"
        assert config.cache is False

    def test_ill_typed_values_ignored(self, simstudy_project):
        """Test wrong types and out-of-range values fall back to defaults."""
        config_path = simstudy_project / ".simstudy" / "config.yaml"
        config_path.write_text(
            yaml.dump({"seed": "abc", "workers": 0, "executor": "gpu", "stream": "global",
                       "alpha": 2, "cache": "yes", "unknown": 1})
        )
        config = load_config(simstudy_project / ".simstudy")

        assert config == SimStudyConfig()

    def test_global_config(self, temp_dir, monkeypatch):
        """Test ~/.simstudy/config.yaml is used outside a project."""
        home = temp_dir / "home"
        (home / ".simstudy").mkdir(parents=True)
        (home / ".simstudy" / "config.yaml").write_text(yaml.dump({"seed": 99}))
        work = temp_dir / "work"
        work.mkdir()
        monkeypatch.setenv("HOME", str(home))
        monkeypatch.chdir(work)

        assert load_config().seed == 99


class TestProjectDir:
    """Tests for project directory discovery."""

    def test_find_walks_up(self, simstudy_project):
        """Test discovery from a nested subdirectory."""
        nested = simstudy_project / "a" / "b"
        nested.mkdir(parents=True)
        found = find_project_dir(nested)
        assert found == (simstudy_project / ".simstudy").resolve()

    def test_cache_dir(self, simstudy_project):
        """Test the cache lives inside the project directory."""
        assert get_cache_dir().name == "cache"
        assert get_cache_dir().parent.name == ".simstudy"

    def test_require_outside_project(self, temp_dir, monkeypatch):
        """Test a missing project directory is an error."""
        monkeypatch.chdir(temp_dir)

        with pytest.raises(RuntimeError, match="simstudy init"):
            require_project_dir()
