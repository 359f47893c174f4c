"""
Tests for configuration loading — stackforge.yml parsing and path resolution.
"""

import textwrap
from pathlib import Path

import pytest

from src.core.config.loader import (
    find_config_file,
    load_config,
    resolve_cache_dir,
    resolve_state_dir,
    resolve_steps_dir,
)
from src.core.errors import ConfigError
from src.core.models.config import ForgeConfig


@pytest.fixture
def valid_config(tmp_path: Path) -> Path:
    """Create a valid stackforge.yml in a temp directory."""
    content = textwrap.dedent("""\
        version: 1
        steps_dir: bootstrap/steps
        package_manager: npm
        workers: 2
        install:
          attempts: 5
          timeout: 60
        profiles:
          web: [frontend, ui]
          api: [backend]
        env:
          NODE_ENV: development
    """)
    path = tmp_path / "stackforge.yml"
    path.write_text(content)
    return path


class TestFindConfigFile:
    def test_finds_in_current_dir(self, valid_config: Path):
        assert find_config_file(valid_config.parent) == valid_config

    def test_finds_in_parent(self, valid_config: Path):
        child = valid_config.parent / "apps" / "web"
        child.mkdir(parents=True)
        assert find_config_file(child) == valid_config

    def test_returns_none_when_absent(self, tmp_path: Path):
        assert find_config_file(tmp_path) is None


class TestLoadConfig:
    def test_load_valid(self, valid_config: Path):
        config = load_config(valid_config)
        assert config.package_manager == "npm"
        assert config.workers == 2
        assert config.install.attempts == 5
        assert config.install.base_delay == 1.0
        assert config.profile_tags("web") == {"frontend", "ui"}
        assert config.env == {"NODE_ENV": "development"}

    def test_none_gives_defaults(self):
        config = load_config(None)
        assert config == ForgeConfig()
        assert config.steps_dir == "steps"
        assert config.install.attempts == 3

    def test_empty_file_gives_defaults(self, tmp_path: Path):
        path = tmp_path / "stackforge.yml"
        path.write_text("")
        assert load_config(path) == ForgeConfig()

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(tmp_path / "nope.yml")

    def test_invalid_yaml(self, tmp_path: Path):
        path = tmp_path / "stackforge.yml"
        path.write_text("profiles: [unclosed\n")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_config(path)

    def test_not_a_mapping(self, tmp_path: Path):
        path = tmp_path / "stackforge.yml"
        path.write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(path)

    def test_invalid_values(self, tmp_path: Path):
        path = tmp_path / "stackforge.yml"
        path.write_text("package_manager: yarn\n")
        with pytest.raises(ConfigError, match="Invalid configuration"):
            load_config(path)


class TestResolveDirs:
    def test_steps_dir_relative_to_config(self, valid_config: Path, tmp_path: Path):
        config = load_config(valid_config)
        target = tmp_path / "elsewhere"
        assert resolve_steps_dir(config, valid_config, target) == (tmp_path / "bootstrap" / "steps").resolve()

    def test_steps_dir_relative_to_target_without_config(self, tmp_path: Path):
        assert resolve_steps_dir(ForgeConfig(), None, tmp_path) == (tmp_path / "steps").resolve()

    def test_state_dir(self, tmp_path: Path):
        assert resolve_state_dir(ForgeConfig(), tmp_path) == tmp_path / ".stackforge"
        absolute = tmp_path / "state"
        assert resolve_state_dir(ForgeConfig(state_dir=str(absolute)), tmp_path / "x") == absolute

    def test_cache_dir_from_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("STACKFORGE_CACHE_DIR", str(tmp_path / "pkgcache"))
        assert resolve_cache_dir(ForgeConfig()) == tmp_path / "pkgcache"

    def test_cache_dir_config_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
        monkeypatch.setenv("STACKFORGE_CACHE_DIR", str(tmp_path / "env"))
        config = ForgeConfig(cache_dir=str(tmp_path / "cfg"))
        assert resolve_cache_dir(config) == tmp_path / "cfg"
