"""Tests for engine configuration loading."""

from pathlib import Path

import pytest
import yaml

from flowrun.config import (
    DEFAULT_CONFIG_YAML,
    EngineSettings,
    default_config_path,
    load_settings,
    write_default_config,
)
from flowrun.core.errors import ConfigError


def _write(tmp_path: Path, content: str) -> Path:
    path = tmp_path / ".flowrun" / "config.yaml"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    return path


class TestLoadSettings:
    def test_defaults_without_file(self, tmp_path):
        """A repo with no config file gets default settings."""
        settings = load_settings(repo_path=tmp_path)
        assert settings == EngineSettings()
        assert settings.execution_speed_ms == 1000
        assert settings.max_delay_ms == 5000
        assert settings.http_success_rate == 0.9
        assert settings.messaging_success_rate == 0.95

    def test_default_file_matches_defaults(self, tmp_path):
        """The commented template written by init loads as the defaults."""
        write_default_config(tmp_path)
        assert load_settings(repo_path=tmp_path) == EngineSettings()

    def test_engine_and_scheduler_sections(self, tmp_path):
        _write(
            tmp_path,
            yaml.safe_dump(
                {
                    "engine": {"execution_speed_ms": 0, "random_seed": 7, "stop_on_error": True},
                    "scheduler": {"fail_on_cycle": True},
                }
            ),
        )
        settings = load_settings(repo_path=tmp_path)
        assert settings.execution_speed_ms == 0
        assert settings.random_seed == 7
        assert settings.stop_on_error is True
        assert settings.fail_on_cycle is True

    def test_empty_file(self, tmp_path):
        _write(tmp_path, "")
        assert load_settings(repo_path=tmp_path) == EngineSettings()

    def test_explicit_missing_path_raises(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_settings(config_path=tmp_path / "nope.yaml")

    def test_invalid_yaml(self, tmp_path):
        _write(tmp_path, "engine: [broken")
        with pytest.raises(ConfigError, match="Error parsing"):
            load_settings(repo_path=tmp_path)

    def test_non_mapping(self, tmp_path):
        _write(tmp_path, "- a\n- b\n")
        with pytest.raises(ConfigError, match="expected a mapping"):
            load_settings(repo_path=tmp_path)

    def test_section_not_mapping(self, tmp_path):
        _write(tmp_path, "engine: fast\n")
        with pytest.raises(ConfigError, match="must be mappings"):
            load_settings(repo_path=tmp_path)

    @pytest.mark.parametrize(
        "engine",
        [
            {"execution_speed_ms": -1},
            {"http_success_rate": 1.5},
            {"messaging_success_rate": -0.1},
        ],
    )
    def test_out_of_range_values(self, tmp_path, engine):
        _write(tmp_path, yaml.safe_dump({"engine": engine}))
        with pytest.raises(ConfigError, match="Invalid config"):
            load_settings(repo_path=tmp_path)


class TestWriteDefaultConfig:
    def test_writes_template(self, tmp_path):
        path = write_default_config(tmp_path)
        assert path == default_config_path(tmp_path)
        assert path.read_text() == DEFAULT_CONFIG_YAML

    def test_keeps_existing_unless_forced(self, tmp_path):
        path = _write(tmp_path, "engine: {}\n")
        write_default_config(tmp_path)
        assert path.read_text() == "engine: {}\n"

        write_default_config(tmp_path, force=True)
        assert path.read_text() == DEFAULT_CONFIG_YAML
