"""Engine configuration.

Settings live in .flowrun/config.yaml under two sections:

    engine:
      execution_speed_ms: 1000
      max_delay_ms: 5000
      http_success_rate: 0.9
      messaging_success_rate: 0.95
      stop_on_error: false
      random_seed: null
    scheduler:
      fail_on_cycle: false

A missing file means defaults.
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError

from flowrun.core.errors import ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = ".flowrun"
CONFIG_FILE = "config.yaml"

DEFAULT_CONFIG_YAML = """\
# flowrun engine configuration
engine:
  # Pause between nodes during a run, in milliseconds
  execution_speed_ms: 1000
  # Longest wait a delay node simulates, in milliseconds
  max_delay_ms: 5000
  # Probability that a simulated HTTP request succeeds
  http_success_rate: 0.9
  # Probability that a simulated email or SMS is delivered
  messaging_success_rate: 0.95
  # End the run as soon as a node fails
  stop_on_error: false
  # Seed for the simulated outcomes; null means a fresh seed every run
  random_seed: null

scheduler:
  # Refuse to run a graph with a cycle instead of running the orderable part
  fail_on_cycle: false
"""


class EngineSettings(BaseModel):
    """Tunables for the run controller and node executors."""

    execution_speed_ms: int = Field(default=1000, ge=0)
    max_delay_ms: int = Field(default=5000, ge=0)
    http_success_rate: float = Field(default=0.9, ge=0.0, le=1.0)
    messaging_success_rate: float = Field(default=0.95, ge=0.0, le=1.0)
    stop_on_error: bool = False
    fail_on_cycle: bool = False
    random_seed: int | None = None


def default_config_path(repo_path: Path | None = None) -> Path:
    return (repo_path or Path.cwd()) / CONFIG_DIR / CONFIG_FILE


def load_settings(config_path: Path | None = None, repo_path: Path | None = None) -> EngineSettings:
    """Load settings from YAML, falling back to defaults when the file is absent.

    Raises:
        ConfigError: file exists but is not valid YAML or has invalid values
    """
    path = config_path or default_config_path(repo_path)
    if not path.exists():
        if config_path is not None:
            raise ConfigError(f"Config file not found: {path}")
        return EngineSettings()

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config in {path}: expected a mapping")

    engine_cfg = data.get("engine") or {}
    scheduler_cfg = data.get("scheduler") or {}
    if not isinstance(engine_cfg, dict) or not isinstance(scheduler_cfg, dict):
        raise ConfigError(f"Invalid config in {path}: 'engine' and 'scheduler' must be mappings")

    values = dict(engine_cfg)
    if "fail_on_cycle" in scheduler_cfg:
        values["fail_on_cycle"] = scheduler_cfg["fail_on_cycle"]

    try:
        settings = EngineSettings(**values)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise ConfigError(f"Invalid config in {path}: {details}") from e

    logger.debug(f"Loaded engine settings from {path}")
    return settings


def write_default_config(repo_path: Path | None = None, force: bool = False) -> Path:
    """Write the commented default config file and return its path."""
    path = default_config_path(repo_path)
    if path.exists() and not force:
        return path
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(DEFAULT_CONFIG_YAML)
    return path
