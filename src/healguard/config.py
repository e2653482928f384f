"""Configuration loading and management for HealGuard."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from healguard.models import GovernanceConfig

# Default paths
DEFAULT_CONFIG_DIR = Path.home() / ".healguard"
DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "healguard.yaml"
DEFAULT_DB_FILE = DEFAULT_CONFIG_DIR / "healguard.db"


class ConfigError(Exception):
    """Configuration error."""

    pass


def ensure_config_dir() -> Path:
    """Ensure the config directory exists."""
    DEFAULT_CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    return DEFAULT_CONFIG_DIR


def expand_env_vars(value: str) -> str:
    """Expand environment variables in a string.

    Supports:
    - ${env:VAR_NAME} - environment variable
    - $VAR_NAME or ${VAR_NAME} - standard env var expansion
    """
    def replace_env(match: re.Match[str]) -> str:
        return os.environ.get(match.group(1), "")

    value = re.sub(r"\$\{env:([^}]+)\}", replace_env, value)
    return os.path.expandvars(value)


def _expand_tree(data: Any) -> Any:
    """Recursively expand env vars in every string of a parsed YAML tree."""
    if isinstance(data, str):
        return expand_env_vars(data)
    if isinstance(data, dict):
        return {k: _expand_tree(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_expand_tree(v) for v in data]
    return data


def load_yaml_file(path: Path) -> dict:
    """Load a YAML file."""
    if not path.exists():
        return {}

    with open(path) as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigError(f"Invalid config file {path}: expected a mapping, got {type(data).__name__}")

    return data


def load_config(config_path: Path | None = None) -> GovernanceConfig:
    """Load the main HealGuard configuration."""
    path = config_path or DEFAULT_CONFIG_FILE

    if not path.exists():
        logger.info(f"Config file not found at {path}, using defaults")
        return GovernanceConfig()

    try:
        data = _expand_tree(load_yaml_file(path))
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e

    try:
        config = GovernanceConfig.model_validate(data)
        logger.debug(f"Loaded config from {path}")
        return config
    except Exception as e:
        raise ConfigError(f"Invalid config file {path}: {e}") from e


def save_config(config: GovernanceConfig, config_path: Path | None = None) -> Path:
    """Write a configuration back to disk."""
    path = config_path or DEFAULT_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        yaml.dump(
            config.model_dump(mode="json", exclude_defaults=True),
            f,
            default_flow_style=False,
            sort_keys=False,
        )

    logger.debug(f"Saved config to {path}")
    return path


def create_default_config(config_path: Path | None = None) -> Path:
    """Create a default configuration file if none exists."""
    path = config_path or DEFAULT_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)

    if path.exists():
        return path

    default_config = """# HealGuard Configuration

environment: production
actor: healguard

rate_limit:
  max_actions: 3
  window_seconds: 60

execution:
  timeout_seconds: 30
  sandbox_timeout_seconds: 30

policy:
  critical_categories:
    - security
    - data_corruption
    - authentication
    - authorization
    - data_breach

versions:
  release: null
  golden: {}
  current: {}

alerts:
  primary: email
  secondary: sms
  dashboard: dashboard
  max_delivery_attempts: 5
  channels:
    dashboard:
      kind: dashboard
    email:
      kind: direct
      enabled: false
      url: ${env:HEALGUARD_EMAIL_RELAY}
      recipients: []
    sms:
      kind: direct
      enabled: false
      url: ${env:HEALGUARD_SMS_RELAY}
      recipients: []
    slack:
      kind: broadcast
      enabled: false
      url: ${env:HEALGUARD_SLACK_WEBHOOK}

proposals:
  base_branch: main
  branch_prefix: healguard/
  reviewers:
    - tech-lead
    - security-team
  auto_submit: true
  test_commands: {}
  github:
    enabled: false
    owner: null
    repo: null
    token: ${env:GITHUB_TOKEN}

api:
  host: 127.0.0.1
  port: 9877
  auth:
    enabled: false
    token: null
"""

    path.write_text(default_config)
    logger.info(f"Created default config at {path}")
    return path
