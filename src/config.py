"""Orchestrator configuration management.

Configuration is loaded from a YAML file:
- orchestrator.yaml: state location, concurrency, retry and provider settings

Resolution order for the config file:
1. Explicit path (--config)
2. $INFRA_ORCHESTRATOR_CONFIG environment variable
3. ./orchestrator.yaml in the working directory
4. Built-in defaults (no file)

Environment variables override file values:
- INFRA_STATE_PATH: state file location
- INFRA_MAX_WORKERS: apply parallelism
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from errors import OrchestratorError

DEFAULT_CONFIG_FILE = 'orchestrator.yaml'
DEFAULT_STATE_PATH = '.infra/state.json'
ON_ERROR_POLICIES = ('continue', 'stop', 'rollback')


class ConfigError(OrchestratorError):
    """Configuration error."""


@dataclass
class RetryPolicy:
    """Backoff settings for transient provider errors.

    Attributes:
        attempts: Total attempts per provider call (1 = no retry)
        base_delay: Delay before the first retry in seconds
        max_delay: Upper bound for any single delay
    """
    attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return min(self.max_delay, self.base_delay * (2 ** (attempt - 1)))

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> 'RetryPolicy':
        if not data:
            return cls()
        policy = cls(
            attempts=_as_int(data.get('attempts', 3), 'retry.attempts'),
            base_delay=_as_float(data.get('base_delay', 1.0), 'retry.base_delay'),
            max_delay=_as_float(data.get('max_delay', 30.0), 'retry.max_delay'),
        )
        if policy.attempts < 1:
            raise ConfigError("retry.attempts must be at least 1")
        if policy.base_delay < 0 or policy.max_delay < 0:
            raise ConfigError("retry delays must not be negative")
        return policy


@dataclass
class OrchestratorConfig:
    """Runtime configuration for plan/apply.

    Attributes:
        state_path: Path of the JSON state file (lock lives next to it)
        max_workers: Maximum concurrent provider operations during apply
        on_error: Failure policy (continue, stop, rollback)
        retry: Backoff policy for transient provider errors
        provider: Provider settings; 'name' selects the implementation
        config_file: File the config was loaded from, if any
    """
    state_path: Path = field(default_factory=lambda: Path(DEFAULT_STATE_PATH))
    max_workers: int = 4
    on_error: str = 'continue'
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    provider: dict = field(default_factory=lambda: {'name': 'local'})
    config_file: Optional[Path] = None

    def __post_init__(self):
        if isinstance(self.state_path, str):
            self.state_path = Path(self.state_path)
        if self.max_workers < 1:
            raise ConfigError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.on_error not in ON_ERROR_POLICIES:
            raise ConfigError(
                f"Invalid on_error '{self.on_error}'. "
                f"Expected one of: {', '.join(ON_ERROR_POLICIES)}"
            )
        if 'name' not in self.provider:
            raise ConfigError("provider section requires a 'name'")

    @classmethod
    def from_dict(cls, data: dict, config_file: Optional[Path] = None) -> 'OrchestratorConfig':
        """Build config from parsed YAML, resolving relative paths against the file."""
        base = config_file.parent if config_file else Path('.')

        state_path = Path(data.get('state_path', DEFAULT_STATE_PATH))
        if not state_path.is_absolute():
            state_path = base / state_path

        provider = dict(data.get('provider') or {'name': 'local'})
        if provider.get('path') and not Path(provider['path']).is_absolute():
            provider['path'] = str(base / provider['path'])

        return cls(
            state_path=state_path,
            max_workers=_as_int(data.get('max_workers', 4), 'max_workers'),
            on_error=data.get('on_error', 'continue'),
            retry=RetryPolicy.from_dict(data.get('retry')),
            provider=provider,
            config_file=config_file,
        )


def _as_int(value: Any, key: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {value!r}")


def _as_float(value: Any, key: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be a number, got {value!r}")


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}")
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def find_config_file(explicit: Optional[str] = None) -> Optional[Path]:
    """Discover the orchestrator config file.

    Returns:
        Path to the config file, or None when no file is configured

    Raises:
        ConfigError: If an explicitly requested file does not exist
    """
    if explicit:
        path = Path(explicit)
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        return path

    if env_path := os.environ.get('INFRA_ORCHESTRATOR_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"INFRA_ORCHESTRATOR_CONFIG={env_path} does not exist")

    local = Path.cwd() / DEFAULT_CONFIG_FILE
    if local.exists():
        return local

    return None


def load_config(path: Optional[str] = None) -> OrchestratorConfig:
    """Load orchestrator configuration with environment overrides."""
    config_file = find_config_file(path)
    data = _parse_yaml(config_file) if config_file else {}

    if state_path := os.environ.get('INFRA_STATE_PATH'):
        data['state_path'] = str(Path(state_path).absolute())
    if max_workers := os.environ.get('INFRA_MAX_WORKERS'):
        data['max_workers'] = max_workers

    return OrchestratorConfig.from_dict(data, config_file=config_file)
