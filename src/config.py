"""Harness configuration management.

Configuration is loaded from a harness.yaml file:
- binary: provisioning engine executable (terraform or tofu)
- module_dir: module under test, relative to the config file
- var_files: ordered -var-file overlays (later files win)
- variables: extra inline variables
- expectations: output name -> expected value template ({run_id})
- timeouts: per-command timeouts in seconds (null waits for exit)

Resolution order for the config file:
1. Explicit path (--config)
2. $MODULE_HARNESS_CONFIG environment variable
3. ./harness.yaml
4. ./test/harness.yaml

$MODULE_HARNESS_BINARY overrides the configured binary.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

DEFAULT_REGISTRY_URL = 'https://registry.terraform.io/.well-known/terraform.json'
TIMEOUT_KEYS = ('init', 'apply', 'output', 'destroy')


class ConfigError(Exception):
    """Configuration error."""


@dataclass
class HarnessConfig:
    """Configuration for a harness run against one module."""
    config_file: Path
    module_dir: Path = field(default_factory=Path.cwd)
    binary: str = 'terraform'
    var_files: list = field(default_factory=list)
    variables: dict = field(default_factory=dict)
    expectations: dict = field(default_factory=dict)
    trust_workdir: bool = False
    state_root: Optional[Path] = None
    report_dir: Optional[Path] = None
    registry_url: str = DEFAULT_REGISTRY_URL
    timeouts: dict = field(default_factory=dict)

    def __post_init__(self):
        if isinstance(self.config_file, str):
            self.config_file = Path(self.config_file)
        if isinstance(self.module_dir, str):
            self.module_dir = Path(self.module_dir)

        if self.config_file.exists():
            self._load_from_yaml()

        if binary := os.environ.get('MODULE_HARNESS_BINARY'):
            self.binary = binary

        if self.state_root is None:
            self.state_root = get_base_dir() / '.states'
        if self.report_dir is None:
            self.report_dir = get_base_dir() / 'reports'

    @property
    def name(self) -> str:
        """Short label for logs and reports."""
        return self.module_dir.name

    def _load_from_yaml(self):
        """Load configuration from YAML, resolving paths against the file."""
        data = _parse_yaml(self.config_file)
        base = self.config_file.parent

        if module_dir := data.get('module_dir'):
            self.module_dir = (base / module_dir).resolve()
        if binary := data.get('binary'):
            self.binary = str(binary)

        var_files = data.get('var_files') or []
        if not isinstance(var_files, list):
            raise ConfigError(f"var_files must be a list in {self.config_file}")
        self.var_files = [str(f) for f in var_files]

        variables = data.get('variables') or {}
        if not isinstance(variables, dict):
            raise ConfigError(f"variables must be a mapping in {self.config_file}")
        self.variables = variables

        expectations = data.get('expectations') or {}
        if not isinstance(expectations, dict):
            raise ConfigError(f"expectations must be a mapping in {self.config_file}")
        self.expectations = {str(k): str(v) for k, v in expectations.items()}

        self.trust_workdir = bool(data.get('trust_workdir', False))

        if state_root := data.get('state_root'):
            self.state_root = (base / state_root).resolve()
        if report_dir := data.get('report_dir'):
            self.report_dir = (base / report_dir).resolve()
        if registry_url := data.get('registry_url'):
            self.registry_url = registry_url

        timeouts = data.get('timeouts') or {}
        if not isinstance(timeouts, dict):
            raise ConfigError(f"timeouts must be a mapping in {self.config_file}")
        unknown = set(timeouts) - set(TIMEOUT_KEYS)
        if unknown:
            raise ConfigError(
                f"Unknown timeout keys in {self.config_file}: {sorted(unknown)}. "
                f"Valid keys: {list(TIMEOUT_KEYS)}"
            )
        for command, value in timeouts.items():
            _check_timeout(command, value, self.config_file)
        self.timeouts = timeouts

    def get_timeout(self, command: str) -> Optional[float]:
        """Timeout in seconds for an engine command, or None to wait for exit."""
        value = self.timeouts.get(command)
        _check_timeout(command, value, self.config_file)
        return value


def _check_timeout(command: str, value, source: Path):
    """Timeouts are positive seconds or null."""
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ConfigError(
            f"Invalid timeout for {command} in {source}: {value!r} "
            f"(expected positive seconds or null)"
        )


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a mapping at top level of {path}")
    return data


def get_base_dir() -> Path:
    """Get the harness repository directory."""
    return Path(__file__).parent.parent  # src/ -> repo root


def find_config_file(explicit: Optional[Path] = None) -> Path:
    """Discover harness.yaml.

    Resolution order:
    1. Explicit path
    2. $MODULE_HARNESS_CONFIG environment variable
    3. ./harness.yaml
    4. ./test/harness.yaml
    """
    if explicit is not None:
        if explicit.exists():
            return explicit
        raise ConfigError(f"Config file not found: {explicit}")

    if env_path := os.environ.get('MODULE_HARNESS_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"MODULE_HARNESS_CONFIG={env_path} does not exist")

    for candidate in (Path.cwd() / 'harness.yaml', Path.cwd() / 'test' / 'harness.yaml'):
        if candidate.exists():
            return candidate

    raise ConfigError(
        "harness.yaml not found. "
        "Pass --config or set MODULE_HARNESS_CONFIG."
    )


def load_harness_config(path: Optional[Path] = None) -> HarnessConfig:
    """Load the harness configuration."""
    config_file = find_config_file(path)
    return HarnessConfig(config_file=config_file)
