"""Build configuration management.

Configuration is loaded from a range.yaml file:
- build_root: Directory holding revision records (one hidden file per node)
- workers: Maximum number of nodes applied concurrently
- retry_*: Backoff parameters for transient collaborator failures
- lock_*: Per-record lock acquisition parameters
- tofu_dir, ssh_*: Collaborator settings

Resolution order for the config file:
1. $RANGE_DRIVER_CONFIG environment variable
2. ./range.yaml in the working directory
3. /usr/local/etc/range-driver/range.yaml
4. Built-in defaults (no file)

Relative paths in the file are resolved against the file's directory.
"""

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional

import yaml


class ConfigError(Exception):
    """Configuration error."""


CONFIG_FILENAME = 'range.yaml'
FHS_CONFIG = Path('/usr/local/etc/range-driver') / CONFIG_FILENAME

_PATH_FIELDS = {'build_root', 'tofu_dir', 'report_dir', 'ssh_key'}


@dataclass
class BuildConfig:
    """Settings passed explicitly to the build executor and its collaborators."""
    build_root: Path = field(default_factory=lambda: Path.cwd() / 'build')
    workers: int = 4
    retry_attempts: int = 3
    retry_backoff: float = 2.0
    retry_max_delay: float = 30.0
    apply_timeout: int = 1800
    lock_attempts: int = 10
    lock_interval: float = 0.5
    store_retries: int = 3
    ssh_user: str = 'root'
    ssh_key: Optional[Path] = None
    tofu_dir: Path = field(default_factory=lambda: get_base_dir() / 'tofu')
    report_dir: Optional[Path] = None
    config_file: Optional[Path] = None

    def __post_init__(self):
        for name in _PATH_FIELDS:
            value = getattr(self, name)
            if isinstance(value, str):
                setattr(self, name, Path(value))
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value is out of range
        """
        if self.workers < 1:
            raise ConfigError(f"workers must be >= 1, got {self.workers}")
        if self.retry_attempts < 1:
            raise ConfigError(f"retry_attempts must be >= 1, got {self.retry_attempts}")
        if self.lock_attempts < 1:
            raise ConfigError(f"lock_attempts must be >= 1, got {self.lock_attempts}")
        if self.store_retries < 1:
            raise ConfigError(f"store_retries must be >= 1, got {self.store_retries}")
        for name in ('retry_backoff', 'retry_max_delay', 'lock_interval'):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative")
        if self.apply_timeout <= 0:
            raise ConfigError(f"apply_timeout must be positive, got {self.apply_timeout}")

    @classmethod
    def from_dict(cls, data: dict, base_dir: Optional[Path] = None) -> 'BuildConfig':
        """Create BuildConfig from a dictionary.

        Args:
            data: Parsed range.yaml contents
            base_dir: Directory that relative paths are resolved against

        Raises:
            ConfigError: On unknown keys or invalid values
        """
        known = {f.name for f in fields(cls)} - {'config_file'}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ConfigError(f"Unknown config key(s): {', '.join(unknown)}")

        values = dict(data)
        for name in _PATH_FIELDS:
            if values.get(name) is not None:
                path = Path(os.path.expanduser(str(values[name])))
                if base_dir is not None and not path.is_absolute():
                    path = base_dir / path
                values[name] = path
        try:
            return cls(**values)
        except TypeError as e:
            raise ConfigError(f"Invalid config: {e}") from e


def _parse_yaml(path: Path) -> dict:
    """Parse a YAML file and return contents."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must be a YAML object (dict)")
    return data


def get_base_dir() -> Path:
    """Get the range-driver directory."""
    return Path(__file__).parent.parent  # src/ -> range-driver/


def find_config_file() -> Optional[Path]:
    """Discover the range.yaml config file.

    Resolution order:
    1. $RANGE_DRIVER_CONFIG environment variable
    2. ./range.yaml
    3. /usr/local/etc/range-driver/range.yaml

    Returns:
        Path to the config file, or None when no file exists
    """
    if env_path := os.environ.get('RANGE_DRIVER_CONFIG'):
        path = Path(env_path)
        if path.exists():
            return path
        raise ConfigError(f"RANGE_DRIVER_CONFIG={env_path} does not exist")

    local = Path.cwd() / CONFIG_FILENAME
    if local.exists():
        return local

    if FHS_CONFIG.exists():
        return FHS_CONFIG

    return None


def load_build_config(path: Optional[Path] = None, **overrides) -> BuildConfig:
    """Load build configuration.

    Args:
        path: Explicit config file (skips discovery)
        **overrides: Values that win over the file (e.g. CLI flags); None is ignored

    Returns:
        BuildConfig instance
    """
    if path is None:
        path = find_config_file()

    data: dict = {}
    base_dir = None
    if path is not None:
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")
        data = _parse_yaml(path)
        base_dir = path.parent

    # CLI paths are relative to the working directory, not the config file
    for key, value in overrides.items():
        if value is None:
            continue
        data[key] = Path(value).absolute() if key in _PATH_FIELDS else value
    config = BuildConfig.from_dict(data, base_dir=base_dir)
    config.config_file = path
    return config
