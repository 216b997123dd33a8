import os
import json
import tempfile
from dataclasses import dataclass, field, fields
from typing import Optional, Tuple, List

from bfrg.errors import FatalError
from bfrg.models import Destination, DestinationClass


class ConfigError(FatalError):
    """Raised when the run configuration is missing or invalid."""

    def __init__(self, message: str):
        super().__init__(message, exit_status=2)


def default_config_path() -> str:
    """Location of the per-user config file."""
    config_home = os.environ.get('XDG_CONFIG_HOME') or os.path.join('~', '.config')
    return os.path.expanduser(os.path.join(config_home, 'backup', 'bfrg', 'config.json'))


class Config:
    """Base configuration"""

    # Sources and destinations
    SOURCE_PATHS = []
    LOCAL_TARGETS = []
    REMOTE_TARGETS = []
    SYNC_TARGETS = []
    CLOUD_TARGETS = []

    # Retention (local targets only)
    ARCHIVE_CLEANUP = True
    KEEP_DAYS = 365

    # Artifact
    SELF_REPLICATE = True
    DATA_REDUNDANCY = 5  # percent, 0 disables
    ARCHIVE_PREFIX = 'keys'
    EXCLUDE_LIST = [
        'System Volume Information', '*~', '#*#', '.#*', 'tmp', '.tmp',
        '.nv', 'GPUCache', '.ccache', '.cache', '.var'
    ]
    COMPRESSOR_CMD = 'xz'
    COMPRESSOR_OPT = '-q -9e --threads=0 -v'
    CIPHER_ALGO = 'AES256'
    DIGEST_ALGO = 'SHA512'
    S2K_COUNT = 65011712
    PASSPHRASE_FILE = None

    # Workspace
    # SAFE_TMP should point to an encrypted or volatile location
    SAFE_TMP = os.environ.get('BFRG_SAFE_TMP') or tempfile.gettempdir()
    SAFE_DELETE = True

    # Escalation
    NON_INTERACTIVE = os.environ.get('BFRG_NON_INTERACTIVE', 'false').lower() == 'true'
    ABORT_ON_ERROR = os.environ.get('BFRG_ABORT_ON_ERROR', 'false').lower() == 'true'

    # Cloud dispatch
    CLOUD_TASKS = 4

    # Logging
    VERBOSE = True
    LOG_FILE = os.environ.get('BFRG_LOG_FILE')


class InteractiveConfig(Config):
    """Supervised runs prompt on every recoverable failure"""
    NON_INTERACTIVE = False


class UnattendedConfig(Config):
    """Runs started by cron or a systemd timer"""
    NON_INTERACTIVE = True
    VERBOSE = False


# Configuration dictionary
config = {
    'interactive': InteractiveConfig,
    'unattended': UnattendedConfig,
    'default': Config
}


@dataclass(frozen=True)
class RunConfig:
    """Resolved, immutable option set for one run."""

    source_paths: Tuple[str, ...] = ()
    local_targets: Tuple[str, ...] = ()
    remote_targets: Tuple[str, ...] = ()
    sync_targets: Tuple[str, ...] = ()
    cloud_targets: Tuple[str, ...] = ()
    archive_cleanup: bool = True
    keep_days: int = 365
    self_replicate: bool = True
    data_redundancy: int = 5
    archive_prefix: str = 'keys'
    exclude_list: Tuple[str, ...] = ()
    compressor_cmd: str = 'xz'
    compressor_opt: str = ''
    cipher_algo: str = 'AES256'
    digest_algo: str = 'SHA512'
    s2k_count: int = 65011712
    passphrase_file: Optional[str] = None
    safe_tmp: str = field(default_factory=tempfile.gettempdir)
    safe_delete: bool = True
    non_interactive: bool = False
    abort_on_error: bool = False
    cloud_tasks: int = 4
    verbose: bool = True
    log_file: Optional[str] = None

    def validate(self):
        """
        Check the run invariants before any side effect happens.

        Raises:
            ConfigError: If no source or no destination is configured, or a
                numeric option is out of range
        """
        if not self.source_paths:
            raise ConfigError("no source_paths defined")
        if not self.destinations():
            raise ConfigError("no destination configured")
        if self.cloud_tasks < 1:
            raise ConfigError(f"cloud_tasks must be at least 1, got {self.cloud_tasks}")
        if not 0 <= self.data_redundancy <= 100:
            raise ConfigError(f"data_redundancy must be within 0..100, got {self.data_redundancy}")
        if self.keep_days < 0:
            raise ConfigError(f"keep_days must not be negative, got {self.keep_days}")

    def destinations(self) -> List[Destination]:
        """All configured destinations, in dispatch order."""
        classes = (
            (DestinationClass.LOCAL, self.local_targets),
            (DestinationClass.SYNC_COPY, self.sync_targets),
            (DestinationClass.REMOTE_COPY, self.remote_targets),
            (DestinationClass.CLOUD_COPY, self.cloud_targets),
        )
        return [
            Destination(kind, address)
            for kind, addresses in classes
            for address in addresses
        ]

    def log_path(self, epoch: int) -> str:
        return self.log_file or f'bfrg-{epoch}.log'


_PATH_OPTIONS = ('source_paths', 'local_targets', 'safe_tmp', 'passphrase_file', 'log_file')
_TUPLE_OPTIONS = (
    'source_paths', 'local_targets', 'remote_targets', 'sync_targets',
    'cloud_targets', 'exclude_list'
)


def _expand(value):
    if value is None:
        return None
    if isinstance(value, (list, tuple)):
        return tuple(os.path.expanduser(v) for v in value)
    return os.path.expanduser(value)


def _coerce(name: str, value, default):
    """Check a single option against the type of its default."""
    if name in _TUPLE_OPTIONS:
        if isinstance(value, str) or not isinstance(value, (list, tuple)):
            raise ConfigError(f"option {name} must be a list")
        if not all(isinstance(v, str) for v in value):
            raise ConfigError(f"option {name} must only contain strings")
        value = tuple(value)
    elif isinstance(default, bool):
        if not isinstance(value, bool):
            raise ConfigError(f"option {name} must be true or false")
    elif isinstance(default, int):
        if isinstance(value, bool) or not isinstance(value, int):
            raise ConfigError(f"option {name} must be an integer")
    elif value is not None and not isinstance(value, str):
        raise ConfigError(f"option {name} must be a string")

    if name in _PATH_OPTIONS:
        value = _expand(value)
    return value


def _read_config_file(path: str) -> dict:
    try:
        with open(path, 'r') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Can't parse config file {path}: {e}")
    except OSError as e:
        raise ConfigError(f"Can't read config file {path}: {e}")

    if not isinstance(data, dict):
        raise ConfigError(f"Config file {path} must contain a JSON object")
    return data


def load_config(path: Optional[str] = None, profile: str = 'default', **overrides) -> RunConfig:
    """
    Resolve the run configuration.

    Priority: overrides (CLI flags) > config file > profile defaults.

    Args:
        path: Explicit config file; when None the per-user file is used if present
        profile: Key into the ``config`` dict
        **overrides: Option values that win over the file; None values are ignored

    Returns:
        Immutable RunConfig snapshot

    Raises:
        ConfigError: If the profile, file or any option is invalid
    """
    if profile not in config:
        raise ConfigError(
            f"Invalid profile: {profile}. Valid options: {list(config.keys())}"
        )
    profile_cls = config[profile]

    names = [f.name for f in fields(RunConfig)]
    values = {name: getattr(profile_cls, name.upper()) for name in names}

    if path is not None:
        if not os.path.isfile(path):
            raise ConfigError(f"Can't source config file: {path}")
        file_values = _read_config_file(path)
    else:
        default_path = default_config_path()
        file_values = _read_config_file(default_path) if os.path.isfile(default_path) else {}

    unknown = sorted(set(file_values) - set(names))
    if unknown:
        raise ConfigError(f"Unknown config option(s): {', '.join(unknown)}")

    values.update(file_values)
    values.update({k: v for k, v in overrides.items() if v is not None})

    defaults = RunConfig()
    resolved = {
        name: _coerce(name, values[name], getattr(defaults, name))
        for name in names
    }
    return RunConfig(**resolved)

