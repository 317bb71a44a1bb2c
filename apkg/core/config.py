"""
Desired-state configuration for apkg.

The configuration file (default ``apkg.yaml``) declares what the operator
wants on the machine:

    repos:
      - https://dl-cdn.alpinelinux.org/alpine/v3.20/main
    packages:
      - busybox
    install: true
    install_dir: root
    run_scripts: false
    resolve_deps: true

Optional keys:
    state_dir: directory holding the ledger, manifests and staging trees
    jobs:      number of parallel package downloads

Structure under state_dir:
    <state_dir>/installed.yaml                - Ledger (name/version records)
    <state_dir>/installed_files/<name>.yaml   - Per-package file manifests
    <state_dir>/staged/                       - Downloaded archives
    <state_dir>/staging/<name>/               - Extracted installable tree
    <state_dir>/staging/<name>.scripts/       - Lifecycle hook scripts
"""

import logging
import os
import tempfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, Tuple

import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "apkg.yaml"

LEDGER_FILE = "installed.yaml"
MANIFEST_DIR = "installed_files"
STAGED_DIR = "staged"
STAGING_DIR = "staging"
SCRIPTS_SUFFIX = ".scripts"

# Key order used when writing the file back
_KEY_ORDER = ('repos', 'packages', 'install', 'install_dir', 'run_scripts',
              'resolve_deps', 'state_dir', 'jobs')


class ConfigError(Exception):
    """Desired state could not be read or is malformed."""


@dataclass(frozen=True)
class DesiredState:
    """What the operator wants present, plus run toggles."""
    repos: Tuple[str, ...] = ()
    packages: Tuple[str, ...] = ()
    install: bool = False
    install_dir: str = "."
    run_scripts: bool = False
    resolve_deps: bool = False
    state_dir: str = "."
    jobs: int = 1
    extra: Dict[str, Any] = field(default_factory=dict, compare=False)

    def with_package(self, name: str) -> 'DesiredState':
        """Return a copy with name appended (no-op if already listed)."""
        if name in self.packages:
            return self
        return replace(self, packages=self.packages + (name,))

    def without_package(self, name: str) -> 'DesiredState':
        """Return a copy with every occurrence of name removed."""
        return replace(self, packages=tuple(p for p in self.packages if p != name))

    @property
    def layout(self) -> 'StateLayout':
        return StateLayout(Path(self.state_dir))


@dataclass(frozen=True)
class StateLayout:
    """Paths derived from the state directory."""
    base_dir: Path

    @property
    def ledger_path(self) -> Path:
        return self.base_dir / LEDGER_FILE

    @property
    def manifest_dir(self) -> Path:
        return self.base_dir / MANIFEST_DIR

    @property
    def staged_dir(self) -> Path:
        return self.base_dir / STAGED_DIR

    @property
    def staging_dir(self) -> Path:
        return self.base_dir / STAGING_DIR

    def staging_tree(self, name: str) -> Path:
        """Extraction destination for one package."""
        return self.staging_dir / name

    def scripts_dir(self, name: str) -> Path:
        """Side location for one package's hook scripts."""
        return self.staging_dir / f"{name}{SCRIPTS_SUFFIX}"


def _expect(data: dict, key: str, kind, default):
    value = data.get(key, default)
    if value is None:
        return default
    if kind is bool and not isinstance(value, bool):
        raise ConfigError(f"'{key}' must be true or false, got {value!r}")
    if kind is int and (isinstance(value, bool) or not isinstance(value, int)):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    if kind is str and not isinstance(value, str):
        raise ConfigError(f"'{key}' must be a string, got {value!r}")
    if kind is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            raise ConfigError(f"'{key}' must be a list of strings")
        return tuple(value)
    return value


def parse_desired_state(data: Any) -> DesiredState:
    """Build a DesiredState from a decoded YAML document."""
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigError(f"Config must be a mapping, got {type(data).__name__}")

    jobs = _expect(data, 'jobs', int, 1)
    if jobs < 1:
        raise ConfigError(f"'jobs' must be at least 1, got {jobs}")

    return DesiredState(
        repos=_expect(data, 'repos', list, []),
        packages=_expect(data, 'packages', list, []),
        install=_expect(data, 'install', bool, False),
        install_dir=_expect(data, 'install_dir', str, ".") or ".",
        run_scripts=_expect(data, 'run_scripts', bool, False),
        resolve_deps=_expect(data, 'resolve_deps', bool, False),
        state_dir=_expect(data, 'state_dir', str, ".") or ".",
        jobs=jobs,
        extra={k: v for k, v in data.items() if k not in _KEY_ORDER},
    )


def load_desired_state(path) -> DesiredState:
    """Read and validate the configuration file.

    Raises:
        ConfigError: file missing, unreadable or malformed
    """
    path = Path(path)
    try:
        text = path.read_text(encoding='utf-8')
    except OSError as e:
        raise ConfigError(f"Cannot read {path}: {e}") from e

    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"Cannot parse {path}: {e}") from e

    state = parse_desired_state(data)
    logger.debug(f"Loaded {path}: {len(state.repos)} repos, {len(state.packages)} packages")
    return state


def dump_desired_state(state: DesiredState) -> dict:
    """Convert a DesiredState back into its YAML mapping."""
    data = {
        'repos': list(state.repos),
        'packages': list(state.packages),
        'install': state.install,
        'install_dir': state.install_dir,
        'run_scripts': state.run_scripts,
        'resolve_deps': state.resolve_deps,
    }
    if state.state_dir != ".":
        data['state_dir'] = state.state_dir
    if state.jobs != 1:
        data['jobs'] = state.jobs
    data.update(state.extra)
    return data


def write_yaml_atomic(path: Path, data: Any) -> None:
    """Write a YAML document via a temp file in the same directory."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            yaml.safe_dump(data, f, sort_keys=False, default_flow_style=False)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def save_desired_state(path, state: DesiredState) -> None:
    """Persist the configuration file (full overwrite)."""
    path = Path(path)
    try:
        write_yaml_atomic(path, dump_desired_state(state))
    except OSError as e:
        raise ConfigError(f"Cannot write {path}: {e}") from e
    logger.debug(f"Saved {path}")
