"""
Installed-package ledger for apkg

The ledger (installed.yaml) is the single record of what is on disk: a
list of {name, version} records. Each installed package also owns a file
manifest (installed_files/<name>.yaml) listing the paths it placed,
relative to the target root.

Writes go through a temp file and a rename, guarded by a lock so only one
writer touches the store at a time.
"""

import logging
import threading
from pathlib import Path
from typing import Dict, List, Optional

import yaml

from .config import StateLayout, write_yaml_atomic

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Ledger exists but cannot be read or written."""


class ManifestError(Exception):
    """A package manifest cannot be read or written."""


class ManifestMissing(ManifestError):
    """No manifest recorded for an installed package."""


class Ledger:
    """Persistent store for installed versions and file manifests."""

    def __init__(self, layout: StateLayout):
        """Initialize the store.

        Args:
            layout: State paths (ledger file, manifest directory)
        """
        self.path = layout.ledger_path
        self.manifest_dir = layout.manifest_dir
        self._lock = threading.Lock()

    # =========================================================================
    # Installed versions
    # =========================================================================

    def load(self) -> Dict[str, str]:
        """Read the ledger.

        Returns:
            Mapping name -> version (empty if the file does not exist)

        Raises:
            LedgerError: file exists but is unreadable or corrupt
        """
        try:
            text = self.path.read_text(encoding='utf-8')
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise LedgerError(f"Cannot read {self.path}: {e}") from e

        try:
            records = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise LedgerError(f"Corrupt ledger {self.path}: {e}") from e

        if records is None:
            return {}
        if not isinstance(records, list):
            raise LedgerError(f"Corrupt ledger {self.path}: expected a list of records")

        installed = {}
        for record in records:
            if (not isinstance(record, dict)
                    or not isinstance(record.get('name'), str)
                    or record.get('version') is None):
                raise LedgerError(f"Corrupt ledger {self.path}: bad record {record!r}")
            installed[record['name']] = str(record['version'])
        return installed

    def save(self, installed: Dict[str, str]) -> None:
        """Overwrite the ledger with exactly these records.

        Raises:
            LedgerError: ledger cannot be written
        """
        records = [{'name': name, 'version': installed[name]} for name in sorted(installed)]
        with self._lock:
            try:
                write_yaml_atomic(self.path, records)
            except OSError as e:
                raise LedgerError(f"Cannot write {self.path}: {e}") from e
        logger.debug(f"Ledger saved: {len(records)} packages")

    # =========================================================================
    # File manifests
    # =========================================================================

    def manifest_path(self, name: str) -> Path:
        return self.manifest_dir / f"{name}.yaml"

    def has_manifest(self, name: str) -> bool:
        return self.manifest_path(name).is_file()

    def load_manifest(self, name: str) -> List[str]:
        """Read the files owned by name.

        Raises:
            ManifestMissing: no manifest recorded
            ManifestError: manifest unreadable or corrupt
        """
        path = self.manifest_path(name)
        try:
            text = path.read_text(encoding='utf-8')
        except FileNotFoundError as e:
            raise ManifestMissing(f"No file index for {name}") from e
        except OSError as e:
            raise ManifestError(f"Cannot read {path}: {e}") from e

        try:
            files = yaml.safe_load(text)
        except yaml.YAMLError as e:
            raise ManifestError(f"Corrupt file index {path}: {e}") from e

        if files is None:
            return []
        if not isinstance(files, list):
            raise ManifestError(f"Corrupt file index {path}: expected a list")
        return [str(f) for f in files]

    def save_manifest(self, name: str, files: List[str]) -> None:
        """Record the files owned by name (full overwrite).

        Raises:
            ManifestError: manifest cannot be written
        """
        path = self.manifest_path(name)
        with self._lock:
            try:
                write_yaml_atomic(path, list(files))
            except OSError as e:
                raise ManifestError(f"Cannot write {path}: {e}") from e

    def delete_manifest(self, name: str) -> None:
        with self._lock:
            self.manifest_path(name).unlink(missing_ok=True)

    def sibling_manifests(self, name: str, installed: Dict[str, str],
                          extra: Optional[Dict[str, List[str]]] = None) -> Dict[str, List[str]]:
        """Manifests of every installed package other than name.

        Packages whose manifest is missing or unreadable are left out.

        Args:
            name: Package being removed
            installed: Current ledger contents
            extra: Manifests to include as-is (e.g. a package just placed)
        """
        siblings = {}
        for other in installed:
            if other == name:
                continue
            try:
                siblings[other] = self.load_manifest(other)
            except ManifestError as e:
                logger.debug(f"Sibling {other} has no usable file index: {e}")
        if extra:
            siblings.update(extra)
        return siblings
