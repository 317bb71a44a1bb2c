"""
File placement for apkg

Copies an extracted staging tree into the target root, recording every
placed file, and removes a package's files again using its manifest.
"""

import logging
import os
import shutil
import stat
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional

from .extract import HOOK_SCRIPTS

logger = logging.getLogger(__name__)

# Hooks that belong to each placement phase
PHASE_HOOKS = {
    'install': ('.pre-install', '.post-install'),
    'upgrade': ('.pre-upgrade', '.post-upgrade'),
}

# script_runner(package_name, script_path) -> bool (True if it ran)
ScriptRunner = Callable[[str, Path], bool]


class PlacementError(Exception):
    """Files of a package could not be placed."""

    def __init__(self, name: str, reason: str):
        super().__init__(f"failed to install package {name}: {reason}")
        self.name = name
        self.reason = reason


@dataclass
class HookReport:
    """A lifecycle hook found in a package."""
    name: str
    path: Path
    ran: bool = False


@dataclass
class PlaceResult:
    """Result of placing one package."""
    manifest: List[str]
    hooks: List[HookReport] = field(default_factory=list)


@dataclass
class EraseResult:
    """Result of an erase operation."""
    success: bool
    erased: int = 0
    pruned: List[str] = None
    errors: List[str] = None

    def __post_init__(self):
        if self.pruned is None:
            self.pruned = []
        if self.errors is None:
            self.errors = []


def _is_under(path: str, directory: str) -> bool:
    return path.startswith(directory + '/')


class Installer:
    """Places and removes package files under a target root."""

    def __init__(self, root: str = "/", run_hooks: bool = False,
                 script_runner: Optional[ScriptRunner] = None):
        """Initialize installer.

        Args:
            root: Installation root
            run_hooks: Whether lifecycle hooks may be executed
            script_runner: Executes a hook; absent means hooks are only reported
        """
        self.root = Path(root)
        self.run_hooks = run_hooks
        self.script_runner = script_runner

    def place(self, name: str, staging_tree: Path, scripts_dir: Optional[Path] = None,
              phase: str = 'install', dir_modes: Optional[Dict[str, int]] = None) -> PlaceResult:
        """Copy a staging tree into the root.

        Files are copied byte-for-byte with their mode bits. Directories
        created by this call get the archive mode from dir_modes (falling
        back to the staged mode) once their content is in place; existing
        directories are left as they are. The manifest lists placed files
        in traversal order.

        Raises:
            PlacementError: a directory or file could not be written
        """
        staging_tree = Path(staging_tree)
        dir_modes = dir_modes or {}
        manifest: List[str] = []
        created: List[str] = []

        try:
            for dirpath, dirnames, filenames in os.walk(staging_tree, onerror=_raise):
                dirnames.sort()
                src_dir = Path(dirpath)
                rel_dir = src_dir.relative_to(staging_tree)

                for dirname in dirnames:
                    target = self.root / rel_dir / dirname
                    if not target.is_dir():
                        target.mkdir(mode=0o700, parents=True)
                        created.append((rel_dir / dirname).as_posix())

                for filename in sorted(filenames):
                    src = src_dir / filename
                    rel = (rel_dir / filename).as_posix()
                    self._copy_file(src, self.root / rel)
                    manifest.append(rel)

            for rel in sorted(created, key=len, reverse=True):
                mode = dir_modes.get(rel)
                if mode is None:
                    mode = stat.S_IMODE((staging_tree / rel).stat().st_mode)
                os.chmod(self.root / rel, mode)
        except OSError as e:
            raise PlacementError(name, str(e)) from e

        logger.info(f"Installed package: {name} to {self.root} ({len(manifest)} files)")

        hooks = []
        if scripts_dir is not None:
            hooks = self.report_hooks(name, Path(scripts_dir), phase)
        return PlaceResult(manifest=manifest, hooks=hooks)

    def _copy_file(self, src: Path, target: Path) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.exists():
            target.unlink()
        shutil.copyfile(src, target)
        os.chmod(target, stat.S_IMODE(src.stat().st_mode))

    def report_hooks(self, name: str, scripts_dir: Path, phase: str) -> List[HookReport]:
        """Report lifecycle hooks shipped by a package, running them if allowed."""
        reports = []
        for script in HOOK_SCRIPTS:
            path = scripts_dir / script
            if not path.is_file():
                continue

            report = HookReport(name=script, path=path)
            if not self.run_hooks:
                logger.warning(f"Script present but not run (run_scripts: false): {name}/{script}")
            elif script not in PHASE_HOOKS.get(phase, ()):
                logger.debug(f"{name}/{script} does not apply to {phase}")
            elif self.script_runner is None:
                logger.info(f"Would run script: {path}")
            else:
                report.ran = bool(self.script_runner(name, path))
            reports.append(report)
        return reports

    def remove(self, name: str, manifest: Iterable[str],
               sibling_manifests: Dict[str, List[str]]) -> EraseResult:
        """Delete a package's files and prune the directories it leaves.

        Missing files are ignored. A parent directory of a removed file is
        pruned, deepest first, only if no sibling manifest has a path under
        it; removal of a non-empty directory is silently skipped.

        Args:
            name: Package name
            manifest: Paths owned by the package, relative to root
            sibling_manifests: Manifests of every other installed package
        """
        manifest = list(manifest)
        errors = []
        erased = 0

        for rel in manifest:
            target = self.root / rel
            try:
                target.unlink()
                erased += 1
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.warning(f"Failed to remove {target}: {e}")
                errors.append(f"{rel}: {e}")

        dirs = set()
        for rel in manifest:
            parent = Path(rel).parent.as_posix()
            if parent not in ('', '.'):
                dirs.add(parent)

        sibling_paths = [p for files in sibling_manifests.values() for p in files]
        pruned = []
        for directory in sorted(dirs, key=len, reverse=True):
            if any(_is_under(p, directory) for p in sibling_paths):
                logger.debug(f"Keeping {directory}: still used by another package")
                continue
            try:
                (self.root / directory).rmdir()
                pruned.append(directory)
            except OSError:
                # Not empty or already gone
                pass

        return EraseResult(success=not errors, erased=erased, pruned=pruned, errors=errors)


def _raise(error: OSError):
    raise error
