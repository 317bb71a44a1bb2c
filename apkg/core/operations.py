"""
Reconciliation layer for apkg.

Computes the difference between the desired package list and the ledger,
then drives download, extraction, placement and uninstall to converge the
target root. Used by the CLI; transport and hook execution are injected.

Failure policy:
- Empty catalog, unreadable ledger, staging directories that cannot be
  created: the exception propagates and the run stops.
- Anything that goes wrong with a single package (missing from the catalog,
  download, extraction, placement, manifest write) is logged, recorded in
  the result, and the batch continues.
"""

import logging
import shutil
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Union

from .apkindex import package_filename
from .catalog import Catalog, fetch_catalog
from .config import DesiredState, save_desired_state
from .download import DownloadItem, DownloadError, HttpFetcher, Stager, StagingError
from .extract import ExtractError, ExtractedPackage, extract_package, walk_files
from .install import EraseResult, HookReport, Installer, PlacementError, ScriptRunner
from .ledger import Ledger, ManifestError, ManifestMissing
from .resolver import install_order, resolve

logger = logging.getLogger(__name__)


class PackageState(Enum):
    """Where a resolved package stands against the ledger."""
    ALREADY_CURRENT = "current"
    NEEDS_INSTALL = "install"
    NEEDS_UPGRADE = "upgrade"
    MISSING = "missing"


@dataclass
class PlannedPackage:
    """One resolved package and what has to happen to it."""
    name: str
    state: PackageState
    version: Optional[str] = None
    previous_version: Optional[str] = None


@dataclass
class InstallPlan:
    """Diff of desired state against the ledger. Never persisted."""
    resolved: Set[str]
    packages: List[PlannedPackage] = field(default_factory=list)
    to_uninstall: List[str] = field(default_factory=list)

    @property
    def batch(self) -> List[PlannedPackage]:
        """Packages to install or upgrade, dependencies first."""
        return [p for p in self.packages
                if p.state in (PackageState.NEEDS_INSTALL, PackageState.NEEDS_UPGRADE)]

    def names_in_state(self, state: PackageState) -> List[str]:
        return [p.name for p in self.packages if p.state == state]


@dataclass
class ReconcileResult:
    """Outcome of one reconciliation run."""
    plan: InstallPlan
    dry_run: bool = False
    installed: List[str] = field(default_factory=list)
    upgraded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    uninstalled: List[str] = field(default_factory=list)
    uninstall_failed: Dict[str, str] = field(default_factory=dict)
    hooks: Dict[str, List[HookReport]] = field(default_factory=dict)
    placement_skipped: bool = False

    @property
    def current(self) -> List[str]:
        return self.plan.names_in_state(PackageState.ALREADY_CURRENT)

    @property
    def missing(self) -> List[str]:
        return self.plan.names_in_state(PackageState.MISSING)

    @property
    def skipped(self) -> int:
        return len(self.failed) + len(self.missing)

    def summary(self) -> str:
        return (f"installed={len(self.installed)} upgraded={len(self.upgraded)} "
                f"current={len(self.current)} skipped={self.skipped} "
                f"uninstalled={len(self.uninstalled)}")


@dataclass
class RegenResult:
    """Outcome of a manifest regeneration."""
    regenerated: Dict[str, int] = field(default_factory=dict)
    skipped: Dict[str, str] = field(default_factory=dict)
    dry_run: bool = False


class Reconciler:
    """Converges the target root to the desired state.

    Every collaborator is handed in or derived from the DesiredState; no
    module-level settings are consulted.
    """

    def __init__(self, state: DesiredState, fetcher=None,
                 script_runner: Optional[ScriptRunner] = None,
                 ledger: Optional[Ledger] = None):
        """Initialize reconciler.

        Args:
            state: Desired packages, repositories and toggles
            fetcher: Transport with get()/download() (default: HttpFetcher)
            script_runner: Executes lifecycle hooks when run_scripts is on
            ledger: Ledger store (default: from state.state_dir)
        """
        self.state = state
        self.layout = state.layout
        self.fetcher = fetcher or HttpFetcher()
        self.ledger = ledger or Ledger(self.layout)
        self.installer = Installer(
            root=state.install_dir,
            run_hooks=state.run_scripts,
            script_runner=script_runner,
        )
        self.stager = Stager(self.layout.staged_dir, self.fetcher)

    # =========================================================================
    # Planning
    # =========================================================================

    def fetch_catalog(self) -> Catalog:
        logger.info("Fetching APKINDEX from all repos...")
        return fetch_catalog(self.state.repos, self.fetcher, max_workers=self.state.jobs)

    def plan(self, catalog: Catalog, installed: Dict[str, str],
             reinstall: Iterable[str] = ()) -> InstallPlan:
        """Compute the install/upgrade/uninstall plan.

        Args:
            catalog: Merged catalog for this run
            installed: Ledger contents
            reinstall: Names to schedule even if already current
        """
        reinstall = set(reinstall)
        resolved = resolve(self.state.packages, catalog, self.state.resolve_deps)
        plan = InstallPlan(resolved=resolved)

        for name in install_order(resolved, catalog):
            entry = catalog.get(name)
            if entry is None:
                plan.packages.append(PlannedPackage(name, PackageState.MISSING))
                continue

            current = installed.get(name)
            if current == entry.version and name not in reinstall:
                state = PackageState.ALREADY_CURRENT
            elif current is None or current == entry.version:
                state = PackageState.NEEDS_INSTALL
            else:
                state = PackageState.NEEDS_UPGRADE
            plan.packages.append(PlannedPackage(name, state, entry.version, current))

        plan.to_uninstall = sorted(name for name in installed if name not in resolved)
        return plan

    def _log_plan(self, plan: InstallPlan) -> None:
        for pkg in plan.packages:
            if pkg.state == PackageState.ALREADY_CURRENT:
                logger.info(f"{pkg.name} ({pkg.version}) is already installed. Skipping.")
            elif pkg.state == PackageState.NEEDS_UPGRADE:
                logger.info(f"{pkg.name}: upgrading from {pkg.previous_version} to {pkg.version}")
            elif pkg.state == PackageState.NEEDS_INSTALL:
                logger.info(f"{pkg.name} ({pkg.version}) will be installed.")
            else:
                logger.warning(f"{pkg.name}: not found in any repo")

    # =========================================================================
    # Reconciliation
    # =========================================================================

    def reconcile(self, dry_run: bool = False, reinstall: Iterable[str] = ()) -> ReconcileResult:
        """Run one reconciliation.

        Args:
            dry_run: Stop after planning; nothing on disk is touched
            reinstall: Installed names to remove and place again

        Raises:
            LedgerError: ledger unreadable or unwritable
            EmptyCatalogError: no repository yielded any package
            StagingError: staging directories cannot be created
        """
        installed = self.ledger.load()
        catalog = self.fetch_catalog()
        reinstall = set(reinstall)
        plan = self.plan(catalog, installed, reinstall)
        result = ReconcileResult(plan=plan, dry_run=dry_run)
        self._log_plan(plan)

        if dry_run:
            for pkg in plan.batch:
                logger.info(f"[DRY-RUN] would install {pkg.name} ({pkg.version})")
            for name in plan.to_uninstall:
                logger.info(f"[DRY-RUN] would uninstall {name} ({installed[name]})")
            logger.info("[DRY-RUN] No changes made.")
            logger.info(f"Summary: {result.summary()}")
            return result

        self.stager.prepare()
        staging_dir = self.layout.staging_dir
        try:
            staging_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StagingError(f"Failed to create {staging_dir}: {e}") from e

        if self.state.install:
            self._install_batch(plan, catalog, installed, reinstall, result)
        else:
            # Download and extract only; staging trees are kept
            self._stage_batch(plan, catalog, result)
            result.placement_skipped = True
            logger.info("Install step skipped (install: false in config)")

        for name in plan.to_uninstall:
            self._uninstall_one(name, installed, result)

        logger.info(f"Summary: {result.summary()}")
        return result

    def _install_batch(self, plan: InstallPlan, catalog: Catalog, installed: Dict[str, str],
                       reinstall: Set[str], result: ReconcileResult) -> None:
        """Stage and place the batch, then record successes in one ledger write."""
        for name in sorted(reinstall & set(installed)):
            self._uninstall_one(name, installed, result, record=False)

        try:
            staged = self._stage_batch(plan, catalog, result)
            successes = {}
            for pkg in plan.batch:
                if pkg.name not in staged:
                    continue
                if self._place_one(pkg, staged[pkg.name], installed, result):
                    successes[pkg.name] = pkg.version

            if successes:
                installed.update(successes)
                self.ledger.save(installed)
                logger.info(f"All packages installed to {self.installer.root}")
        finally:
            self.cleanup()

    def _stage_batch(self, plan: InstallPlan, catalog: Catalog,
                     result: ReconcileResult) -> Dict[str, ExtractedPackage]:
        """Download and extract every batch package.

        Returns:
            name -> extracted package, for packages that made it
        """
        items = [
            DownloadItem(
                name=pkg.name,
                version=pkg.version,
                filename=catalog.get(pkg.name).filename,
                url=catalog.package_url(pkg.name),
            )
            for pkg in plan.batch
        ]

        staged = {}
        for download in self.stager.download_all(items, max_workers=self.state.jobs):
            name = download.item.name
            if not download.success:
                self._fail(result, name, f"download failed: {download.error}")
                continue

            tree = self.layout.staging_tree(name)
            try:
                staged[name] = extract_package(download.path, tree, self.layout.scripts_dir(name))
            except ExtractError as e:
                self.stager.discard(download.path)
                self._fail(result, name, str(e))
                continue
            logger.debug(f"Extracted {download.item.filename} to {tree}")
        return staged

    def _place_one(self, pkg: PlannedPackage, extracted: ExtractedPackage,
                   installed: Dict[str, str], result: ReconcileResult) -> bool:
        name = pkg.name
        previous = None
        if name in installed:
            try:
                previous = self.ledger.load_manifest(name)
            except ManifestError as e:
                logger.warning(f"{name}: {e}; stale files of {installed[name]} cannot be removed")

        phase = 'upgrade' if pkg.state == PackageState.NEEDS_UPGRADE else 'install'
        try:
            placed = self.installer.place(name, extracted.tree, extracted.scripts_dir,
                                          phase=phase, dir_modes=extracted.dir_modes)
        except PlacementError as e:
            self._fail(result, name, e.reason)
            return False

        try:
            self.ledger.save_manifest(name, placed.manifest)
        except ManifestError as e:
            self._fail(result, name, f"could not record installed files: {e}")
            return False

        if previous:
            self._remove_stale(name, previous, placed.manifest, installed)

        if placed.hooks:
            result.hooks[name] = placed.hooks
        if pkg.state == PackageState.NEEDS_UPGRADE:
            result.upgraded.append(name)
        else:
            result.installed.append(name)
        return True

    def _remove_stale(self, name: str, previous: List[str], current: List[str],
                      installed: Dict[str, str]) -> None:
        """Delete files the previous version owned and the new one does not."""
        keep = set(current)
        stale = [p for p in previous if p not in keep]
        if not stale:
            return
        siblings = self.ledger.sibling_manifests(name, installed, extra={name: current})
        erase = self.installer.remove(name, stale, siblings)
        logger.debug(f"{name}: removed {erase.erased} stale files")
        for error in erase.errors:
            logger.warning(f"{name}: {error}")

    def _uninstall_one(self, name: str, installed: Dict[str, str],
                       result: ReconcileResult, record: bool = True) -> bool:
        """Remove one package and persist the ledger right away.

        record=False is used when the package is about to be placed again.
        """
        version = installed[name]
        logger.info(f"Uninstalling {name} ({version})...")
        erase = self.uninstall(name, installed)
        if not erase.success:
            reason = '; '.join(erase.errors)
            logger.error(f"Failed to uninstall {name}: {reason}")
            result.uninstall_failed[name] = reason
            return False

        del installed[name]
        self.ledger.save(installed)
        if record:
            result.uninstalled.append(name)
        logger.info(f"Uninstalled {name} ({version})")
        return True

    def uninstall(self, name: str, installed: Dict[str, str]) -> EraseResult:
        """Remove a package's files using its manifest.

        A missing manifest means the owned files are unknown: nothing is
        removed and the failure asks for a regen.
        """
        try:
            manifest = self.ledger.load_manifest(name)
        except ManifestMissing:
            logger.warning(f"No file index for {name}; run regen-indexes")
            return EraseResult(success=False, errors=["file index missing, run regen-indexes"])
        except ManifestError as e:
            return EraseResult(success=False, errors=[str(e)])

        siblings = self.ledger.sibling_manifests(name, installed)
        erase = self.installer.remove(name, manifest, siblings)
        if erase.success:
            self.ledger.delete_manifest(name)
        return erase

    def _fail(self, result: ReconcileResult, name: str, reason: str) -> None:
        logger.error(f"Failed to install {name}: {reason}")
        result.failed[name] = reason

    def cleanup(self) -> None:
        """Remove downloaded archives and extraction trees."""
        self.stager.cleanup()
        shutil.rmtree(self.layout.staging_dir, ignore_errors=True)

    # =========================================================================
    # Manifest regeneration
    # =========================================================================

    def regen_manifests(self, dry_run: bool = False) -> RegenResult:
        """Rebuild every installed package's manifest from its archive.

        Ledger versions are left untouched.
        """
        result = RegenResult(dry_run=dry_run)
        installed = self.ledger.load()
        if not installed:
            return result

        catalog = self.fetch_catalog()
        if not dry_run:
            self.stager.prepare()

        try:
            for name in sorted(installed):
                version = installed[name]
                if not self.ledger.has_manifest(name):
                    logger.warning(f"Manifest missing for {name}; regenerating")

                url = catalog.package_url(name, version)
                if url is None:
                    logger.warning(f"Could not find repo for {name}")
                    result.skipped[name] = "no repository provides it"
                    continue

                if dry_run:
                    logger.info(f"[DRY-RUN] would regenerate file index for {name} ({version})")
                    continue

                logger.info(f"Regenerating file index for {name} ({version})...")
                files = self._regen_one(name, version, url, result)
                if files is not None:
                    result.regenerated[name] = len(files)
                    logger.info(f"Regenerated index for {name} ({len(files)} files)")
        finally:
            if not dry_run:
                self.cleanup()

        return result

    def _regen_one(self, name: str, version: str, url: str,
                   result: RegenResult) -> Optional[List[str]]:
        item = DownloadItem(name=name, version=version,
                            filename=package_filename(name, version), url=url)
        try:
            archive = self.stager.stage(item)
        except (DownloadError, OSError) as e:
            logger.warning(f"Failed to download {name}: {e}")
            result.skipped[name] = f"download failed: {e}"
            return None

        tree = self.layout.staging_tree(name)
        try:
            extract_package(archive, tree, self.layout.scripts_dir(name))
            files = walk_files(tree)
            self.ledger.save_manifest(name, files)
        except (ExtractError, ManifestError) as e:
            logger.warning(f"Failed to regenerate index for {name}: {e}")
            result.skipped[name] = str(e)
            return None
        finally:
            self.stager.discard(archive)
            shutil.rmtree(tree, ignore_errors=True)
            shutil.rmtree(self.layout.scripts_dir(name), ignore_errors=True)
        return files


# =============================================================================
# Operations
# =============================================================================

@dataclass(frozen=True)
class ReconcileOp:
    """Converge to the configured state."""


@dataclass(frozen=True)
class AddOp:
    """Add a package to the configuration, then reconcile."""
    name: str


@dataclass(frozen=True)
class RemoveOp:
    """Drop a package from the configuration, then reconcile."""
    name: str


@dataclass(frozen=True)
class ReinstallOp:
    """Remove and place a package again."""
    name: str


@dataclass(frozen=True)
class RegenIndexesOp:
    """Rebuild file manifests from the archives."""


@dataclass(frozen=True)
class ListInstalledOp:
    """Read the ledger."""


Operation = Union[ReconcileOp, AddOp, RemoveOp, ReinstallOp, RegenIndexesOp, ListInstalledOp]


@dataclass
class OperationContext:
    """Services and settings shared by every operation."""
    state: DesiredState
    config_path: Optional[Path] = None
    dry_run: bool = False
    fetcher: Any = None
    script_runner: Optional[ScriptRunner] = None

    def reconciler(self) -> Reconciler:
        return Reconciler(self.state, fetcher=self.fetcher, script_runner=self.script_runner)

    def update_state(self, state: DesiredState) -> None:
        """Adopt a new desired state, persisting it unless dry-running."""
        self.state = state
        if self.dry_run or self.config_path is None:
            return
        save_desired_state(self.config_path, state)
        logger.info("Config updated. Applying changes...")


def run_operation(op: Operation, ctx: OperationContext):
    """Execute one operation.

    Returns:
        ReconcileResult for reconcile/add/remove/reinstall, RegenResult for
        regen-indexes, name -> version mapping for list-installed
    """
    if isinstance(op, ReconcileOp):
        return ctx.reconciler().reconcile(dry_run=ctx.dry_run)

    elif isinstance(op, AddOp):
        if op.name in ctx.state.packages:
            logger.info(f"{op.name} is already in the package list.")
        else:
            ctx.update_state(ctx.state.with_package(op.name))
            logger.info(f"Added {op.name} to package list.")
        return ctx.reconciler().reconcile(dry_run=ctx.dry_run)

    elif isinstance(op, RemoveOp):
        if op.name in ctx.state.packages:
            ctx.update_state(ctx.state.without_package(op.name))
            logger.info(f"Removed {op.name} from package list.")
        else:
            logger.info(f"{op.name} was not in the package list.")
        return ctx.reconciler().reconcile(dry_run=ctx.dry_run)

    elif isinstance(op, ReinstallOp):
        logger.info(f"Reinstalling {op.name}...")
        if op.name not in ctx.state.packages:
            ctx.update_state(ctx.state.with_package(op.name))
            logger.info(f"Added {op.name} to package list.")
        return ctx.reconciler().reconcile(dry_run=ctx.dry_run, reinstall=[op.name])

    elif isinstance(op, RegenIndexesOp):
        return ctx.reconciler().regen_manifests(dry_run=ctx.dry_run)

    elif isinstance(op, ListInstalledOp):
        return Ledger(ctx.state.layout).load()

    raise TypeError(f"Unknown operation: {op!r}")
