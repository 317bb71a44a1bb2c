"""
Main CLI entry point for apkg

- apkg                      converge to apkg.yaml
- apkg add <pkg>            add to the package list, then converge
- apkg remove / del <pkg>   drop from the package list, then converge
- apkg reinstall <pkg>      remove and place a package again
- apkg regen-indexes        rebuild installed file indexes
- apkg list-installed       show the ledger
"""

import argparse
import logging
import sys
from pathlib import Path

from .. import __version__
from ..core.catalog import CatalogError
from ..core.config import DEFAULT_CONFIG_FILE, ConfigError, DesiredState, load_desired_state
from ..core.download import StagingError
from ..core.ledger import LedgerError
from ..core.operations import (
    AddOp, ListInstalledOp, OperationContext, ReconcileOp, ReconcileResult,
    RegenIndexesOp, RegenResult, ReinstallOp, RemoveOp, run_operation,
)

# Exit codes for fatal errors
EXIT_CONFIG = 1
EXIT_CATALOG = 2
EXIT_STAGING = 3
EXIT_LEDGER = 4


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""

    parser = argparse.ArgumentParser(
        prog='apkg',
        description='Declarative package manager for Alpine repositories',
        epilog='Without a command, install/upgrade/uninstall to match the config.'
    )

    parser.add_argument(
        '--version', '-V',
        action='version',
        version=f'apkg {__version__}'
    )

    parser.add_argument(
        '--config', '-c',
        default=DEFAULT_CONFIG_FILE,
        help=f'Path to config file (default: {DEFAULT_CONFIG_FILE})'
    )

    parser.add_argument(
        '--dry-run', '-n',
        action='store_true',
        help="Show what would be done, but don't modify anything"
    )

    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Verbose output'
    )

    parser.add_argument(
        '--nocolor',
        action='store_true',
        help='Disable colored output'
    )

    subparsers = parser.add_subparsers(
        dest='command',
        title='commands',
        metavar='<command>'
    )

    add_parser = subparsers.add_parser('add', help='Add a package to the config and install it')
    add_parser.add_argument('package', help='Package name')

    remove_parser = subparsers.add_parser(
        'remove', aliases=['del'],
        help='Remove a package from the config and uninstall it'
    )
    remove_parser.add_argument('package', help='Package name')

    reinstall_parser = subparsers.add_parser('reinstall', help='Force reinstall a package')
    reinstall_parser.add_argument('package', help='Package name')

    subparsers.add_parser('regen-indexes', help='Regenerate installed file indexes')

    subparsers.add_parser('list-installed', help='List installed packages and versions')

    return parser


def build_operation(args):
    """Map parsed arguments to an operation."""
    if args.command is None:
        return ReconcileOp()
    elif args.command == 'add':
        return AddOp(args.package)
    elif args.command in ('remove', 'del'):
        return RemoveOp(args.package)
    elif args.command == 'reinstall':
        return ReinstallOp(args.package)
    elif args.command == 'regen-indexes':
        return RegenIndexesOp()
    elif args.command == 'list-installed':
        return ListInstalledOp()
    raise ValueError(f"Unknown command: {args.command}")


def print_reconcile_result(result: ReconcileResult):
    """Print what a reconciliation did (or would do)."""
    from . import colors

    plan = result.plan
    if result.dry_run:
        print(colors.bold("[DRY-RUN] The following changes would be made:"))
        for pkg in plan.batch:
            if pkg.previous_version and pkg.previous_version != pkg.version:
                print(f"  {colors.pkg_upgrade('upgrade')} {pkg.name} "
                      f"({pkg.previous_version} -> {pkg.version})")
            else:
                print(f"  {colors.pkg_install('install')} {pkg.name} ({pkg.version})")
        for name in plan.to_uninstall:
            print(f"  {colors.pkg_remove('remove')}  {name}")
        if not plan.batch and not plan.to_uninstall:
            print(colors.dim("  (nothing to do)"))
        print(colors.dim("[DRY-RUN] No changes made."))
        return

    for name in result.installed:
        print(f"{colors.pkg_install('Installed')} {name}")
    for name in result.upgraded:
        print(f"{colors.pkg_upgrade('Upgraded')} {name}")
    for name in result.uninstalled:
        print(f"{colors.pkg_remove('Uninstalled')} {name}")
    for name in result.missing:
        print(colors.warning(f"Skipped {name}: not found in any repo"))
    for name, reason in result.failed.items():
        print(colors.error(f"Failed {name}: {reason}"))
    for name, reason in result.uninstall_failed.items():
        print(colors.error(f"Failed to uninstall {name}: {reason}"))
    for name, hooks in result.hooks.items():
        for hook in hooks:
            if not hook.ran:
                print(colors.warning(f"Script not run: {name}/{hook.name}"))
    if result.placement_skipped:
        print(colors.info("Install step skipped (install: false in config)"))

    print(colors.bold(f"Summary: {result.summary()}"))


def print_regen_result(result: RegenResult):
    from . import colors

    for name, count in result.regenerated.items():
        print(f"Regenerated index for {name} ({count} files)")
    for name, reason in result.skipped.items():
        print(colors.warning(f"Skipped {name}: {reason}"))


def print_installed(installed: dict):
    if not installed:
        print("No packages installed.")
        return
    print("Installed packages:")
    for name in sorted(installed):
        print(f"  {name} {installed[name]}")


def _load_state(args, op) -> DesiredState:
    config_path = Path(args.config)
    # list-installed only needs the state directory
    if isinstance(op, ListInstalledOp) and not config_path.exists():
        return DesiredState()
    return load_desired_state(config_path)


def main(argv=None) -> int:
    """Main CLI entry point."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format='%(name)s - %(levelname)s - %(message)s',
            stream=sys.stderr
        )
    else:
        logging.basicConfig(
            level=logging.INFO,
            format='%(levelname)s: %(message)s',
            stream=sys.stderr
        )

    from . import colors
    colors.init(nocolor=args.nocolor)

    op = build_operation(args)

    try:
        state = _load_state(args, op)
    except ConfigError as e:
        print(colors.error(f"[FATAL] Failed to read config: {e}"), file=sys.stderr)
        return EXIT_CONFIG

    if args.verbose:
        logging.getLogger(__name__).debug(f"Using repos: {list(state.repos)}")
        logging.getLogger(__name__).debug(f"Packages to install: {list(state.packages)}")

    ctx = OperationContext(
        state=state,
        config_path=Path(args.config),
        dry_run=args.dry_run,
    )

    try:
        result = run_operation(op, ctx)
    except ConfigError as e:
        print(colors.error(f"[FATAL] Failed to write config: {e}"), file=sys.stderr)
        return EXIT_CONFIG
    except CatalogError as e:
        print(colors.error(f"[FATAL] Error fetching APKINDEX: {e}"), file=sys.stderr)
        return EXIT_CATALOG
    except StagingError as e:
        print(colors.error(f"[FATAL] {e}"), file=sys.stderr)
        return EXIT_STAGING
    except LedgerError as e:
        print(colors.error(f"[FATAL] {e}"), file=sys.stderr)
        return EXIT_LEDGER
    except KeyboardInterrupt:
        print(colors.warning("\nInterrupted"), file=sys.stderr)
        return 130

    if isinstance(result, ReconcileResult):
        print_reconcile_result(result)
    elif isinstance(result, RegenResult):
        print_regen_result(result)
    else:
        print_installed(result)
    return 0


if __name__ == '__main__':
    sys.exit(main())
