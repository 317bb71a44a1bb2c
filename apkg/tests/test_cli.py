"""Tests for CLI"""

import pytest

from apkg.cli.main import build_operation, create_parser, main
from apkg.core.config import save_desired_state
from apkg.core.ledger import Ledger
from apkg.core.operations import (
    AddOp, ListInstalledOp, ReconcileOp, RegenIndexesOp, ReinstallOp, RemoveOp,
)


class TestParser:
    """Tests for argument parser."""

    def test_version_flag(self):
        parser = create_parser()
        with pytest.raises(SystemExit):
            parser.parse_args(['--version'])

    def test_no_command_reconciles(self):
        args = create_parser().parse_args([])
        assert args.command is None
        assert args.config == 'apkg.yaml'
        assert build_operation(args) == ReconcileOp()

    def test_global_flags(self):
        args = create_parser().parse_args(['-c', 'other.yaml', '--dry-run', '-v'])
        assert args.config == 'other.yaml'
        assert args.dry_run is True
        assert args.verbose is True

    def test_add(self):
        args = create_parser().parse_args(['add', 'vim'])
        assert build_operation(args) == AddOp('vim')

    def test_remove_alias(self):
        parser = create_parser()
        assert build_operation(parser.parse_args(['remove', 'vim'])) == RemoveOp('vim')
        assert build_operation(parser.parse_args(['del', 'vim'])) == RemoveOp('vim')

    def test_reinstall(self):
        args = create_parser().parse_args(['reinstall', 'vim'])
        assert build_operation(args) == ReinstallOp('vim')

    def test_index_commands(self):
        parser = create_parser()
        assert build_operation(parser.parse_args(['regen-indexes'])) == RegenIndexesOp()
        assert build_operation(parser.parse_args(['list-installed'])) == ListInstalledOp()

    def test_add_requires_package(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(['add'])


class TestMain:
    """Tests for exit codes and output."""

    def test_missing_config(self, tmp_path):
        assert main(['--nocolor', '-c', str(tmp_path / 'missing.yaml')]) == 1

    def test_no_repo_reachable(self, tmp_path, make_state, monkeypatch):
        from conftest import FakeFetcher
        monkeypatch.setattr('apkg.core.operations.HttpFetcher', FakeFetcher)
        config = tmp_path / 'apkg.yaml'
        save_desired_state(config, make_state(['tool']))
        assert main(['--nocolor', '-c', str(config)]) == 2

    def test_list_installed(self, tmp_path, make_state, capsys):
        state = make_state([])
        Ledger(state.layout).save({'busybox': '1.36.1-r29'})
        config = tmp_path / 'apkg.yaml'
        save_desired_state(config, state)

        assert main(['--nocolor', '-c', str(config), 'list-installed']) == 0
        assert 'busybox 1.36.1-r29' in capsys.readouterr().out

    def test_list_installed_without_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.chdir(tmp_path)
        assert main(['--nocolor', 'list-installed']) == 0
        assert 'No packages installed.' in capsys.readouterr().out
