"""Tests for desired-state configuration"""

from pathlib import Path

import pytest
import yaml

from apkg.core.config import (
    ConfigError, DesiredState, StateLayout, load_desired_state, parse_desired_state,
    save_desired_state,
)


CONFIG = """\
repos:
  - https://dl-cdn.alpinelinux.org/alpine/v3.20/main
packages:
  - busybox
  - curl
install: true
install_dir: root
run_scripts: false
resolve_deps: true
"""


class TestLoad:
    """Tests for reading apkg.yaml."""

    def test_load(self, tmp_path):
        path = tmp_path / 'apkg.yaml'
        path.write_text(CONFIG)
        state = load_desired_state(path)

        assert state.repos == ('https://dl-cdn.alpinelinux.org/alpine/v3.20/main',)
        assert state.packages == ('busybox', 'curl')
        assert state.install is True
        assert state.install_dir == 'root'
        assert state.resolve_deps is True
        assert state.jobs == 1

    def test_defaults(self):
        state = parse_desired_state({})
        assert state == DesiredState()
        assert state.install is False

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_desired_state(tmp_path / 'nope.yaml')

    def test_malformed_yaml(self, tmp_path):
        path = tmp_path / 'apkg.yaml'
        path.write_text('repos: [unclosed\n')
        with pytest.raises(ConfigError):
            load_desired_state(path)

    @pytest.mark.parametrize('data', [
        ['not', 'a', 'mapping'],
        {'packages': 'busybox'},
        {'install': 'yes'},
        {'jobs': 0},
        {'jobs': True},
    ])
    def test_invalid(self, data):
        with pytest.raises(ConfigError):
            parse_desired_state(data)


class TestSave:
    """Tests for writing apkg.yaml back."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / 'apkg.yaml'
        path.write_text(CONFIG + 'comment_key: kept\n')
        state = load_desired_state(path).with_package('vim')
        save_desired_state(path, state)

        reloaded = load_desired_state(path)
        assert reloaded.packages == ('busybox', 'curl', 'vim')
        assert yaml.safe_load(path.read_text())['comment_key'] == 'kept'

    def test_package_edits(self):
        state = DesiredState(packages=('a', 'b'))
        assert state.with_package('a') is state
        assert state.without_package('a').packages == ('b',)
        assert state.without_package('zzz').packages == ('a', 'b')


class TestLayout:
    """Tests for state paths."""

    def test_paths(self):
        layout = StateLayout(Path('/var/lib/apkg'))
        assert layout.ledger_path == Path('/var/lib/apkg/installed.yaml')
        assert layout.manifest_dir == Path('/var/lib/apkg/installed_files')
        assert layout.staging_tree('foo') == Path('/var/lib/apkg/staging/foo')
        assert layout.scripts_dir('foo') == Path('/var/lib/apkg/staging/foo.scripts')

    def test_state_dir(self):
        state = DesiredState(state_dir='/srv/state')
        assert state.layout.staged_dir == Path('/srv/state/staged')
