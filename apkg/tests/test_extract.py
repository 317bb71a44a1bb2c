"""Tests for package extraction"""

import gzip
import stat

import pytest

from apkg.core.extract import ExtractError, classify_entry, extract_package, walk_files
from conftest import make_apk, make_tar


class TestClassify:
    """Tests for archive entry classification."""

    @pytest.mark.parametrize('name', ['.PKGINFO', '.trigger', './.PKGINFO'])
    def test_control(self, name):
        assert classify_entry(name) == 'control'

    @pytest.mark.parametrize('name', ['.post-install', '.pre-deinstall', '.post-upgrade'])
    def test_hooks(self, name):
        assert classify_entry(name) == 'hook'

    @pytest.mark.parametrize('name', ['.SIGN.RSA.alpine-devel.rsa.pub', 'keys/builder.pub'])
    def test_signature(self, name):
        assert classify_entry(name) == 'signature'

    @pytest.mark.parametrize('name', ['usr/bin/foo', 'etc/.profile', 'usr/share/.PKGINFO.txt'])
    def test_regular(self, name):
        assert classify_entry(name) == 'file'


class TestExtract:
    """Tests for extract_package()."""

    def test_control_entries_filtered(self, tmp_path):
        archive = tmp_path / 'foo-1.0.apk'
        archive.write_bytes(make_apk(
            {'usr/': None, 'usr/bin/': None, 'usr/bin/foo': 'binary', 'etc/foo.conf': 'x=1'},
            hooks={'.post-install': '#!/bin/sh\n'},
        ))
        dest = tmp_path / 'staging' / 'foo'
        scripts = tmp_path / 'staging' / 'foo.scripts'

        extracted = extract_package(archive, dest, scripts)

        assert extracted.tree == dest
        assert extracted.hooks == ['.post-install']
        assert extracted.dir_modes == {'usr': 0o755, 'usr/bin': 0o755}
        assert walk_files(dest) == ['etc/foo.conf', 'usr/bin/foo']
        assert (dest / 'usr/bin/foo').read_text() == 'binary'
        assert (scripts / '.post-install').is_file()
        assert not (dest / '.PKGINFO').exists()

    def test_default_scripts_dir(self, tmp_path):
        archive = tmp_path / 'foo.apk'
        archive.write_bytes(make_apk({'a': 'x'}, hooks={'.pre-install': 'echo'}))
        dest = tmp_path / 'foo'
        extracted = extract_package(archive, dest)
        assert extracted.scripts_dir == tmp_path / 'foo.scripts'
        assert (tmp_path / 'foo.scripts' / '.pre-install').is_file()

    def test_previous_tree_replaced(self, tmp_path):
        archive = tmp_path / 'foo.apk'
        archive.write_bytes(make_apk({'new': 'x'}))
        dest = tmp_path / 'foo'
        dest.mkdir()
        (dest / 'old').write_text('leftover')

        extract_package(archive, dest)
        assert walk_files(dest) == ['new']

    def test_unsafe_path(self, tmp_path):
        archive = tmp_path / 'evil.apk'
        archive.write_bytes(gzip.compress(make_tar([('../escape', 'x', 0o644)])))
        dest = tmp_path / 'evil'

        with pytest.raises(ExtractError):
            extract_package(archive, dest)
        assert not dest.exists()
        assert not (tmp_path / 'escape').exists()

    def test_corrupt_archive(self, tmp_path):
        archive = tmp_path / 'broken.apk'
        archive.write_bytes(b'\x1f\x8b' + b'not really gzip')
        dest = tmp_path / 'broken'

        with pytest.raises(ExtractError):
            extract_package(archive, dest)
        assert not dest.exists()

    def test_read_only_directory_mode_recorded(self, tmp_path):
        archive = tmp_path / 'ro.apk'
        archive.write_bytes(gzip.compress(make_tar([
            ('etc/ro', None, 0o555),
            ('etc/ro/file', 'x', 0o444),
        ])))
        dest = tmp_path / 'ro'

        extracted = extract_package(archive, dest)

        assert extracted.dir_modes == {'etc/ro': 0o555}
        # Staged copy stays writable by its owner
        assert stat.S_IMODE((dest / 'etc/ro').stat().st_mode) & 0o700 == 0o700
        assert (dest / 'etc/ro/file').read_text() == 'x'
