"""Tests for package staging"""

import pytest

from apkg.core.download import DownloadItem, Stager, StagingError
from conftest import REPO, FakeFetcher


def _item(name, version="1.0"):
    filename = f"{name}-{version}.apk"
    return DownloadItem(name=name, version=version, filename=filename, url=f"{REPO}/{filename}")


@pytest.fixture
def fetcher():
    fetcher = FakeFetcher()
    fetcher.urls[f"{REPO}/a-1.0.apk"] = b'archive a'
    fetcher.urls[f"{REPO}/b-1.0.apk"] = b'archive b'
    return fetcher


class TestStager:
    """Tests for Stager."""

    def test_stage(self, tmp_path, fetcher):
        stager = Stager(tmp_path / 'staged', fetcher)
        stager.prepare()
        path = stager.stage(_item('a'))
        assert path == tmp_path / 'staged' / 'a-1.0.apk'
        assert path.read_bytes() == b'archive a'

    def test_failure_recorded(self, tmp_path, fetcher):
        stager = Stager(tmp_path / 'staged', fetcher)
        stager.prepare()
        results = stager.download_all([_item('a'), _item('missing'), _item('b')])
        assert [r.success for r in results] == [True, False, True]
        assert 'HTTP 404' in results[1].error

    def test_parallel_keeps_order(self, tmp_path, fetcher):
        stager = Stager(tmp_path / 'staged', fetcher)
        stager.prepare()
        items = [_item('b'), _item('a'), _item('missing')]
        results = stager.download_all(items, max_workers=3)
        assert [r.item.name for r in results] == ['b', 'a', 'missing']
        assert [r.success for r in results] == [True, True, False]

    def test_prepare_fails(self, tmp_path, fetcher):
        blocker = tmp_path / 'blocker'
        blocker.write_text('file')
        with pytest.raises(StagingError):
            Stager(blocker / 'staged', fetcher).prepare()

    def test_cleanup(self, tmp_path, fetcher):
        stager = Stager(tmp_path / 'staged', fetcher)
        stager.prepare()
        path = stager.stage(_item('a'))
        stager.discard(path)
        assert not path.exists()
        stager.cleanup()
        assert not (tmp_path / 'staged').exists()
