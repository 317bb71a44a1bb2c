"""Shared fixtures: in-memory repositories served by a fake fetcher."""

import gzip
import io
import tarfile
from pathlib import Path

import pytest

from apkg.core.config import DesiredState
from apkg.core.download import DownloadError, FetchResponse

REPO = "https://repo.test/main"
REPO2 = "https://repo.test/community"


def make_tar(entries, end_marker=True) -> bytes:
    """Build an uncompressed tar from (name, content, mode) tuples.

    content None means a directory.
    """
    buf = io.BytesIO()
    tar = tarfile.open(fileobj=buf, mode='w', format=tarfile.PAX_FORMAT)
    for name, content, mode in entries:
        info = tarfile.TarInfo(name)
        info.mode = mode
        if content is None:
            info.type = tarfile.DIRTYPE
            tar.addfile(info)
        else:
            data = content if isinstance(content, bytes) else content.encode()
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    if end_marker:
        tar.close()
        return buf.getvalue()
    # No end-of-archive blocks, like apk signature and control segments
    return buf.getvalue()


def make_apk(files, hooks=None, signed=True) -> bytes:
    """Build a .apk: gzip segments for signature, control and data.

    Args:
        files: {path: content} (content None for a directory)
        hooks: {script name: content}
    """
    segments = []
    if signed:
        segments.append(make_tar([('.SIGN.RSA.builder.rsa.pub', b'sig', 0o644)], end_marker=False))

    control = [('.PKGINFO', 'pkgname = test\n', 0o644)]
    for name, content in (hooks or {}).items():
        control.append((name, content, 0o755))
    segments.append(make_tar(control, end_marker=False))

    data = []
    for path, content in files.items():
        if content is None:
            data.append((path, None, 0o755))
        else:
            data.append((path, content, 0o644))
    segments.append(make_tar(data))

    return b''.join(gzip.compress(seg) for seg in segments)


def make_index(packages) -> bytes:
    """Build an APKINDEX.tar.gz from (name, version, deps) tuples."""
    stanzas = []
    for name, version, deps in packages:
        lines = ["C:Q1abc=", f"P:{name}", f"V:{version}", "A:x86_64"]
        if deps:
            lines.append(f"D:{' '.join(deps)}")
        stanzas.append('\n'.join(lines))
    text = '\n\n'.join(stanzas) + '\n'
    return gzip.compress(make_tar([
        ('DESCRIPTION', 'test repo', 0o644),
        ('APKINDEX', text, 0o644),
    ]))


class FakeFetcher:
    """Serves bytes from a dict of URLs."""

    def __init__(self, content_type='application/x-gzip'):
        self.urls = {}
        self.content_type = content_type
        self.requests = []

    def add_repo(self, repo, packages):
        """Publish an index plus one archive per package.

        Args:
            packages: {(name, version): (deps, files, hooks)}
        """
        index = [(name, version, deps) for (name, version), (deps, _f, _h) in packages.items()]
        self.urls[f"{repo}/APKINDEX.tar.gz"] = make_index(index)
        for (name, version), (_deps, files, hooks) in packages.items():
            self.urls[f"{repo}/{name}-{version}.apk"] = make_apk(files, hooks)

    def get(self, url):
        self.requests.append(url)
        if url not in self.urls:
            return FetchResponse(url=url, status=404, content_type='text/html', body=b'')
        return FetchResponse(url=url, status=200, content_type=self.content_type,
                             body=self.urls[url])

    def download(self, url, dest, progress_callback=None):
        self.requests.append(url)
        if url not in self.urls:
            raise DownloadError(url, "HTTP 404: Not Found")
        Path(dest).write_bytes(self.urls[url])
        return len(self.urls[url])


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def make_state(tmp_path):
    """Build a DesiredState rooted in tmp_path."""
    def _make(packages, repos=(REPO,), **kwargs):
        kwargs.setdefault('install', True)
        kwargs.setdefault('install_dir', str(tmp_path / 'root'))
        kwargs.setdefault('state_dir', str(tmp_path / 'state'))
        return DesiredState(repos=tuple(repos), packages=tuple(packages), **kwargs)
    return _make
