"""
Package download manager

Fetches index and package archives over HTTP and stages package archives
in a local directory before extraction.
"""

import logging
import shutil
import socket
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

USER_AGENT = 'apkg/0.3'
CHUNK_SIZE = 65536  # 64KB chunks


class DownloadError(Exception):
    """A URL could not be fetched."""

    def __init__(self, url: str, reason: str):
        super().__init__(f"{url}: {reason}")
        self.url = url
        self.reason = reason


class StagingError(Exception):
    """Staging directories could not be prepared."""


@dataclass
class FetchResponse:
    """Response of a whole-body GET."""
    url: str
    status: int
    content_type: str
    body: bytes


class HttpFetcher:
    """Fetch bytes from URLs with urllib.

    Transient errors are retried with a linear backoff, HTTP errors are not.
    """

    def __init__(self, timeout: int = 30, max_retries: int = 3):
        self.timeout = timeout
        self.max_retries = max_retries

    def _open(self, url: str):
        req = urllib.request.Request(url)
        req.add_header('User-Agent', USER_AGENT)
        return urllib.request.urlopen(req, timeout=self.timeout)

    def _with_retries(self, url: str, func: Callable):
        last_error = None
        for attempt in range(self.max_retries):
            try:
                return func()
            except urllib.error.HTTPError as e:
                # HTTP errors (404, 500, etc.) - don't retry
                raise DownloadError(url, f"HTTP {e.code}: {e.reason}") from e
            except (urllib.error.URLError, socket.timeout, OSError) as e:
                last_error = str(e.reason) if hasattr(e, 'reason') else str(e)
                if attempt < self.max_retries - 1:
                    time.sleep(1 * (attempt + 1))  # 1s, 2s, 3s backoff
                    continue
        raise DownloadError(url, f"After {self.max_retries} attempts: {last_error}")

    def get(self, url: str) -> FetchResponse:
        """GET url and return the whole body."""
        def _get():
            with self._open(url) as response:
                return FetchResponse(
                    url=url,
                    status=getattr(response, 'status', 200),
                    content_type=response.headers.get('Content-Type', ''),
                    body=response.read(),
                )
        return self._with_retries(url, _get)

    def download(self, url: str, dest: Path,
                 progress_callback: Callable[[int, int], None] = None) -> int:
        """Stream url into dest via a temporary file.

        Returns:
            Number of bytes written
        """
        dest = Path(dest)
        temp_path = dest.with_name(dest.name + '.tmp')

        def _download():
            with self._open(url) as response:
                total_size = int(response.headers.get('Content-Length', 0) or 0)
                downloaded = 0
                with open(temp_path, 'wb') as f:
                    while True:
                        chunk = response.read(CHUNK_SIZE)
                        if not chunk:
                            break
                        f.write(chunk)
                        downloaded += len(chunk)
                        if progress_callback:
                            progress_callback(downloaded, total_size)
            temp_path.rename(dest)
            return downloaded

        try:
            return self._with_retries(url, _download)
        finally:
            if temp_path.exists():
                temp_path.unlink()


@dataclass
class DownloadItem:
    """A package archive to stage."""
    name: str
    version: str
    filename: str
    url: str


@dataclass
class DownloadResult:
    """Result of a download operation."""
    item: DownloadItem
    success: bool
    path: Optional[Path] = None
    error: Optional[str] = None


class Stager:
    """Downloads package archives into the staging directory."""

    def __init__(self, staged_dir: Path, fetcher=None):
        """Initialize stager.

        Args:
            staged_dir: Directory receiving downloaded archives
            fetcher: Object with get()/download() (default: HttpFetcher)
        """
        self.staged_dir = Path(staged_dir)
        self.fetcher = fetcher or HttpFetcher()

    def prepare(self) -> None:
        """Create the staging directory.

        Raises:
            StagingError: directory cannot be created
        """
        try:
            self.staged_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StagingError(f"Failed to create {self.staged_dir}: {e}") from e

    def _staged_path(self, item: DownloadItem) -> Path:
        return self.staged_dir / item.filename

    def stage(self, item: DownloadItem) -> Path:
        """Download one archive.

        Raises:
            DownloadError: the archive could not be fetched
        """
        path = self._staged_path(item)
        logger.info(f"Downloading {item.name} ({item.version}) from {item.url}")
        size = self.fetcher.download(item.url, path)
        logger.debug(f"Staged: {path} ({size} bytes)")
        return path

    def download_one(self, item: DownloadItem) -> DownloadResult:
        try:
            path = self.stage(item)
        except DownloadError as e:
            return DownloadResult(item=item, success=False, error=e.reason)
        except OSError as e:
            return DownloadResult(item=item, success=False, error=str(e))
        return DownloadResult(item=item, success=True, path=path)

    def download_all(self, items: List[DownloadItem], max_workers: int = 1) -> List[DownloadResult]:
        """Download several archives, optionally in parallel.

        Results are returned in the order of items.
        """
        if max_workers <= 1 or len(items) <= 1:
            return [self.download_one(item) for item in items]

        results = {}
        with ThreadPoolExecutor(max_workers=max_workers) as executor:
            futures = {executor.submit(self.download_one, item): item for item in items}
            for future in as_completed(futures):
                item = futures[future]
                results[item.name] = future.result()
        return [results[item.name] for item in items]

    def discard(self, path: Path) -> None:
        """Remove a staged archive."""
        Path(path).unlink(missing_ok=True)

    def cleanup(self) -> None:
        """Remove the whole staging directory."""
        shutil.rmtree(self.staged_dir, ignore_errors=True)
