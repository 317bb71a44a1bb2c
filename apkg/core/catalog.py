"""
Package catalog for apkg

Fetches APKINDEX.tar.gz from each configured repository and merges the
results. Repositories are consulted in configuration order and the first
repository listing a package owns it.
"""

import logging
import tarfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Optional, Sequence, Tuple

from .apkindex import INDEX_ARCHIVE, INDEX_ENTRY, package_filename, parse_apkindex
from .compression import DecompressError, open_tar_bytes
from .download import DownloadError, HttpFetcher

logger = logging.getLogger(__name__)

# Content types accepted for the index archive
ACCEPTED_CONTENT_TYPES = ('gzip', 'octet-stream', 'zstd')


class CatalogError(Exception):
    """A repository index could not be fetched or parsed."""


class EmptyCatalogError(CatalogError):
    """No repository yielded any package."""


@dataclass(frozen=True)
class CatalogEntry:
    """One package version as listed in a repository index."""
    name: str
    version: str
    filename: str
    deps: Tuple[str, ...] = ()


@dataclass
class Catalog:
    """Merged view of all repositories for one run."""
    entries: Dict[str, CatalogEntry] = field(default_factory=dict)
    owners: Dict[str, str] = field(default_factory=dict)

    def __contains__(self, name: str) -> bool:
        return name in self.entries

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[str]:
        return iter(self.entries)

    def get(self, name: str) -> Optional[CatalogEntry]:
        return self.entries.get(name)

    def owner(self, name: str) -> Optional[str]:
        """Repository URL that owns name, if any."""
        return self.owners.get(name)

    def merge(self, repo: str, packages: Dict[str, CatalogEntry]) -> int:
        """Add a repository's packages; names already present are kept.

        Returns:
            Number of packages this repository contributed
        """
        added = 0
        for name, entry in packages.items():
            if name in self.entries:
                continue
            self.entries[name] = entry
            self.owners[name] = repo
            added += 1
        return added

    def package_url(self, name: str, version: Optional[str] = None) -> Optional[str]:
        """Download URL for a package, from its owning repository.

        Args:
            name: Package name
            version: Override the catalog version (regen of an older install)
        """
        repo = self.owner(name)
        if repo is None:
            return None
        entry = self.entries[name]
        filename = entry.filename
        if version is not None and version != entry.version:
            filename = package_filename(name, version)
        return f"{repo_base_url(repo)}/{filename}"


def repo_base_url(repo: str) -> str:
    """Normalize repository URL (no trailing slash)."""
    return repo.rstrip('/')


def build_index_url(repo: str) -> str:
    """Build full URL for a repository's index archive."""
    return f"{repo_base_url(repo)}/{INDEX_ARCHIVE}"


def parse_index_archive(data: bytes) -> Dict[str, CatalogEntry]:
    """Locate the APKINDEX entry in an index archive and parse it.

    Raises:
        CatalogError: archive unreadable or without an APKINDEX entry
    """
    try:
        with open_tar_bytes(data) as tar:
            for member in tar:
                if member.isfile() and member.name == INDEX_ENTRY:
                    f = tar.extractfile(member)
                    text = f.read().decode('utf-8', errors='replace')
                    break
            else:
                raise CatalogError(f"{INDEX_ENTRY} not found in archive")
    except (DecompressError, tarfile.TarError, OSError, EOFError) as e:
        raise CatalogError(f"Cannot read index archive: {e}") from e

    packages = {}
    for pkg in parse_apkindex(text):
        packages[pkg['name']] = CatalogEntry(
            name=pkg['name'],
            version=pkg['version'],
            filename=pkg['filename'],
            deps=tuple(pkg['deps']),
        )
    return packages


def fetch_index(repo: str, fetcher=None) -> Dict[str, CatalogEntry]:
    """Fetch and parse one repository's index.

    Raises:
        CatalogError: fetch rejected or archive unusable
    """
    fetcher = fetcher or HttpFetcher()
    url = build_index_url(repo)
    try:
        response = fetcher.get(url)
    except DownloadError as e:
        raise CatalogError(f"Failed to download {INDEX_ARCHIVE}: {e}") from e

    if response.status != 200:
        raise CatalogError(
            f"Failed to fetch {INDEX_ARCHIVE}: status {response.status}, "
            f"content-type {response.content_type}"
        )

    content_type = (response.content_type or '').lower()
    if not any(t in content_type for t in ACCEPTED_CONTENT_TYPES):
        raise CatalogError(f"Unexpected content-type for {INDEX_ARCHIVE}: {response.content_type}")

    return parse_index_archive(response.body)


def _fetch_or_none(repo: str, fetcher) -> Optional[Dict[str, CatalogEntry]]:
    try:
        return fetch_index(repo, fetcher)
    except CatalogError as e:
        logger.warning(f"Failed to fetch {INDEX_ARCHIVE} from {repo}: {e}")
        return None


def fetch_catalog(repos: Sequence[str], fetcher=None, max_workers: int = 1) -> Catalog:
    """Fetch every repository and merge them, first repository wins.

    A repository that fails is logged and skipped. Fetches may run in
    parallel, the merge always follows configuration order.

    Raises:
        EmptyCatalogError: no repository yielded any package
    """
    fetcher = fetcher or HttpFetcher()
    repos = list(repos)

    if max_workers > 1 and len(repos) > 1:
        with ThreadPoolExecutor(max_workers=min(max_workers, len(repos))) as executor:
            results: List[Optional[Dict[str, CatalogEntry]]] = list(
                executor.map(lambda r: _fetch_or_none(r, fetcher), repos)
            )
    else:
        results = [_fetch_or_none(repo, fetcher) for repo in repos]

    catalog = Catalog()
    for repo, packages in zip(repos, results):
        if packages is None:
            continue
        added = catalog.merge(repo, packages)
        logger.debug(f"{repo}: {len(packages)} packages, {added} new")

    if not catalog:
        raise EmptyCatalogError("No packages found in any repo")

    logger.info(f"Catalog: {len(catalog)} packages from {len(repos)} repos")
    return catalog
