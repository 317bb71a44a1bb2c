"""
Package extraction for apkg

Streams a .apk archive into a per-package staging tree. Control entries
(.PKGINFO, triggers, signatures, public keys) never reach the installable
tree; lifecycle hook scripts are written to a side directory so placement
can report them.
"""

import logging
import lzma
import os
import shutil
import tarfile
import zlib
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

import zstandard

from .compression import decompress_stream, open_tar_stream

logger = logging.getLogger(__name__)

HOOK_SCRIPTS = (
    '.pre-install',
    '.post-install',
    '.pre-upgrade',
    '.post-upgrade',
    '.pre-deinstall',
    '.post-deinstall',
)

CONTROL_NAMES = ('.PKGINFO', '.trigger') + HOOK_SCRIPTS

SIGNATURE_PREFIX = '.SIGN.'
PUBKEY_SUFFIX = '.pub'


class ExtractError(Exception):
    """A package archive could not be extracted."""


def classify_entry(name: str) -> str:
    """Classify an archive member name.

    Returns:
        'hook', 'control', 'signature' or 'file'
    """
    name = name[2:] if name.startswith('./') else name
    for control in CONTROL_NAMES:
        if name == control or name.startswith(control + '/'):
            return 'hook' if name in HOOK_SCRIPTS else 'control'
    if name.startswith(SIGNATURE_PREFIX) or name.endswith(PUBKEY_SUFFIX):
        return 'signature'
    return 'file'


def _safe_relpath(name: str) -> PurePosixPath:
    rel = PurePosixPath(name)
    if rel.is_absolute() or '..' in rel.parts:
        raise ExtractError(f"Unsafe path in archive: {name}")
    return rel


def _write_member(tar: tarfile.TarFile, member: tarfile.TarInfo, target: Path) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    src = tar.extractfile(member)
    with open(target, 'wb') as out:
        shutil.copyfileobj(src, out)
    os.chmod(target, member.mode & 0o7777)


@dataclass
class ExtractedPackage:
    """An archive unpacked into the staging area."""
    tree: Path
    scripts_dir: Path
    hooks: List[str] = field(default_factory=list)
    # Archive mode of each directory entry, by relative path
    dir_modes: Dict[str, int] = field(default_factory=dict)


def extract_package(archive: Path, dest_dir: Path,
                    scripts_dir: Optional[Path] = None) -> ExtractedPackage:
    """Extract an archive into dest_dir, filtering control entries.

    Staged directories stay owner-writable so files can be written below
    them; the archive's own directory modes are returned in dir_modes for
    placement to apply.

    Args:
        archive: Path to the .apk file
        dest_dir: Installable tree destination (recreated)
        scripts_dir: Where hook scripts go (default: <dest_dir>.scripts)

    Raises:
        ExtractError: the archive is unreadable or unsafe. dest_dir and
            scripts_dir are removed before raising.
    """
    dest_dir = Path(dest_dir)
    scripts_dir = Path(scripts_dir) if scripts_dir else dest_dir.with_name(dest_dir.name + '.scripts')
    extracted = ExtractedPackage(tree=dest_dir, scripts_dir=scripts_dir)

    try:
        for d in (dest_dir, scripts_dir):
            if d.exists():
                shutil.rmtree(d)
        dest_dir.mkdir(parents=True)

        with decompress_stream(archive) as stream, open_tar_stream(stream) as tar:
            for member in tar:
                kind = classify_entry(member.name)
                if kind in ('control', 'signature'):
                    continue
                if kind == 'hook':
                    if member.isfile():
                        name = PurePosixPath(member.name).name
                        _write_member(tar, member, scripts_dir / name)
                        extracted.hooks.append(name)
                    continue

                rel = _safe_relpath(member.name)
                if str(rel) in ('', '.'):
                    continue
                target = dest_dir.joinpath(*rel.parts)
                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    os.chmod(target, (member.mode & 0o7777) | 0o700)
                    extracted.dir_modes[rel.as_posix()] = member.mode & 0o7777
                elif member.isfile():
                    _write_member(tar, member, target)
                else:
                    logger.debug(f"Skipping {member.name}: unsupported entry type")
    except (tarfile.TarError, OSError, EOFError, zlib.error, lzma.LZMAError,
            zstandard.ZstdError, ExtractError) as e:
        shutil.rmtree(dest_dir, ignore_errors=True)
        shutil.rmtree(scripts_dir, ignore_errors=True)
        if isinstance(e, ExtractError):
            raise
        raise ExtractError(f"Failed to extract {Path(archive).name}: {e}") from e

    return extracted


def walk_files(tree: Path) -> List[str]:
    """Relative POSIX paths of every regular file under tree, sorted."""
    tree = Path(tree)
    files = []
    for dirpath, dirnames, filenames in os.walk(tree):
        dirnames.sort()
        for filename in sorted(filenames):
            full = Path(dirpath) / filename
            files.append(full.relative_to(tree).as_posix())
    return files
