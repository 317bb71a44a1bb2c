"""
APKINDEX parser for apkg

Parses the plain-text index shipped inside APKINDEX.tar.gz. The format is a
sequence of blank-line separated stanzas, one per package:

    C:Q1...=
    P:busybox
    V:1.36.1-r29
    D:so:libc.musl-x86_64.so.1 musl>=1.2

Only P (name), V (version) and D (dependencies) are used.
"""

import re
from typing import Dict, Iterator, List, Optional, Tuple

INDEX_ARCHIVE = "APKINDEX.tar.gz"
INDEX_ENTRY = "APKINDEX"
PACKAGE_EXTENSION = ".apk"

# Version constraint operators, longest first
_CONSTRAINT_RE = re.compile(r'(>=|<=|~=|=~|>|<|=|~)')


def package_filename(name: str, version: str) -> str:
    """Archive filename for a package version."""
    return f"{name}-{version}{PACKAGE_EXTENSION}"


def parse_dependency(dep: str) -> Tuple[str, str, str]:
    """Split a dependency token into name and constraint.

    Args:
        dep: Token like "musl>=1.2", "so:libc.musl-x86_64.so.1" or "zlib"

    Returns:
        Tuple of (name, operator, version)
    """
    match = _CONSTRAINT_RE.search(dep)
    if match is None:
        return dep, '', ''
    return dep[:match.start()], match.group(1), dep[match.end():]


def parse_depends(line: str) -> List[str]:
    """Parse a D: value into dependency names with constraints stripped.

    Conflict markers (tokens starting with '!') are not dependencies and
    are dropped.
    """
    deps = []
    for token in line.split():
        if token.startswith('!'):
            continue
        name, _op, _ver = parse_dependency(token)
        if name:
            deps.append(name)
    return deps


def _iter_stanzas(text: str) -> Iterator[Dict[str, str]]:
    """Yield one {key: value} dict per blank-line separated stanza."""
    fields: Dict[str, str] = {}
    for line in text.splitlines():
        if not line.strip():
            if fields:
                yield fields
                fields = {}
            continue
        if len(line) < 2 or line[1] != ':':
            continue
        fields[line[0]] = line[2:]
    if fields:
        yield fields


def parse_stanza(fields: Dict[str, str]) -> Optional[Dict[str, object]]:
    """Convert a stanza into a package dict, or None if it is not a package."""
    name = fields.get('P', '').strip()
    version = fields.get('V', '').strip()
    if not name or not version:
        return None
    return {
        'name': name,
        'version': version,
        'filename': package_filename(name, version),
        'deps': parse_depends(fields.get('D', '')),
    }


def parse_apkindex(text: str) -> Iterator[Dict[str, object]]:
    """Parse APKINDEX text and yield package dictionaries.

    Stanzas missing a name or a version are skipped silently.

    Yields:
        Dicts with name, version, filename, deps
    """
    for fields in _iter_stanzas(text):
        pkg = parse_stanza(fields)
        if pkg is not None:
            yield pkg
