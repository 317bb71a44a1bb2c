"""
Compression utilities for apkg

Auto-detects and handles the compression formats found in Alpine
repositories:
- gzip (APKINDEX.tar.gz and v2 .apk, often several concatenated members)
- zstd
- xz/lzma
- bzip2
"""

import io
import lzma
import tarfile
import zlib
from pathlib import Path
from typing import Union

# Magic bytes for format detection
MAGIC_ZSTD = b'\x28\xb5\x2f\xfd'
MAGIC_GZIP = b'\x1f\x8b'
MAGIC_XZ = b'\xfd7zXZ\x00'
MAGIC_BZ2 = b'BZ'


def detect_format(data: bytes) -> str:
    """Detect compression format from magic bytes.

    Args:
        data: First 8+ bytes of the file

    Returns:
        Format name: 'zstd', 'gzip', 'xz', 'bzip2', or 'plain'
    """
    if data[:4] == MAGIC_ZSTD:
        return 'zstd'
    elif data[:2] == MAGIC_GZIP:
        return 'gzip'
    elif data[:6] == MAGIC_XZ:
        return 'xz'
    elif data[:2] == MAGIC_BZ2:
        return 'bzip2'
    else:
        return 'plain'


class DecompressError(Exception):
    """Compressed data is damaged or truncated."""


def _decompress(fmt: str, data: bytes) -> bytes:
    if fmt == 'zstd':
        import zstandard as zstd
        dctx = zstd.ZstdDecompressor()
        try:
            with dctx.stream_reader(io.BytesIO(data), read_across_frames=True) as reader:
                return reader.read()
        except zstd.ZstdError as e:
            raise DecompressError(f"zstd: {e}") from e

    elif fmt == 'gzip':
        import gzip
        return gzip.decompress(data)

    elif fmt == 'xz':
        return lzma.decompress(data)

    elif fmt == 'bzip2':
        import bz2
        return bz2.decompress(data)

    else:
        # Plain/uncompressed
        return data


def decompress_bytes(data: bytes) -> bytes:
    """Decompress bytes, auto-detecting format.

    Multi-member gzip input (signature + control + data segments) is
    decompressed as a whole.

    Args:
        data: Compressed data

    Returns:
        Decompressed bytes

    Raises:
        DecompressError: data is damaged or truncated
    """
    fmt = detect_format(data)
    try:
        return _decompress(fmt, data)
    except (zlib.error, lzma.LZMAError, OSError, EOFError) as e:
        raise DecompressError(f"{fmt}: {e}") from e


def decompress_stream(filename: Union[str, Path]):
    """Open a compressed file and return a binary stream.

    Args:
        filename: Path to compressed file

    Returns:
        File-like object for reading decompressed data
    """
    path = Path(filename)

    with open(path, 'rb') as f:
        magic = f.read(8)

    fmt = detect_format(magic)

    if fmt == 'zstd':
        import zstandard as zstd
        f = open(path, 'rb')
        dctx = zstd.ZstdDecompressor()
        return dctx.stream_reader(f, read_across_frames=True, closefd=True)

    elif fmt == 'gzip':
        import gzip
        return gzip.open(path, 'rb')

    elif fmt == 'xz':
        return lzma.open(path, 'rb')

    elif fmt == 'bzip2':
        import bz2
        return bz2.open(path, 'rb')

    else:
        return open(path, 'rb')


def open_tar_bytes(data: bytes) -> tarfile.TarFile:
    """Open an in-memory (possibly compressed) tar archive.

    Concatenated tar segments are all visited (ignore_zeros).
    """
    raw = decompress_bytes(data)
    return tarfile.open(fileobj=io.BytesIO(raw), mode='r:', ignore_zeros=True)


def open_tar_stream(stream) -> tarfile.TarFile:
    """Open a decompressed binary stream as a sequential tar reader."""
    return tarfile.open(fileobj=stream, mode='r|', ignore_zeros=True)
