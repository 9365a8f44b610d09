"""
Modules that keep local copies of blobs.

Reading a blob over the network byte by byte would be far too slow for an index, whose
files are read with many small random accesses. Instead, every blob that is opened is
first copied in full to a local file, after which all reads are served from disk.

The cache has no index of its own. Whether a cached file can be reused is decided by
comparing its length and modification time with the logical length and modification
time that are stored as metadata on the blob. These are the values of the original,
uncompressed file, so the comparison works regardless of whether the blob itself was
stored compressed.
"""

from .common import BLOB_MUTEXES, MutexRegistry, compress, decompress_into, is_fresh
from .local import FileSystemCache, LocalCache

__all__ = [
    "BLOB_MUTEXES",
    "FileSystemCache",
    "LocalCache",
    "MutexRegistry",
    "compress",
    "decompress_into",
    "is_fresh",
]
