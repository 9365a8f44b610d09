"""Data structures and helpers shared by the cache-populating and publishing streams."""

from __future__ import annotations

from contextlib import contextmanager
import threading
from typing import BinaryIO, Dict, Iterator, Optional

import lz4.frame

import blobdir.constants as constants


def is_fresh(
    cached_length: Optional[int],
    cached_modified: Optional[float],
    remote_length: int,
    remote_modified: float,
    tolerance: float = constants.FRESHNESS_TOLERANCE,
) -> bool:
    """
    Check if a cached copy can be used in place of the remote blob.

    The cached copy is fresh if it has exactly the logical length of the blob and its
    modification time (in seconds) is within the tolerance of the blob's logical
    modification time. A missing cached copy (None) is never fresh.
    """
    if cached_length is None or cached_modified is None:
        return False

    if cached_length != remote_length:
        return False

    return abs(cached_modified - remote_modified) <= tolerance


def compress(data: bytes) -> bytes:
    """
    Compress the complete contents of a file for upload.

    Contents are compressed in one pass into memory rather than streamed, because the
    upload needs a body of known length. LZ4 was chosen because it's fast enough to
    make compression nearly free compared to the time spent on the network.
    """
    return lz4.frame.compress(data)


def decompress_into(
    source: BinaryIO, target: BinaryIO, chunk_size: int = constants.INFLATE_CHUNK_SIZE
) -> int:
    """
    Decompress a compressed stream into the target file in fixed-size chunks.

    A read that returns fewer bytes than requested marks the end of the stream.
    Returns the number of decompressed bytes written.
    """
    written = 0

    with lz4.frame.open(source, "rb") as decompressor:
        while True:
            chunk = decompressor.read(chunk_size)

            if chunk:
                target.write(chunk)
                written += len(chunk)

            if len(chunk) < chunk_size:
                break

    return written


class MutexRegistry:
    """
    Collection of mutexes that serialize access to blobs by their storage key.

    Unlike a general purpose lock table, mutexes are never removed once created: the
    set of keys is bounded by the files of a single index, and holding on to them
    makes it impossible for two threads to end up with different mutexes for the same
    key.
    """

    def __init__(self) -> None:
        """Instantiate an empty MutexRegistry."""
        self._global_lock = threading.Lock()
        self._mutexes: Dict[str, threading.Lock] = {}

    def mutex(self, key: str) -> threading.Lock:
        """Retrieve the mutex for the specified key, creating it on first use."""
        with self._global_lock:
            if key not in self._mutexes:
                self._mutexes[key] = threading.Lock()

            return self._mutexes[key]

    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """Lock a critical section based on the specified key."""
        with self.mutex(key):
            yield

    @property
    def mutex_count(self) -> int:
        """Return the number of mutexes created so far."""
        with self._global_lock:
            return len(self._mutexes)


# Mutexes shared by every directory in the process, since multiple directories may
# point at the same container and cache.
BLOB_MUTEXES = MutexRegistry()
