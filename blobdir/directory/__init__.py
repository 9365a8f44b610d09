"""
Modules that expose a blob container as a directory of index files.

The directory is what applications talk to. It hands out input and output streams for
files, answers metadata queries, and creates locks:

* BlobInput copies a blob into the local cache (unless a fresh copy is already there)
and then serves all reads from the cached file.
* BlobOutput writes to a cached file and uploads it when it is closed, optionally
compressed, along with metadata that records the uncompressed length and
modification time.
* BlobLock implements mutual exclusion between processes and machines by holding a
lease on a blob, renewing it in the background for as long as the lock is held.

Local access to a given file is serialized with a mutex per blob, so threads that open
the same file at the same time never download into the same cached file twice.
"""

from .directory import BlobDirectory
from .input import BlobInput, CloneError
from .lock import BlobLock, LeaseConflictError, LeaseRenewer
from .output import BlobOutput, PublishError

__all__ = [
    "BlobDirectory",
    "BlobInput",
    "BlobLock",
    "BlobOutput",
    "CloneError",
    "LeaseConflictError",
    "LeaseRenewer",
    "PublishError",
]
