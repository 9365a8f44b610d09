"""Module with the local file storage that holds cached copies of blobs."""

from abc import ABC, abstractmethod
import os
import time
from typing import BinaryIO, List, Optional

import fasteners


class LocalCache(ABC):
    """
    Storage for local copies of blobs, addressed by the same names as the blobs.

    Cached files always hold the logical (decompressed) contents. Every handle that is
    returned has its own cursor, so multiple readers of the same file don't interfere.
    """

    @abstractmethod
    def list_all(self) -> List[str]:
        """Return the names of all cached files."""

    @abstractmethod
    def file_exists(self, name: str) -> bool:
        """Return whether a cached file exists."""

    @abstractmethod
    def file_length(self, name: str) -> int:
        """Return the length of a cached file in bytes."""

    @abstractmethod
    def file_modified(self, name: str) -> float:
        """Return the modification time of a cached file in seconds since the epoch."""

    @abstractmethod
    def touch_file(self, name: str, modified: Optional[float] = None) -> None:
        """Set the modification time of a cached file, creating it if necessary."""

    @abstractmethod
    def delete_file(self, name: str) -> None:
        """Delete a cached file."""

    @abstractmethod
    def create_output(self, name: str) -> BinaryIO:
        """Create (or truncate) a cached file and open it for writing and reading."""

    @abstractmethod
    def open_input(self, name: str) -> BinaryIO:
        """Open a cached file for reading."""

    @abstractmethod
    def make_lock(self, name: str) -> fasteners.InterProcessLock:
        """Return a named lock that is shared with other processes using the cache."""

    @abstractmethod
    def clear_lock(self, name: str) -> None:
        """Forcefully remove a named lock."""


class FileSystemCache(LocalCache):
    """
    Local cache that stores one file per blob in a directory.

    Blob names containing slashes are stored in subdirectories. Named locks are lock
    files in a separate '.locks' directory so they never show up as cached files.
    """

    LOCK_DIRECTORY = ".locks"

    def __init__(self, base_path: str) -> None:
        """Instantiate the cache, creating its directory if necessary."""
        self._base_path = os.path.abspath(base_path)

        os.makedirs(self._base_path, exist_ok=True)

    @property
    def base_path(self) -> str:
        return self._base_path

    def path(self, name: str) -> str:
        """Return the path of the file that caches the specified blob."""
        path = os.path.normpath(os.path.join(self._base_path, name))

        if os.path.commonpath([path, self._base_path]) != self._base_path:
            raise ValueError(f"name escapes the cache directory: {name}")
        if path == self._base_path:
            raise ValueError(f"invalid cache file name: {name!r}")

        return path

    def list_all(self) -> List[str]:
        names = []

        for root, dirs, files in os.walk(self._base_path):
            if root == self._base_path and self.LOCK_DIRECTORY in dirs:
                dirs.remove(self.LOCK_DIRECTORY)

            for fn in files:
                rel = os.path.relpath(os.path.join(root, fn), self._base_path)
                names.append(rel.replace(os.sep, "/"))

        return sorted(names)

    def file_exists(self, name: str) -> bool:
        return os.path.isfile(self.path(name))

    def file_length(self, name: str) -> int:
        return os.path.getsize(self.path(name))

    def file_modified(self, name: str) -> float:
        return os.path.getmtime(self.path(name))

    def touch_file(self, name: str, modified: Optional[float] = None) -> None:
        path = self.path(name)

        if not os.path.exists(path):
            os.makedirs(os.path.dirname(path), exist_ok=True)
            open(path, "ab").close()

        if modified is None:
            modified = time.time()

        os.utime(path, (modified, modified))

    def delete_file(self, name: str) -> None:
        os.remove(self.path(name))

    def create_output(self, name: str) -> BinaryIO:
        path = self.path(name)
        os.makedirs(os.path.dirname(path), exist_ok=True)

        return open(path, "w+b")

    def open_input(self, name: str) -> BinaryIO:
        return open(self.path(name), "rb")

    def _lock_path(self, name: str) -> str:
        return os.path.join(
            self._base_path, self.LOCK_DIRECTORY, name.replace("/", "_") + ".lock"
        )

    def make_lock(self, name: str) -> fasteners.InterProcessLock:
        os.makedirs(os.path.join(self._base_path, self.LOCK_DIRECTORY), exist_ok=True)

        return fasteners.InterProcessLock(self._lock_path(name))

    def clear_lock(self, name: str) -> None:
        try:
            os.remove(self._lock_path(name))
        except FileNotFoundError:
            pass
