"""Module with the directory that exposes a blob container as a set of files."""

from __future__ import annotations

from contextlib import contextmanager
from email.utils import parsedate_to_datetime
import errno
import os
import threading
from typing import Dict, Iterator, List, Optional, Tuple
from urllib.parse import quote
from xml.etree import ElementTree

import httpx

import blobdir.constants as constants
from blobdir.cache import BLOB_MUTEXES, FileSystemCache, LocalCache, MutexRegistry
from blobdir.config import CacheConfig, Config, LockConfig
from blobdir.directory.input import BlobInput
from blobdir.directory.lock import BlobLock
from blobdir.directory.output import BlobOutput
from blobdir.logger import log, summarize
from blobdir.storage import Credentials, StorageClient, StorageError


class BlobDirectory:
    """
    Flat directory of files that are stored as blobs in a container.

    File names map to blobs named "{root_folder}{name}" within the container. Reads
    and writes go through a local cache (see BlobInput and BlobOutput), while metadata
    queries like file_length() are answered by the blob service directly. Locks are
    implemented with blob leases (see BlobLock).

    The container is created when the directory is instantiated if it doesn't exist
    yet.
    """

    def __init__(
        self,
        client: StorageClient,
        container: Optional[str] = None,
        cache: Optional[LocalCache] = None,
        root_folder: Optional[str] = None,
        compress: bool = False,
        lock_config: Optional[LockConfig] = None,
        mutexes: MutexRegistry = BLOB_MUTEXES,
    ) -> None:
        """
        Instantiate a directory backed by the specified container.

        If no cache is given, cached files are stored in a directory named after the
        container below the default cache path.
        """
        self.client = client
        self.container = (container or constants.DEFAULT_CONTAINER).lower()

        root_folder = (root_folder or "").strip("/")
        self.root_folder = root_folder + "/" if root_folder else ""

        self.compress_blobs = compress
        self.lock_config = lock_config or LockConfig()
        self.mutexes = mutexes

        if cache is None:
            cache = FileSystemCache(os.path.join(CacheConfig().path, self.container))

        self.cache = cache

        self._locks: Dict[str, BlobLock] = {}
        self._locks_lock = threading.Lock()
        self._owns_client = False

        self.create_container()

    @staticmethod
    def from_config(
        config: Config, transport: Optional[httpx.BaseTransport] = None
    ) -> BlobDirectory:
        """Instantiate a directory with its own client from configuration variables."""
        client = StorageClient(
            Credentials(config.storage.account, config.storage.key),
            endpoint=config.storage.endpoint,
            timeout=config.storage.timeout,
            transport=transport,
        )

        container = (config.storage.container or constants.DEFAULT_CONTAINER).lower()

        try:
            directory = BlobDirectory(
                client,
                container=container,
                cache=FileSystemCache(os.path.join(config.cache.path, container)),
                root_folder=config.storage.root_folder,
                compress=config.storage.compress,
                lock_config=config.lock,
            )
        except Exception:
            client.close()
            raise

        directory._owns_client = True

        return directory

    #
    # Addressing
    #

    def blob_address(self, name: str) -> str:
        """Return the address of the blob for the specified file name."""
        return f"{self.container}/{quote(self.root_folder + name)}"

    @property
    def _container_address(self) -> str:
        return f"{self.container}?restype=container"

    @contextmanager
    def exclusive(self, name: str) -> Iterator[None]:
        """
        Enter a critical section for the cached copy of a file.

        Threads are serialized by a mutex per blob and processes sharing the cache by a
        lock file, so no two streams ever fill or publish the same cached file at once.
        """
        with self.mutexes.lock(self.blob_address(name)):
            with self.cache.make_lock(name):
                yield

    def create_container(self) -> None:
        """Create the container if it doesn't exist yet."""
        response = self.client.get(self._container_address)

        if response.status_code == 200:
            return

        log.debug(f"creating container {self.container}")

        response = self.client.put(self._container_address)

        # Somebody else may have created the container in the meanwhile
        if not response.is_success and response.status_code != 409:
            raise StorageError.from_response(
                f"failed to create container {self.container}", response
            )

    #
    # Metadata access
    #

    def list_all(self) -> List[str]:
        """
        Return the names of all files in the directory.

        A listing that can't be retrieved or parsed results in an empty list.
        """
        names: List[str] = []
        marker: Optional[str] = None

        while True:
            address = f"{self._container_address}&comp=list"

            if self.root_folder:
                address += f"&prefix={quote(self.root_folder, safe='')}"
            if marker:
                address += f"&marker={quote(marker, safe='')}"

            response = self.client.get(address)

            if not response.is_success:
                log.debug(f"listing {self.container} failed ({response.status_code})")
                return []

            try:
                root = ElementTree.fromstring(response.content)
            except ElementTree.ParseError as e:
                log.debug(
                    f"unparsable listing of {self.container}: {e}"
                    f" ({summarize(response.text, max_length=80)})"
                )
                return []

            for element in root.findall("./Blobs/Blob/Name"):
                name = element.text or ""

                if name.startswith(self.root_folder):
                    names.append(name[len(self.root_folder) :])

            marker = root.findtext("./NextMarker")

            if not marker:
                return names

    def _properties(self, name: str) -> Optional[httpx.Response]:
        response = self.client.head(self.blob_address(name))

        return response if response.is_success else None

    @staticmethod
    def logical_properties(response: httpx.Response) -> Tuple[int, float]:
        """
        Extract the logical length and modification time from blob properties.

        These are read from the blob's metadata, falling back to the physical length
        and last modification time of the blob if the metadata is missing.
        """
        try:
            length = int(response.headers[constants.LENGTH_METADATA])
        except (KeyError, ValueError):
            length = int(response.headers.get("content-length", 0))

        try:
            modified = int(response.headers[constants.MODIFIED_METADATA]) / 1000
        except (KeyError, ValueError):
            last_modified = response.headers.get("last-modified")
            modified = (
                parsedate_to_datetime(last_modified).timestamp()
                if last_modified
                else 0.0
            )

        return length, modified

    def file_exists(self, name: str) -> bool:
        """Return whether a file exists."""
        return self._properties(name) is not None

    def file_length(self, name: str) -> int:
        """Return the logical length of a file, or 0 if it doesn't exist."""
        response = self._properties(name)

        return self.logical_properties(response)[0] if response is not None else 0

    def file_modified(self, name: str) -> float:
        """Return the logical modification time of a file, or 0 if it doesn't exist."""
        response = self._properties(name)

        return self.logical_properties(response)[1] if response is not None else 0.0

    def touch_file(self, name: str) -> None:
        """Update the modification time of the cached copy of a file."""
        self.cache.touch_file(name)

    #
    # File operations
    #

    def delete_file(self, name: str) -> None:
        """Delete a file from the container and its cached copy, if any."""
        log.debug(f"DELETE {self.blob_address(name)}")

        response = self.client.delete(self.blob_address(name))

        if not response.is_success:
            raise StorageError.from_response(f"failed to delete {name}", response)

        try:
            if self.cache.file_exists(name):
                self.cache.delete_file(name)
        except OSError as e:
            log.warning(f"failed to delete cached copy of {name}: {e}")

    def create_output(self, name: str) -> BlobOutput:
        """Create a file, which is published when the returned stream is closed."""
        return BlobOutput(self, name)

    def open_input(self, name: str) -> BlobInput:
        """Open a file for reading."""
        try:
            return BlobInput(self, name)
        except StorageError as e:
            raise FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), name) from e

    def should_compress_file(self, name: str) -> bool:
        """
        Return whether a file is stored compressed.

        Only index files with bulky contents are compressed, and only if compression
        is enabled for the directory.
        """
        if not self.compress_blobs:
            return False

        return os.path.splitext(name)[1] in constants.COMPRESSIBLE_EXTENSIONS

    def clear_cache(self) -> None:
        """Delete all cached files without touching the container."""
        for name in self.cache.list_all():
            self.cache.delete_file(name)

    #
    # Locking
    #

    def make_lock(self, name: str) -> BlobLock:
        """Return the lock with the specified name, the same instance every time."""
        with self._locks_lock:
            if name not in self._locks:
                self._locks[name] = BlobLock(
                    self,
                    name,
                    lease_duration=self.lock_config.lease_duration,
                    renew_interval=self.lock_config.renew_interval,
                    provision_attempts=self.lock_config.provision_attempts,
                    provision_backoff=self.lock_config.provision_backoff,
                )

            return self._locks[name]

    def clear_lock(self, name: str) -> None:
        """Forcefully break the lock with the specified name, whoever holds it."""
        self.make_lock(name).break_lock()
        self.cache.clear_lock(name)

    def close(self) -> None:
        """Stop renewing leases of all locks and clear their local lock files."""
        with self._locks_lock:
            locks = list(self._locks.items())

        for name, lock in locks:
            lock.close()
            self.cache.clear_lock(name)

        if self._owns_client:
            self.client.close()

    def __enter__(self) -> BlobDirectory:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
