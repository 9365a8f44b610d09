"""Module with the input stream that reads blobs through the local cache."""

from __future__ import annotations

import copy
import io
from typing import BinaryIO, Optional, TYPE_CHECKING

from blobdir.cache.common import decompress_into, is_fresh
from blobdir.logger import log
from blobdir.storage import StorageError

if TYPE_CHECKING:
    from blobdir.directory.directory import BlobDirectory


class CloneError(IOError):
    """Exception raised when an input stream could not be duplicated."""


class BlobInput:
    """
    Random access input stream over the contents of a blob.

    Upon opening, the blob is copied to the local cache unless the cache already holds
    a fresh copy. Freshness is checked with a single HEAD request that compares the
    cached file's length and modification time with the blob's logical length and
    modification time. Compressed blobs are decompressed on the way into the cache.

    Afterwards all reads and seeks are served by a handle on the cached file, so no
    further network traffic happens for the lifetime of the stream. Opening and
    cloning are serialized per blob so that concurrent streams never download into the
    same cached file at the same time.
    """

    def __init__(self, directory: BlobDirectory, name: str) -> None:
        """Open the blob with the specified name, refreshing its cached copy first."""
        self.name = name

        self._directory = directory
        self._address = directory.blob_address(name)
        self._handle: Optional[BinaryIO] = None

        with directory.exclusive(name):
            self._ensure_cached()

            self._length = directory.cache.file_length(name)
            self._handle = directory.cache.open_input(name)

    def _ensure_cached(self) -> None:
        """Download the blob into the cache if there's no fresh copy of it."""
        cache = self._directory.cache

        response = self._directory.client.head(self._address)

        if not response.is_success:
            raise StorageError.from_response(
                f"failed to read properties of {self.name}", response
            )

        remote_length, remote_modified = self._directory.logical_properties(response)

        cached_length: Optional[int] = None
        cached_modified: Optional[float] = None

        if cache.file_exists(self.name):
            cached_length = cache.file_length(self.name)
            cached_modified = cache.file_modified(self.name)

        if is_fresh(cached_length, cached_modified, remote_length, remote_modified):
            log.debug(f"using cached file for {self.name}")
            return

        log.debug(f"cached file for {self.name} is missing or stale")

        self._populate(remote_modified)

    def _populate(self, remote_modified: float) -> None:
        """
        Copy the blob into the cache.

        The cached file gets the blob's logical modification time, so that it's
        recognized as fresh the next time the blob is opened.
        """
        cache = self._directory.cache

        if self._directory.should_compress_file(self.name):
            response = self._directory.client.get(self._address)

            if not response.is_success:
                raise StorageError.from_response(
                    f"failed to download {self.name}", response
                )

            with cache.create_output(self.name) as f:
                size = decompress_into(io.BytesIO(response.content), f)

            log.debug(
                f"GET {self.name} retrieved {len(response.content)} bytes, "
                f"inflated to {size} bytes"
            )
        else:
            with self._directory.client.stream("GET", self._address) as response:
                if not response.is_success:
                    response.read()

                    raise StorageError.from_response(
                        f"failed to download {self.name}", response
                    )

                with cache.create_output(self.name) as f:
                    for chunk in response.iter_bytes():
                        f.write(chunk)

                    size = f.tell()

            log.debug(f"GET {self.name} retrieved {size} bytes")

        cache.touch_file(self.name, remote_modified)

    def _check_open(self) -> BinaryIO:
        if self._handle is None:
            raise ValueError(f"input for {self.name} is closed")

        return self._handle

    @property
    def length(self) -> int:
        """Return the logical length of the blob."""
        return self._length

    @property
    def file_pointer(self) -> int:
        """Return the current read position."""
        return self._check_open().tell()

    def seek(self, position: int) -> None:
        """Move the read position to the specified byte offset."""
        self._check_open().seek(position)

    def read_byte(self) -> int:
        """Read a single byte."""
        data = self._check_open().read(1)

        if not data:
            raise EOFError(f"read past end of {self.name}")

        return data[0]

    def read_bytes(self, buffer: bytearray, offset: int, length: int) -> None:
        """Read exactly the specified number of bytes into the buffer at the offset."""
        handle = self._check_open()

        if offset < 0 or length < 0 or offset + length > len(buffer):
            raise ValueError(
                f"range {offset}+{length} exceeds buffer of {len(buffer)} bytes"
            )

        view = memoryview(buffer)[offset : offset + length]

        while len(view) > 0:
            count = handle.readinto(view)

            if not count:
                raise EOFError(f"read past end of {self.name}")

            view = view[count:]

    def clone(self) -> BlobInput:
        """
        Create an independent stream over the same cached file.

        The clone starts at the current read position, but seeks and reads on either
        stream don't affect the other.
        """
        handle = self._check_open()

        with self._directory.exclusive(self.name):
            log.debug(f"creating clone for {self.name}")

            try:
                clone_handle = self._directory.cache.open_input(self.name)
            except OSError as e:
                raise CloneError(f"failed to clone input for {self.name}: {e}") from e

            try:
                clone_handle.seek(handle.tell())
            except OSError as e:
                clone_handle.close()
                raise CloneError(f"failed to clone input for {self.name}: {e}") from e

        clone = copy.copy(self)
        clone._handle = clone_handle

        return clone

    def close(self) -> None:
        """Close the handle on the cached file. Closing twice is harmless."""
        if self._handle is not None:
            log.debug(f"closed input {self.name}")

            self._handle.close()
            self._handle = None

    def __enter__(self) -> BlobInput:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
