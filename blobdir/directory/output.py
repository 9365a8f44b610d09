"""Module with the output stream that publishes cached files as blobs."""

from __future__ import annotations

from typing import BinaryIO, Optional, TYPE_CHECKING, Union

import blobdir.constants as constants
from blobdir.cache.common import compress
from blobdir.logger import log
from blobdir.storage import StorageError

if TYPE_CHECKING:
    from blobdir.directory.directory import BlobDirectory


class PublishError(StorageError):
    """
    Exception raised when a closed output stream could not be published.

    The stage is "upload" if the contents could not be stored, or "metadata" if the
    contents were stored but the logical length and modification time were not. In
    both cases the cached file is left in place.
    """

    def __init__(
        self,
        message: str,
        stage: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        """Instantiate the exception for a failure in the specified stage."""
        super().__init__(message, status_code, error_code, address)

        self.stage = stage


class BlobOutput:
    """
    Output stream that writes a blob through the local cache.

    All writes go to a cached file. Nothing is sent to blob storage until the stream is
    closed, at which point the complete file is uploaded (compressed if the directory's
    policy says so) and the blob's metadata is set to the logical length and
    modification time of the cached file. Blob length and modification time as seen
    through the directory are therefore always those of the uncompressed contents.
    """

    def __init__(self, directory: BlobDirectory, name: str) -> None:
        """Create a fresh cached file for the blob with the specified name."""
        self.name = name

        self._directory = directory
        self._address = directory.blob_address(name)
        self._handle: Optional[BinaryIO] = None

        with directory.exclusive(name):
            self._handle = directory.cache.create_output(name)

    def _check_open(self) -> BinaryIO:
        if self._handle is None:
            raise ValueError(f"output for {self.name} is closed")

        return self._handle

    @property
    def length(self) -> int:
        """Return the number of bytes in the file so far."""
        handle = self._check_open()

        position = handle.tell()
        length = handle.seek(0, 2)
        handle.seek(position)

        return length

    @property
    def file_pointer(self) -> int:
        """Return the current write position."""
        return self._check_open().tell()

    def seek(self, position: int) -> None:
        """Move the write position to the specified byte offset."""
        self._check_open().seek(position)

    def flush(self) -> None:
        self._check_open().flush()

    def write_byte(self, value: int) -> None:
        """Write a single byte."""
        self._check_open().write(bytes((value,)))

    def write_bytes(
        self,
        data: Union[bytes, bytearray, memoryview],
        offset: int = 0,
        length: Optional[int] = None,
    ) -> None:
        """Write the specified range of bytes from data, or all of it."""
        if length is None:
            length = len(data) - offset

        self._check_open().write(memoryview(data)[offset : offset + length])

    def close(self) -> None:
        """
        Finish the cached file and publish it to blob storage.

        The contents are uploaded first and the metadata is set afterwards with a
        separate request. If either fails, a PublishError is raised and the blob may be
        left with new contents, but old or missing metadata. Closing a stream that is
        already closed does nothing.
        """
        if self._handle is None:
            return

        with self._directory.exclusive(self.name):
            handle = self._handle

            handle.flush()
            logical_length = self.length

            handle.close()
            self._handle = None

            self._publish(logical_length)

        log.debug(f"closed output {self.name}")

    def _publish(self, logical_length: int) -> None:
        cache = self._directory.cache
        client = self._directory.client

        with cache.open_input(self.name) as f:
            data = f.read()

        if self._directory.should_compress_file(self.name):
            body = compress(data)

            log.debug(
                f"compressed {logical_length} -> {len(body)} bytes "
                f"({len(body) / max(logical_length, 1) * 100:.1f}%) for {self.name}"
            )
        else:
            body = data

        response = client.put(self._address, {"x-ms-blob-type": "BlockBlob"}, body)

        if not response.is_success:
            raise PublishError(
                f"failed to upload {self.name} ({response.status_code})",
                "upload",
                response.status_code,
                response.headers.get("x-ms-error-code"),
                self._address,
            )

        # Timestamps are stored with millisecond precision, well within the freshness
        # tolerance.
        modified_ms = int(cache.file_modified(self.name) * 1000)

        response = client.put(
            self._address + "?comp=metadata",
            {
                constants.LENGTH_METADATA: str(logical_length),
                constants.MODIFIED_METADATA: str(modified_ms),
            },
        )

        if not response.is_success:
            raise PublishError(
                f"failed to update metadata of {self.name} ({response.status_code})",
                "metadata",
                response.status_code,
                response.headers.get("x-ms-error-code"),
                self._address,
            )

        log.debug(f"PUT {len(body)} bytes to {self.name}")

    def __enter__(self) -> BlobOutput:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
