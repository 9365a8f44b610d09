"""Module with the HTTP client that executes signed requests against blob storage."""

from __future__ import annotations

from contextlib import contextmanager
import logging
import time
from typing import Dict, Iterator, Mapping, Optional

import httpx

import blobdir.constants as constants
from blobdir.logger import log
from blobdir.storage.signing import Credentials, sign_request


class StorageError(IOError):
    """Exception raised when the blob service answers with a non-success status."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        error_code: Optional[str] = None,
        address: Optional[str] = None,
    ) -> None:
        """Instantiate the exception with the details of the failed response."""
        super().__init__(message)

        self.message = message

        self.status_code = status_code
        self.error_code = error_code
        self.address = address

    @classmethod
    def from_response(cls, message: str, response: httpx.Response) -> StorageError:
        """Describe a failed response."""
        return cls(
            f"{message} ({response.status_code})",
            status_code=response.status_code,
            error_code=response.headers.get("x-ms-error-code"),
            address=response.request.url.path,
        )

    def __str__(self) -> str:
        return self.message


class TransportError(StorageError):
    """Exception raised when a request could not be completed at all."""


class StorageClient:
    """
    Client for the subset of the blob storage REST API that blobdir relies on.

    Addresses are relative to the account endpoint, e.g. "container/blob" or
    "container?restype=container". Every request is stamped and signed with the
    client's credentials before it is sent.

    The client does not raise on non-success statuses, callers decide
    which statuses are acceptable for their operation (a 404 is the expected outcome
    of an existence check, but fatal when downloading). Connection level failures are
    raised as TransportError and are never retried here.

    A single client can be used by multiple threads.
    """

    def __init__(
        self,
        credentials: Credentials,
        endpoint: Optional[str] = None,
        timeout: Optional[float] = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        """
        Instantiate a client for the account in the credentials.

        The endpoint defaults to the public blob service address of the account. A
        custom transport can be supplied to route requests elsewhere, e.g. in tests.
        """
        self.credentials = credentials
        self.endpoint = endpoint or constants.ENDPOINT_TEMPLATE.format(
            account=credentials.account
        )

        if not self.endpoint.endswith("/"):
            self.endpoint += "/"

        self._http = httpx.Client(
            base_url=self.endpoint, timeout=timeout, transport=transport
        )

    def url(self, address: str) -> str:
        """Return the absolute URL for an address relative to the endpoint."""
        return self.endpoint + address.lstrip("/")

    def _prepare(
        self,
        method: str,
        address: str,
        headers: Optional[Mapping[str, str]],
        content: Optional[bytes],
    ) -> httpx.Request:
        request = self._http.build_request(method, self.url(address), content=content)

        # Only the storage specific headers take part in the signature, so sign them
        # separately from the transport defaults (Host, User-Agent and so on).
        signed_headers: Dict[str, str] = dict(headers or {})
        length = 0 if content is None else len(content)

        sign_request(
            self.credentials, method, str(request.url), signed_headers, length
        )
        request.headers.update(signed_headers)

        return request

    def request(
        self,
        method: str,
        address: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        """Execute a signed request and return the fully read response."""
        request = self._prepare(method, address, headers, content)

        t_call = time.time()

        try:
            response = self._http.send(request)
        except httpx.HTTPError as e:
            raise TransportError(
                f"{method} {address} failed: {e}", address=address
            ) from e

        self._log_call(method, address, response.status_code, t_call)

        return response

    @contextmanager
    def stream(
        self, method: str, address: str, headers: Optional[Mapping[str, str]] = None
    ) -> Iterator[httpx.Response]:
        """Execute a signed request whose response body is read incrementally."""
        request = self._prepare(method, address, headers, None)

        t_call = time.time()

        try:
            response = self._http.send(request, stream=True)
        except httpx.HTTPError as e:
            raise TransportError(
                f"{method} {address} failed: {e}", address=address
            ) from e

        self._log_call(method, address, response.status_code, t_call)

        try:
            yield response
        except httpx.HTTPError as e:
            raise TransportError(
                f"{method} {address} failed: {e}", address=address
            ) from e
        finally:
            response.close()

    @staticmethod
    def _log_call(method: str, address: str, status_code: int, t_call: float) -> None:
        if log.isEnabledFor(logging.DEBUG):
            t_millis = round((time.time() - t_call) * 1000)
            log.debug(f"http::{method} {address} -> {status_code} - {t_millis} ms")

    #
    # Convenience wrappers
    #

    def get(
        self, address: str, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        return self.request("GET", address, headers)

    def head(
        self, address: str, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        return self.request("HEAD", address, headers)

    def put(
        self,
        address: str,
        headers: Optional[Mapping[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        return self.request("PUT", address, headers, content)

    def delete(
        self, address: str, headers: Optional[Mapping[str, str]] = None
    ) -> httpx.Response:
        return self.request("DELETE", address, headers)

    def close(self) -> None:
        """Close the underlying connection pool."""
        self._http.close()
