"""Module with an in-memory blob service that tests can run the real client against."""

import base64
from dataclasses import dataclass, field
from email.utils import formatdate
import hashlib
import hmac
import threading
import time
from typing import Dict, List, Optional, Tuple
import uuid
from xml.sax.saxutils import escape

import httpx
import pytest

from blobdir.cache import FileSystemCache, MutexRegistry
from blobdir.config import Config, LockConfig
from blobdir.directory import BlobDirectory
from blobdir.storage import Credentials, StorageClient

ACCOUNT = "devaccount"
ACCOUNT_KEY = base64.b64encode(b"not a real account key").decode("ascii")
ENDPOINT = f"https://{ACCOUNT}.blob.core.windows.net/"


@dataclass
class FakeBlob:
    data: bytes
    metadata: Dict[str, str] = field(default_factory=dict)
    last_modified: float = field(default_factory=time.time)
    lease_id: Optional[str] = None


class FakeBlobService:
    """
    Minimal blob service that implements the calls made by blobdir.

    Every request must carry a valid shared key signature. Specific calls can be made
    to fail by adding (method, comp) keys to 'failures', where comp is the value of the
    comp query parameter ("" for plain blob requests).
    """

    def __init__(self, page_size: int = 5000) -> None:
        self.containers: Dict[str, Dict[str, FakeBlob]] = {}
        self.failures: Dict[Tuple[str, str], int] = {}
        self.requests: List[httpx.Request] = []
        self.page_size = page_size

        self._lock = threading.Lock()

    def add_blob(
        self, name: str, data: bytes, last_modified: Optional[float] = None
    ) -> FakeBlob:
        """Store a blob without metadata, as if uploaded by another tool."""
        blob = FakeBlob(data, last_modified=last_modified or time.time())
        self.containers.setdefault("index", {})[name] = blob
        return blob

    def count(self, method: str, comp: str = "", action: Optional[str] = None) -> int:
        """Return how many requests with the method, comp and lease action were made."""
        return len(
            [
                r
                for r in self.requests
                if r.method == method
                and r.url.params.get("comp", "") == comp
                and (action is None or r.headers.get("x-ms-lease-action") == action)
            ]
        )

    def __call__(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            return self._handle(request)

    @staticmethod
    def _error(status_code: int, error_code: str) -> httpx.Response:
        return httpx.Response(status_code, headers={"x-ms-error-code": error_code})

    def _check_signature(self, request: httpx.Request) -> bool:
        """Rebuild the signed text from the request as the service would and compare."""
        signed = sorted(
            (k, v) for k, v in request.headers.items() if k.startswith("x-ms-")
        )
        length = "" if request.method in ("GET", "HEAD") else str(len(request.content))

        params: Dict[str, List[str]] = {}
        for key, value in request.url.params.multi_items():
            params.setdefault(key, []).append(value)

        path = request.url.raw_path.decode("ascii").partition("?")[0]
        resource = f"/{ACCOUNT}{path}" + "".join(
            f"\n{key}:{','.join(params[key])}" for key in sorted(params)
        )

        lines = [request.method, "", "", length] + [""] * 8
        lines += [f"{k}:{v}" for k, v in signed]
        lines.append(resource)

        text = "\n".join(lines)

        digest = hmac.new(
            base64.b64decode(ACCOUNT_KEY), text.encode("utf-8"), hashlib.sha256
        ).digest()
        expected = f"SharedKey {ACCOUNT}:{base64.b64encode(digest).decode('ascii')}"

        return request.headers.get("authorization") == expected

    def _handle(self, request: httpx.Request) -> httpx.Response:
        params = dict(request.url.params)
        comp = params.get("comp", "")

        self.requests.append(request)

        if not self._check_signature(request):
            return self._error(403, "AuthenticationFailed")

        if (request.method, comp) in self.failures:
            return self._error(self.failures[(request.method, comp)], "InternalError")

        container_name, _, blob_name = request.url.path.lstrip("/").partition("/")

        if not blob_name:
            return self._container_request(request, container_name, params)

        container = self.containers.get(container_name)

        if container is None:
            return self._error(404, "ContainerNotFound")

        if comp == "lease":
            return self._lease_request(request, container, blob_name)

        blob = container.get(blob_name)

        if request.method == "PUT" and comp == "metadata":
            if blob is None:
                return self._error(404, "BlobNotFound")

            blob.metadata = {
                k: v for k, v in request.headers.items() if k.startswith("x-ms-meta-")
            }
            return httpx.Response(200)
        elif request.method == "PUT":
            if blob is not None and blob.lease_id is not None:
                if request.headers.get("x-ms-lease-id") != blob.lease_id:
                    return self._error(412, "LeaseIdMissing")

            lease_id = blob.lease_id if blob else None
            container[blob_name] = FakeBlob(request.content, lease_id=lease_id)
            return httpx.Response(201)

        if blob is None:
            return self._error(404, "BlobNotFound")

        if request.method == "HEAD":
            headers = {
                "content-length": str(len(blob.data)),
                "last-modified": formatdate(blob.last_modified, usegmt=True),
                **blob.metadata,
            }
            return httpx.Response(200, headers=headers)
        elif request.method == "GET":
            return httpx.Response(200, content=blob.data)
        elif request.method == "DELETE":
            if blob.lease_id is not None:
                return self._error(412, "LeaseIdMissing")

            del container[blob_name]
            return httpx.Response(202)

        return self._error(405, "UnsupportedHttpVerb")

    def _container_request(
        self, request: httpx.Request, name: str, params: Dict[str, str]
    ) -> httpx.Response:
        if params.get("restype") != "container":
            return self._error(400, "InvalidQueryParameterValue")

        if request.method == "PUT":
            if name in self.containers:
                return self._error(409, "ContainerAlreadyExists")

            self.containers[name] = {}
            return httpx.Response(201)

        if name not in self.containers:
            return self._error(404, "ContainerNotFound")

        if params.get("comp") != "list":
            return httpx.Response(200)

        prefix = params.get("prefix", "")
        marker = params.get("marker", "")

        names = sorted(
            n for n in self.containers[name] if n.startswith(prefix) and n >= marker
        )
        page, rest = names[: self.page_size], names[self.page_size :]

        blobs = "".join(f"<Blob><Name>{escape(n)}</Name></Blob>" for n in page)
        next_marker = escape(rest[0]) if rest else ""

        return httpx.Response(
            200,
            content=(
                '<?xml version="1.0" encoding="utf-8"?>'
                f'<EnumerationResults ContainerName="{name}">'
                f"<Blobs>{blobs}</Blobs><NextMarker>{next_marker}</NextMarker>"
                "</EnumerationResults>"
            ).encode("utf-8"),
        )

    def _lease_request(
        self, request: httpx.Request, container: Dict[str, FakeBlob], name: str
    ) -> httpx.Response:
        blob = container.get(name)

        if blob is None:
            return self._error(404, "BlobNotFound")

        action = request.headers.get("x-ms-lease-action")
        lease_id = request.headers.get("x-ms-lease-id")

        if action == "acquire":
            if blob.lease_id is not None:
                return self._error(409, "LeaseAlreadyPresent")

            blob.lease_id = str(uuid.uuid4())
            return httpx.Response(201, headers={"x-ms-lease-id": blob.lease_id})
        elif action in ("renew", "release"):
            if blob.lease_id is None or blob.lease_id != lease_id:
                return self._error(409, "LeaseIdMismatchWithLeaseOperation")

            if action == "release":
                blob.lease_id = None

            return httpx.Response(200, headers={"x-ms-lease-id": lease_id})
        elif action == "break":
            blob.lease_id = None
            return httpx.Response(202, headers={"x-ms-lease-time": "0"})

        return self._error(400, "InvalidHeaderValue")


@pytest.fixture
def blob_service():
    return FakeBlobService()


@pytest.fixture
def create_client(blob_service):
    clients = []

    def factory(service=None):
        client = StorageClient(
            Credentials(ACCOUNT, ACCOUNT_KEY),
            endpoint=ENDPOINT,
            transport=httpx.MockTransport(service or blob_service),
        )
        clients.append(client)
        return client

    yield factory

    for client in clients:
        client.close()


@pytest.fixture
def create_directory(tmp_path, create_client):
    """Return a factory for directories that share the fake service, not the cache."""
    directories = []

    def factory(cache_name="cache", **override_args):
        base_args = dict(
            client=create_client(),
            container="index",
            cache=FileSystemCache(str(tmp_path / cache_name)),
            lock_config=LockConfig(renew_interval=0.05, provision_backoff=0),
            mutexes=MutexRegistry(),
        )

        final_args = {**base_args, **override_args}

        directory = BlobDirectory(**final_args)
        directories.append(directory)
        return directory

    yield factory

    for directory in directories:
        directory.close()


@pytest.fixture
def directory(create_directory):
    return create_directory()


@pytest.fixture
def config(tmp_path):
    """Return configuration variables that point at the fake service."""
    config = Config()

    config.storage.account = ACCOUNT
    config.storage.key = ACCOUNT_KEY
    config.storage.endpoint = ENDPOINT
    config.storage.container = "index"
    config.cache.path = str(tmp_path / "cache")
    config.lock = LockConfig(renew_interval=0.05, provision_backoff=0)

    return config
