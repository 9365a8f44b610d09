"""
Modules that talk to the remote blob service.

Only a small part of the blob storage REST API is needed to treat a container as a
directory of files: reading, writing and deleting blobs, checking their properties,
listing the container, updating custom metadata, and managing leases. Rather than
depending on a full vendor SDK, blobdir implements these calls directly on top of
httpx, which keeps the set of requests that is made (and their cost) explicit.

Requests are authenticated with the shared key scheme: a canonical form of the request
is signed with the account key and sent along in the Authorization header. The signing
logic lives in 'signing', the request execution in 'client'.
"""

from .client import StorageClient, StorageError, TransportError
from .signing import Credentials, SigningError

__all__ = [
    "Credentials",
    "SigningError",
    "StorageClient",
    "StorageError",
    "TransportError",
]
