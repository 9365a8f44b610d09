"""
Shared key request signing for the blob storage REST protocol.

Every request is stamped with the current time and the protocol version, after which
an HMAC-SHA256 signature over a canonical description of the request is added as the
Authorization header. The canonical form must match what the service computes on its
end byte for byte, so it is assembled here from small pure functions that can be
tested in isolation.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
from email.utils import formatdate
import hashlib
import hmac
from typing import Dict, List, MutableMapping, Optional
from urllib.parse import parse_qsl, urlsplit

import blobdir.constants as constants


class SigningError(ValueError):
    """Exception raised when a request cannot be signed with the account key."""


@dataclass(frozen=True)
class Credentials:
    """Name and base64 encoded shared key of a storage account."""

    account: str
    key: str

    def __post_init__(self) -> None:
        """Check that an account name was given."""
        if not self.account:
            raise ValueError("an account name is required")

    @property
    def is_emulator(self) -> bool:
        """Return whether requests should be sent unsigned to a local emulator."""
        return self.key == constants.EMULATOR_KEY

    def decoded_key(self) -> bytes:
        """Return the raw account key used as the HMAC secret."""
        try:
            return base64.b64decode(self.key, validate=True)
        except (binascii.Error, ValueError) as e:
            raise SigningError(f"account key for {self.account} is not base64") from e

    def __repr__(self) -> str:
        return f"Credentials(account={self.account!r})"


def canonicalized_headers(headers: MutableMapping[str, str]) -> str:
    """Join all request headers as key:value lines, sorted by lower-cased key."""
    items = sorted((key.lower(), value) for key, value in headers.items())
    return "\n".join(f"{key}:{value}" for key, value in items)


def canonicalized_resource(account: str, url: str) -> str:
    """
    Describe the targeted resource as /account/path plus its query parameters.

    Parameters are URL-decoded, sorted by name and appended as name:value lines.
    Repeated parameters are combined into a single comma separated value.
    """
    parts = urlsplit(url)
    resource = f"/{account}{parts.path or '/'}"

    params: Dict[str, List[str]] = {}
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        params.setdefault(key, []).append(value)

    for key in sorted(params):
        resource += f"\n{key}:{','.join(params[key])}"

    return resource


def string_to_sign(
    method: str,
    content_length: Optional[int],
    headers: MutableMapping[str, str],
    resource: str,
) -> str:
    """
    Build the newline delimited string that is signed for a request.

    The empty lines stand for the standard headers (Content-Encoding, Content-MD5,
    Date, If-Match, Range and so on) that this client never sends.
    """
    length = "" if content_length is None else str(content_length)

    return (
        f"{method}\n\n\n{length}\n\n\n\n\n\n\n\n\n"
        f"{canonicalized_headers(headers)}\n{resource}"
    )


def signature(key: bytes, text: str) -> str:
    """Compute the base64 encoded HMAC-SHA256 of the text."""
    digest = hmac.new(key, text.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def sign_request(
    credentials: Credentials,
    method: str,
    url: str,
    headers: MutableMapping[str, str],
    content_length: Optional[int],
    date: Optional[str] = None,
) -> None:
    """
    Stamp and sign the request headers in place.

    GET and HEAD requests are signed without a content length. Requests for the
    local emulator are stamped, but not signed.
    """
    headers["x-ms-date"] = date or formatdate(usegmt=True)
    headers["x-ms-version"] = constants.STORAGE_API_VERSION

    if credentials.is_emulator:
        return

    if method.upper() in ("GET", "HEAD"):
        content_length = None

    text = string_to_sign(
        method.upper(),
        content_length,
        headers,
        canonicalized_resource(credentials.account, url),
    )

    sig = signature(credentials.decoded_key(), text)
    headers["Authorization"] = f"SharedKey {credentials.account}:{sig}"
