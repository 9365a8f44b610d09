"""
Module implementing a distributed lock on top of blob leases.

A lease is an exclusive, time-limited claim on a blob. Only one lease can exist on a
blob at any time, which makes it a natural building block for mutual exclusion between
processes on different machines. Leases expire if they are not renewed, so a process
that crashes while holding a lock doesn't block everybody else forever.

The lock blob doesn't need to exist upfront. If acquiring a lease fails because the
container or the blob is missing, both are created on the fly and acquisition is
retried a limited number of times.
"""

from __future__ import annotations

import threading
import time
from typing import Optional, TYPE_CHECKING

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt
from tenacity import wait_exponential

import blobdir.constants as constants
from blobdir.logger import log
from blobdir.storage import StorageError

if TYPE_CHECKING:
    from blobdir.directory.directory import BlobDirectory


class LeaseConflictError(StorageError):
    """Exception raised when a lease could not be acquired despite provisioning."""


class LeaseRenewer(threading.Thread):
    """Background thread that periodically renews the lease held by a lock."""

    def __init__(self, lock: BlobLock, interval: float) -> None:
        """Prepare renewal of the lease of the specified lock at a fixed interval."""
        super().__init__(name=f"lease-renewer:{lock.name}", daemon=True)

        self._lock = lock
        self._interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        while not self._stopped.wait(self._interval):
            try:
                self._lock.renew()
            except Exception as e:
                # The lease may expire and be taken by somebody else after this, which
                # will surface as a failure upon the next renewal or release.
                log.warning(f"failed to renew lease on {self._lock.name}: {e}")

    def stop(self) -> None:
        """Stop renewing and wait until a renewal in progress has finished."""
        self._stopped.set()

        if threading.current_thread() is not self:
            self.join()


class BlobLock:
    """
    Lock that is held by holding a lease on a blob.

    The states of the lock are simple: no lease id means that this instance doesn't
    hold the lock. Once a lease is acquired, a LeaseRenewer keeps it alive until the
    lock is released or broken.

    An instance is not reentrant across threads in the sense of counting: obtain()
    succeeds immediately if this instance already holds a lease, and a single
    release() gives it up.
    """

    def __init__(
        self,
        directory: BlobDirectory,
        name: str,
        lease_duration: int = constants.LEASE_DURATION,
        renew_interval: float = constants.RENEW_INTERVAL,
        provision_attempts: int = 5,
        provision_backoff: float = 0.5,
    ) -> None:
        """Instantiate a lock on the blob with the specified name in the directory."""
        self.name = name
        self.lease_id: Optional[str] = None

        self._directory = directory
        self._address = directory.blob_address(name) + "?comp=lease"

        self._lease_duration = lease_duration
        self._renew_interval = renew_interval
        self._provision_attempts = provision_attempts
        self._provision_backoff = provision_backoff

        self._renewer: Optional[LeaseRenewer] = None
        self._state_lock = threading.RLock()

    def __repr__(self) -> str:
        return f"BlobLock@{self.name}.{self.lease_id}"

    def obtain(self) -> bool:
        """
        Try to obtain the lock without waiting.

        Returns False if somebody else currently holds a lease on the lock blob.
        """
        with self._state_lock:
            if self.lease_id:
                return True

            lease_id = self._acquire()

            if lease_id is None:
                log.debug(f"lock {self.name} is held by somebody else")
                return False

            log.debug(f"obtained lock {self.name} with lease {lease_id}")

            self.lease_id = lease_id
            self._start_renewal()

            return True

    def obtain_with_timeout(self, timeout: float, poll_interval: float = 1.0) -> bool:
        """Repeatedly try to obtain the lock until it succeeds or the timeout expires."""
        deadline = time.monotonic() + timeout

        while True:
            if self.obtain():
                return True

            if time.monotonic() >= deadline:
                return False

            time.sleep(poll_interval)

    def renew(self) -> None:
        """Renew the held lease, or do nothing if no lease is held."""
        lease_id = self.lease_id

        if not lease_id:
            return

        log.debug(f"renewing lease {lease_id} on {self.name}")

        response = self._directory.client.put(
            self._address, {"x-ms-lease-action": "renew", "x-ms-lease-id": lease_id}
        )

        if not response.is_success:
            raise StorageError.from_response(
                f"failed to renew lease on {self.name}", response
            )

    def release(self) -> None:
        """Release the held lease, or do nothing if no lease is held."""
        with self._state_lock:
            if not self.lease_id:
                return

            log.debug(f"releasing lease {self.lease_id} on {self.name}")

            # No renewal may be sent with the lease id once it has been released
            self._stop_renewal()

            try:
                self._release_lease(self.lease_id)
            except Exception:
                self._start_renewal()
                raise

            self.lease_id = None

    def break_lock(self) -> None:
        """
        Forcefully break the lease on the lock blob.

        Breaking doesn't require the lease id, so this also ends leases held by other
        instances or processes. Failure to break is logged rather than raised.
        """
        with self._state_lock:
            log.debug(f"breaking lock {self.name} (own lease {self.lease_id})")

            response = self._directory.client.put(
                self._address,
                {"x-ms-lease-action": "break", "x-ms-lease-break-period": "0"},
            )

            if response.status_code == 404:
                log.debug(f"no lock blob to break for {self.name}")
            elif not response.is_success:
                log.warning(
                    f"failed to break lease on {self.name} ({response.status_code})"
                )

            self._stop_renewal()
            self.lease_id = None

    def is_locked(self) -> bool:
        """
        Check whether the lock is currently held.

        If this instance doesn't hold the lock itself, this is answered by actually
        acquiring a lease and immediately releasing it again. Note that this means that
        the check has side effects: the lock blob may be created, and the lock is held
        for a brief moment.
        """
        if self.lease_id:
            return True

        lease_id = self._acquire()

        if lease_id is None:
            return True

        self._release_lease(lease_id)

        return False

    def close(self) -> None:
        """Stop renewing the lease, without releasing it."""
        with self._state_lock:
            self._stop_renewal()

    def _acquire(self) -> Optional[str]:
        """
        Acquire a lease on the lock blob and return its id.

        Returns None if somebody else holds a lease. A missing container or lock blob
        is created before trying again, with exponential backoff between attempts.
        """
        for attempt in Retrying(
            stop=stop_after_attempt(self._provision_attempts),
            wait=wait_exponential(multiplier=self._provision_backoff, max=10),
            retry=retry_if_exception_type(LeaseConflictError),
            reraise=True,
        ):
            with attempt:
                return self._try_acquire()

        return None

    def _try_acquire(self) -> Optional[str]:
        response = self._directory.client.put(
            self._address,
            {
                "x-ms-lease-action": "acquire",
                "x-ms-lease-duration": str(self._lease_duration),
            },
        )

        if response.is_success:
            return response.headers["x-ms-lease-id"]

        error_code = response.headers.get("x-ms-error-code")

        if response.status_code == 409 and error_code == "LeaseAlreadyPresent":
            return None

        if response.status_code in (404, 409):
            self._provision()

            raise LeaseConflictError.from_response(
                f"lock blob for {self.name} was missing", response
            )

        raise StorageError.from_response(
            f"failed to acquire lease on {self.name}", response
        )

    def _provision(self) -> None:
        """Create the container and an empty placeholder blob for the lock."""
        log.debug(f"provisioning lock blob for {self.name}")

        self._directory.create_container()

        response = self._directory.client.put(
            self._directory.blob_address(self.name),
            {"x-ms-blob-type": "BlockBlob"},
            self.name.encode("utf-8"),
        )

        # A 412 means that a lease appeared on the blob in the meantime, which the next
        # acquisition attempt will report.
        if not response.is_success and response.status_code != 412:
            raise StorageError.from_response(
                f"failed to upload lock file for {self.name}", response
            )

    def _release_lease(self, lease_id: str) -> None:
        response = self._directory.client.put(
            self._address, {"x-ms-lease-action": "release", "x-ms-lease-id": lease_id}
        )

        if not response.is_success:
            raise StorageError.from_response(
                f"failed to release lease on {self.name}", response
            )

    def _start_renewal(self) -> None:
        self._renewer = LeaseRenewer(self, self._renew_interval)
        self._renewer.start()

    def _stop_renewal(self) -> None:
        if self._renewer is not None:
            self._renewer.stop()
            self._renewer = None
