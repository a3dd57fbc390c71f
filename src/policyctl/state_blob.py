"""State backend in Azure Blob Storage.

The state document is a single block blob. The lock is an infinite lease
on that blob: a second run fails to acquire the lease and fails fast with
LockContentionError. The holder's LockInfo rides along in the blob
metadata so contention errors and force-unlock can name it.

Writes made while locked pass the lease, so a run that lost its lease
cannot overwrite state.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
)
from azure.storage.blob import BlobClient, BlobLeaseClient, BlobServiceClient

from .security import AuthenticationError, Credentials, get_client_secret_credential
from .state import LockInfo, StateBackend, StateError, StateSnapshot, dump_snapshot

logger = logging.getLogger(__name__)

# Metadata key carrying the lock holder's LockInfo as JSON
LOCK_METADATA_KEY = "policyctllock"

# Lease states that mean another run holds the lock
HELD_LEASE_STATES = frozenset({"leased", "breaking"})


class BlobStateStore(StateBackend):
    """State document and lock kept in one Azure Storage blob."""

    def __init__(
        self,
        account_url: str,
        container: str,
        blob_name: str,
        *,
        credential: Any = None,
    ) -> None:
        """Initialize the backend.

        Args:
            account_url: Blob service endpoint.
            container: Existing container holding the state blob.
            blob_name: Name of the state blob.
            credential: Azure credential; defaults to the ARM_* service principal.
        """
        self._account_url = account_url.rstrip("/")
        self._container = container
        self._blob_name = blob_name
        self._credential = credential
        self._blob: BlobClient | None = None
        self._lease: BlobLeaseClient | None = None
        self._lock_metadata: dict[str, str] = {}

    @property
    def location(self) -> str:
        return f"{self._account_url}/{self._container}/{self._blob_name}"

    def _client(self) -> BlobClient:
        if self._blob is None:
            credential = self._credential or get_client_secret_credential(
                Credentials.from_env(), verify=False
            )
            service = BlobServiceClient(account_url=self._account_url, credential=credential)
            self._blob = service.get_blob_client(container=self._container, blob=self._blob_name)
        return self._blob

    def _failure(self, action: str, e: AzureError) -> Exception:
        if isinstance(e, ClientAuthenticationError):
            return AuthenticationError(
                f"Authentication failed {action} {self.location}: {e.message}"
            )
        return StateError(f"Failed {action} {self.location}: {e.message}")

    def exists(self) -> bool:
        try:
            return bool(self._client().exists())
        except AzureError as e:
            raise self._failure("checking", e) from e

    def _load_text(self) -> str | None:
        try:
            data = self._client().download_blob().readall()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise self._failure("reading", e) from e
        if isinstance(data, bytes):
            return data.decode("utf-8")
        return data

    def _write(self, snapshot: StateSnapshot) -> None:
        content = dump_snapshot(snapshot).encode("utf-8")
        try:
            if self._lease is not None:
                # Uploading replaces metadata, so the lock info is written back
                self._client().upload_blob(
                    content, overwrite=True, lease=self._lease, metadata=self._lock_metadata
                )
            else:
                self._client().upload_blob(content, overwrite=True)
        except AzureError as e:
            raise self._failure("writing", e) from e

    def _try_acquire(self, info: LockInfo) -> bool:
        blob = self._client()
        try:
            lease = blob.acquire_lease(lease_duration=-1, lease_id=info.id)
        except ResourceNotFoundError as e:
            raise StateError(f"State not initialized: {self.location} (run init first)") from e
        except HttpResponseError as e:
            if e.status_code == 409:
                return False
            raise self._failure("locking", e) from e
        except AzureError as e:
            raise self._failure("locking", e) from e

        metadata = {LOCK_METADATA_KEY: json.dumps(info.to_dict())}
        try:
            blob.set_blob_metadata(metadata, lease=lease)
        except AzureError as e:
            try:
                lease.release()
            except AzureError as release_error:
                logger.warning(
                    "Failed to release state lease",
                    extra={"lock_id": info.id, "error": str(release_error)},
                )
            raise self._failure("locking", e) from e

        self._lease = lease
        self._lock_metadata = metadata
        return True

    def lock_holder(self) -> LockInfo | None:
        try:
            properties = self._client().get_blob_properties()
        except ResourceNotFoundError:
            return None
        except AzureError as e:
            raise self._failure("inspecting", e) from e

        if properties.lease.state not in HELD_LEASE_STATES:
            return None
        raw = (properties.metadata or {}).get(LOCK_METADATA_KEY)
        try:
            return LockInfo.from_dict(json.loads(raw))
        except (TypeError, ValueError, KeyError):
            # Leased but the lock info is not written yet; still held
            return LockInfo.from_dict({})

    def _release(self, info: LockInfo) -> None:
        lease = self._lease
        if lease is None or lease.id != info.id:
            lease = BlobLeaseClient(self._client(), lease_id=info.id)
        try:
            self._client().set_blob_metadata({}, lease=lease)
            lease.release()
        except AzureError as e:
            raise self._failure("unlocking", e) from e
        finally:
            self._lease = None
            self._lock_metadata = {}

    def _break(self, holder: LockInfo) -> None:
        blob = self._client()
        try:
            BlobLeaseClient(blob).break_lease(lease_break_period=0)
            blob.set_blob_metadata({})
        except AzureError as e:
            raise self._failure("breaking the lock on", e) from e
