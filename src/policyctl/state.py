"""Locked, versioned state store.

The state document is the single source of truth for what the driver has
applied. Plans diff desired resources against it; applies mutate it.

DESIGN:
- Every write goes through a transaction that holds an exclusive lock
- A second writer fails fast with LockContentionError instead of waiting
- The local backend locks with a lock file created with O_CREAT|O_EXCL and
  writes atomically (temp file + rename); the Azure Blob backend lives in
  state_blob.py
- Every commit bumps `serial`
- `lineage` is fixed when the state is first created; a plan computed
  against one lineage/serial is stale against any other
"""

from __future__ import annotations

import json
import logging
import os
import socket
import uuid
from abc import ABC, abstractmethod
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from .config import MAX_STATE_FILE_SIZE_BYTES

logger = logging.getLogger(__name__)

STATE_FORMAT_VERSION = 1


class StateError(Exception):
    """Raised when the state file is unreadable or inconsistent."""

    pass


class LockContentionError(StateError):
    """Raised when another run holds the state lock."""

    def __init__(self, message: str, lock_info: LockInfo | None = None) -> None:
        super().__init__(message)
        self.lock_info = lock_info


class StalePlanError(StateError):
    """Raised when a saved plan no longer matches the current state."""

    pass


def _current_identity() -> str:
    user = os.environ.get("GITHUB_ACTOR") or os.environ.get("USER") or "unknown"
    return f"{user}@{socket.gethostname()}"


@dataclass(frozen=True)
class LockInfo:
    """Who holds the state lock, for what, and since when."""

    id: str
    operation: str
    who: str
    created: datetime
    path: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "ID": self.id,
            "Operation": self.operation,
            "Who": self.who,
            "Created": self.created.isoformat(),
            "Path": self.path,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LockInfo:
        return cls(
            id=str(data.get("ID", "")),
            operation=str(data.get("Operation", "")),
            who=str(data.get("Who", "")),
            created=datetime.fromisoformat(data["Created"]) if data.get("Created")
            else datetime.now(UTC),
            path=str(data.get("Path", "")),
        )


@dataclass
class ResourceRecord:
    """One managed resource as last applied."""

    address: str
    kind: str
    resource_id: str
    name: str
    scope: str
    attributes: dict[str, Any] = field(default_factory=dict)
    depends_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "address": self.address,
            "kind": self.kind,
            "id": self.resource_id,
            "name": self.name,
            "scope": self.scope,
            "attributes": self.attributes,
            "dependsOn": list(self.depends_on),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResourceRecord:
        return cls(
            address=data["address"],
            kind=data["kind"],
            resource_id=data["id"],
            name=data["name"],
            scope=data["scope"],
            attributes=dict(data.get("attributes", {})),
            depends_on=list(data.get("dependsOn", [])),
        )


@dataclass
class StateSnapshot:
    """In-memory view of the state document."""

    lineage: str
    serial: int = 0
    resources: dict[str, ResourceRecord] = field(default_factory=dict)
    version: int = STATE_FORMAT_VERSION

    @classmethod
    def empty(cls) -> StateSnapshot:
        return cls(lineage=str(uuid.uuid4()))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "serial": self.serial,
            "lineage": self.lineage,
            "resources": [r.to_dict() for r in self.resources.values()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StateSnapshot:
        version = data.get("version")
        if version != STATE_FORMAT_VERSION:
            raise StateError(f"Unsupported state format version: {version}")
        records = [ResourceRecord.from_dict(r) for r in data.get("resources", [])]
        return cls(
            lineage=data["lineage"],
            serial=int(data["serial"]),
            resources={r.address: r for r in records},
            version=version,
        )


class StateBackend(ABC):
    """Locking, versioning and parsing shared by every state backend.

    Subclasses provide storage only: loading and writing the document, and
    acquiring, inspecting and releasing the lock.
    """

    @property
    @abstractmethod
    def location(self) -> str:
        """Where the state document lives, for messages and logs."""

    @abstractmethod
    def exists(self) -> bool:
        pass

    @abstractmethod
    def lock_holder(self) -> LockInfo | None:
        """Return info about the current lock, if any."""

    @abstractmethod
    def _load_text(self) -> str | None:
        """Return the stored document, or None when there is none."""

    @abstractmethod
    def _write(self, snapshot: StateSnapshot) -> None:
        pass

    @abstractmethod
    def _try_acquire(self, info: LockInfo) -> bool:
        """Take the lock for `info`; False when someone else holds it."""

    @abstractmethod
    def _release(self, info: LockInfo) -> None:
        pass

    @abstractmethod
    def _break(self, holder: LockInfo) -> None:
        pass

    def _prepare(self) -> None:
        """Make the storage location ready before the first write."""

    def initialize(self) -> StateSnapshot:
        """Create an empty state if none exists and return the current one."""
        self._prepare()
        if self.exists():
            snapshot = self.read()
            logger.info(
                "State backend initialized",
                extra={"state_location": self.location, "serial": snapshot.serial},
            )
            return snapshot

        snapshot = StateSnapshot.empty()
        self._write(snapshot)
        logger.info(
            "Created empty state",
            extra={"state_location": self.location, "lineage": snapshot.lineage},
        )
        return snapshot

    def read(self) -> StateSnapshot:
        """Read the current state without locking.

        Raises:
            StateError: If the state is missing or corrupt.
        """
        content = self._load_text()
        if content is None:
            raise StateError(f"State not initialized: {self.location} (run init first)")
        if len(content.encode("utf-8")) > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(f"State file exceeds {MAX_STATE_FILE_SIZE_BYTES} bytes")

        try:
            data = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"Corrupt state file {self.location}: {e}") from e

        try:
            return StateSnapshot.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            raise StateError(f"Corrupt state file {self.location}: {e}") from e

    def lock(self, operation: str) -> LockInfo:
        """Acquire the state lock or fail immediately.

        Raises:
            LockContentionError: If another run holds the lock.
        """
        info = LockInfo(
            id=str(uuid.uuid4()),
            operation=operation,
            who=_current_identity(),
            created=datetime.now(UTC),
            path=self.location,
        )

        if not self._try_acquire(info):
            holder = self.lock_holder()
            detail = (
                f" (held by {holder.who} for {holder.operation} since "
                f"{holder.created.isoformat()}, lock ID {holder.id})"
                if holder
                else ""
            )
            logger.warning(
                "State lock contention",
                extra={"operation": operation, "holder": holder.to_dict() if holder else None},
            )
            raise LockContentionError(
                f"Error acquiring the state lock: {self.location} is locked{detail}",
                holder,
            )

        logger.info("Acquired state lock", extra={"lock_id": info.id, "operation": operation})
        return info

    def unlock(self, info: LockInfo) -> None:
        """Release a lock this run holds.

        Raises:
            StateError: If the lock is gone or held by someone else.
        """
        holder = self.lock_holder()
        if holder is None:
            raise StateError(f"State lock {info.id} was already released")
        if holder.id != info.id:
            raise StateError(f"State lock is held by {holder.id}, not {info.id}")
        self._release(info)
        logger.info("Released state lock", extra={"lock_id": info.id})

    def force_unlock(self, lock_id: str) -> None:
        """Remove a stale lock, only if its id matches.

        Raises:
            StateError: If no lock is held or the id does not match.
        """
        holder = self.lock_holder()
        if holder is None:
            raise StateError("State is not locked")
        if holder.id != lock_id:
            raise StateError(f"Lock ID mismatch: state is locked by {holder.id!r}")
        self._break(holder)
        logger.warning(
            "State lock force-released",
            extra={"lock_id": lock_id, "holder": holder.who, "operation": holder.operation},
        )

    @contextmanager
    def transaction(self, operation: str) -> Iterator[StateTransaction]:
        """Lock, read, and yield a transaction; always release the lock.

        Raises:
            LockContentionError: If the lock is already held.
        """
        info = self.lock(operation)
        try:
            yield StateTransaction(self, info, self.read())
        finally:
            try:
                self.unlock(info)
            except StateError as e:
                # Keep whatever the transaction body raised
                logger.error(
                    "Failed to release state lock",
                    extra={"lock_id": info.id, "error": str(e)},
                )


def dump_snapshot(snapshot: StateSnapshot) -> str:
    """Serialize a snapshot the way every backend stores it."""
    return json.dumps(snapshot.to_dict(), indent=2, sort_keys=True)


class StateStore(StateBackend):
    """File-backed state store with an exclusive lock file."""

    def __init__(self, state_file: Path, lock_file: Path) -> None:
        self._state_file = state_file
        self._lock_file = lock_file

    @property
    def location(self) -> str:
        return str(self._state_file)

    @property
    def state_file(self) -> Path:
        return self._state_file

    @property
    def lock_file(self) -> Path:
        return self._lock_file

    def exists(self) -> bool:
        return self._state_file.exists()

    def _prepare(self) -> None:
        self._state_file.parent.mkdir(parents=True, exist_ok=True)

    def _load_text(self) -> str | None:
        if not self.exists():
            return None
        try:
            size = self._state_file.stat().st_size
        except OSError as e:
            raise StateError(f"Failed to stat state file {self._state_file}: {e}") from e
        if size > MAX_STATE_FILE_SIZE_BYTES:
            raise StateError(f"State file exceeds {MAX_STATE_FILE_SIZE_BYTES} bytes")

        try:
            return self._state_file.read_text(encoding="utf-8")
        except OSError as e:
            raise StateError(f"Failed to read state file {self._state_file}: {e}") from e

    def _write(self, snapshot: StateSnapshot) -> None:
        tmp = self._state_file.with_suffix(self._state_file.suffix + ".tmp")
        tmp.write_text(dump_snapshot(snapshot), encoding="utf-8")
        os.replace(tmp, self._state_file)

    def _try_acquire(self, info: LockInfo) -> bool:
        self._lock_file.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(self._lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(info.to_dict(), f)
        return True

    def lock_holder(self) -> LockInfo | None:
        try:
            return LockInfo.from_dict(json.loads(self._lock_file.read_text(encoding="utf-8")))
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError):
            # Lock exists but is unreadable (e.g. mid-write); still held
            return LockInfo(id="", operation="", who="", created=datetime.now(UTC))

    def _release(self, info: LockInfo) -> None:
        self._lock_file.unlink()

    def _break(self, holder: LockInfo) -> None:
        self._lock_file.unlink()


class StateTransaction:
    """Read-modify-write handle returned by StateBackend.transaction()."""

    def __init__(self, store: StateBackend, lock: LockInfo, snapshot: StateSnapshot) -> None:
        self._store = store
        self._lock = lock
        self.snapshot = snapshot

    @property
    def lock(self) -> LockInfo:
        return self._lock

    def commit(self) -> int:
        """Persist the snapshot with the next serial.

        Returns:
            The new serial.

        Raises:
            StateError: If the lock was lost or the write failed.
        """
        holder = self._store.lock_holder()
        if holder is None or holder.id != self._lock.id:
            raise StateError("State lock lost before commit; refusing to write")

        committed = replace(self.snapshot, serial=self.snapshot.serial + 1)
        try:
            self._store._write(committed)
        except OSError as e:
            raise StateError(f"Failed to write state file {self._store.location}: {e}") from e
        self.snapshot.serial = committed.serial
        logger.debug("Committed state", extra={"serial": self.snapshot.serial})
        return self.snapshot.serial
