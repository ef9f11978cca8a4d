from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class DuplicateKey(Exception):
    """Raised by ``put`` when the namespace already holds the key."""


@dataclass
class Record:
    """One stored item: an opaque JSON payload plus the fields backends index on."""

    namespace: str
    key: str
    payload: dict[str, Any] = field(default_factory=dict)
    owner: str | None = None
    expires_at: datetime | None = None
    version: int = 1


@dataclass(frozen=True)
class Criteria:
    """Filter understood by every backend; unset fields match everything."""

    owner: str | None = None
    expires_before: datetime | None = None

    def matches(self, record: Record) -> bool:
        if self.owner is not None and record.owner != self.owner:
            return False
        if self.expires_before is not None:
            if record.expires_at is None or record.expires_at >= self.expires_before:
                return False
        return True


class RecordStore(ABC):
    backend: str = "abstract"

    @abstractmethod
    async def put(self, record: Record) -> Record:
        """Insert a new record with ``version=1``; raise ``DuplicateKey`` if present."""

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Record | None:
        pass

    @abstractmethod
    async def replace(self, record: Record, expected_version: int) -> bool:
        """Compare-and-set.

        Overwrites the stored record only if its version still equals
        ``expected_version``; the stored version becomes
        ``expected_version + 1``. Returns False when the record is missing or
        was changed by another writer.
        """

    @abstractmethod
    async def delete(self, namespace: str, key: str) -> bool:
        pass

    @abstractmethod
    async def delete_where(self, namespace: str, criteria: Criteria) -> int:
        pass

    @abstractmethod
    async def find(self, namespace: str, criteria: Criteria | None = None) -> list[Record]:
        pass

    @abstractmethod
    async def count(self, namespace: str, criteria: Criteria | None = None) -> int:
        pass

    async def ping(self) -> None:
        """Raise ``StorageUnavailable`` if the backend cannot be reached."""

    async def close(self) -> None:
        pass
