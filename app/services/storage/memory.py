from __future__ import annotations

import asyncio
import copy
from collections import defaultdict

from app.services.storage.adapter import Criteria, DuplicateKey, Record, RecordStore


class InMemoryRecordStore(RecordStore):
    """Process-local store: records live in an arena, looked up through index maps.

    A single ``asyncio.Lock`` guards every mutation, so ``replace`` is an
    atomic compare-and-set within the event loop. Records are copied on the
    way in and out; callers never share state with the arena.
    """

    backend = "memory"

    def __init__(self) -> None:
        self._arena: list[Record | None] = []
        self._free: list[int] = []
        self._index: dict[tuple[str, str], int] = {}
        self._by_owner: dict[tuple[str, str], set[str]] = defaultdict(set)
        self._lock = asyncio.Lock()

    def _slot(self, namespace: str, key: str) -> int | None:
        return self._index.get((namespace, key))

    def _store(self, record: Record) -> None:
        if self._free:
            slot = self._free.pop()
            self._arena[slot] = record
        else:
            slot = len(self._arena)
            self._arena.append(record)
        self._index[(record.namespace, record.key)] = slot
        if record.owner is not None:
            self._by_owner[(record.namespace, record.owner)].add(record.key)

    def _drop(self, namespace: str, key: str) -> bool:
        slot = self._index.pop((namespace, key), None)
        if slot is None:
            return False
        record = self._arena[slot]
        self._arena[slot] = None
        self._free.append(slot)
        if record is not None and record.owner is not None:
            owned = self._by_owner.get((namespace, record.owner))
            if owned is not None:
                owned.discard(key)
                if not owned:
                    del self._by_owner[(namespace, record.owner)]
        return True

    def _candidates(self, namespace: str, criteria: Criteria) -> list[Record]:
        if criteria.owner is not None:
            keys = self._by_owner.get((namespace, criteria.owner), set())
            slots = [self._index[(namespace, key)] for key in keys]
        else:
            slots = [slot for (ns, _), slot in self._index.items() if ns == namespace]
        records = [self._arena[slot] for slot in sorted(slots)]
        return [record for record in records if record is not None and criteria.matches(record)]

    async def put(self, record: Record) -> Record:
        async with self._lock:
            if self._slot(record.namespace, record.key) is not None:
                raise DuplicateKey(f"{record.namespace}:{record.key}")
            stored = copy.deepcopy(record)
            stored.version = 1
            self._store(stored)
            return copy.deepcopy(stored)

    async def get(self, namespace: str, key: str) -> Record | None:
        async with self._lock:
            slot = self._slot(namespace, key)
            if slot is None:
                return None
            return copy.deepcopy(self._arena[slot])

    async def replace(self, record: Record, expected_version: int) -> bool:
        async with self._lock:
            slot = self._slot(record.namespace, record.key)
            current = self._arena[slot] if slot is not None else None
            if current is None or current.version != expected_version:
                return False
            self._drop(record.namespace, record.key)
            stored = copy.deepcopy(record)
            stored.version = expected_version + 1
            self._store(stored)
            return True

    async def delete(self, namespace: str, key: str) -> bool:
        async with self._lock:
            return self._drop(namespace, key)

    async def delete_where(self, namespace: str, criteria: Criteria) -> int:
        async with self._lock:
            doomed = [record.key for record in self._candidates(namespace, criteria)]
            for key in doomed:
                self._drop(namespace, key)
            return len(doomed)

    async def find(self, namespace: str, criteria: Criteria | None = None) -> list[Record]:
        async with self._lock:
            return copy.deepcopy(self._candidates(namespace, criteria or Criteria()))

    async def count(self, namespace: str, criteria: Criteria | None = None) -> int:
        async with self._lock:
            return len(self._candidates(namespace, criteria or Criteria()))
