"""Dict-backed repository for tests and single-process use."""

import copy
import uuid
from datetime import datetime, timezone
from typing import Any

from .interfaces import matches


class InMemoryRepository:
    """Stores deep copies so callers cannot mutate records in place."""

    def __init__(self, seed: dict[str, list[dict[str, Any]]] | None = None):
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        for collection, records in (seed or {}).items():
            for record in records:
                self._bucket(collection)[record["id"]] = copy.deepcopy(record)

    def _bucket(self, collection: str) -> dict[str, dict[str, Any]]:
        return self._collections.setdefault(collection, {})

    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        stored = copy.deepcopy(record)
        stored.setdefault("id", str(uuid.uuid4()))
        now = datetime.now(timezone.utc).isoformat()
        stored.setdefault("created_at", now)
        stored["updated_at"] = now
        self._bucket(collection)[stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        stored = self._bucket(collection).get(record_id)
        if stored is None:
            return None
        stored.update(copy.deepcopy(changes))
        stored["id"] = record_id
        stored["updated_at"] = datetime.now(timezone.utc).isoformat()
        return copy.deepcopy(stored)

    async def find(self, collection: str, record_id: str) -> dict[str, Any] | None:
        stored = self._bucket(collection).get(record_id)
        return copy.deepcopy(stored) if stored is not None else None

    async def find_many(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        found = [
            copy.deepcopy(r) for r in self._bucket(collection).values() if matches(r, where)
        ]
        return found[:limit] if limit is not None else found

    async def delete(self, collection: str, record_id: str) -> bool:
        return self._bucket(collection).pop(record_id, None) is not None

    async def count(self, collection: str, where: dict[str, Any] | None = None) -> int:
        return sum(1 for r in self._bucket(collection).values() if matches(r, where))

    def clear(self) -> None:
        self._collections.clear()
