"""Bounded in-memory record of recent executions."""

import uuid
from collections import deque
from datetime import datetime, timezone
from typing import Any

from ..models import ExecutionLogEntry


class ExecutionLog:
    """Ring buffer, newest first; the oldest entry is evicted once full."""

    def __init__(self, max_entries: int = 1000):
        self._entries: deque[ExecutionLogEntry] = deque(maxlen=max_entries)

    def add(
        self,
        subject_id: str,
        status: str,
        triggered_at: datetime | None = None,
        context: dict[str, Any] | None = None,
        entry_id: str | None = None,
    ) -> ExecutionLogEntry:
        entry = ExecutionLogEntry(
            id=entry_id or str(uuid.uuid4()),
            subject_id=subject_id,
            status=status,
            triggered_at=triggered_at or datetime.now(timezone.utc),
            context=dict(context or {}),
        )
        self._entries.appendleft(entry)
        return entry

    def complete(
        self,
        entry_id: str,
        status: str,
        error: str | None = None,
        completed_at: datetime | None = None,
    ) -> ExecutionLogEntry | None:
        entry = self.get(entry_id)
        if entry is None:
            return None
        entry.status = status
        entry.error = error
        entry.completed_at = completed_at or datetime.now(timezone.utc)
        entry.duration_ms = (entry.completed_at - entry.triggered_at).total_seconds() * 1000
        return entry

    def get(self, entry_id: str) -> ExecutionLogEntry | None:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def recent(self, limit: int = 20, subject_id: str | None = None) -> list[ExecutionLogEntry]:
        entries = (
            e for e in self._entries if subject_id is None or e.subject_id == subject_id
        )
        result = []
        for entry in entries:
            if len(result) >= limit:
                break
            result.append(entry)
        return result

    def stats(self) -> dict[str, Any]:
        by_status: dict[str, int] = {}
        durations = []
        for entry in self._entries:
            by_status[entry.status] = by_status.get(entry.status, 0) + 1
            if entry.duration_ms is not None:
                durations.append(entry.duration_ms)
        return {
            "total": len(self._entries),
            "by_status": by_status,
            "average_duration_ms": sum(durations) / len(durations) if durations else 0.0,
        }

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
