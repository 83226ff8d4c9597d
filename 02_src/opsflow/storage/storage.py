"""SQLite storage implementation."""

import json
import uuid
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

import aiosqlite

from ..config import resolve_db_path
from ..models import (
    ActorType,
    AuditLogEntry,
    Event,
    JobStatus,
    PerformedBy,
    ScheduledJob,
    TraceEvent,
)
from ..models.events import payload_type_for
from ..repository.interfaces import matches


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class IStorage(Protocol):
    """Persistent storage for records, audit, traces, bus events and jobs (SQLite)."""

    async def init(self) -> None:
        """Initialize database and create tables."""
        ...

    async def close(self) -> None:
        """Close database connection."""
        ...

    # Records
    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        ...

    async def find(self, collection: str, record_id: str) -> dict[str, Any] | None:
        ...

    async def find_many(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        ...

    async def delete(self, collection: str, record_id: str) -> bool:
        ...

    async def count(self, collection: str, where: dict[str, Any] | None = None) -> int:
        ...

    # Audit
    async def save_audit_entry(self, entry: AuditLogEntry) -> str:
        """Save an audit entry and return its id."""
        ...

    async def get_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        """Get audit entries (newest first)."""
        ...

    # TraceEvents
    async def save_trace_event(self, event: TraceEvent) -> None:
        ...

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        ...

    # Bus events
    async def save_bus_event(self, event: Event) -> None:
        ...

    async def get_bus_events(
        self,
        limit: int = 100,
        event_type: str | None = None,
        correlation_id: str | None = None,
    ) -> list[Event]:
        ...

    # Scheduled jobs
    async def save_scheduled_job(self, job: ScheduledJob) -> None:
        ...

    async def update_scheduled_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        ...

    async def get_pending_scheduled_jobs(self) -> list[ScheduledJob]:
        ...

    # Lifecycle
    async def clear(self) -> None:
        """Clear all data."""
        ...


class Storage:
    """SQLite storage implementation."""

    def __init__(self, db_path: str | Path | None = None):
        if db_path is None:
            self._db_path = resolve_db_path()
        else:
            self._db_path = resolve_db_path(db_path)
        self._conn: aiosqlite.Connection | None = None

    async def init(self) -> None:
        """Initialize database and create tables."""
        self._conn = await aiosqlite.connect(self._db_path)

        schema_path = Path(__file__).parent / "schema.sql"
        with open(schema_path, "r", encoding="utf-8") as f:
            schema_sql = f.read()
        await self._conn.executescript(schema_sql)
        await self._conn.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            await self._conn.close()
            self._conn = None

    def _require(self) -> aiosqlite.Connection:
        if not self._conn:
            raise RuntimeError("Storage not initialized")
        return self._conn

    # Records

    async def create(self, collection: str, record: dict[str, Any]) -> dict[str, Any]:
        """Insert a record; an id is generated when missing."""
        conn = self._require()

        stored = dict(record)
        stored.setdefault("id", str(uuid.uuid4()))
        now = _ts(datetime.now(timezone.utc))
        stored.setdefault("created_at", now)
        stored["updated_at"] = now

        await conn.execute(
            """
            INSERT OR REPLACE INTO records (collection, id, data, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            (collection, stored["id"], json.dumps(stored, default=str), now, now),
        )
        await conn.commit()
        return stored

    async def update(
        self, collection: str, record_id: str, changes: dict[str, Any]
    ) -> dict[str, Any] | None:
        """Merge changes into an existing record."""
        conn = self._require()

        current = await self.find(collection, record_id)
        if current is None:
            return None

        current.update(changes)
        current["id"] = record_id
        now = _ts(datetime.now(timezone.utc))
        current["updated_at"] = now

        await conn.execute(
            """
            UPDATE records SET data = ?, updated_at = ?
            WHERE collection = ? AND id = ?
            """,
            (json.dumps(current, default=str), now, collection, record_id),
        )
        await conn.commit()
        return current

    async def find(self, collection: str, record_id: str) -> dict[str, Any] | None:
        conn = self._require()

        cursor = await conn.execute(
            "SELECT data FROM records WHERE collection = ? AND id = ?",
            (collection, record_id),
        )
        row = await cursor.fetchone()
        return json.loads(row[0]) if row else None

    async def find_many(
        self,
        collection: str,
        where: dict[str, Any] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Records matching ``where``, oldest first. Filtering happens on the decoded JSON."""
        conn = self._require()

        cursor = await conn.execute(
            """
            SELECT data FROM records
            WHERE collection = ?
            ORDER BY created_at ASC
            """,
            (collection,),
        )
        rows = await cursor.fetchall()

        found = []
        for row in rows:
            record = json.loads(row[0])
            if matches(record, where):
                found.append(record)
                if limit is not None and len(found) >= limit:
                    break
        return found

    async def delete(self, collection: str, record_id: str) -> bool:
        conn = self._require()

        cursor = await conn.execute(
            "DELETE FROM records WHERE collection = ? AND id = ?",
            (collection, record_id),
        )
        await conn.commit()
        return cursor.rowcount > 0

    async def count(self, collection: str, where: dict[str, Any] | None = None) -> int:
        if not where:
            conn = self._require()
            cursor = await conn.execute(
                "SELECT COUNT(*) FROM records WHERE collection = ?", (collection,)
            )
            row = await cursor.fetchone()
            return row[0]
        return len(await self.find_many(collection, where))

    # Audit

    async def save_audit_entry(self, entry: AuditLogEntry) -> str:
        conn = self._require()

        entry_id = entry.id or str(uuid.uuid4())
        await conn.execute(
            """
            INSERT INTO audit_log (
                id, entity_type, entity_id, action, performed_by_type, performed_by_id,
                previous_state, new_state, reason, correlation_id, org_id, metadata, timestamp
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                entry_id,
                entry.entity_type,
                entry.entity_id,
                entry.action,
                entry.performed_by.type.value,
                entry.performed_by.id,
                json.dumps(entry.previous_state, default=str)
                if entry.previous_state is not None
                else None,
                json.dumps(entry.new_state, default=str)
                if entry.new_state is not None
                else None,
                entry.reason,
                entry.correlation_id,
                entry.org_id,
                json.dumps(entry.metadata, default=str),
                _ts(entry.timestamp),
            ),
        )
        await conn.commit()
        return entry_id

    async def get_audit_entries(
        self,
        entity_type: str | None = None,
        entity_id: str | None = None,
        correlation_id: str | None = None,
        limit: int = 100,
    ) -> list[AuditLogEntry]:
        conn = self._require()

        # Build query dynamically
        conditions = []
        params: list[Any] = []

        if entity_type:
            conditions.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            conditions.append("entity_id = ?")
            params.append(entity_id)
        if correlation_id:
            conditions.append("correlation_id = ?")
            params.append(correlation_id)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, entity_type, entity_id, action, performed_by_type, performed_by_id,
                   previous_state, new_state, reason, correlation_id, org_id, metadata, timestamp
            FROM audit_log
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            AuditLogEntry(
                id=row[0],
                entity_type=row[1],
                entity_id=row[2],
                action=row[3],
                performed_by=PerformedBy(type=ActorType(row[4]), id=row[5]),
                previous_state=json.loads(row[6]) if row[6] else None,
                new_state=json.loads(row[7]) if row[7] else None,
                reason=row[8],
                correlation_id=row[9],
                org_id=row[10],
                metadata=json.loads(row[11]),
                timestamp=_parse_ts(row[12]),
            )
            for row in rows
        ]

    # TraceEvents

    async def save_trace_event(self, event: TraceEvent) -> None:
        conn = self._require()

        await conn.execute(
            """
            INSERT INTO trace_events (id, event_type, actor, data, timestamp)
            VALUES (?, ?, ?, ?, ?)
            """,
            (
                event.id or str(uuid.uuid4()),
                event.event_type,
                event.actor,
                json.dumps(event.data, default=str),
                _ts(event.timestamp),
            ),
        )
        await conn.commit()

    async def get_trace_events(
        self,
        after: datetime | None = None,
        event_types: list[str] | None = None,
        actor: str | None = None,
        limit: int = 100,
    ) -> list[TraceEvent]:
        """Get trace events with optional filters (newest first)."""
        conn = self._require()

        conditions = []
        params: list[Any] = []

        if after:
            conditions.append("timestamp > ?")
            params.append(_ts(after))
        if event_types:
            placeholders = ",".join("?" * len(event_types))
            conditions.append(f"event_type IN ({placeholders})")
            params.extend(event_types)
        if actor:
            conditions.append("actor = ?")
            params.append(actor)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, actor, data, timestamp
            FROM trace_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            TraceEvent(
                id=row[0],
                event_type=row[1],
                actor=row[2],
                data=json.loads(row[3]),
                timestamp=_parse_ts(row[4]),
            )
            for row in rows
        ]

    # Bus events

    async def save_bus_event(self, event: Event) -> None:
        conn = self._require()

        await conn.execute(
            """
            INSERT INTO bus_events
            (id, event_type, payload, source, correlation_id, org_id, metadata, timestamp)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id,
                event.type,
                json.dumps(asdict(event.payload), default=str),
                event.source,
                event.correlation_id,
                event.org_id,
                json.dumps(event.metadata, default=str),
                _ts(event.timestamp),
            ),
        )
        await conn.commit()

    async def get_bus_events(
        self,
        limit: int = 100,
        event_type: str | None = None,
        correlation_id: str | None = None,
    ) -> list[Event]:
        """Get bus events (newest first) with their typed payloads restored."""
        conn = self._require()

        conditions = []
        params: list[Any] = []
        if event_type:
            conditions.append("event_type = ?")
            params.append(event_type)
        if correlation_id:
            conditions.append("correlation_id = ?")
            params.append(correlation_id)

        where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""

        query = f"""
            SELECT id, event_type, payload, source, correlation_id, org_id, metadata, timestamp
            FROM bus_events
            {where_clause}
            ORDER BY timestamp DESC
            LIMIT ?
        """
        params.append(limit)

        cursor = await conn.execute(query, params)
        rows = await cursor.fetchall()

        return [
            Event(
                id=row[0],
                type=row[1],
                payload=payload_type_for(row[1])(**json.loads(row[2])),
                source=row[3],
                correlation_id=row[4],
                org_id=row[5],
                metadata=json.loads(row[6]),
                timestamp=_parse_ts(row[7]),
            )
            for row in rows
        ]

    # Scheduled jobs

    async def save_scheduled_job(self, job: ScheduledJob) -> None:
        conn = self._require()

        await conn.execute(
            """
            INSERT OR REPLACE INTO scheduled_jobs
            (id, kind, payload, run_at, created_at, status, error)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.kind,
                json.dumps(job.payload, default=str),
                _ts(job.run_at),
                _ts(job.created_at),
                job.status.value,
                job.error,
            ),
        )
        await conn.commit()

    async def update_scheduled_job_status(
        self, job_id: str, status: JobStatus, error: str | None = None
    ) -> None:
        conn = self._require()

        await conn.execute(
            "UPDATE scheduled_jobs SET status = ?, error = ? WHERE id = ?",
            (status.value, error, job_id),
        )
        await conn.commit()

    async def get_pending_scheduled_jobs(self) -> list[ScheduledJob]:
        conn = self._require()

        cursor = await conn.execute(
            """
            SELECT id, kind, payload, run_at, created_at, status, error
            FROM scheduled_jobs
            WHERE status = ?
            ORDER BY run_at ASC
            """,
            (JobStatus.PENDING.value,),
        )
        rows = await cursor.fetchall()

        return [
            ScheduledJob(
                id=row[0],
                kind=row[1],
                payload=json.loads(row[2]),
                run_at=_parse_ts(row[3]),
                created_at=_parse_ts(row[4]),
                status=JobStatus(row[5]),
                error=row[6],
            )
            for row in rows
        ]

    # Lifecycle

    async def clear(self) -> None:
        """Clear all data."""
        conn = self._require()

        tables = [
            "records",
            "audit_log",
            "trace_events",
            "bus_events",
            "scheduled_jobs",
        ]

        for table in tables:
            await conn.execute(f"DELETE FROM {table}")

        await conn.commit()
