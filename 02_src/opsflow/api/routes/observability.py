"""Observability API routes."""

from dataclasses import asdict
from datetime import datetime
from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from ...app import Application


class TraceEventResponse(BaseModel):
    """Response model for trace event."""

    id: str
    event_type: str
    actor: str
    data: dict[str, Any]
    timestamp: datetime


class BusEventResponse(BaseModel):
    """Response model for a persisted bus event."""

    id: str
    type: str
    source: str
    correlation_id: str
    org_id: str | None = None
    payload: dict[str, Any]
    metadata: dict[str, Any]
    timestamp: datetime


class AuditEntryResponse(BaseModel):
    """Response model for an audit log entry."""

    id: str | None = None
    entity_type: str
    entity_id: str
    action: str
    performed_by: dict[str, str]
    timestamp: datetime
    previous_state: dict[str, Any] | None = None
    new_state: dict[str, Any] | None = None
    reason: str | None = None
    correlation_id: str | None = None
    org_id: str | None = None
    metadata: dict[str, Any] = {}


def create_observability_router(app: Application) -> APIRouter:
    """Create observability router."""
    router = APIRouter(prefix="/api", tags=["observability"])

    @router.get("/events", response_model=list[BusEventResponse])
    async def get_events(
        limit: int = Query(100, ge=1, le=1000),
        event_type: str | None = Query(None, description="Filter by event type"),
        correlation_id: str | None = Query(None, description="Filter by correlation id"),
    ) -> list[dict]:
        """Get emitted bus events, newest first."""
        try:
            events = await app.storage.get_bus_events(
                limit=limit, event_type=event_type, correlation_id=correlation_id
            )
            return [
                {
                    "id": e.id,
                    "type": e.type,
                    "source": e.source,
                    "correlation_id": e.correlation_id,
                    "org_id": e.org_id,
                    "payload": jsonable_encoder(asdict(e.payload)),
                    "metadata": e.metadata,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in events
            ]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/trace-events", response_model=list[TraceEventResponse])
    async def get_trace_events(
        after: str | None = Query(None, description="ISO timestamp filter"),
        limit: int = Query(100, ge=1, le=1000),
        event_type: str | None = Query(None, description="Filter by event type"),
        actor: str | None = Query(None, description="Filter by actor"),
    ) -> list[dict]:
        """Get trace events with optional filters."""
        try:
            after_dt = None
            if after:
                try:
                    after_dt = datetime.fromisoformat(after)
                except ValueError:
                    raise HTTPException(
                        status_code=400, detail="Invalid after timestamp format"
                    )

            event_types = [event_type] if event_type else None

            events = await app.storage.get_trace_events(
                after=after_dt,
                event_types=event_types,
                actor=actor,
                limit=limit,
            )

            return [
                {
                    "id": e.id,
                    "event_type": e.event_type,
                    "actor": e.actor,
                    "data": e.data,
                    "timestamp": e.timestamp.isoformat(),
                }
                for e in events
            ]

        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/audit", response_model=list[AuditEntryResponse])
    async def get_audit(
        entity_type: str | None = Query(None),
        entity_id: str | None = Query(None),
        correlation_id: str | None = Query(None),
        limit: int = Query(100, ge=1, le=1000),
    ) -> list[dict]:
        """Get audit log entries, newest first."""
        try:
            entries = await app.audit_log.get_entries(
                entity_type=entity_type,
                entity_id=entity_id,
                correlation_id=correlation_id,
                limit=limit,
            )
            return jsonable_encoder(entries)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/executions")
    async def get_executions(
        workflow_id: str | None = Query(None, description="Filter by workflow id"),
        limit: int = Query(20, ge=1, le=1000),
    ) -> list[dict]:
        """Recent workflow executions."""
        try:
            entries = app.execution_log.recent(limit=limit, subject_id=workflow_id)
            return jsonable_encoder(entries)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.get("/stats")
    async def get_stats() -> dict:
        """Counters from the bus, agent, adapters and executors."""
        try:
            return jsonable_encoder(
                {
                    "event_bus": app.event_bus.get_stats(),
                    "agent": app.agent.get_stats(),
                    "adapters": {
                        name: adapter.get_stats() for name, adapter in app.adapters.items()
                    },
                    "workflows": app.workflows.get_stats(),
                    "scheduled_pending": len(app.scheduler.list_pending()),
                }
            )
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
