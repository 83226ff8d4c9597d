"""Control API routes."""

from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException
from fastapi.encoders import jsonable_encoder

from ...app import Application
from ...models import PendingDecision


class StatusResponse(BaseModel):
    """Response model for status."""

    status: str


class ApproveRequest(BaseModel):
    approved_by: str | None = None


class RejectRequest(BaseModel):
    reason: str | None = None
    rejected_by: str | None = None


def _pending_summary(pending: PendingDecision) -> dict[str, Any]:
    decision = pending.decision
    return {
        "id": pending.id,
        "correlation_id": pending.record.correlation_id,
        "input_type": pending.input.type,
        "intent": decision.intent,
        "confidence": decision.confidence,
        "urgency": decision.urgency,
        "reason": pending.record.gate_reason,
        "actions": [
            {"type": a.type.value, "params": a.params, "priority": a.priority}
            for a in decision.actions
        ],
        "created_at": pending.created_at.isoformat(),
        "expires_at": pending.expires_at.isoformat(),
    }


def create_control_router(app: Application) -> APIRouter:
    """Create control router."""
    router = APIRouter(prefix="/api/control", tags=["control"])

    @router.get("/approvals")
    async def list_approvals() -> list[dict]:
        """Decisions waiting for a human."""
        try:
            return [_pending_summary(p) for p in app.agent.get_pending_decisions()]
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/approvals/{decision_id}/approve")
    async def approve(decision_id: str, request: ApproveRequest | None = None) -> dict:
        """Execute a pending decision."""
        try:
            approved_by = request.approved_by if request else None
            record = await app.agent.approve_decision(decision_id, approved_by=approved_by)
            if record is None:
                raise HTTPException(
                    status_code=404, detail=f"No pending decision: {decision_id}"
                )
            return jsonable_encoder(record)
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/approvals/{decision_id}/reject")
    async def reject(decision_id: str, request: RejectRequest | None = None) -> dict:
        """Drop a pending decision."""
        try:
            record = await app.agent.reject_decision(
                decision_id,
                reason=request.reason if request else None,
                rejected_by=request.rejected_by if request else None,
            )
            if record is None:
                raise HTTPException(
                    status_code=404, detail=f"No pending decision: {decision_id}"
                )
            return jsonable_encoder(record)
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.delete("/schedules/{schedule_id}", response_model=StatusResponse)
    async def cancel_schedule(schedule_id: str) -> dict:
        """Cancel a scheduled notification or automation."""
        try:
            if not await app.scheduler.cancel(schedule_id):
                raise HTTPException(
                    status_code=404, detail=f"No pending schedule: {schedule_id}"
                )
            return {"status": "ok"}
        except HTTPException:
            raise
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    @router.post("/reset", response_model=StatusResponse)
    async def reset_system() -> dict:
        """Reset system data between test runs."""
        try:
            await app.reset()
            return {"status": "ok"}
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
