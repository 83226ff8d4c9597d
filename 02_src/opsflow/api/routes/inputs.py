"""Input ingestion API routes."""

from dataclasses import asdict
from typing import Any

from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse

from ...app import Application
from ...errors import ErrorCode

SIGNATURE_HEADER = "x-webhook-signature"

STATUS_FOR_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.PERMISSION_DENIED: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
}


class InputResponse(BaseModel):
    """Response model for an ingested input."""

    success: bool
    correlation_id: str | None = None
    event_type: str | None = None
    event_id: str | None = None
    handlers_invoked: int = 0
    skipped: bool = False
    skip_reason: str | None = None
    warnings: list[str] = []
    error: dict[str, Any] | None = None
    processing_time_ms: float = 0.0


def create_inputs_router(app: Application) -> APIRouter:
    """Create inputs router."""
    router = APIRouter(prefix="/api/inputs", tags=["inputs"])

    @router.post("/{source}", response_model=InputResponse)
    async def ingest(source: str, request: Request) -> Any:
        """Hand a raw payload to the adapter registered for ``source``."""
        adapter = app.get_adapter(source)
        if adapter is None:
            raise HTTPException(status_code=404, detail=f"Unknown input source: {source}")

        try:
            raw = await request.json()
        except ValueError:
            raise HTTPException(status_code=400, detail="Body must be valid JSON")

        signature = request.headers.get(SIGNATURE_HEADER)
        if signature and isinstance(raw, dict) and "signature" not in raw:
            raw["signature"] = signature

        try:
            result = await adapter.handle_input(raw)
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

        body = InputResponse(
            success=result.success,
            correlation_id=result.correlation_id,
            event_type=result.event_type,
            event_id=result.event_id,
            handlers_invoked=result.handlers_invoked,
            skipped=result.skipped,
            skip_reason=result.skip_reason,
            warnings=list(result.warnings),
            error=result.error.to_dict() if result.error else None,
            processing_time_ms=result.processing_time_ms,
        )
        status = 200
        if result.error is not None:
            status = STATUS_FOR_CODE.get(result.error.code, 500)
        return JSONResponse(status_code=status, content=body.model_dump())

    @router.get("/stats")
    async def get_input_stats() -> dict:
        """Per-adapter counters."""
        try:
            return {
                name: asdict(adapter.get_stats())
                for name, adapter in app.adapters.items()
            }
        except Exception as e:
            raise HTTPException(status_code=500, detail=str(e))

    return router
