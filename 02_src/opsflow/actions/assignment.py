"""Pipeline assignment executor.

Repository collections used:

- ``intakes``: id, org_id, title, description, status, priority, source,
  pipeline_id, request_data, routing_meta
- ``pipelines``: id, org_id, name, is_active, stages [{id, name, order}]
- ``pipeline_items``: id, intake_id, pipeline_id, stage_id, assignee_id,
  title, priority, status, tags, progress, data
- ``users``: id, org_id, name, email, role, is_active
"""

import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

from ..errors import ErrorCode, ErrorInfo, OperationError
from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionType,
    AssigneeCandidate,
    AssignmentResult,
    AssignmentState,
    EmitContext,
    EventType,
    ExecutionContext,
    IntakePayload,
    IntakeStatus,
    ItemStatus,
    PipelinePayload,
)
from ..models.assignment import CLOSED_INTAKE_STATUSES
from ..policies import LoadBalancer
from ..repository import IRepository
from .audit import AuditLog
from .base import BaseActionExecutor, require_param

logger = get_logger(__name__)

ASSIGNABLE_ROLES = ["ADMIN", "PM", "OPERATOR", "EDITOR"]
INACTIVE_ITEM_STATUSES = {ItemStatus.COMPLETED.value, "CANCELLED"}


class PipelineAssigner(BaseActionExecutor):
    """Routes intakes into pipelines and manages pipeline items."""

    handles = (
        ActionType.ASSIGN_PIPELINE,
        ActionType.REASSIGN_PIPELINE,
        ActionType.MOVE_TO_STAGE,
        ActionType.SET_ASSIGNEE,
        ActionType.SET_PRIORITY,
        ActionType.ADD_TAGS,
    )
    name = "pipeline_assigner"

    def __init__(
        self,
        repository: IRepository,
        audit_log: AuditLog,
        event_bus: IEventBus | None = None,
        load_balancer: LoadBalancer | None = None,
        org_id: str = "default",
        agent_id: str = "orchestration-agent",
    ):
        super().__init__(audit_log, org_id, agent_id)
        self._repo = repository
        self._event_bus = event_bus
        self._balancer = load_balancer or LoadBalancer()

    # Executor entry

    async def _execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        params = action.params

        if action.type == ActionType.ASSIGN_PIPELINE:
            pipeline_id = require_param(params, "pipeline_id", "target_id")
            assignee_id = params.get("assignee_id")
            if not assignee_id and params.get("auto_assign"):
                candidate = await self.select_optimal_assignee(pipeline_id)
                assignee_id = candidate.id if candidate else None
            result = await self.assign(
                require_param(params, "intake_id", "item_id"),
                pipeline_id,
                stage_id=params.get("stage_id"),
                assignee_id=assignee_id,
                context=context,
            )
        elif action.type == ActionType.REASSIGN_PIPELINE:
            result = await self.reassign(
                require_param(params, "intake_id", "item_id"),
                require_param(params, "pipeline_id", "target_id"),
                reason=params.get("reason"),
                context=context,
            )
        elif action.type == ActionType.MOVE_TO_STAGE:
            result = await self.move_to_stage(
                require_param(params, "item_id", "intake_id"),
                require_param(params, "stage_id"),
                context=context,
            )
        elif action.type == ActionType.SET_ASSIGNEE:
            result = await self.set_assignee(
                require_param(params, "item_id", "intake_id"),
                params.get("assignee_id"),
                context=context,
            )
        elif action.type == ActionType.SET_PRIORITY:
            result = await self.set_priority(
                require_param(params, "item_id", "intake_id"),
                require_param(params, "priority"),
                context=context,
            )
        else:
            result = await self.add_tags(
                require_param(params, "item_id", "intake_id"),
                require_param(params, "tags"),
                context=context,
            )

        return self._outcome(
            action,
            result.success,
            error=result.error,
            audit_log_id=result.audit_log_id,
            item_id=result.item_id,
            previous_state=result.previous_state.to_dict(),
            new_state=result.new_state.to_dict(),
            warnings=list(result.warnings),
        )

    # Operations

    async def assign(
        self,
        intake_id: str,
        pipeline_id: str,
        stage_id: str | None = None,
        assignee_id: str | None = None,
        context: ExecutionContext | None = None,
    ) -> AssignmentResult:
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            intake = await self._fetch_intake(intake_id, ctx)
            self._require_open(intake)
            pipeline = await self._fetch_pipeline(pipeline_id, ctx)
            self._require_active(pipeline)

            stages = _stages(pipeline)
            target_stage_id = stage_id or (stages[0]["id"] if stages else None)
            if not target_stage_id:
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR,
                    "Pipeline has no stages configured",
                    details={"pipeline_id": pipeline_id},
                )
            self._require_stage(target_stage_id, pipeline)
            if assignee_id:
                await self._require_user(assignee_id)

            previous = await self._intake_state(intake)

            routing_meta = dict(intake.get("routing_meta") or {})
            routing_meta.update(
                assigned_at=datetime.now(timezone.utc).isoformat(),
                assigned_by_agent=ctx.performed_by.type.value == "agent",
                agent_id=ctx.performed_by.id,
            )
            updated = await self._repo.update(
                "intakes",
                intake_id,
                {
                    "pipeline_id": pipeline_id,
                    "status": IntakeStatus.ASSIGNED.value,
                    "routing_meta": routing_meta,
                },
            )

            warnings: list[str] = []
            item_id = None
            try:
                item = await self._repo.create(
                    "pipeline_items",
                    {
                        "intake_id": intake_id,
                        "pipeline_id": pipeline_id,
                        "stage_id": target_stage_id,
                        "assignee_id": assignee_id,
                        "title": intake.get("title"),
                        "description": intake.get("description"),
                        "priority": intake.get("priority", 3),
                        "status": ItemStatus.NOT_STARTED.value,
                        "tags": [],
                        "progress": 0,
                        "data": {
                            "source": intake.get("source"),
                            "request_data": intake.get("request_data"),
                        },
                    },
                )
                item_id = item["id"]
            except Exception as e:
                logger.warning(
                    "Intake %s assigned but pipeline item creation failed: %s",
                    intake_id,
                    e,
                    extra=log_context(ctx.correlation_id, intake_id=intake_id),
                )
                warnings.append(f"Pipeline item creation failed: {e}")

            new = await self._intake_state(updated or intake)
            new.stage_id = target_stage_id
            new.stage_name = _stage_name(pipeline, target_stage_id)
            new.assignee_id = assignee_id

            audit_id = await self._write_audit(
                ctx,
                "intake",
                intake_id,
                "ASSIGN_TO_PIPELINE",
                previous.to_dict(),
                new.to_dict(),
                metadata={"pipeline_item_id": item_id},
            )
            await self._emit(
                EventType.INTAKE_ASSIGNED,
                IntakePayload(
                    intake_id=intake_id,
                    title=intake.get("title"),
                    status=IntakeStatus.ASSIGNED.value,
                    priority=intake.get("priority"),
                    source=intake.get("source"),
                    data={
                        "pipeline_id": pipeline_id,
                        "stage_id": target_stage_id,
                        "assignee_id": assignee_id,
                        "pipeline_item_id": item_id,
                    },
                ),
                ctx,
            )
            return self._result(intake_id, previous, new, audit_id, warnings, item_id)

        return await self._run("assign", intake_id, ctx, run)

    async def reassign(
        self,
        intake_id: str,
        new_pipeline_id: str,
        reason: str | None = None,
        context: ExecutionContext | None = None,
    ) -> AssignmentResult:
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            intake = await self._fetch_intake(intake_id, ctx)
            self._require_open(intake)
            pipeline = await self._fetch_pipeline(new_pipeline_id, ctx)
            self._require_active(pipeline)
            if not _stages(pipeline):
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR,
                    "New pipeline has no stages configured",
                    details={"pipeline_id": new_pipeline_id},
                )

            previous = await self._intake_state(intake)
            routing_meta = dict(intake.get("routing_meta") or {})
            routing_meta.update(
                reassigned_at=datetime.now(timezone.utc).isoformat(),
                reassign_reason=reason,
                previous_pipeline=intake.get("pipeline_id"),
            )
            updated = await self._repo.update(
                "intakes",
                intake_id,
                {
                    "pipeline_id": new_pipeline_id,
                    "status": IntakeStatus.ROUTING.value,
                    "routing_meta": routing_meta,
                },
            )
            new = await self._intake_state(updated or intake)

            audit_id = await self._write_audit(
                ctx,
                "intake",
                intake_id,
                "REASSIGN_TO_PIPELINE",
                previous.to_dict(),
                new.to_dict(),
                reason=reason,
            )
            await self._emit(
                EventType.INTAKE_ASSIGNED,
                IntakePayload(
                    intake_id=intake_id,
                    title=intake.get("title"),
                    status=IntakeStatus.ROUTING.value,
                    priority=intake.get("priority"),
                    source=intake.get("source"),
                    data={
                        "pipeline_id": new_pipeline_id,
                        "previous_pipeline_id": previous.pipeline_id,
                        "reason": reason,
                    },
                ),
                ctx,
            )
            return self._result(intake_id, previous, new, audit_id)

        return await self._run("reassign", intake_id, ctx, run)

    async def move_to_stage(
        self, item_id: str, stage_id: str, context: ExecutionContext | None = None
    ) -> AssignmentResult:
        """Move an item; reaching the last stage completes it."""
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            item = await self._fetch_item(item_id)
            pipeline = await self._fetch_pipeline(item["pipeline_id"], ctx)
            self._require_stage(stage_id, pipeline)

            stages = _stages(pipeline)
            is_final = stages[-1]["id"] == stage_id
            previous = _item_state(item, pipeline)

            updated = await self._repo.update(
                "pipeline_items",
                item["id"],
                {
                    "stage_id": stage_id,
                    "status": ItemStatus.COMPLETED.value if is_final else ItemStatus.IN_PROGRESS.value,
                },
            )
            new = _item_state(updated or item, pipeline)

            audit_id = await self._write_audit(
                ctx, "pipeline_item", item["id"], "MOVE_TO_STAGE", previous.to_dict(), new.to_dict()
            )
            await self._emit(
                EventType.PIPELINE_STAGE_CHANGED,
                PipelinePayload(
                    pipeline_id=pipeline["id"],
                    item_id=item["id"],
                    stage_id=stage_id,
                    previous_stage_id=previous.stage_id,
                    data={"completed": is_final, "intake_id": item.get("intake_id")},
                ),
                ctx,
            )
            return self._result(item["id"], previous, new, audit_id)

        return await self._run("move_to_stage", item_id, ctx, run)

    async def set_assignee(
        self, item_id: str, user_id: str | None, context: ExecutionContext | None = None
    ) -> AssignmentResult:
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            item = await self._fetch_item(item_id)
            if user_id:
                await self._require_user(user_id)

            previous = _item_state(item)
            updated = await self._repo.update("pipeline_items", item["id"], {"assignee_id": user_id})
            new = _item_state(updated or item)

            audit_id = await self._write_audit(
                ctx, "pipeline_item", item["id"], "SET_ASSIGNEE", previous.to_dict(), new.to_dict()
            )
            return self._result(item["id"], previous, new, audit_id)

        return await self._run("set_assignee", item_id, ctx, run)

    async def set_priority(
        self, item_id: str, priority: int, context: ExecutionContext | None = None
    ) -> AssignmentResult:
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            if isinstance(priority, bool) or not isinstance(priority, int) or not 1 <= priority <= 5:
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR,
                    "Priority must be an integer between 1 and 5",
                    details={"provided_priority": priority},
                )
            item = await self._fetch_item(item_id)
            previous = _item_state(item)
            updated = await self._repo.update("pipeline_items", item["id"], {"priority": priority})
            new = _item_state(updated or item)

            audit_id = await self._write_audit(
                ctx, "pipeline_item", item["id"], "SET_PRIORITY", previous.to_dict(), new.to_dict()
            )
            return self._result(item["id"], previous, new, audit_id)

        return await self._run("set_priority", item_id, ctx, run)

    async def add_tags(
        self, item_id: str, tags: list[str], context: ExecutionContext | None = None
    ) -> AssignmentResult:
        """Merge lower-cased tags into an item, keeping existing order."""
        ctx = context or self.default_context()

        async def run() -> AssignmentResult:
            if not isinstance(tags, list) or not tags:
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR, "Tags must be a non-empty list of strings"
                )
            cleaned = [t.strip().lower() for t in tags if isinstance(t, str) and t.strip()]
            if not cleaned:
                raise OperationError(
                    ErrorCode.VALIDATION_ERROR, "No valid tags provided after sanitization"
                )

            item = await self._fetch_item(item_id)
            previous = _item_state(item)
            merged = list(dict.fromkeys([*(item.get("tags") or []), *cleaned]))
            updated = await self._repo.update("pipeline_items", item["id"], {"tags": merged})
            new = _item_state(updated or item)

            audit_id = await self._write_audit(
                ctx,
                "pipeline_item",
                item["id"],
                "ADD_TAGS",
                previous.to_dict(),
                new.to_dict(),
                metadata={"added_tags": cleaned},
            )
            return self._result(item["id"], previous, new, audit_id)

        return await self._run("add_tags", item_id, ctx, run)

    async def select_optimal_assignee(
        self,
        pool_id: str,
        preferred_assignee_id: str | None = None,
        max_workload: int | None = None,
        round_robin: bool = True,
    ) -> AssigneeCandidate | None:
        """Pick a team member for pool_id. None means no auto-assignment."""
        candidates = await self.get_workloads()
        if not candidates:
            logger.warning("No team members found for organization %s", self._org_id)
            return None
        return self._balancer.select(
            pool_id,
            candidates,
            preferred_id=preferred_assignee_id,
            max_workload=max_workload,
            round_robin=round_robin,
        )

    async def get_workloads(self) -> list[AssigneeCandidate]:
        users = await self._repo.find_many(
            "users",
            where={"org_id": self._org_id, "is_active": True, "role": ASSIGNABLE_ROLES},
        )
        if not users:
            return []

        items = await self._repo.find_many(
            "pipeline_items", where={"assignee_id": [u["id"] for u in users]}
        )
        load: dict[str, int] = {}
        for item in items:
            if item.get("status") not in INACTIVE_ITEM_STATUSES:
                load[item["assignee_id"]] = load.get(item["assignee_id"], 0) + 1

        return [
            AssigneeCandidate(id=u["id"], name=u.get("name"), workload=load.get(u["id"], 0))
            for u in users
        ]

    # Internals

    async def _run(
        self,
        operation: str,
        item_id: str,
        ctx: ExecutionContext,
        fn: Callable[[], Awaitable[AssignmentResult]],
    ) -> AssignmentResult:
        started = time.perf_counter()
        try:
            result = await fn()
        except OperationError as e:
            logger.warning(
                "%s %s rejected: %s",
                operation,
                item_id,
                e.info.message,
                extra=log_context(ctx.correlation_id, item_id=item_id, code=e.code.value),
            )
            return AssignmentResult(
                success=False, item_id=item_id, timestamp=datetime.now(timezone.utc), error=e.info
            )
        except Exception as e:
            logger.error(
                "Failed to %s %s: %s",
                operation,
                item_id,
                e,
                exc_info=True,
                extra=log_context(ctx.correlation_id, item_id=item_id),
            )
            return AssignmentResult(
                success=False,
                item_id=item_id,
                timestamp=datetime.now(timezone.utc),
                error=ErrorInfo(code=ErrorCode.INTERNAL_ERROR, message=str(e)),
            )

        logger.info(
            "%s %s done in %.1fms",
            operation,
            item_id,
            (time.perf_counter() - started) * 1000,
            extra=log_context(ctx.correlation_id, audit_log_id=result.audit_log_id),
        )
        return result

    @staticmethod
    def _result(
        item_id: str,
        previous: AssignmentState,
        new: AssignmentState,
        audit_id: str | None,
        warnings: list[str] | None = None,
        pipeline_item_id: str | None = None,
    ) -> AssignmentResult:
        return AssignmentResult(
            success=True,
            item_id=item_id,
            timestamp=datetime.now(timezone.utc),
            previous_state=previous,
            new_state=new,
            audit_log_id=audit_id,
            pipeline_item_id=pipeline_item_id,
            warnings=warnings or [],
        )

    async def _fetch_intake(self, intake_id: str, ctx: ExecutionContext) -> dict[str, Any]:
        intake = await self._repo.find("intakes", intake_id)
        if intake is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"Intake not found: {intake_id}")
        if intake.get("org_id") and intake["org_id"] != ctx.org_id:
            raise OperationError(
                ErrorCode.PERMISSION_DENIED,
                "Intake does not belong to this organization",
                details={"intake_org_id": intake["org_id"], "requested_org_id": ctx.org_id},
            )
        return intake

    async def _fetch_pipeline(self, pipeline_id: str | None, ctx: ExecutionContext) -> dict[str, Any]:
        pipeline = await self._repo.find("pipelines", pipeline_id) if pipeline_id else None
        if pipeline is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"Pipeline not found: {pipeline_id}")
        if pipeline.get("org_id") and pipeline["org_id"] != ctx.org_id:
            raise OperationError(
                ErrorCode.PERMISSION_DENIED, "Pipeline does not belong to this organization"
            )
        return pipeline

    async def _fetch_item(self, item_or_intake_id: str) -> dict[str, Any]:
        item = await self._repo.find("pipeline_items", item_or_intake_id)
        if item is None:
            found = await self._repo.find_many(
                "pipeline_items", where={"intake_id": item_or_intake_id}, limit=1
            )
            item = found[0] if found else None
        if item is None:
            raise OperationError(
                ErrorCode.NOT_FOUND, f"Pipeline item not found: {item_or_intake_id}"
            )
        return item

    async def _require_user(self, user_id: str) -> None:
        if await self._repo.find("users", user_id) is None:
            raise OperationError(ErrorCode.NOT_FOUND, f"User not found: {user_id}")

    @staticmethod
    def _require_open(intake: dict[str, Any]) -> None:
        status = str(intake.get("status", "")).upper()
        if status in CLOSED_INTAKE_STATUSES:
            raise OperationError(
                ErrorCode.INVALID_STATE,
                f'Cannot modify intake with status "{intake.get("status")}"',
                details={"status": intake.get("status")},
            )

    @staticmethod
    def _require_active(pipeline: dict[str, Any]) -> None:
        if not pipeline.get("is_active", True):
            raise OperationError(
                ErrorCode.INVALID_STATE,
                "Cannot assign to inactive pipeline",
                details={"pipeline_id": pipeline["id"], "pipeline_name": pipeline.get("name")},
            )

    @staticmethod
    def _require_stage(stage_id: str, pipeline: dict[str, Any]) -> None:
        stage_ids = [s["id"] for s in _stages(pipeline)]
        if stage_id not in stage_ids:
            raise OperationError(
                ErrorCode.VALIDATION_ERROR,
                "Stage does not belong to the specified pipeline",
                details={"stage_id": stage_id, "pipeline_id": pipeline["id"], "available_stages": stage_ids},
            )

    async def _intake_state(self, intake: dict[str, Any]) -> AssignmentState:
        pipeline_name = None
        if intake.get("pipeline_id"):
            pipeline = await self._repo.find("pipelines", intake["pipeline_id"])
            pipeline_name = pipeline.get("name") if pipeline else None
        return AssignmentState(
            pipeline_id=intake.get("pipeline_id"),
            pipeline_name=pipeline_name,
            priority=intake.get("priority"),
            status=intake.get("status"),
        )

    async def _emit(self, event_type: EventType, payload: Any, ctx: ExecutionContext) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.emit(
            event_type,
            payload,
            EmitContext(
                source="agent",
                correlation_id=ctx.correlation_id or None,
                org_id=ctx.org_id,
                metadata={"executor": self.name},
            ),
        )


def _stages(pipeline: dict[str, Any]) -> list[dict[str, Any]]:
    return sorted(pipeline.get("stages") or [], key=lambda s: s.get("order", 0))


def _stage_name(pipeline: dict[str, Any] | None, stage_id: str | None) -> str | None:
    if not pipeline or not stage_id:
        return None
    for stage in _stages(pipeline):
        if stage["id"] == stage_id:
            return stage.get("name")
    return None


def _item_state(item: dict[str, Any], pipeline: dict[str, Any] | None = None) -> AssignmentState:
    return AssignmentState(
        pipeline_id=item.get("pipeline_id"),
        pipeline_name=pipeline.get("name") if pipeline else None,
        stage_id=item.get("stage_id"),
        stage_name=_stage_name(pipeline, item.get("stage_id")),
        assignee_id=item.get("assignee_id"),
        priority=item.get("priority"),
        tags=list(item.get("tags") or []),
        status=item.get("status"),
    )
