"""Shared executor contract."""

from datetime import datetime, timezone
from typing import Any, Protocol

from ..errors import ErrorCode, ErrorInfo, OperationError
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    ActorType,
    AuditLogEntry,
    ExecutionContext,
    PerformedBy,
)
from .audit import AuditLog

logger = get_logger(__name__)


class IActionExecutor(Protocol):
    """Carries out one action family. Never raises for expected failures."""

    handles: tuple[ActionType, ...]

    async def execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        ...


def require_param(params: dict[str, Any], *names: str) -> Any:
    """First present value among names, else a VALIDATION_ERROR."""
    for name in names:
        value = params.get(name)
        if value is not None and value != "":
            return value
    raise OperationError(ErrorCode.VALIDATION_ERROR, f"Missing required parameter: {names[0]}")


class BaseActionExecutor:
    """Dispatch, dry-run and error conversion around ``_execute``.

    Subclasses set ``handles`` and implement ``_execute``; anything they raise
    comes back as a failed ActionOutcome.
    """

    handles: tuple[ActionType, ...] = ()
    name: str = "executor"

    def __init__(self, audit_log: AuditLog, org_id: str = "default", agent_id: str = "orchestration-agent"):
        self._audit = audit_log
        self._org_id = org_id
        self._agent_id = agent_id

    async def execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        if action.type not in self.handles:
            return ActionOutcome(
                action_type=action.type,
                success=False,
                status=ActionStatus.FAILED,
                error=ErrorInfo(
                    code=ErrorCode.INVALID_STATE,
                    message=f"{self.name} cannot execute {action.type.value}",
                ),
            )

        if context.dry_run:
            logger.info(
                "Dry run: %s would execute %s",
                self.name,
                action.type.value,
                extra=log_context(context.correlation_id),
            )
            return ActionOutcome(
                action_type=action.type,
                success=True,
                status=ActionStatus.SKIPPED,
                detail={"dry_run": True, "params": dict(action.params)},
            )

        try:
            return await self._execute(action, context)
        except OperationError as e:
            return self._failed(action, e.info)
        except Exception as e:
            logger.error(
                "%s failed on %s: %s",
                self.name,
                action.type.value,
                e,
                exc_info=True,
                extra=log_context(context.correlation_id, action_type=action.type.value),
            )
            return self._failed(action, ErrorInfo(code=ErrorCode.INTERNAL_ERROR, message=str(e)))

    async def _execute(self, action: Action, context: ExecutionContext) -> ActionOutcome:
        raise NotImplementedError

    def default_context(self, correlation_id: str | None = None) -> ExecutionContext:
        return ExecutionContext(
            correlation_id=correlation_id or "",
            org_id=self._org_id,
            performed_by=PerformedBy(type=ActorType.AGENT, id=self._agent_id),
        )

    async def _write_audit(
        self,
        context: ExecutionContext,
        entity_type: str,
        entity_id: str,
        action: str,
        previous_state: dict | None,
        new_state: dict | None,
        reason: str | None = None,
        metadata: dict | None = None,
    ) -> str | None:
        return await self._audit.record(
            AuditLogEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                performed_by=context.performed_by,
                timestamp=datetime.now(timezone.utc),
                previous_state=previous_state,
                new_state=new_state,
                reason=reason,
                correlation_id=context.correlation_id or None,
                org_id=context.org_id,
                metadata=metadata or {},
            )
        )

    @staticmethod
    def _failed(action: Action, error: ErrorInfo) -> ActionOutcome:
        return ActionOutcome(
            action_type=action.type,
            success=False,
            status=ActionStatus.FAILED,
            error=error,
        )

    @staticmethod
    def _outcome(
        action: Action,
        success: bool,
        error: ErrorInfo | None = None,
        audit_log_id: str | None = None,
        status: ActionStatus | None = None,
        **detail: Any,
    ) -> ActionOutcome:
        return ActionOutcome(
            action_type=action.type,
            success=success,
            status=status or (ActionStatus.EXECUTED if success else ActionStatus.FAILED),
            error=error,
            audit_log_id=audit_log_id,
            detail=detail,
        )
