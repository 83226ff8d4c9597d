"""OrchestrationAgent: input -> decision -> gate -> executors."""

import json
import uuid
from collections import deque
from dataclasses import asdict, is_dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Protocol

from ..config import AgentConfig, RateLimitConfig
from ..errors import ErrorCode, ErrorInfo, classify_error
from ..event_bus import IEventBus
from ..logging_config import get_logger, log_context
from ..models import (
    Action,
    ActionOutcome,
    ActionStatus,
    ActionType,
    ActorType,
    AgentInput,
    AgentPayload,
    Decision,
    DecisionRecord,
    DecisionState,
    EmitContext,
    Event,
    EventType,
    ExecutionContext,
    GateRoute,
    InputMetadata,
    InputSource,
    NotificationPriority,
    PendingDecision,
    PerformedBy,
    StateTransition,
)
from ..policies import IDeduplicationCache, IRateLimiter, RateLimiter
from ..repository import IDecisionProvider
from ..tracker import ITracker
from .gate import ConfidenceGate, IConfidenceGate

logger = get_logger(__name__)

AGENT_SOURCE = "agent"
RATE_LIMIT_KEY = "agent"


class IOperatorNotifier(Protocol):
    async def notify_operators(
        self,
        subject: str,
        body: str,
        priority: NotificationPriority = NotificationPriority.HIGH,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list:
        ...


class IOrchestrationAgent(Protocol):
    """Runs the decision state machine for each input."""

    async def process(self, agent_input: AgentInput) -> DecisionRecord:
        """Decide, gate and dispatch. Never raises for expected failures."""
        ...

    async def approve_decision(
        self, decision_id: str, approved_by: str | None = None
    ) -> DecisionRecord | None:
        """Execute a pending decision. None if it is unknown or expired."""
        ...

    async def reject_decision(
        self, decision_id: str, reason: str | None = None, rejected_by: str | None = None
    ) -> DecisionRecord | None:
        """Drop a pending decision. None if it is unknown or expired."""
        ...

    def get_pending_decisions(self) -> list[PendingDecision]:
        ...


def input_from_event(event: Event) -> AgentInput:
    """Rebuild an AgentInput from a bus event, keeping its correlation id."""
    try:
        source = InputSource(event.source)
    except ValueError:
        source = InputSource.API
    data = asdict(event.payload) if is_dataclass(event.payload) else {}
    return AgentInput(
        source=source,
        type=event.metadata.get("input_type", event.type),
        raw_content=json.dumps(data, indent=2, default=str),
        correlation_id=event.correlation_id,
        timestamp=event.timestamp,
        structured_data=data,
        metadata=InputMetadata(
            tags=(event.type,),
            extra={"event_id": event.id, "event_type": event.type},
        ),
    )


class OrchestrationAgent:
    """Coordinates decision, gate and executor dispatch.

    The agent knows nothing about what actions do. It asks the decision provider,
    routes through the gate and hands each action to the executor registered for
    its type. State for one input moves through:

        received -> decision_requested -> decision_received
            -> auto_execute | pending_approval | escalated
            -> executed | rejected | failed
    """

    def __init__(
        self,
        decision_provider: IDecisionProvider,
        event_bus: IEventBus,
        executors: list,
        dedup: IDeduplicationCache,
        notifier: IOperatorNotifier | None = None,
        tracker: ITracker | None = None,
        config: AgentConfig | None = None,
        gate: IConfidenceGate | None = None,
        rate_limiter: IRateLimiter | None = None,
        org_context: dict[str, Any] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._provider = decision_provider
        self._event_bus = event_bus
        self._dedup = dedup
        self._notifier = notifier
        self._tracker = tracker
        self._config = config or AgentConfig()
        self._gate = gate or ConfidenceGate(self._config)
        self._rate_limiter = rate_limiter or RateLimiter(
            RateLimitConfig(
                window_seconds=60.0,
                per_window=self._config.max_actions_per_minute,
                per_hour=self._config.max_actions_per_hour,
                per_day=None,
                urgent_burst=0,
                global_per_window=None,
            )
        )
        self._org_context = org_context or {}
        self._clock = clock

        self._executors: dict[ActionType, Any] = {}
        for executor in executors:
            self.register_executor(executor)

        self._pending: dict[str, PendingDecision] = {}
        self._history: deque[DecisionRecord] = deque(maxlen=self._config.decision_history_size)
        self._subscriptions: list[str] = []
        self._stats = self._empty_stats()

    # Lifecycle

    async def start(self) -> None:
        """Subscribe to the configured event types."""
        if self._subscriptions:
            return
        for event_type in self._config.subscribed_events:
            self._subscriptions.append(self._event_bus.subscribe(event_type, self._handle_event))
        logger.info(
            "OrchestrationAgent started, subscribed to %s event types", len(self._subscriptions)
        )

    async def stop(self) -> None:
        for subscription_id in self._subscriptions:
            self._event_bus.unsubscribe(subscription_id)
        self._subscriptions = []
        logger.info("OrchestrationAgent stopped")

    def register_executor(self, executor) -> None:
        for action_type in executor.handles:
            self._executors[action_type] = executor

    async def _handle_event(self, event: Event) -> None:
        if event.source == AGENT_SOURCE:
            return
        await self.process(input_from_event(event))

    # Processing

    async def process(self, agent_input: AgentInput) -> DecisionRecord:
        cid = agent_input.correlation_id
        record = DecisionRecord(
            id=str(uuid.uuid4()),
            correlation_id=cid,
            input_type=agent_input.type,
            input_source=agent_input.source.value,
            state=DecisionState.RECEIVED,
            created_at=self._clock(),
        )
        self._transition(record, DecisionState.RECEIVED)
        self._history.append(record)
        self._stats["total_processed"] += 1

        limit = self._rate_limiter.try_acquire(RATE_LIMIT_KEY)
        if not limit.allowed:
            self._stats["rate_limited"] += 1
            logger.warning(
                "Agent rate limit reached (%s), retry after %sms",
                limit.limit,
                limit.retry_after_ms,
                extra=log_context(cid),
            )
            error = ErrorInfo(
                code=ErrorCode.RATE_LIMITED,
                message=f"Agent rate limit exceeded ({limit.limit})",
                retryable=True,
                retry_after_ms=limit.retry_after_ms,
            )
            await self._fail(record, error)
            return record

        self._transition(record, DecisionState.DECISION_REQUESTED)
        try:
            decision = await self._provider.decide(agent_input, self._org_context)
        except Exception as e:
            error = classify_error(e)
            logger.error(
                "Decision provider failed: %s",
                e,
                exc_info=True,
                extra=log_context(cid, input_type=agent_input.type),
            )
            await self._fail(record, error)
            await self._notify_failure(
                f"Decision failed for {agent_input.type}",
                f"Correlation {cid}: {error.code.value}: {error.message}",
                cid,
            )
            return record

        record.decision = decision
        self._transition(record, DecisionState.DECISION_RECEIVED, decision.intent)

        gate = self._gate.evaluate(decision)
        record.gate_reason = gate.reason
        logger.info(
            "Decision %s: intent=%s confidence=%.2f route=%s",
            record.id,
            decision.intent,
            decision.confidence,
            gate.route.value,
            extra=log_context(cid, decision_id=record.id),
        )

        if gate.route == GateRoute.AUTO_EXECUTE:
            self._stats["auto_executed"] += 1
            self._transition(record, DecisionState.AUTO_EXECUTE, gate.reason)
            await self._run_actions(
                record, decision, PerformedBy(type=ActorType.AGENT, id=self._config.agent_id)
            )
        elif gate.route == GateRoute.REQUIRE_APPROVAL:
            self._stats["pending_approval"] += 1
            self._transition(record, DecisionState.PENDING_APPROVAL, gate.reason)
            now = self._clock()
            self._pending[record.id] = PendingDecision(
                id=record.id,
                record=record,
                input=agent_input,
                decision=decision,
                created_at=now,
                expires_at=now + timedelta(hours=self._config.approval_ttl_hours),
            )
        else:
            self._stats["escalated"] += 1
            self._transition(record, DecisionState.ESCALATED, gate.reason)
            record.completed_at = self._clock()
            await self._notify_operators(
                f"Escalation: {decision.intent}",
                f"{gate.reason}\n\nInput {agent_input.type} (correlation {cid})\n"
                f"Reasoning: {decision.reasoning or '-'}",
                cid,
                NotificationPriority.URGENT if decision.urgency >= 4 else NotificationPriority.HIGH,
            )

        await self._emit(EventType.AGENT_DECISION_MADE, record)
        if self._tracker is not None:
            await self._tracker.track(
                event_type="decision_made",
                actor=self._config.agent_id,
                data={
                    "decision_id": record.id,
                    "correlation_id": cid,
                    "intent": decision.intent,
                    "confidence": decision.confidence,
                    "route": gate.route.value,
                    "state": record.state.value,
                },
            )
        return record

    # Approvals

    def get_pending_decisions(self) -> list[PendingDecision]:
        self.expire_pending()
        return sorted(self._pending.values(), key=lambda p: p.created_at)

    def expire_pending(self) -> int:
        """Reject approvals past their TTL. Returns how many expired."""
        now = self._clock()
        expired = [p for p in self._pending.values() if p.expires_at <= now]
        for pending in expired:
            del self._pending[pending.id]
            record = pending.record
            record.error = ErrorInfo(code=ErrorCode.INVALID_STATE, message="Approval expired")
            self._transition(record, DecisionState.REJECTED, "approval expired")
            record.completed_at = now
            self._stats["expired"] += 1
            logger.info(
                "Pending decision %s expired",
                record.id,
                extra=log_context(record.correlation_id, decision_id=record.id),
            )
        return len(expired)

    async def approve_decision(
        self, decision_id: str, approved_by: str | None = None
    ) -> DecisionRecord | None:
        self.expire_pending()
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            return None

        record = pending.record
        self._stats["approved"] += 1
        self._transition(record, DecisionState.AUTO_EXECUTE, f"approved by {approved_by or 'operator'}")
        performer = PerformedBy(type=ActorType.HUMAN, id=approved_by or "operator")
        await self._run_actions(record, pending.decision, performer)
        await self._emit(EventType.AGENT_DECISION_MADE, record)
        return record

    async def reject_decision(
        self, decision_id: str, reason: str | None = None, rejected_by: str | None = None
    ) -> DecisionRecord | None:
        self.expire_pending()
        pending = self._pending.pop(decision_id, None)
        if pending is None:
            return None

        record = pending.record
        self._stats["rejected"] += 1
        note = reason or "rejected"
        if rejected_by:
            note = f"{note} (by {rejected_by})"
        self._transition(record, DecisionState.REJECTED, note)
        record.completed_at = self._clock()
        logger.info(
            "Decision %s rejected: %s",
            record.id,
            note,
            extra=log_context(record.correlation_id, decision_id=record.id),
        )
        await self._emit(EventType.AGENT_DECISION_MADE, record)
        return record

    # Dispatch

    async def _run_actions(
        self, record: DecisionRecord, decision: Decision, performed_by: PerformedBy
    ) -> None:
        context = ExecutionContext(
            correlation_id=record.correlation_id,
            org_id=self._config.org_id,
            performed_by=performed_by,
            dry_run=self._config.dry_run,
        )
        record.outcomes = await self.dispatch(decision.actions, context)

        failed = [o for o in record.outcomes if not o.success]
        succeeded = [o for o in record.outcomes if o.success]
        if failed and not succeeded:
            record.error = failed[0].error
            self._transition(record, DecisionState.FAILED, f"{len(failed)} actions failed")
            self._stats["failed"] += 1
        else:
            self._transition(
                record,
                DecisionState.EXECUTED,
                f"{len(succeeded)} succeeded, {len(failed)} failed",
            )
        record.completed_at = self._clock()

        for outcome in failed:
            if outcome.retryable:
                continue
            await self._notify_failure(
                f"Action failed: {outcome.action_type.value}",
                f"Decision {record.id} (correlation {record.correlation_id}): "
                f"{outcome.error.code.value if outcome.error else 'unknown'}: "
                f"{outcome.error.message if outcome.error else ''}",
                record.correlation_id,
            )

    async def dispatch(
        self, actions: list[Action], context: ExecutionContext
    ) -> list[ActionOutcome]:
        """Run actions one by one in order. Each passes the dedup cache first."""
        outcomes = []
        cid = context.correlation_id
        for index, action in enumerate(actions):
            if action.type == ActionType.NO_ACTION:
                outcomes.append(
                    ActionOutcome(
                        action_type=action.type,
                        success=True,
                        status=ActionStatus.SKIPPED,
                        detail={"reason": "no_action"},
                    )
                )
                continue

            key = f"{cid}:{index}:{action.type.value}"
            if self._dedup.check_and_record(key):
                self._stats["actions_deduplicated"] += 1
                outcomes.append(
                    ActionOutcome(
                        action_type=action.type,
                        success=True,
                        status=ActionStatus.DEDUPLICATED,
                        detail={"dedup_key": key},
                    )
                )
                continue

            executor = self._executors.get(action.type)
            if executor is None:
                self._dedup.release(key)
                outcome = ActionOutcome(
                    action_type=action.type,
                    success=False,
                    status=ActionStatus.FAILED,
                    error=ErrorInfo(
                        code=ErrorCode.INVALID_STATE,
                        message=f"No executor registered for {action.type.value}",
                    ),
                )
            else:
                outcome = await executor.execute(action, context)
                if not outcome.success and outcome.retryable:
                    self._dedup.release(key)

            if outcome.success:
                self._stats["actions_executed"] += 1
            else:
                self._stats["actions_failed"] += 1
                logger.warning(
                    "Action %s failed: %s",
                    action.type.value,
                    outcome.error.message if outcome.error else "unknown",
                    extra=log_context(cid, action_index=index),
                )
            outcomes.append(outcome)
        return outcomes

    # Queries

    def get_decision(self, decision_id: str) -> DecisionRecord | None:
        for record in self._history:
            if record.id == decision_id:
                return record
        return None

    def get_history(self, limit: int = 50) -> list[DecisionRecord]:
        """Most recent first."""
        return list(reversed(self._history))[:limit]

    def get_stats(self) -> dict[str, Any]:
        return {
            **self._stats,
            "pending": len(self._pending),
            "history_size": len(self._history),
            "executors": sorted(t.value for t in self._executors),
        }

    def reset(self) -> None:
        self._pending.clear()
        self._history.clear()
        self._stats = self._empty_stats()

    # Internals

    @staticmethod
    def _empty_stats() -> dict[str, int]:
        return {
            "total_processed": 0,
            "auto_executed": 0,
            "pending_approval": 0,
            "escalated": 0,
            "approved": 0,
            "rejected": 0,
            "expired": 0,
            "failed": 0,
            "rate_limited": 0,
            "actions_executed": 0,
            "actions_failed": 0,
            "actions_deduplicated": 0,
        }

    def _transition(self, record: DecisionRecord, state: DecisionState, note: str | None = None) -> None:
        record.state = state
        record.transitions.append(StateTransition(state=state, at=self._clock(), note=note))

    async def _fail(self, record: DecisionRecord, error: ErrorInfo) -> None:
        record.error = error
        self._transition(record, DecisionState.FAILED, error.message)
        record.completed_at = self._clock()
        self._stats["failed"] += 1
        await self._emit(EventType.AGENT_ERROR, record)

    async def _emit(self, event_type: EventType, record: DecisionRecord) -> None:
        decision = record.decision
        payload = AgentPayload(
            decision_id=record.id,
            state=record.state.value,
            intent=decision.intent if decision else None,
            confidence=decision.confidence if decision else None,
            action_types=[a.type.value for a in decision.actions] if decision else [],
            error=record.error.message if record.error else None,
        )
        await self._event_bus.emit(
            event_type,
            payload,
            EmitContext(
                source=AGENT_SOURCE,
                correlation_id=record.correlation_id,
                org_id=self._config.org_id,
                metadata={"input_type": record.input_type},
            ),
        )

    async def _notify_failure(self, subject: str, body: str, correlation_id: str) -> None:
        if self._config.notify_on_failure:
            await self._notify_operators(subject, body, correlation_id, NotificationPriority.HIGH)

    async def _notify_operators(
        self,
        subject: str,
        body: str,
        correlation_id: str,
        priority: NotificationPriority,
    ) -> None:
        if self._notifier is None:
            logger.warning(
                "No operator notifier configured: %s", subject, extra=log_context(correlation_id)
            )
            return
        await self._notifier.notify_operators(
            subject, body, priority=priority, correlation_id=correlation_id
        )
