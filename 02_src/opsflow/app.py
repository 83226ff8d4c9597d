"""Application bootstrap and lifecycle management."""

import os
from typing import Protocol

from .actions import (
    AuditLog,
    AutomationTrigger,
    CalendarManager,
    NotificationDispatcher,
    PipelineAssigner,
)
from .agent import OrchestrationAgent
from .config import RuntimeConfig, resolve_db_path
from .decision import LLMDecisionProvider, LLMProvider
from .event_bus import EventBus
from .inputs import (
    DBTriggerAdapter,
    EmailAdapter,
    IInputAdapter,
    WebhookAdapter,
    WorkerEventAdapter,
)
from .logging_config import get_logger
from .policies import (
    AsyncioScheduler,
    DeduplicationCache,
    ExecutionLog,
    LoadBalancer,
    QuietHoursEvaluator,
    RateLimiter,
    RetryPolicy,
)
from .repository import (
    HttpWorkflowInvoker,
    IDecisionProvider,
    IDeliveryService,
    LoggingDeliveryService,
)
from .storage import IStorage, Storage
from .tracker import ITracker, Tracker

logger = get_logger(__name__)


class IApplication(Protocol):
    """Bootstrap and lifecycle."""

    async def start(self) -> None:
        """Initialize components in dependency order."""
        ...

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        ...

    async def reset(self) -> None:
        """Reset data between test runs."""
        ...


class Application:
    """Main application bootstrap."""

    def __init__(
        self,
        db_path: str | None = None,
        config: RuntimeConfig | None = None,
        decision_provider: IDecisionProvider | None = None,
        delivery: IDeliveryService | None = None,
    ):
        env_db_path = os.getenv("DATABASE_URL") if db_path is None else db_path
        self._db_path = resolve_db_path(env_db_path)
        self._config = config or RuntimeConfig.from_env()
        self._decision_provider = decision_provider
        self._delivery = delivery

        # Components (will be initialized in start())
        self._storage: Storage | None = None
        self._event_bus: EventBus | None = None
        self._tracker: Tracker | None = None
        self._dedup: DeduplicationCache | None = None
        self._notify_limiter: RateLimiter | None = None
        self._execution_log: ExecutionLog | None = None
        self._scheduler: AsyncioScheduler | None = None
        self._audit_log: AuditLog | None = None
        self._invoker: HttpWorkflowInvoker | None = None
        self._assigner: PipelineAssigner | None = None
        self._calendar: CalendarManager | None = None
        self._notifications: NotificationDispatcher | None = None
        self._workflows: AutomationTrigger | None = None
        self._adapters: dict[str, IInputAdapter] = {}
        self._agent: OrchestrationAgent | None = None

    async def start(self) -> None:
        """Initialize components in dependency order."""
        logger.info("Starting application")
        config = self._config
        org_id = config.agent.org_id
        agent_id = config.agent.agent_id

        # 1. Storage (no dependencies)
        self._storage = Storage(self._db_path)
        await self._storage.init()
        logger.info("Storage initialized")

        # 2. EventBus (persists emitted events to Storage)
        self._event_bus = EventBus(self._storage, history_size=config.event_history_size)
        logger.info("EventBus initialized")

        # 3. Tracker (depends on EventBus + Storage)
        self._tracker = Tracker(self._event_bus, self._storage)
        await self._tracker.start()

        # 4. Policies
        self._dedup = DeduplicationCache(config.dedup)
        self._dedup.start()
        self._notify_limiter = RateLimiter(config.notifications.rate_limits)
        self._notify_limiter.start()
        quiet_hours = QuietHoursEvaluator(config.notifications.default_quiet_hours)
        retry = RetryPolicy(config.retry)
        self._execution_log = ExecutionLog(config.execution_log_size)
        logger.info("Policies initialized")

        # 5. Scheduler (started once executors have registered their handlers)
        self._scheduler = AsyncioScheduler(self._storage)

        # 6. Executors
        self._audit_log = AuditLog(self._storage)
        self._invoker = HttpWorkflowInvoker(config.workflows)
        self._assigner = PipelineAssigner(
            self._storage,
            self._audit_log,
            self._event_bus,
            LoadBalancer(),
            org_id=org_id,
            agent_id=agent_id,
        )
        self._calendar = CalendarManager(
            self._storage,
            self._audit_log,
            self._event_bus,
            config.calendar,
            org_id=org_id,
            agent_id=agent_id,
        )
        self._notifications = NotificationDispatcher(
            self._delivery or LoggingDeliveryService(),
            self._audit_log,
            repository=self._storage,
            rate_limiter=self._notify_limiter,
            dedup=self._dedup,
            quiet_hours=quiet_hours,
            retry=retry,
            scheduler=self._scheduler,
            config=config.notifications,
            org_id=org_id,
            agent_id=agent_id,
        )
        self._workflows = AutomationTrigger(
            self._storage,
            self._invoker,
            self._audit_log,
            self._event_bus,
            retry=retry,
            scheduler=self._scheduler,
            execution_log=self._execution_log,
            config=config.workflows,
            org_id=org_id,
            agent_id=agent_id,
        )
        await self._scheduler.start()
        logger.info("Executors and scheduler started")

        # 7. Input adapters (depend on EventBus)
        inputs = config.inputs
        self._adapters = {
            "webhook": WebhookAdapter(
                self._event_bus,
                org_id=org_id,
                allowed_sources=inputs.allowed_webhook_sources,
                webhook_secret=inputs.webhook_secret,
                require_signature=inputs.require_signature,
            ),
            "email": EmailAdapter(
                self._event_bus,
                org_id=org_id,
                skip_spam=inputs.skip_spam,
                skip_bounces=inputs.skip_bounces,
                skip_auto_replies=inputs.skip_auto_replies,
            ),
            "worker": WorkerEventAdapter(
                self._event_bus,
                org_id=org_id,
                emit_progress_events=inputs.emit_progress_events,
            ),
            "db": DBTriggerAdapter(
                self._event_bus,
                org_id=org_id,
                process_batch_operations=inputs.process_batch_operations,
            ),
        }
        logger.info("Input adapters initialized: %s", ", ".join(self._adapters))

        # 8. Agent (depends on everything above)
        provider = self._decision_provider or LLMDecisionProvider(LLMProvider())
        self._agent = OrchestrationAgent(
            provider,
            self._event_bus,
            [self._assigner, self._calendar, self._notifications, self._workflows],
            self._dedup,
            notifier=self._notifications,
            tracker=self._tracker,
            config=config.agent,
        )
        await self._agent.start()
        logger.info("All components initialized successfully")

    async def stop(self) -> None:
        """Shutdown in reverse order."""
        if self._agent:
            await self._agent.stop()
        if self._scheduler:
            await self._scheduler.stop()
        if self._workflows:
            await self._workflows.close()
        if self._invoker:
            await self._invoker.close()
        if self._notify_limiter:
            await self._notify_limiter.stop()
        if self._dedup is not None:
            await self._dedup.stop()
        if self._tracker:
            await self._tracker.stop()
        if self._storage:
            await self._storage.close()
            logger.info("Storage closed")

    async def reset(self) -> None:
        """Reset data between test runs."""
        # 1. Pause the agent
        if self._agent:
            await self._agent.stop()

        # 2. Clear storage and in-memory state
        if self._storage:
            await self._storage.clear()
            logger.info("Storage cleared")
        if self._event_bus:
            self._event_bus.clear_history()
        if self._execution_log is not None:
            self._execution_log.clear()
        for adapter in self._adapters.values():
            adapter.reset_stats()

        # 3. Restart the agent with empty history
        if self._agent:
            self._agent.reset()
            await self._agent.start()
            logger.info("Reset complete")

    def get_adapter(self, source: str) -> IInputAdapter | None:
        return self._adapters.get(source)

    @property
    def config(self) -> RuntimeConfig:
        return self._config

    @property
    def storage(self) -> IStorage:
        """Get storage instance."""
        if not self._storage:
            raise RuntimeError("Application not started")
        return self._storage

    @property
    def event_bus(self) -> EventBus:
        if not self._event_bus:
            raise RuntimeError("Application not started")
        return self._event_bus

    @property
    def tracker(self) -> ITracker:
        if not self._tracker:
            raise RuntimeError("Application not started")
        return self._tracker

    @property
    def agent(self) -> OrchestrationAgent:
        """Get orchestration agent instance."""
        if not self._agent:
            raise RuntimeError("Application not started")
        return self._agent

    @property
    def adapters(self) -> dict[str, IInputAdapter]:
        if not self._adapters:
            raise RuntimeError("Application not started")
        return dict(self._adapters)

    @property
    def audit_log(self) -> AuditLog:
        if not self._audit_log:
            raise RuntimeError("Application not started")
        return self._audit_log

    @property
    def scheduler(self) -> AsyncioScheduler:
        if not self._scheduler:
            raise RuntimeError("Application not started")
        return self._scheduler

    @property
    def execution_log(self) -> ExecutionLog:
        if self._execution_log is None:
            raise RuntimeError("Application not started")
        return self._execution_log

    @property
    def notifications(self) -> NotificationDispatcher:
        if not self._notifications:
            raise RuntimeError("Application not started")
        return self._notifications

    @property
    def workflows(self) -> AutomationTrigger:
        if not self._workflows:
            raise RuntimeError("Application not started")
        return self._workflows
