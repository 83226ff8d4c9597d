"""Project-level configuration, path helpers and runtime settings."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent
DATA_DIR = PROJECT_ROOT / "03_data"
LOGS_DIR = PROJECT_ROOT / "04_logs"
DEFAULT_DB_PATH = DATA_DIR / "opsflow.db"
DEFAULT_LOG_PATH = LOGS_DIR / "opsflow.log"

DATA_DIR.mkdir(parents=True, exist_ok=True)
LOGS_DIR.mkdir(parents=True, exist_ok=True)


PathLike = Union[str, Path]


def resolve_db_path(env_value: PathLike | None = None) -> PathLike:
    """Resolve DATABASE_URL to an absolute path."""
    if not env_value:
        return DEFAULT_DB_PATH

    if str(env_value) == ":memory:":
        return ":memory:"

    candidate = Path(env_value)
    return candidate if candidate.is_absolute() else PROJECT_ROOT / candidate


@dataclass
class RateLimitConfig:
    """Sliding-window limits applied per key plus a global ceiling.

    A limit of None disables that window.
    """

    window_seconds: float = 60.0
    per_window: int | None = 10
    per_hour: int | None = 50
    per_day: int | None = 200
    urgent_burst: int = 5
    global_per_window: int | None = 100
    sweep_interval_seconds: float = 60.0


@dataclass
class DeduplicationConfig:
    window_seconds: float = 300.0
    sweep_interval_seconds: float = 60.0


@dataclass
class RetryConfig:
    """Exponential backoff bounds."""

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    total_timeout_ms: int | None = None


@dataclass
class QuietHoursPolicy:
    """Per-recipient quiet window.

    days_of_week uses Python weekday numbering (Monday=0). None means every day.
    """

    enabled: bool = False
    start_time: str = "22:00"
    end_time: str = "07:00"
    timezone: str = "UTC"
    days_of_week: list[int] | None = None
    allow_urgent: bool = True


DEFAULT_HIGH_IMPACT_ACTIONS = [
    "bulk_notification",
    "cancel_event",
    "notify_external",
]

DEFAULT_SUBSCRIBED_EVENTS = [
    "intake:created",
    "webhook:form_submitted",
    "webhook:booking_requested",
    "webhook:callback_received",
    "email:received",
    "automation:failed",
    "calendar:reminder_due",
    "pipeline:stage_changed",
]


@dataclass
class AgentConfig:
    """Confidence gate and coordinator limits."""

    agent_id: str = "orchestration-agent"
    org_id: str = "default"
    auto_execute_threshold: float = 0.85
    require_approval_threshold: float = 0.5
    max_actions_per_minute: int = 60
    max_actions_per_hour: int = 500
    approval_ttl_hours: float = 24.0
    decision_history_size: int = 500
    high_impact_actions: list[str] = field(
        default_factory=lambda: list(DEFAULT_HIGH_IMPACT_ACTIONS)
    )
    subscribed_events: list[str] = field(
        default_factory=lambda: list(DEFAULT_SUBSCRIBED_EVENTS)
    )
    notify_on_failure: bool = True
    dry_run: bool = False


@dataclass
class CalendarConfig:
    default_timezone: str = "UTC"
    buffer_minutes: int = 15
    business_hours_start: int = 9
    business_hours_end: int = 17
    lunch_start: int = 12
    lunch_end: int = 13
    max_meetings_per_day: int = 8
    block_on_overlap: bool = True


@dataclass
class NotificationConfig:
    bulk_concurrency: int = 10
    operator_recipients: list[str] = field(default_factory=list)
    default_quiet_hours: QuietHoursPolicy = field(default_factory=QuietHoursPolicy)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)


@dataclass
class WorkflowConfig:
    base_url: str = "http://localhost:5678/api/v1"
    api_key: str | None = None
    default_timeout_ms: int = 30000
    default_retries: int = 3
    rate_limit_per_workflow: int = 30
    global_rate_limit: int = 100


@dataclass
class InputConfig:
    """Adapter switches. Skips are off unless configured."""

    webhook_secret: str | None = None
    require_signature: bool = False
    allowed_webhook_sources: list[str] | None = None
    skip_spam: bool = False
    skip_bounces: bool = False
    skip_auto_replies: bool = False
    emit_progress_events: bool = False
    process_batch_operations: bool = False


@dataclass
class RuntimeConfig:
    """Single configuration object for the whole runtime."""

    dedup: DeduplicationConfig = field(default_factory=DeduplicationConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    notifications: NotificationConfig = field(default_factory=NotificationConfig)
    workflows: WorkflowConfig = field(default_factory=WorkflowConfig)
    inputs: InputConfig = field(default_factory=InputConfig)
    execution_log_size: int = 1000
    event_history_size: int = 100

    @classmethod
    def from_env(cls) -> "RuntimeConfig":
        """Build config from OPSFLOW_* environment variables over the defaults."""
        config = cls()

        config.dedup.window_seconds = _env_float(
            "OPSFLOW_DEDUP_WINDOW_SECONDS", config.dedup.window_seconds
        )
        config.retry.max_attempts = _env_int(
            "OPSFLOW_RETRY_MAX_ATTEMPTS", config.retry.max_attempts
        )
        config.retry.base_delay_ms = _env_int(
            "OPSFLOW_RETRY_BASE_DELAY_MS", config.retry.base_delay_ms
        )
        config.retry.max_delay_ms = _env_int(
            "OPSFLOW_RETRY_MAX_DELAY_MS", config.retry.max_delay_ms
        )

        agent = config.agent
        agent.org_id = os.getenv("OPSFLOW_ORG_ID", agent.org_id)
        agent.auto_execute_threshold = _env_float(
            "OPSFLOW_AUTO_EXECUTE_THRESHOLD", agent.auto_execute_threshold
        )
        agent.require_approval_threshold = _env_float(
            "OPSFLOW_REQUIRE_APPROVAL_THRESHOLD", agent.require_approval_threshold
        )
        agent.max_actions_per_minute = _env_int(
            "OPSFLOW_MAX_ACTIONS_PER_MINUTE", agent.max_actions_per_minute
        )
        agent.max_actions_per_hour = _env_int(
            "OPSFLOW_MAX_ACTIONS_PER_HOUR", agent.max_actions_per_hour
        )
        agent.dry_run = os.getenv("OPSFLOW_DRY_RUN", "false").lower() == "true"

        limits = config.notifications.rate_limits
        limits.per_window = _env_int("OPSFLOW_NOTIFY_PER_MINUTE", limits.per_window)
        limits.per_hour = _env_int("OPSFLOW_NOTIFY_PER_HOUR", limits.per_hour)
        limits.per_day = _env_int("OPSFLOW_NOTIFY_PER_DAY", limits.per_day)

        operators = os.getenv("OPSFLOW_OPERATOR_RECIPIENTS")
        if operators:
            config.notifications.operator_recipients = [
                r.strip() for r in operators.split(",") if r.strip()
            ]

        quiet = config.notifications.default_quiet_hours
        quiet.enabled = os.getenv("OPSFLOW_QUIET_HOURS_ENABLED", "false").lower() == "true"
        quiet.start_time = os.getenv("OPSFLOW_QUIET_HOURS_START", quiet.start_time)
        quiet.end_time = os.getenv("OPSFLOW_QUIET_HOURS_END", quiet.end_time)
        quiet.timezone = os.getenv("OPSFLOW_QUIET_HOURS_TZ", quiet.timezone)

        workflows = config.workflows
        workflows.base_url = os.getenv("OPSFLOW_WORKFLOW_BASE_URL", workflows.base_url)
        workflows.api_key = os.getenv("OPSFLOW_WORKFLOW_API_KEY", workflows.api_key)
        workflows.default_timeout_ms = _env_int(
            "OPSFLOW_WORKFLOW_TIMEOUT_MS", workflows.default_timeout_ms
        )

        config.calendar.default_timezone = os.getenv(
            "OPSFLOW_CALENDAR_TZ", config.calendar.default_timezone
        )

        inputs = config.inputs
        inputs.webhook_secret = os.getenv("OPSFLOW_WEBHOOK_SECRET", inputs.webhook_secret)
        inputs.require_signature = _env_bool("OPSFLOW_REQUIRE_SIGNATURE", inputs.require_signature)
        inputs.skip_spam = _env_bool("OPSFLOW_SKIP_SPAM", inputs.skip_spam)
        inputs.skip_bounces = _env_bool("OPSFLOW_SKIP_BOUNCES", inputs.skip_bounces)
        inputs.skip_auto_replies = _env_bool("OPSFLOW_SKIP_AUTO_REPLIES", inputs.skip_auto_replies)
        return config


def _env_int(name: str, default: int | None) -> int | None:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return int(value)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.lower() in ("1", "true", "yes")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)
