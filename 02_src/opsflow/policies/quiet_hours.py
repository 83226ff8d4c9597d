"""Per-recipient quiet-hours evaluation."""

from datetime import datetime, time, timedelta, timezone
from typing import Any, Callable
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from ..config import QuietHoursPolicy
from ..logging_config import get_logger
from ..models import QuietHoursResult
from .rate_limiter import is_urgent

logger = get_logger(__name__)


def parse_hhmm(value: str) -> time:
    """Parse ``HH:MM`` into a time. Raises ValueError on malformed input."""
    hours, _, minutes = value.strip().partition(":")
    return time(hour=int(hours), minute=int(minutes or 0))


def _zone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %s, falling back to UTC", name)
        return ZoneInfo("UTC")


def in_window(current: time, start: time, end: time) -> bool:
    """Window membership; start > end wraps past midnight."""
    if start == end:
        return False
    if start < end:
        return start <= current < end
    return current >= start or current < end


def evaluate_quiet_hours(
    policy: QuietHoursPolicy,
    now: datetime,
    priority: Any = None,
) -> QuietHoursResult:
    """Return whether ``now`` falls in the policy's window and when it ends.

    ``days_of_week`` is matched against the day the window opened, so the
    early-morning half of an overnight window belongs to the previous evening.
    """
    if not policy.enabled:
        return QuietHoursResult(in_quiet_hours=False)

    if is_urgent(priority) and policy.allow_urgent:
        return QuietHoursResult(in_quiet_hours=False)

    tz = _zone(policy.timezone)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(tz)

    start = parse_hhmm(policy.start_time)
    end = parse_hhmm(policy.end_time)
    current = local.time().replace(second=0, microsecond=0)

    if not in_window(current, start, end):
        return QuietHoursResult(in_quiet_hours=False)

    if policy.days_of_week is not None:
        opened_on = local.date()
        if start > end and current < end:
            opened_on = opened_on - timedelta(days=1)
        if opened_on.weekday() not in policy.days_of_week:
            return QuietHoursResult(in_quiet_hours=False)

    resume_local = local.replace(
        hour=end.hour, minute=end.minute, second=0, microsecond=0
    )
    if resume_local <= local:
        resume_local = resume_local + timedelta(days=1)

    return QuietHoursResult(
        in_quiet_hours=True,
        resume_at=resume_local.astimezone(timezone.utc),
    )


class QuietHoursEvaluator:
    """Looks up each recipient's policy and evaluates it against the clock.

    Holds no scheduling state; callers defer delivery to ``resume_at`` themselves.
    """

    def __init__(
        self,
        default_policy: QuietHoursPolicy | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self._default = default_policy or QuietHoursPolicy()
        self._preferences: dict[str, QuietHoursPolicy] = {}
        self._clock = clock

    def set_policy(self, recipient: str, policy: QuietHoursPolicy) -> None:
        self._preferences[recipient] = policy

    def clear_policy(self, recipient: str) -> None:
        self._preferences.pop(recipient, None)

    def policy_for(self, recipient: str) -> QuietHoursPolicy:
        return self._preferences.get(recipient, self._default)

    def check(
        self,
        recipient: str,
        priority: Any = None,
        now: datetime | None = None,
    ) -> QuietHoursResult:
        return evaluate_quiet_hours(
            self.policy_for(recipient), now or self._clock(), priority
        )
