"""Tests for quiet-hours evaluation."""

from datetime import datetime, timezone

from opsflow.config import QuietHoursPolicy
from opsflow.policies import QuietHoursEvaluator, evaluate_quiet_hours


def overnight(**overrides):
    values = dict(enabled=True, start_time="22:00", end_time="07:00", timezone="UTC")
    values.update(overrides)
    return QuietHoursPolicy(**values)


class TestQuietHoursWindow:
    """Tests for window membership and resume time."""

    def test_late_evening_is_quiet(self):
        """Test that 23:30 is inside 22:00-07:00 and resumes at the next 07:00."""
        now = datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc)

        result = evaluate_quiet_hours(overnight(), now)

        assert result.in_quiet_hours is True
        assert result.resume_at == datetime(2025, 1, 7, 7, 0, tzinfo=timezone.utc)

    def test_morning_after_end_is_not_quiet(self):
        """Test that 08:00 is outside 22:00-07:00."""
        now = datetime(2025, 1, 7, 8, 0, tzinfo=timezone.utc)

        result = evaluate_quiet_hours(overnight(), now)

        assert result.in_quiet_hours is False
        assert result.resume_at is None

    def test_early_morning_resumes_same_day(self):
        """Test that 01:00 resumes at 07:00 the same day."""
        now = datetime(2025, 1, 7, 1, 0, tzinfo=timezone.utc)

        result = evaluate_quiet_hours(overnight(), now)

        assert result.in_quiet_hours is True
        assert result.resume_at == datetime(2025, 1, 7, 7, 0, tzinfo=timezone.utc)

    def test_disabled_policy(self):
        """Test that a disabled policy is never quiet."""
        now = datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc)

        assert evaluate_quiet_hours(overnight(enabled=False), now).in_quiet_hours is False

    def test_urgent_bypasses(self):
        """Test that urgent priority bypasses quiet hours when allowed."""
        now = datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc)

        assert evaluate_quiet_hours(overnight(), now, "urgent").in_quiet_hours is False
        assert (
            evaluate_quiet_hours(overnight(allow_urgent=False), now, "urgent").in_quiet_hours
            is True
        )

    def test_timezone_is_respected(self):
        """Test that the window is evaluated in the policy's timezone."""
        # 04:30 UTC is 23:30 in New York (EST)
        now = datetime(2025, 1, 7, 4, 30, tzinfo=timezone.utc)

        result = evaluate_quiet_hours(overnight(timezone="America/New_York"), now)

        assert result.in_quiet_hours is True
        assert result.resume_at == datetime(2025, 1, 7, 12, 0, tzinfo=timezone.utc)

    def test_days_of_week_uses_opening_day(self):
        """Test that the early hours belong to the previous evening's window."""
        # Tuesday 01:00; the window opened Monday (weekday 0)
        now = datetime(2025, 1, 7, 1, 0, tzinfo=timezone.utc)

        assert evaluate_quiet_hours(overnight(days_of_week=[0]), now).in_quiet_hours is True
        assert evaluate_quiet_hours(overnight(days_of_week=[1]), now).in_quiet_hours is False


class TestQuietHoursEvaluator:
    """Tests for per-recipient policies."""

    def test_default_policy_applies(self, clock):
        """Test that recipients without preferences use the default."""
        clock.set(datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc))
        evaluator = QuietHoursEvaluator(overnight(), clock=clock.now)

        assert evaluator.check("someone").in_quiet_hours is True

    def test_recipient_policy_overrides_default(self, clock):
        """Test that a recipient preference replaces the default."""
        clock.set(datetime(2025, 1, 6, 23, 30, tzinfo=timezone.utc))
        evaluator = QuietHoursEvaluator(overnight(), clock=clock.now)
        evaluator.set_policy("night-owl", QuietHoursPolicy(enabled=False))

        assert evaluator.check("night-owl").in_quiet_hours is False

        evaluator.clear_policy("night-owl")
        assert evaluator.check("night-owl").in_quiet_hours is True
