"""Tests for DeduplicationCache."""

from opsflow.config import DeduplicationConfig
from opsflow.policies import DeduplicationCache


def make_cache(clock, window=300.0):
    return DeduplicationCache(DeduplicationConfig(window_seconds=window), clock=clock.monotonic)


class TestDeduplicationWindow:
    """Tests for the suppression window."""

    def test_record_then_check_is_duplicate(self, clock):
        """Test that a recorded key is immediately a duplicate."""
        cache = make_cache(clock)
        cache.record("k")

        assert cache.check_duplicate("k") is True

    def test_not_duplicate_after_window(self, clock):
        """Test that a key stops being a duplicate after window + 1 seconds."""
        cache = make_cache(clock)
        cache.record("k")

        clock.advance(301)

        assert cache.check_duplicate("k") is False

    def test_still_duplicate_at_window_edge(self, clock):
        """Test that a key is still suppressed exactly at the window boundary."""
        cache = make_cache(clock)
        cache.record("k")

        clock.advance(300)

        assert cache.check_duplicate("k") is True

    def test_check_and_record(self, clock):
        """Test that check_and_record reports first sight as not duplicate."""
        cache = make_cache(clock)

        assert cache.check_and_record("k") is False
        assert cache.check_and_record("k") is True

    def test_rerecord_keeps_first_seen(self, clock):
        """Test that recording an active key does not extend its window."""
        cache = make_cache(clock, window=10)
        cache.record("k")
        clock.advance(8)
        cache.record("k")
        clock.advance(3)

        assert cache.check_duplicate("k") is False

    def test_release(self, clock):
        """Test that a released key can pass again."""
        cache = make_cache(clock)
        cache.check_and_record("k")
        cache.release("k")

        assert cache.check_and_record("k") is False


class TestDeduplicationSweep:
    """Tests for periodic eviction."""

    def test_sweep_evicts_expired(self, clock):
        """Test that sweep removes entries older than the window."""
        cache = make_cache(clock, window=10)
        cache.record("old")
        clock.advance(11)
        cache.record("new")

        assert cache.sweep() == 1
        assert len(cache) == 1
