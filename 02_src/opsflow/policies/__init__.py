"""Execution policies shared by every action executor."""

from .dedup import DeduplicationCache, IDeduplicationCache
from .execution_log import ExecutionLog
from .load_balancer import LoadBalancer
from .quiet_hours import QuietHoursEvaluator, evaluate_quiet_hours
from .rate_limiter import IRateLimiter, RateLimiter, is_urgent
from .retry import RetryOutcome, RetryPolicy, compute_delay
from .scheduler import AsyncioScheduler, IJobStore, IScheduler
from .store import IKeyedStore, InMemoryKeyedStore

__all__ = [
    "AsyncioScheduler",
    "DeduplicationCache",
    "ExecutionLog",
    "IDeduplicationCache",
    "IJobStore",
    "IKeyedStore",
    "IRateLimiter",
    "IScheduler",
    "InMemoryKeyedStore",
    "LoadBalancer",
    "QuietHoursEvaluator",
    "RateLimiter",
    "RetryOutcome",
    "RetryPolicy",
    "compute_delay",
    "evaluate_quiet_hours",
    "is_urgent",
]
