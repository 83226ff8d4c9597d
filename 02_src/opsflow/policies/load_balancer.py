"""Workload-based assignee selection with round-robin tie breaking."""

from ..logging_config import get_logger
from ..models import AssigneeCandidate

logger = get_logger(__name__)

DEFAULT_MAX_WORKLOAD = 20


class LoadBalancer:
    """Picks an assignee per pool.

    Order of preference: an explicitly preferred candidate within capacity, then
    the lowest workload. Equally loaded candidates rotate per pool.
    """

    def __init__(self, max_workload: int = DEFAULT_MAX_WORKLOAD):
        self._max_workload = max_workload
        self._last_index: dict[str, int] = {}

    def select(
        self,
        pool_id: str,
        candidates: list[AssigneeCandidate],
        preferred_id: str | None = None,
        max_workload: int | None = None,
        round_robin: bool = True,
    ) -> AssigneeCandidate | None:
        """Return the chosen candidate, or None when nobody has capacity."""
        limit = self._max_workload if max_workload is None else max_workload
        eligible = [c for c in candidates if c.available and c.workload < limit]

        if not eligible:
            logger.info("No assignee with capacity in pool %s", pool_id)
            return None

        if preferred_id:
            for candidate in eligible:
                if candidate.id == preferred_id:
                    return candidate

        lowest = min(c.workload for c in eligible)
        tied = sorted((c for c in eligible if c.workload == lowest), key=lambda c: c.id)

        if len(tied) == 1 or not round_robin:
            return tied[0]

        index = (self._last_index.get(pool_id, -1) + 1) % len(tied)
        self._last_index[pool_id] = index
        return tied[index]

    def reset(self, pool_id: str | None = None) -> None:
        if pool_id is None:
            self._last_index.clear()
        else:
            self._last_index.pop(pool_id, None)
