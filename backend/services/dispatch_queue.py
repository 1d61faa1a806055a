"""
Dispatch queue: open cases ordered for dispatch.

Never stored. Every read pulls the open cases from the case store and sorts
them: priority ascending (1 first), unclassified (0) after 5, then oldest first
within a priority.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from db import OPEN, Case

logger = logging.getLogger(__name__)

# Where priority 0 ranks: after the least urgent level.
UNCLASSIFIED_RANK = 6


def queue_key(case: Case) -> tuple:
    rank = case.priority if case.priority and case.priority > 0 else UNCLASSIFIED_RANK
    return (rank, case.created_at)


def order_cases(cases: list) -> list:
    """Open cases in dispatch order. Resolved cases are dropped."""
    return sorted((c for c in cases if c.status == OPEN), key=queue_key)


def time_in_queue(created_at: Optional[datetime], now: Optional[datetime] = None) -> str:
    """Age of a case as "45s", "3m" or "2h"."""
    if not created_at:
        return "N/A"
    now = now or datetime.now(timezone.utc)
    seconds = max(0, int((now - created_at).total_seconds()))
    if seconds < 60:
        return f"{seconds}s"
    minutes = seconds // 60
    if minutes < 60:
        return f"{minutes}m"
    return f"{minutes // 60}h"


class DispatchQueue:
    """Read-time view over the case store's open cases."""

    def __init__(self, cases):
        self.cases = cases

    def snapshot(self) -> list:
        return order_cases(self.cases.list_open())

    def next_to_dispatch(self) -> Optional[Case]:
        queue = self.snapshot()
        return queue[0] if queue else None

    def position(self, case_id: str) -> Optional[int]:
        """1-based place of case_id in the queue, or None if it isn't queued."""
        for index, case in enumerate(self.snapshot(), start=1):
            if case.id == case_id:
                return index
        return None

    def __call__(self) -> list:
        return self.snapshot()
