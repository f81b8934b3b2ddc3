"""Stale-job reclaimer: liveness guarantee against crashed workers.

Runs on its own cadence, independent of the processor. A job whose claim is
older than the timeout is assumed orphaned and returned to pending; its
attempts counter already includes the lost attempt.
"""

import logging

from .backends import JobStore

logger = logging.getLogger(__name__)


class StaleJobReclaimer:
    """Periodic reclaim pass over processing jobs.

    The timeout should be several times the per-job render ceiling so that a
    live worker is never robbed of its claim.
    """

    def __init__(self, store: JobStore, timeout_s: float):
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.store = store
        self.timeout_s = timeout_s

    def run_once(self) -> int:
        """Reclaim stale jobs once.

        Returns:
            Count of jobs released from processing
        """
        count = self.store.reclaim_stale(self.timeout_s)
        if count:
            logger.warning("Reclaimed %d stale jobs (timeout %gs)", count, self.timeout_s)
        else:
            logger.debug("No stale jobs (timeout %gs)", self.timeout_s)
        return count
