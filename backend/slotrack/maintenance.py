from __future__ import annotations
import logging
from typing import Dict

from sqlalchemy.orm import Session

from .submission import auto_submit_expired_sessions, reclaim_stale_latches, reconcile_pending_aggregations

logger = logging.getLogger(__name__)


def run_maintenance(db: Session) -> Dict[str, int]:
	# Free dead latches first so their sessions can expire or be resubmitted
	reclaimed = reclaim_stale_latches(db)
	# Expired live tests next; anything they leave pending is retried below
	expired = auto_submit_expired_sessions(db)
	reconciled = reconcile_pending_aggregations(db)
	if reclaimed or expired or reconciled:
		logger.info(
			"Maintenance: released %d latch(es), auto-submitted %d session(s), reconciled %d aggregation(s)",
			reclaimed, expired, reconciled,
		)
	return {"reclaimed": reclaimed, "auto_submitted": expired, "reconciled": reconciled}
