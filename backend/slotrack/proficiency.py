"""Running per-(student, outcome) proficiency totals and mastery classification."""
from __future__ import annotations
import logging
from enum import Enum
from typing import Callable, Optional

from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from .allocation import OutcomeMarks
from .db import utcnow
from .errors import AggregationError, ProficiencyConflictError
from .models import ProficiencyRecord
from .settings import settings

logger = logging.getLogger(__name__)

MASTERY_THRESHOLD = 85.0
SATISFACTORY_THRESHOLD = 60.0


class MasteryLevel(str, Enum):
	developmental = "developmental"
	satisfactory = "satisfactory"
	mastery = "mastery"


def classify(percentage: float) -> MasteryLevel:
	# Inclusive lower bounds, applied to the unrounded percentage
	if percentage >= MASTERY_THRESHOLD:
		return MasteryLevel.mastery
	if percentage >= SATISFACTORY_THRESHOLD:
		return MasteryLevel.satisfactory
	return MasteryLevel.developmental


class ProficiencyState(BaseModel):
	earned: float
	possible: float
	percentage: float
	level: MasteryLevel

	@classmethod
	def from_record(cls, row: Optional[ProficiencyRecord]) -> Optional["ProficiencyState"]:
		if row is None:
			return None
		return cls(
			earned=row.total_marks_earned,
			possible=row.total_marks_attempted,
			percentage=row.proficiency_percentage,
			level=MasteryLevel(row.level),
		)


def merge_proficiency(previous: Optional[ProficiencyState], delta: OutcomeMarks) -> Optional[ProficiencyState]:
	"""Add ``delta`` to ``previous`` and recompute the derived fields.

	A zero delta returns ``previous`` itself (possibly ``None``).
	"""
	if delta.earned < 0 or delta.possible < 0:
		raise AggregationError(f"negative delta {delta.earned}/{delta.possible}")
	if delta.earned > delta.possible + 1e-9:
		raise AggregationError(f"delta earns {delta.earned} of only {delta.possible} possible")
	if delta.is_zero():
		return previous
	earned = (previous.earned if previous else 0.0) + delta.earned
	possible = (previous.possible if previous else 0.0) + delta.possible
	if possible <= 0:
		raise AggregationError("cumulative possible marks must be positive")
	percentage = 100.0 * earned / possible
	return ProficiencyState(earned=earned, possible=possible, percentage=percentage, level=classify(percentage))


def _load_record(db: Session, student_id: str, outcome_id: str) -> Optional[ProficiencyRecord]:
	stmt = (
		select(ProficiencyRecord)
		.where(ProficiencyRecord.student_id == student_id, ProficiencyRecord.outcome_id == outcome_id)
		.execution_options(populate_existing=True)
	)
	return db.execute(stmt).scalar_one_or_none()


def upsert_proficiency(
	db: Session,
	student_id: str,
	outcome_id: str,
	delta: OutcomeMarks,
	*,
	on_applied: Optional[Callable[[], None]] = None,
	max_retries: Optional[int] = None,
) -> Optional[ProficiencyRecord]:
	"""Apply ``delta`` to the (student, outcome) record in its own transaction.

	The write is guarded by the record's version column: a concurrent update
	raises ``StaleDataError`` and a concurrent first insert violates the unique
	key, and both cases are rolled back and retried from a fresh read.
	``on_applied`` runs inside the same transaction before commit.
	"""
	retries = settings.proficiency_max_retries if max_retries is None else max_retries
	last_error: Optional[Exception] = None
	for attempt in range(retries + 1):
		try:
			row = _load_record(db, student_id, outcome_id)
			state = merge_proficiency(ProficiencyState.from_record(row), delta)
			if state is not None and not delta.is_zero():
				if row is None:
					row = ProficiencyRecord(student_id=student_id, outcome_id=outcome_id)
					db.add(row)
				row.total_marks_earned = state.earned
				row.total_marks_attempted = state.possible
				row.proficiency_percentage = state.percentage
				row.level = state.level.value
				row.last_updated = utcnow()
			if on_applied is not None:
				on_applied()
			db.commit()
			return row
		except (StaleDataError, IntegrityError) as exc:
			db.rollback()
			last_error = exc
			logger.info(
				"Proficiency write conflict for student=%s outcome=%s (try %d/%d)",
				student_id, outcome_id, attempt + 1, retries + 1,
			)
		except Exception:
			db.rollback()
			raise
	raise ProficiencyConflictError(
		f"could not update proficiency for student={student_id} outcome={outcome_id}"
	) from last_error
