"""Submission flow: latch the draft session, score, persist the attempt, then aggregate.

The attempt and its per-outcome pending aggregations are written in one
transaction. Each aggregation is then applied in its own transaction together
with marking its pending row, so a failure leaves the attempt durable and the
remaining rows are picked up by :func:`reconcile_pending_aggregations`.
"""
from __future__ import annotations
import logging
from datetime import datetime, timedelta
from typing import Dict, List, Mapping, Optional, Tuple

from pydantic import BaseModel
from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from .allocation import OutcomeMarks, QuestionSpec
from .db import utcnow
from .errors import (
	AttemptPersistenceError,
	IncompleteSubmission,
	NotExpired,
	SessionNotFound,
	SubmissionClosed,
	SubmissionError,
)
from .models import (
	Assessment,
	Attempt,
	AttemptSession,
	PendingAggregation,
	Question,
	SESSION_AGGREGATED,
	SESSION_DRAFT,
	SESSION_SUBMITTED,
	SESSION_SUBMITTING,
)
from .proficiency import upsert_proficiency
from .scoring import ScoreResult, score_attempt
from .settings import settings

logger = logging.getLogger(__name__)


class SubmissionResult(BaseModel):
	attempt_id: str
	session_id: str
	status: str
	raw_score: float
	total_possible: float
	percentage: float
	auto_submitted: bool
	outcome_breakdown: Dict[str, Dict[str, float]]
	applied_outcomes: List[str]
	failed_outcomes: List[str]
	skipped_questions: List[str]


class _AlreadyApplied(Exception):
	pass


def load_question_specs(db: Session, assessment_id: str) -> List[QuestionSpec]:
	stmt = (
		select(Question)
		.where(Question.assessment_id == assessment_id)
		.options(selectinload(Question.mappings))
		.order_by(Question.order_number)
	)
	return [QuestionSpec.model_validate(q) for q in db.execute(stmt).scalars()]


def compute_deadline(assessment: Assessment, started_at: datetime) -> Optional[datetime]:
	candidates = []
	if assessment.duration_minutes:
		candidates.append(started_at + timedelta(minutes=assessment.duration_minutes))
	if assessment.end_time is not None:
		candidates.append(assessment.end_time)
	return min(candidates) if candidates else None


def is_expired(session: AttemptSession, now: datetime, *, grace_seconds: int = 0) -> bool:
	if session.deadline is None:
		return False
	return now >= session.deadline - timedelta(seconds=grace_seconds)


def start_session(db: Session, student_id: str, assessment: Assessment, now: Optional[datetime] = None) -> AttemptSession:
	now = now or utcnow()
	if not assessment.is_published:
		raise SubmissionError("assessment is not published")
	if assessment.start_time is not None and now < assessment.start_time:
		raise SubmissionError("assessment has not opened yet")
	if assessment.end_time is not None and now >= assessment.end_time:
		raise SubmissionError("assessment has closed")
	drafts = db.execute(
		select(AttemptSession)
		.where(
			AttemptSession.student_id == student_id,
			AttemptSession.assessment_id == assessment.id,
			AttemptSession.status == SESSION_DRAFT,
		)
		.order_by(AttemptSession.started_at.desc())
	).scalars().all()
	resumable = None
	for draft in drafts:
		if not is_expired(draft, now):
			if resumable is None:
				resumable = draft
			continue
		# Close out expired drafts here so they are submitted once, through the latch
		draft_id = draft.id
		try:
			submit_session(db, draft_id, auto_submit=True, now=now)
		except SubmissionClosed:
			continue
		except AttemptPersistenceError:
			logger.error("Auto-submit of expired session %s failed on restart", draft_id)
	# Resume the newest open draft (e.g. after a page reload)
	if resumable is not None:
		return resumable
	session = AttemptSession(
		student_id=student_id,
		assessment_id=assessment.id,
		answers={},
		started_at=now,
		deadline=compute_deadline(assessment, now),
	)
	db.add(session)
	db.commit()
	db.refresh(session)
	return session


def save_answers(db: Session, session: AttemptSession, answers: Mapping[str, Optional[str]], now: Optional[datetime] = None) -> AttemptSession:
	now = now or utcnow()
	if session.status != SESSION_DRAFT:
		raise SubmissionClosed(f"session is {session.status}")
	if is_expired(session, now):
		raise SubmissionClosed("time is up for this session")
	merged = dict(session.answers or {})
	merged.update(answers)
	# Reassign so the JSON column is flagged dirty
	session.answers = merged
	db.commit()
	return session


def _acquire_latch(db: Session, session_id: str, now: Optional[datetime] = None) -> bool:
	res = db.execute(
		update(AttemptSession)
		.where(AttemptSession.id == session_id, AttemptSession.status == SESSION_DRAFT)
		.values(status=SESSION_SUBMITTING, latched_at=now or utcnow())
	)
	db.commit()
	return res.rowcount == 1


def _release_latch(db: Session, session_id: str, answers: Optional[Dict[str, Optional[str]]] = None) -> None:
	values: Dict[str, object] = {"status": SESSION_DRAFT, "latched_at": None}
	if answers is not None:
		values["answers"] = answers
	db.execute(
		update(AttemptSession)
		.where(AttemptSession.id == session_id, AttemptSession.status == SESSION_SUBMITTING)
		.values(**values)
	)
	db.commit()


def _persist_attempt(db: Session, session: AttemptSession, score: ScoreResult, answers: Dict[str, Optional[str]], auto_submitted: bool, now: datetime) -> Attempt:
	attempt = Attempt(
		student_id=session.student_id,
		assessment_id=session.assessment_id,
		session_id=session.id,
		answers=answers,
		raw_score=score.raw_score,
		total_possible=score.total_possible,
		outcome_breakdown=score.breakdown(),
		auto_submitted=auto_submitted,
		submitted_at=now,
	)
	db.add(attempt)
	db.flush()
	for outcome_id, delta in score.outcome_deltas.items():
		db.add(
			PendingAggregation(
				attempt_id=attempt.id,
				student_id=session.student_id,
				outcome_id=outcome_id,
				marks_earned=delta.earned,
				marks_possible=delta.possible,
			)
		)
	session.status = SESSION_SUBMITTED
	session.submitted_at = now
	session.attempt_id = attempt.id
	session.answers = answers
	db.commit()
	return attempt


def _record_failure(db: Session, pending_id: str, exc: Exception) -> None:
	try:
		db.execute(
			update(PendingAggregation)
			.where(PendingAggregation.id == pending_id)
			.values(tries=PendingAggregation.tries + 1, last_error=str(exc)[:1000])
		)
		db.commit()
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Could not record aggregation failure for pending=%s", pending_id)


def apply_pending(db: Session, pending: PendingAggregation) -> bool:
	"""Apply one outbox row; returns False (after logging) if it failed."""
	pending_id = pending.id
	attempt_id = pending.attempt_id
	student_id = pending.student_id
	outcome_id = pending.outcome_id
	delta = OutcomeMarks(earned=pending.marks_earned, possible=pending.marks_possible)

	def _mark_applied() -> None:
		res = db.execute(
			update(PendingAggregation)
			.where(PendingAggregation.id == pending_id, PendingAggregation.applied_at.is_(None))
			.values(applied_at=utcnow())
		)
		if res.rowcount != 1:
			raise _AlreadyApplied(pending_id)

	try:
		upsert_proficiency(db, student_id, outcome_id, delta, on_applied=_mark_applied)
		return True
	except _AlreadyApplied:
		logger.info("Pending aggregation %s was applied concurrently", pending_id)
		return True
	except Exception as exc:
		logger.exception("Aggregation failed for attempt=%s outcome=%s", attempt_id, outcome_id)
		_record_failure(db, pending_id, exc)
		return False


def _finish_if_complete(db: Session, attempt_id: str) -> bool:
	remaining = db.execute(
		select(func.count())
		.select_from(PendingAggregation)
		.where(PendingAggregation.attempt_id == attempt_id, PendingAggregation.applied_at.is_(None))
	).scalar_one()
	if remaining:
		return False
	db.execute(
		update(AttemptSession)
		.where(AttemptSession.attempt_id == attempt_id, AttemptSession.status == SESSION_SUBMITTED)
		.values(status=SESSION_AGGREGATED)
	)
	db.commit()
	return True


def apply_attempt_aggregations(db: Session, attempt_id: str) -> Tuple[List[str], List[str]]:
	pending = db.execute(
		select(PendingAggregation)
		.where(PendingAggregation.attempt_id == attempt_id, PendingAggregation.applied_at.is_(None))
		.order_by(PendingAggregation.outcome_id)
	).scalars().all()
	applied: List[str] = []
	failed: List[str] = []
	for row in pending:
		outcome_id = row.outcome_id
		if apply_pending(db, row):
			applied.append(outcome_id)
		else:
			failed.append(outcome_id)
	try:
		_finish_if_complete(db, attempt_id)
	except SQLAlchemyError:
		db.rollback()
		logger.exception("Could not mark attempt %s aggregated", attempt_id)
	return applied, failed


def submit_session(
	db: Session,
	session_id: str,
	*,
	student_id: Optional[str] = None,
	answers: Optional[Mapping[str, Optional[str]]] = None,
	auto_submit: bool = False,
	now: Optional[datetime] = None,
) -> SubmissionResult:
	now = now or utcnow()
	session = db.get(AttemptSession, session_id)
	if session is None or (student_id is not None and session.student_id != student_id):
		raise SessionNotFound(session_id)
	if session.status != SESSION_DRAFT:
		raise SubmissionClosed(f"session is already {session.status}")
	expired = is_expired(session, now, grace_seconds=settings.auto_submit_grace_seconds)
	if auto_submit and not expired:
		raise NotExpired("auto-submit requested before the deadline")

	if not _acquire_latch(db, session_id, now):
		raise SubmissionClosed("session is already being submitted")

	merged: Dict[str, Optional[str]] = {}
	try:
		session = db.get(AttemptSession, session_id)
		merged = dict(session.answers or {})
		if answers:
			merged.update(answers)
		assessment = db.get(Assessment, session.assessment_id)
		questions = load_question_specs(db, assessment.id)
		known = {q.id for q in questions}
		merged = {qid: value for qid, value in merged.items() if qid in known}
		score = score_attempt(questions, merged, assessment.total_marks, auto_submit=expired)
	except IncompleteSubmission:
		_release_latch(db, session_id, merged)
		raise
	except Exception:
		db.rollback()
		_release_latch(db, session_id)
		raise

	try:
		attempt = _persist_attempt(db, session, score, merged, expired, now)
	except SQLAlchemyError as exc:
		db.rollback()
		logger.exception("Failed to persist attempt for session %s", session_id)
		_release_latch(db, session_id)
		raise AttemptPersistenceError("submission failed") from exc

	attempt_id = attempt.id
	logger.info(
		"Attempt %s persisted: student=%s score=%s/%s outcomes=%d auto=%s",
		attempt_id, session.student_id, score.raw_score, score.total_possible, len(score.outcome_deltas), expired,
	)
	applied, failed = apply_attempt_aggregations(db, attempt_id)
	if failed:
		logger.warning("Attempt %s submitted with %d unapplied aggregation(s)", attempt_id, len(failed))
	status = db.execute(select(AttemptSession.status).where(AttemptSession.id == session_id)).scalar_one()
	return SubmissionResult(
		attempt_id=attempt_id,
		session_id=session_id,
		status=status,
		raw_score=score.raw_score,
		total_possible=score.total_possible,
		percentage=score.percentage,
		auto_submitted=expired,
		outcome_breakdown=score.breakdown(),
		applied_outcomes=applied,
		failed_outcomes=failed,
		skipped_questions=score.skipped_questions,
	)


def reconcile_pending_aggregations(db: Session, limit: int = 200) -> int:
	rows = db.execute(
		select(PendingAggregation)
		.where(PendingAggregation.applied_at.is_(None))
		.order_by(PendingAggregation.created_at)
		.limit(limit)
	).scalars().all()
	applied = 0
	# Sessions whose rows were all applied but whose status update was lost
	attempt_ids = set(
		db.execute(
			select(AttemptSession.attempt_id)
			.where(AttemptSession.status == SESSION_SUBMITTED, AttemptSession.attempt_id.is_not(None))
			.limit(limit)
		).scalars()
	)
	for row in rows:
		attempt_ids.add(row.attempt_id)
		if apply_pending(db, row):
			applied += 1
	for attempt_id in attempt_ids:
		try:
			_finish_if_complete(db, attempt_id)
		except SQLAlchemyError:
			db.rollback()
			logger.exception("Could not mark attempt %s aggregated", attempt_id)
	if applied:
		logger.info("Reconciled %d pending aggregation(s)", applied)
	return applied


def auto_submit_expired_sessions(db: Session, now: Optional[datetime] = None) -> int:
	now = now or utcnow()
	session_ids = db.execute(
		select(AttemptSession.id).where(
			AttemptSession.status == SESSION_DRAFT,
			AttemptSession.deadline.is_not(None),
			AttemptSession.deadline <= now,
		)
	).scalars().all()
	submitted = 0
	for session_id in session_ids:
		try:
			submit_session(db, session_id, auto_submit=True, now=now)
			submitted += 1
		except SubmissionClosed:
			# The student's own submit won the latch
			continue
		except AttemptPersistenceError:
			logger.error("Auto-submit failed for session %s; will retry", session_id)
	return submitted


def reclaim_stale_latches(db: Session, now: Optional[datetime] = None, timeout_seconds: Optional[int] = None) -> int:
	"""Return sessions stuck in ``submitting`` with no attempt to ``draft``.

	A submitter that died between taking the latch and persisting the attempt
	leaves the session latched forever; once the latch is older than the timeout
	it is released with the same compare-and-set the submit path uses.
	"""
	now = now or utcnow()
	timeout = settings.submit_latch_timeout_seconds if timeout_seconds is None else timeout_seconds
	res = db.execute(
		update(AttemptSession)
		.where(
			AttemptSession.status == SESSION_SUBMITTING,
			AttemptSession.attempt_id.is_(None),
			AttemptSession.latched_at.is_not(None),
			AttemptSession.latched_at <= now - timedelta(seconds=timeout),
		)
		.values(status=SESSION_DRAFT, latched_at=None)
		.execution_options(synchronize_session=False)
	)
	db.commit()
	if res.rowcount:
		logger.warning("Released %d stale submission latch(es)", res.rowcount)
	return res.rowcount
