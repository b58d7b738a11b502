from datetime import timedelta

import pytest
from sqlalchemy.exc import SQLAlchemyError

from slotrack import submission
from slotrack.db import utcnow
from slotrack.errors import AttemptPersistenceError, IncompleteSubmission, NotExpired, SessionNotFound, SubmissionClosed
from slotrack.models import Attempt, AttemptSession, PendingAggregation, ProficiencyRecord
from slotrack.submission import (
	_acquire_latch,
	auto_submit_expired_sessions,
	reconcile_pending_aggregations,
	save_answers,
	start_session,
	submit_session,
)

QUIZ = [
	{"max_marks": 4, "answer": "paris", "map": {"A": 3, "B": 1}},
	{"max_marks": 2, "answer": "berlin", "map": {"A": 2}},
]


def _records(db, student="ann"):
	db.expire_all()
	rows = db.query(ProficiencyRecord).filter_by(student_id=student).all()
	return {r.outcome_id: r for r in rows}


def test_submit_scores_and_aggregates(db, make_assessment):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)
	save_answers(db, session, {q1: "Paris"})

	result = submit_session(db, session.id, student_id="ann", answers={q2: "Bonn"})

	assert result.status == "aggregated"
	assert (result.raw_score, result.total_possible, result.percentage) == (4, 6, 66.67)
	assert sorted(result.applied_outcomes) == sorted(quiz.outcomes.values())
	assert result.failed_outcomes == []
	records = _records(db)
	a, b = records[quiz.outcomes["A"]], records[quiz.outcomes["B"]]
	assert (a.total_marks_earned, a.total_marks_attempted, a.level) == (3, 5, "satisfactory")
	assert (b.total_marks_earned, b.total_marks_attempted, b.level) == (1, 1, "mastery")


def test_incomplete_submit_keeps_session_open(db, make_assessment):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)

	with pytest.raises(IncompleteSubmission) as exc:
		submit_session(db, session.id, student_id="ann", answers={q1: "paris"})
	assert exc.value.missing_question_ids == [q2]

	db.expire_all()
	stored = db.get(AttemptSession, session.id)
	assert stored.status == "draft"
	assert stored.answers == {q1: "paris"}
	assert db.query(Attempt).count() == 0

	result = submit_session(db, session.id, student_id="ann", answers={q2: "berlin"})
	assert result.raw_score == 6


def test_second_submit_is_rejected(db, make_assessment):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)
	submit_session(db, session.id, answers={q1: "paris", q2: "berlin"})

	with pytest.raises(SubmissionClosed):
		submit_session(db, session.id, answers={q1: "paris", q2: "berlin"})
	assert db.query(Attempt).count() == 1
	assert _records(db)[quiz.outcomes["A"]].total_marks_attempted == 5


def test_latch_is_single_use(db, make_assessment):
	quiz = make_assessment(QUIZ)
	session = start_session(db, "ann", quiz.assessment)
	assert _acquire_latch(db, session.id) is True
	assert _acquire_latch(db, session.id) is False


def test_other_students_session_is_not_found(db, make_assessment):
	quiz = make_assessment(QUIZ)
	session = start_session(db, "ann", quiz.assessment)
	with pytest.raises(SessionNotFound):
		submit_session(db, session.id, student_id="bob", answers={})


def test_unknown_answer_keys_are_dropped(db, make_assessment):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)
	result = submit_session(db, session.id, answers={q1: "paris", q2: "berlin", "bogus": "x"})
	attempt = db.get(Attempt, result.attempt_id)
	assert set(attempt.answers) == {q1, q2}


def test_auto_submit_before_deadline_refused(db, make_assessment):
	quiz = make_assessment(QUIZ, duration_minutes=30)
	t0 = utcnow()
	session = start_session(db, "ann", quiz.assessment, now=t0)
	with pytest.raises(NotExpired):
		submit_session(db, session.id, auto_submit=True, now=t0 + timedelta(minutes=1))


def test_expired_session_is_auto_submitted_once(db, make_assessment):
	quiz = make_assessment(QUIZ, duration_minutes=30)
	q1, q2 = quiz.question_ids
	t0 = utcnow()
	session = start_session(db, "ann", quiz.assessment, now=t0)
	save_answers(db, session, {q1: "paris"}, now=t0 + timedelta(minutes=5))

	later = t0 + timedelta(minutes=31)
	assert auto_submit_expired_sessions(db, now=later) == 1
	assert auto_submit_expired_sessions(db, now=later) == 0

	attempt = db.query(Attempt).one()
	assert attempt.auto_submitted is True
	assert attempt.raw_score == 4
	# Unanswered question counts as attempted
	assert _records(db)[quiz.outcomes["A"]].total_marks_attempted == 5

	with pytest.raises(SubmissionClosed):
		submit_session(db, session.id, student_id="ann", answers={q2: "berlin"}, now=later)


def test_save_after_deadline_refused(db, make_assessment):
	quiz = make_assessment(QUIZ, duration_minutes=10)
	q1, _ = quiz.question_ids
	t0 = utcnow()
	session = start_session(db, "ann", quiz.assessment, now=t0)
	with pytest.raises(SubmissionClosed):
		save_answers(db, session, {q1: "paris"}, now=t0 + timedelta(minutes=11))


def test_persistence_failure_releases_latch(db, make_assessment, monkeypatch):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)

	def broken(*args, **kwargs):
		raise SQLAlchemyError("disk full")

	monkeypatch.setattr(submission, "_persist_attempt", broken)
	with pytest.raises(AttemptPersistenceError):
		submit_session(db, session.id, answers={q1: "paris", q2: "berlin"})

	db.expire_all()
	assert db.get(AttemptSession, session.id).status == "draft"
	assert db.query(Attempt).count() == 0
	assert _records(db) == {}


def test_failed_aggregation_is_reconciled_later(db, make_assessment, monkeypatch):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)

	def down(*args, **kwargs):
		raise RuntimeError("proficiency store unavailable")

	monkeypatch.setattr(submission, "upsert_proficiency", down)
	result = submit_session(db, session.id, answers={q1: "paris", q2: "berlin"})

	assert result.status == "submitted"
	assert result.applied_outcomes == []
	assert len(result.failed_outcomes) == 2
	assert db.query(Attempt).count() == 1
	pending = db.query(PendingAggregation).all()
	assert {p.tries for p in pending} == {1}
	assert all("unavailable" in p.last_error for p in pending)
	assert _records(db) == {}

	monkeypatch.undo()
	assert reconcile_pending_aggregations(db) == 2
	assert reconcile_pending_aggregations(db) == 0

	db.expire_all()
	assert db.get(AttemptSession, session.id).status == "aggregated"
	records = _records(db)
	assert records[quiz.outcomes["A"]].total_marks_earned == 5
	assert records[quiz.outcomes["A"]].version == 1


def test_retake_accumulates(db, make_assessment):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	first = start_session(db, "ann", quiz.assessment)
	submit_session(db, first.id, answers={q1: "paris", q2: "berlin"})
	second = start_session(db, "ann", quiz.assessment)
	assert second.id != first.id
	submit_session(db, second.id, answers={q1: "rome", q2: "berlin"})

	a = _records(db)[quiz.outcomes["A"]]
	assert (a.total_marks_earned, a.total_marks_attempted) == (7, 10)
	assert a.proficiency_percentage == pytest.approx(70.0)
	assert a.version == 2


def test_start_reuses_open_draft(db, make_assessment):
	quiz = make_assessment(QUIZ)
	first = start_session(db, "ann", quiz.assessment)
	again = start_session(db, "ann", quiz.assessment)
	assert again.id == first.id


def test_restart_after_expiry_submits_old_draft_once(db, make_assessment):
	quiz = make_assessment([{"max_marks": 2, "answer": "x", "map": {"A": 2}}], duration_minutes=10)
	q1 = quiz.question_ids[0]
	t0 = utcnow()
	first = start_session(db, "ann", quiz.assessment, now=t0)

	later = t0 + timedelta(minutes=11)
	second = start_session(db, "ann", quiz.assessment, now=later)
	third = start_session(db, "ann", quiz.assessment, now=later)
	assert second.id != first.id
	assert third.id == second.id

	db.expire_all()
	assert db.get(AttemptSession, first.id).status == "aggregated"
	assert db.query(AttemptSession).filter_by(status="draft").count() == 1
	assert db.query(Attempt).count() == 1

	submit_session(db, second.id, answers={q1: "x"}, now=later + timedelta(minutes=1))
	assert auto_submit_expired_sessions(db, now=later + timedelta(hours=1)) == 0
	a = _records(db)[quiz.outcomes["A"]]
	assert (a.total_marks_earned, a.total_marks_attempted) == (2, 4)
	assert db.query(Attempt).count() == 2


def test_start_resumes_newest_open_draft(db, make_assessment):
	quiz = make_assessment(QUIZ)
	t0 = utcnow()
	older = AttemptSession(student_id="ann", assessment_id=quiz.assessment_id, answers={}, started_at=t0 - timedelta(minutes=5))
	newer = AttemptSession(student_id="ann", assessment_id=quiz.assessment_id, answers={}, started_at=t0 - timedelta(minutes=1))
	db.add_all([older, newer])
	db.commit()
	assert start_session(db, "ann", quiz.assessment, now=t0).id == newer.id


def test_question_specs_load_with_mappings(db, make_assessment):
	quiz = make_assessment(QUIZ)
	specs = submission.load_question_specs(db, quiz.assessment_id)
	assert [s.id for s in specs] == quiz.question_ids
	assert {m.outcome_id: m.mark_contribution for m in specs[0].mappings} == {
		quiz.outcomes["A"]: 3,
		quiz.outcomes["B"]: 1,
	}
	assert specs[1].correct_answer == "berlin"


def test_reconcile_survives_status_update_failure(db, make_assessment, monkeypatch):
	quiz = make_assessment(QUIZ)
	q1, q2 = quiz.question_ids
	session = start_session(db, "ann", quiz.assessment)

	def down(*args, **kwargs):
		raise RuntimeError("proficiency store unavailable")

	monkeypatch.setattr(submission, "upsert_proficiency", down)
	submit_session(db, session.id, answers={q1: "paris", q2: "berlin"})
	monkeypatch.undo()

	def broken_finish(*args, **kwargs):
		raise SQLAlchemyError("status update failed")

	monkeypatch.setattr(submission, "_finish_if_complete", broken_finish)
	assert reconcile_pending_aggregations(db) == 2
	monkeypatch.undo()

	db.expire_all()
	assert db.get(AttemptSession, session.id).status == "submitted"
	assert _records(db)[quiz.outcomes["A"]].total_marks_earned == 5

	# The next pass finishes the session without reapplying anything
	assert reconcile_pending_aggregations(db) == 0
	db.expire_all()
	assert db.get(AttemptSession, session.id).status == "aggregated"
	assert _records(db)[quiz.outcomes["A"]].version == 1


def test_unpublished_assessment_cannot_start(db, make_assessment):
	quiz = make_assessment(QUIZ, published=False)
	with pytest.raises(submission.SubmissionError):
		start_session(db, "ann", quiz.assessment)
