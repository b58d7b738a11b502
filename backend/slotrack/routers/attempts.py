from __future__ import annotations
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db import get_db
from ..errors import (
	AttemptPersistenceError,
	IncompleteSubmission,
	NotExpired,
	SessionNotFound,
	SubmissionClosed,
	SubmissionError,
)
from ..models import Assessment, Attempt, AttemptSession, Question, ROLE_TEACHER
from ..submission import SubmissionResult, save_answers, start_session, submit_session
from .assessments import assessment_view
from .auth import User, get_current_user

router = APIRouter(prefix="/attempts", tags=["attempts"])


class StartRequest(BaseModel):
	assessment_id: str


class AnswersRequest(BaseModel):
	answers: Dict[str, Optional[str]]


class SubmitRequest(BaseModel):
	answers: Optional[Dict[str, Optional[str]]] = None
	# Set by the client countdown when the live test expires
	auto_submit: bool = False


def _own_session(db: Session, session_id: str, user: User) -> AttemptSession:
	session = db.get(AttemptSession, session_id)
	if session is None or session.student_id != user.username:
		raise HTTPException(status_code=404, detail="Session not found")
	return session


@router.post("/start")
def start(req: StartRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	stmt = (
		select(Assessment)
		.where(Assessment.id == req.assessment_id)
		.options(selectinload(Assessment.questions).selectinload(Question.mappings))
	)
	assessment = db.execute(stmt).scalar_one_or_none()
	if assessment is None or not assessment.is_published:
		raise HTTPException(status_code=404, detail="Assessment not found")
	try:
		session = start_session(db, user.username, assessment)
	except SubmissionError as exc:
		raise HTTPException(status_code=403, detail=str(exc))
	return {
		"session_id": session.id,
		"status": session.status,
		"started_at": session.started_at,
		"deadline": session.deadline,
		"answers": session.answers or {},
		"assessment": assessment_view(assessment),
	}


@router.put("/{session_id}/answers")
def put_answers(session_id: str, req: AnswersRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	session = _own_session(db, session_id, user)
	try:
		save_answers(db, session, req.answers)
	except SubmissionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc))
	return {"session_id": session.id, "saved": len(session.answers or {})}


@router.post("/{session_id}/submit", response_model=SubmissionResult)
def submit(session_id: str, req: SubmitRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	try:
		return submit_session(db, session_id, student_id=user.username, answers=req.answers, auto_submit=req.auto_submit)
	except SessionNotFound:
		raise HTTPException(status_code=404, detail="Session not found")
	except IncompleteSubmission as exc:
		raise HTTPException(
			status_code=400,
			detail={"message": "Please answer all questions before submitting", "missing": exc.missing_question_ids},
		)
	except SubmissionClosed as exc:
		raise HTTPException(status_code=409, detail=str(exc))
	except NotExpired as exc:
		raise HTTPException(status_code=400, detail=str(exc))
	except AttemptPersistenceError:
		raise HTTPException(status_code=500, detail="Failed to submit test")


def attempt_view(a: Attempt) -> Dict[str, object]:
	return {
		"id": a.id,
		"student_id": a.student_id,
		"assessment_id": a.assessment_id,
		"assessment_title": a.assessment.title if a.assessment else None,
		"answers": a.answers,
		"raw_score": a.raw_score,
		"total_possible": a.total_possible,
		"percentage": round(a.raw_score / a.total_possible * 100, 2) if a.total_possible else 0.0,
		"outcome_breakdown": a.outcome_breakdown,
		"auto_submitted": a.auto_submitted,
		"submitted_at": a.submitted_at,
	}


@router.get("/history")
def history(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	stmt = (
		select(Attempt)
		.where(Attempt.student_id == user.username)
		.options(selectinload(Attempt.assessment))
		.order_by(Attempt.submitted_at.desc())
	)
	return [attempt_view(a) for a in db.execute(stmt).scalars()]


@router.get("/{attempt_id}")
def get_attempt(attempt_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	attempt = db.get(Attempt, attempt_id)
	if attempt is None:
		raise HTTPException(status_code=404, detail="Attempt not found")
	if attempt.student_id != user.username:
		if user.role != ROLE_TEACHER or attempt.assessment.teacher_id != user.username:
			raise HTTPException(status_code=404, detail="Attempt not found")
	return attempt_view(attempt)
