from __future__ import annotations
import logging
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..allocation import MappingSpec, check_mappings, normalize_answer
from ..db import as_naive_utc, get_db
from ..errors import AllocationError, AuthoringError
from ..models import Assessment, Outcome, OutcomeMapping, Question, Subject, ROLE_TEACHER
from .auth import User, get_current_user, require_teacher

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/assessments", tags=["assessments"])

TRUE_FALSE_OPTIONS = ["True", "False"]


class MappingIn(BaseModel):
	outcome_id: str
	marks: float = Field(ge=0)


class QuestionIn(BaseModel):
	question_text: str = Field(min_length=1)
	question_type: Literal["multiple_choice", "short_answer", "true_false"] = "multiple_choice"
	options: Optional[List[str]] = None
	correct_answer: str = Field(min_length=1)
	max_marks: float = Field(gt=0)
	mappings: List[MappingIn] = []


class AssessmentCreate(BaseModel):
	subject_id: str
	title: str = Field(min_length=1, max_length=256)
	questions: List[QuestionIn]
	is_published: bool = True
	start_time: Optional[datetime] = None
	end_time: Optional[datetime] = None
	duration_minutes: Optional[int] = Field(default=None, gt=0)


def _validate_question(index: int, q: QuestionIn, subject_outcomes: set) -> Optional[List[str]]:
	label = f"question {index + 1}"
	options = q.options
	if q.question_type == "multiple_choice":
		if not options or len(options) < 2:
			raise AuthoringError(f"{label}: multiple choice needs at least two options")
		if normalize_answer(q.correct_answer) not in {normalize_answer(o) for o in options}:
			raise AuthoringError(f"{label}: correct answer must be one of the options")
	elif q.question_type == "true_false":
		options = TRUE_FALSE_OPTIONS
		if normalize_answer(q.correct_answer) not in ("true", "false"):
			raise AuthoringError(f"{label}: correct answer must be True or False")
	else:
		options = None
	for m in q.mappings:
		if m.outcome_id not in subject_outcomes:
			raise AuthoringError(f"{label}: outcome {m.outcome_id} does not belong to this subject")
	try:
		check_mappings(label, q.max_marks, [MappingSpec(outcome_id=m.outcome_id, mark_contribution=m.marks) for m in q.mappings])
	except AllocationError as exc:
		raise AuthoringError(f"{label}: all marks must be mapped to outcomes ({exc.reason})") from exc
	return options


def _validate_window(req: AssessmentCreate) -> None:
	start = as_naive_utc(req.start_time)
	end = as_naive_utc(req.end_time)
	if start is not None and end is not None and end <= start:
		raise AuthoringError("end_time must be after start_time")


def _question_view(q: Question, include_key: bool) -> Dict[str, Any]:
	data: Dict[str, Any] = {
		"id": q.id,
		"question_text": q.question_text,
		"question_type": q.question_type,
		"options": q.options,
		"max_marks": q.max_marks,
		"order_number": q.order_number,
	}
	if include_key:
		data["correct_answer"] = q.correct_answer
		data["mappings"] = [{"outcome_id": m.outcome_id, "marks": m.mark_contribution} for m in q.mappings]
	return data


def assessment_view(a: Assessment, *, include_key: bool = False, include_questions: bool = True) -> Dict[str, Any]:
	data: Dict[str, Any] = {
		"id": a.id,
		"subject_id": a.subject_id,
		"teacher_id": a.teacher_id,
		"title": a.title,
		"total_marks": a.total_marks,
		"is_published": a.is_published,
		"start_time": a.start_time,
		"end_time": a.end_time,
		"duration_minutes": a.duration_minutes,
		"is_live": a.is_live,
	}
	if include_questions:
		data["questions"] = [_question_view(q, include_key) for q in a.questions]
	return data


@router.post("", status_code=201)
def create_assessment(req: AssessmentCreate, user: User = Depends(require_teacher), db: Session = Depends(get_db)):
	subject = db.get(Subject, req.subject_id)
	if subject is None:
		raise HTTPException(status_code=404, detail="Subject not found")
	if subject.teacher_id != user.username:
		raise HTTPException(status_code=403, detail="Not your subject")
	if not req.questions:
		raise HTTPException(status_code=400, detail="An assessment needs at least one question")
	subject_outcomes = set(db.execute(select(Outcome.id).where(Outcome.subject_id == subject.id)).scalars())
	try:
		_validate_window(req)
		options = [_validate_question(i, q, subject_outcomes) for i, q in enumerate(req.questions)]
	except AuthoringError as exc:
		raise HTTPException(status_code=400, detail=str(exc))

	assessment = Assessment(
		subject_id=subject.id,
		teacher_id=user.username,
		title=req.title.strip(),
		total_marks=sum(q.max_marks for q in req.questions),
		is_published=req.is_published,
		start_time=as_naive_utc(req.start_time),
		end_time=as_naive_utc(req.end_time),
		duration_minutes=req.duration_minutes,
	)
	db.add(assessment)
	db.flush()
	for i, (q, opts) in enumerate(zip(req.questions, options)):
		question = Question(
			assessment_id=assessment.id,
			question_text=q.question_text,
			question_type=q.question_type,
			options=opts,
			correct_answer=q.correct_answer.strip(),
			max_marks=q.max_marks,
			order_number=i + 1,
		)
		question.mappings = [OutcomeMapping(outcome_id=m.outcome_id, mark_contribution=m.marks) for m in q.mappings]
		db.add(question)
	db.commit()
	logger.info("Assessment %s created by %s with %d questions", assessment.id, user.username, len(req.questions))
	db.refresh(assessment)
	return assessment_view(assessment, include_key=True)


@router.get("")
def list_assessments(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	stmt = select(Assessment).order_by(Assessment.created_at.desc())
	if user.role == ROLE_TEACHER:
		stmt = stmt.where(Assessment.teacher_id == user.username)
	else:
		stmt = stmt.where(Assessment.is_published.is_(True))
	return [assessment_view(a, include_questions=False) for a in db.execute(stmt).scalars()]


def _load(db: Session, assessment_id: str) -> Assessment:
	stmt = (
		select(Assessment)
		.where(Assessment.id == assessment_id)
		.options(selectinload(Assessment.questions).selectinload(Question.mappings))
	)
	assessment = db.execute(stmt).scalar_one_or_none()
	if assessment is None:
		raise HTTPException(status_code=404, detail="Assessment not found")
	return assessment


@router.get("/{assessment_id}")
def get_assessment(assessment_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	assessment = _load(db, assessment_id)
	owner = assessment.teacher_id == user.username
	if not owner and not assessment.is_published:
		raise HTTPException(status_code=404, detail="Assessment not found")
	return assessment_view(assessment, include_key=owner)


class PublishRequest(BaseModel):
	is_published: bool = True


@router.post("/{assessment_id}/publish")
def publish_assessment(assessment_id: str, req: PublishRequest, user: User = Depends(require_teacher), db: Session = Depends(get_db)):
	assessment = _load(db, assessment_id)
	if assessment.teacher_id != user.username:
		raise HTTPException(status_code=403, detail="Not your assessment")
	assessment.is_published = req.is_published
	db.commit()
	return {"id": assessment.id, "is_published": assessment.is_published}
