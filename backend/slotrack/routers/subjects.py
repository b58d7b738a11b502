from __future__ import annotations
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from ..db import get_db
from ..models import Outcome, Subject, ROLE_TEACHER
from .auth import User, get_current_user, require_teacher

router = APIRouter(prefix="/subjects", tags=["subjects"])


class SubjectCreate(BaseModel):
	name: str = Field(min_length=1, max_length=256)
	description: Optional[str] = None


class SubjectOut(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	teacher_id: str
	name: str
	description: Optional[str] = None


class OutcomeCreate(BaseModel):
	description: str = Field(min_length=1)
	target_proficiency: float = Field(default=70.0, ge=0, le=100)


class OutcomeOut(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	subject_id: str
	description: str
	target_proficiency: float


def _owned_subject(db: Session, subject_id: str, user: User) -> Subject:
	subject = db.get(Subject, subject_id)
	if subject is None:
		raise HTTPException(status_code=404, detail="Subject not found")
	if subject.teacher_id != user.username:
		raise HTTPException(status_code=403, detail="Not your subject")
	return subject


@router.post("", response_model=SubjectOut, status_code=201)
def create_subject(req: SubjectCreate, user: User = Depends(require_teacher), db: Session = Depends(get_db)):
	subject = Subject(teacher_id=user.username, name=req.name.strip(), description=req.description)
	db.add(subject)
	db.commit()
	db.refresh(subject)
	return subject


@router.get("", response_model=List[SubjectOut])
def list_subjects(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	stmt = select(Subject).order_by(Subject.created_at)
	if user.role == ROLE_TEACHER:
		stmt = stmt.where(Subject.teacher_id == user.username)
	return db.execute(stmt).scalars().all()


@router.post("/{subject_id}/outcomes", response_model=OutcomeOut, status_code=201)
def create_outcome(subject_id: str, req: OutcomeCreate, user: User = Depends(require_teacher), db: Session = Depends(get_db)):
	subject = _owned_subject(db, subject_id, user)
	outcome = Outcome(subject_id=subject.id, description=req.description.strip(), target_proficiency=req.target_proficiency)
	db.add(outcome)
	db.commit()
	db.refresh(outcome)
	return outcome


@router.get("/{subject_id}/outcomes", response_model=List[OutcomeOut])
def list_outcomes(subject_id: str, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if db.get(Subject, subject_id) is None:
		raise HTTPException(status_code=404, detail="Subject not found")
	stmt = select(Outcome).where(Outcome.subject_id == subject_id).order_by(Outcome.created_at)
	return db.execute(stmt).scalars().all()
