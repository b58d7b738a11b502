from __future__ import annotations
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db import get_db
from ..models import Outcome, ProficiencyRecord
from ..proficiency import classify
from ..recommendations import PerformanceItem, level_stats, mastery_badges, recommend
from .auth import User, get_current_user, require_teacher

router = APIRouter(prefix="/performance", tags=["performance"])


def record_view(row: ProficiencyRecord) -> Dict[str, Any]:
	outcome = row.outcome
	return {
		"outcome_id": row.outcome_id,
		"outcome": outcome.description if outcome else None,
		"subject": outcome.subject.name if outcome and outcome.subject else None,
		"target_proficiency": outcome.target_proficiency if outcome else None,
		"total_marks_earned": row.total_marks_earned,
		"total_marks_attempted": row.total_marks_attempted,
		"proficiency_percentage": round(row.proficiency_percentage, 2),
		"level": row.level,
		"last_updated": row.last_updated,
	}


def student_records(db: Session, student_id: str) -> List[ProficiencyRecord]:
	stmt = (
		select(ProficiencyRecord)
		.where(ProficiencyRecord.student_id == student_id)
		.options(selectinload(ProficiencyRecord.outcome).selectinload(Outcome.subject))
		.order_by(ProficiencyRecord.outcome_id)
	)
	return list(db.execute(stmt).scalars())


def _items(rows: List[ProficiencyRecord]) -> List[PerformanceItem]:
	return [
		PerformanceItem(
			outcome_id=r.outcome_id,
			outcome_name=r.outcome.description if r.outcome else "Unknown SLO",
			subject_name=r.outcome.subject.name if r.outcome and r.outcome.subject else "Unknown Subject",
			percentage=r.proficiency_percentage,
			last_updated=r.last_updated.isoformat() if r.last_updated else None,
		)
		for r in rows
	]


@router.get("/me")
def my_performance(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	return [record_view(r) for r in student_records(db, user.username)]


@router.get("/me/recommendations")
def my_recommendations(user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	items = _items(student_records(db, user.username))
	return {
		"recommendations": [r.model_dump() for r in recommend(items)],
		"badges": [b.model_dump() for b in mastery_badges(items)],
		"stats": level_stats(items),
	}


@router.get("/outcomes/{outcome_id}")
def outcome_report(outcome_id: str, user: User = Depends(require_teacher), db: Session = Depends(get_db)):
	outcome = db.get(Outcome, outcome_id)
	if outcome is None:
		raise HTTPException(status_code=404, detail="Outcome not found")
	if outcome.subject.teacher_id != user.username:
		raise HTTPException(status_code=403, detail="Not your outcome")
	rows = db.execute(
		select(ProficiencyRecord)
		.where(ProficiencyRecord.outcome_id == outcome_id)
		.order_by(ProficiencyRecord.student_id)
	).scalars().all()
	counts = {"mastery": 0, "satisfactory": 0, "developmental": 0}
	for r in rows:
		counts[classify(r.proficiency_percentage).value] += 1
	average = sum(r.proficiency_percentage for r in rows) / len(rows) if rows else 0.0
	return {
		"outcome_id": outcome.id,
		"description": outcome.description,
		"target_proficiency": outcome.target_proficiency,
		"students": [
			{
				"student_id": r.student_id,
				"proficiency_percentage": round(r.proficiency_percentage, 2),
				"level": r.level,
				"meets_target": r.proficiency_percentage >= outcome.target_proficiency,
			}
			for r in rows
		],
		"level_counts": counts,
		"average_percentage": round(average, 2),
	}
