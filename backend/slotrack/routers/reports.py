from __future__ import annotations
import logging
import time
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..db import get_db, utcnow
from ..models import Attempt, AuthUser, StudentReport, ROLE_TEACHER
from .attempts import attempt_view
from .auth import User, get_current_user
from .performance import record_view, student_records

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reports", tags=["reports"])


class ReportRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	student_id: str = Field(alias="studentId", min_length=1)


def build_statistics(attempts: List[Attempt], records: List[Dict[str, Any]]) -> Dict[str, Any]:
	total_earned = sum(float(a.raw_score) for a in attempts)
	total_possible = sum(float(a.total_possible) for a in attempts)
	average = round(total_earned / total_possible * 100, 1) if total_possible > 0 else 0.0
	counts: Dict[str, int] = {}
	for r in records:
		counts[r["level"]] = counts.get(r["level"], 0) + 1
	return {
		"totalAttempts": len(attempts),
		"totalMarksEarned": total_earned,
		"totalMarksPossible": total_possible,
		"averagePercentage": average,
		"proficiencyCounts": counts,
	}


@router.post("/generate")
def generate_report(req: ReportRequest, user: User = Depends(get_current_user), db: Session = Depends(get_db)):
	if user.role != ROLE_TEACHER and user.username != req.student_id:
		raise HTTPException(status_code=403, detail="Students can only generate their own report")
	student = db.get(AuthUser, req.student_id)
	if student is None:
		raise HTTPException(status_code=404, detail="Student not found")
	attempts = db.execute(
		select(Attempt)
		.where(Attempt.student_id == student.username)
		.options(selectinload(Attempt.assessment))
		.order_by(Attempt.submitted_at.asc())
	).scalars().all()
	records = [record_view(r) for r in student_records(db, student.username)]
	generated_at = utcnow()
	report = jsonable_encoder({
		"student": {
			"id": student.username,
			"full_name": student.full_name,
			"role": student.role,
			"created_at": student.created_at,
		},
		"attempts": [attempt_view(a) for a in attempts],
		"outcomePerformance": records,
		"statistics": build_statistics(list(attempts), records),
		"generatedAt": generated_at,
	})
	row = StudentReport(
		student_id=student.username,
		generated_by=user.username,
		report_path=f"{student.username}/report_{int(time.time() * 1000)}.json",
		report_data=report,
		created_at=generated_at,
	)
	db.add(row)
	db.commit()
	logger.info("Report %s generated for %s by %s", row.report_path, student.username, user.username)
	return {"success": True, "data": report}
