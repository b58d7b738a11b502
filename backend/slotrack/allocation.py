"""Proportional split of one question's marks across the outcomes it maps to."""
from __future__ import annotations
import math
from typing import List, Optional, Sequence

from pydantic import BaseModel, ConfigDict

from .errors import AllocationError


class MappingSpec(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	outcome_id: str
	mark_contribution: float


class QuestionSpec(BaseModel):
	model_config = ConfigDict(from_attributes=True)

	id: str
	max_marks: float
	correct_answer: str
	mappings: List[MappingSpec] = []


class OutcomeMarks(BaseModel):
	earned: float = 0.0
	possible: float = 0.0

	def is_zero(self) -> bool:
		return self.earned == 0 and self.possible == 0


class Allocation(BaseModel):
	outcome_id: str
	earned: float
	possible: float


class AllocationResult(BaseModel):
	correct: bool
	earned_marks: float
	allocations: List[Allocation]


def normalize_answer(value: Optional[str]) -> str:
	return (value or "").strip().lower()


def is_correct(submitted: Optional[str], correct_answer: str) -> bool:
	# Exact match after trim + casefold, for every question type; no partial credit
	if submitted is None:
		return False
	return normalize_answer(submitted) == normalize_answer(correct_answer)


def check_mappings(question_id: str, max_marks: float, mappings: Sequence[MappingSpec]) -> None:
	if max_marks <= 0:
		raise AllocationError(question_id, f"max marks must be positive, got {max_marks}")
	for m in mappings:
		if m.mark_contribution < 0:
			raise AllocationError(question_id, f"negative contribution {m.mark_contribution} for outcome {m.outcome_id}")
	if not mappings:
		return
	total = sum(m.mark_contribution for m in mappings)
	if not math.isclose(total, max_marks, rel_tol=1e-9, abs_tol=1e-9):
		raise AllocationError(question_id, f"contributions sum to {total}, expected {max_marks}")


def allocate_marks(question: QuestionSpec, submitted: Optional[str], mappings: Optional[Sequence[MappingSpec]] = None) -> AllocationResult:
	if mappings is None:
		mappings = question.mappings
	max_marks = float(question.max_marks)
	check_mappings(question.id, max_marks, mappings)
	correct = is_correct(submitted, question.correct_answer)
	earned = max_marks if correct else 0.0
	allocations = [
		Allocation(
			outcome_id=m.outcome_id,
			# multiply before dividing so a correct answer yields exactly c
			earned=earned * m.mark_contribution / max_marks,
			possible=float(m.mark_contribution),
		)
		for m in mappings
	]
	return AllocationResult(correct=correct, earned_marks=earned, allocations=allocations)
