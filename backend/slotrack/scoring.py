from __future__ import annotations
import logging
from typing import Dict, List, Mapping, Optional, Sequence

from pydantic import BaseModel

from .allocation import OutcomeMarks, QuestionSpec, allocate_marks, is_correct
from .errors import AllocationError, IncompleteSubmission

logger = logging.getLogger(__name__)


class ScoredQuestion(BaseModel):
	question_id: str
	answered: bool
	correct: bool
	earned: float
	max_marks: float


class ScoreResult(BaseModel):
	raw_score: float
	total_possible: float
	questions: List[ScoredQuestion]
	outcome_deltas: Dict[str, OutcomeMarks]
	# Questions whose outcome split was malformed; counted in raw_score only
	skipped_questions: List[str] = []

	@property
	def percentage(self) -> float:
		if self.total_possible <= 0:
			return 0.0
		return round(self.raw_score / self.total_possible * 100, 2)

	def breakdown(self) -> Dict[str, Dict[str, float]]:
		return {oid: {"earned": d.earned, "possible": d.possible} for oid, d in self.outcome_deltas.items()}


def _answer_for(answers: Mapping[str, Optional[str]], question_id: str) -> Optional[str]:
	value = answers.get(question_id)
	if value is None or not str(value).strip():
		return None
	return str(value)


def find_missing_answers(questions: Sequence[QuestionSpec], answers: Mapping[str, Optional[str]]) -> List[str]:
	return [q.id for q in questions if _answer_for(answers, q.id) is None]


def score_attempt(
	questions: Sequence[QuestionSpec],
	answers: Mapping[str, Optional[str]],
	total_marks: float,
	*,
	auto_submit: bool = False,
) -> ScoreResult:
	"""Score a full submission and accumulate per-outcome mark deltas.

	Missing answers raise :class:`IncompleteSubmission` unless ``auto_submit`` is
	set (time expiry), in which case they score as incorrect. A question whose
	mappings are malformed still counts toward the raw score but contributes no
	outcome delta.
	"""
	missing = find_missing_answers(questions, answers)
	if missing and not auto_submit:
		raise IncompleteSubmission(missing)

	raw_score = 0.0
	scored: List[ScoredQuestion] = []
	deltas: Dict[str, OutcomeMarks] = {}
	skipped: List[str] = []

	for q in questions:
		submitted = _answer_for(answers, q.id)
		try:
			result = allocate_marks(q, submitted)
		except AllocationError as exc:
			logger.warning("Skipping outcome allocation: %s", exc)
			skipped.append(q.id)
			correct = is_correct(submitted, q.correct_answer)
			earned = float(q.max_marks) if correct and q.max_marks > 0 else 0.0
		else:
			correct = result.correct
			earned = result.earned_marks
			for alloc in result.allocations:
				acc = deltas.setdefault(alloc.outcome_id, OutcomeMarks())
				acc.earned += alloc.earned
				acc.possible += alloc.possible
		raw_score += earned
		scored.append(
			ScoredQuestion(
				question_id=q.id,
				answered=submitted is not None,
				correct=correct,
				earned=earned,
				max_marks=float(q.max_marks),
			)
		)

	return ScoreResult(
		raw_score=raw_score,
		total_possible=float(total_marks),
		questions=scored,
		outcome_deltas=deltas,
		skipped_questions=skipped,
	)
