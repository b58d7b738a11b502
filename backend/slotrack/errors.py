from __future__ import annotations
from typing import List, Optional


class AllocationError(ValueError):
	"""A question's marks cannot be split across its outcome mappings."""

	def __init__(self, question_id: str, reason: str) -> None:
		super().__init__(f"question {question_id}: {reason}")
		self.question_id = question_id
		self.reason = reason


class IncompleteSubmission(ValueError):
	def __init__(self, missing_question_ids: List[str]) -> None:
		super().__init__(f"{len(missing_question_ids)} question(s) unanswered")
		self.missing_question_ids = list(missing_question_ids)


class AggregationError(ValueError):
	pass


class ProficiencyConflictError(RuntimeError):
	"""Optimistic-lock retries for a (student, outcome) row were exhausted."""


class SubmissionError(Exception):
	pass


class SessionNotFound(SubmissionError):
	pass


class SubmissionClosed(SubmissionError):
	"""The session's submission latch was already taken."""


class NotExpired(SubmissionError):
	pass


class AttemptPersistenceError(SubmissionError):
	pass


class AuthoringError(ValueError):
	pass


class UpstreamServiceError(RuntimeError):
	status_code = 500
	user_message = "Content generation failed. Please try again."

	def __init__(self, message: Optional[str] = None) -> None:
		super().__init__(message or self.user_message)


class RateLimitExceeded(UpstreamServiceError):
	status_code = 429
	user_message = "Rate limit exceeded. Please try again in a moment."


class CreditsExhausted(UpstreamServiceError):
	status_code = 402
	user_message = "AI credits exhausted. Please add credits to continue."


class MalformedModelOutput(UpstreamServiceError):
	status_code = 502
	user_message = "The model returned an unreadable response. Please try again."
