from __future__ import annotations
import json
import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import MalformedModelOutput, UpstreamServiceError
from ..gemini_client import GeminiClient
from ..proficiency import MasteryLevel, classify
from ..settings import settings
from .auth import User, get_current_user

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/practice", tags=["practice"])

ANSWER_LETTERS = ("A", "B", "C", "D")

SYSTEM_PROMPT = (
	"You are an educational AI tutor specializing in creating personalized practice materials.\n"
	"Your responses must be in valid JSON format only, with no additional text.\n"
	"Create questions that are age-appropriate for school students and aligned with learning outcomes."
)


class PracticeRequest(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	outcome_name: str = Field(alias="outcomeName", min_length=1, max_length=1000)
	mastery_percentage: float = Field(alias="masteryPercentage", ge=0, le=100)
	question_count: int = Field(default=5, alias="questionCount", ge=1, le=20)


class PracticeQuestion(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	id: Union[int, str]
	question: str = Field(min_length=1)
	options: List[str] = Field(min_length=4, max_length=4)
	correct_answer: str = Field(alias="correctAnswer")
	explanation: str
	wrong_answer_feedback: Dict[str, str] = Field(default_factory=dict, alias="wrongAnswerFeedback")
	difficulty: str
	estimated_time: str = Field(default="2 min", alias="estimatedTime")

	@field_validator("correct_answer")
	@classmethod
	def _letter(cls, value: str) -> str:
		letter = value.strip().upper()[:1]
		if letter not in ANSWER_LETTERS:
			raise ValueError(f"correctAnswer must be one of {ANSWER_LETTERS}")
		return letter


class PracticeSet(BaseModel):
	model_config = ConfigDict(populate_by_name=True)

	questions: List[PracticeQuestion] = Field(min_length=1)
	content_type: Optional[str] = Field(default=None, alias="contentType")
	total_estimated_time: Optional[str] = Field(default=None, alias="totalEstimatedTime")


def practice_tier(mastery_percentage: float) -> Tuple[str, str]:
	level = classify(mastery_percentage)
	if level is MasteryLevel.mastery:
		return "advanced", "Challenge Mode - critical thinking and application questions"
	if level is MasteryLevel.satisfactory:
		return "intermediate", "Reinforcement - standard practice questions"
	return "beginner", "Foundational - step-by-step guided questions with detailed explanations"


def _build_practice_prompt(req: PracticeRequest, difficulty: str, content_type: str) -> str:
	return (
		f"The student has a {req.mastery_percentage:g}% mastery in \"{req.outcome_name}\".\n"
		f"Generate {req.question_count} {difficulty}-level multiple-choice questions with immediate explanatory feedback for wrong answers.\n\n"
		"Return ONLY a valid JSON object in this exact format:\n"
		"{\n"
		"  \"questions\": [\n"
		"    {\n"
		"      \"id\": 1,\n"
		"      \"question\": \"Question text here\",\n"
		"      \"options\": [\"A) Option 1\", \"B) Option 2\", \"C) Option 3\", \"D) Option 4\"],\n"
		"      \"correctAnswer\": \"A\",\n"
		"      \"explanation\": \"Explanation for the correct answer\",\n"
		"      \"wrongAnswerFeedback\": {\"B\": \"Why B is wrong\", \"C\": \"Why C is wrong\", \"D\": \"Why D is wrong\"},\n"
		f"      \"difficulty\": \"{difficulty}\",\n"
		"      \"estimatedTime\": \"2 min\"\n"
		"    }\n"
		"  ],\n"
		f"  \"contentType\": \"{content_type}\",\n"
		f"  \"totalEstimatedTime\": \"{req.question_count * 2} min\"\n"
		"}"
	)


def _extract_json_object(text: str) -> Dict[str, Any]:
	try:
		return json.loads(text)
	except Exception:
		pass
	code_block = re.search(r"```(?:json)?\s*([\s\S]*?)\s*```", text)
	if code_block:
		try:
			return json.loads(code_block.group(1))
		except Exception:
			pass
	first = text.find("{")
	last = text.rfind("}")
	if first != -1 and last > first:
		try:
			return json.loads(text[first : last + 1])
		except Exception:
			pass
	raise MalformedModelOutput("model output is not JSON")


def parse_practice(text: str, *, content_type: str, question_count: int) -> PracticeSet:
	data = _extract_json_object(text)
	if not isinstance(data, dict):
		raise MalformedModelOutput("model output is not a JSON object")
	try:
		practice = PracticeSet.model_validate(data)
	except ValidationError as exc:
		raise MalformedModelOutput(f"model output failed validation: {exc.error_count()} error(s)") from exc
	if not practice.content_type:
		practice.content_type = content_type
	if not practice.total_estimated_time:
		practice.total_estimated_time = f"{question_count * 2} min"
	return practice


async def get_gemini_client():
	try:
		client = GeminiClient()
	except ValueError as exc:
		raise HTTPException(status_code=503, detail=str(exc))
	try:
		yield client
	finally:
		await client.aclose()


@router.post("/generate", response_model=PracticeSet)
async def generate_practice(
	req: PracticeRequest,
	user: User = Depends(get_current_user),
	client: GeminiClient = Depends(get_gemini_client),
):
	difficulty, content_type = practice_tier(req.mastery_percentage)
	prompt = _build_practice_prompt(req, difficulty, content_type)
	logger.info("Generating %d %s questions for outcome %r (user=%s)", req.question_count, difficulty, req.outcome_name, user.username)
	for attempt in range(max(1, settings.practice_max_attempts)):
		try:
			raw = await client.generate(prompt, system=SYSTEM_PROMPT)
			return parse_practice(raw, content_type=content_type, question_count=req.question_count)
		except MalformedModelOutput as exc:
			logger.warning("Malformed practice output (try %d): %s", attempt + 1, exc)
		except UpstreamServiceError as exc:
			logger.error("Practice generation failed: %s", exc)
			raise HTTPException(status_code=exc.status_code, detail=exc.user_message)
	raise HTTPException(status_code=MalformedModelOutput.status_code, detail=MalformedModelOutput.user_message)
