import asyncio
import json

import httpx
import pytest

from slotrack.errors import CreditsExhausted, MalformedModelOutput, RateLimitExceeded, UpstreamServiceError
from slotrack.gemini_client import GeminiClient
from slotrack.main import app
from slotrack.routers.practice import get_gemini_client, parse_practice, practice_tier
from slotrack.settings import settings


def _question(i=1, answer="B"):
	return {
		"id": i,
		"question": f"Question {i}?",
		"options": ["A) one", "B) two", "C) three", "D) four"],
		"correctAnswer": answer,
		"explanation": "Because two.",
		"wrongAnswerFeedback": {"A": "no", "C": "no", "D": "no"},
		"difficulty": "beginner",
		"estimatedTime": "2 min",
	}


GOOD = json.dumps({"questions": [_question(1), _question(2, "d")], "contentType": "Foundational", "totalEstimatedTime": "4 min"})


@pytest.mark.parametrize(
	"percentage, tier",
	[(92, "advanced"), (85, "advanced"), (84.9, "intermediate"), (60, "intermediate"), (10, "beginner")],
)
def test_practice_tier(percentage, tier):
	assert practice_tier(percentage)[0] == tier


def test_parse_accepts_fenced_json():
	practice = parse_practice(f"Sure! Here you go:\n```json\n{GOOD}\n```", content_type="x", question_count=2)
	assert [q.correct_answer for q in practice.questions] == ["B", "D"]
	assert practice.content_type == "Foundational"


def test_parse_fills_missing_metadata():
	practice = parse_practice(json.dumps({"questions": [_question()]}), content_type="Reinforcement", question_count=3)
	assert practice.content_type == "Reinforcement"
	assert practice.total_estimated_time == "6 min"


@pytest.mark.parametrize(
	"text",
	[
		"I cannot help with that",
		json.dumps({"questions": []}),
		json.dumps({"questions": [_question(answer="E")]}),
		json.dumps({"questions": [dict(_question(), options=["A", "B"])]}),
		json.dumps([_question()]),
	],
)
def test_parse_rejects_malformed_output(text):
	with pytest.raises(MalformedModelOutput):
		parse_practice(text, content_type="x", question_count=1)


class FakeClient:
	def __init__(self, *outcomes):
		self.outcomes = list(outcomes)
		self.prompts = []

	async def generate(self, prompt, *, system=None):
		self.prompts.append(prompt)
		outcome = self.outcomes.pop(0)
		if isinstance(outcome, Exception):
			raise outcome
		return outcome


@pytest.fixture
def practice(client, make_user):
	headers = make_user("ann")

	def _post(fake, **body):
		app.dependency_overrides[get_gemini_client] = lambda: fake
		payload = {"outcomeName": "Fractions", "masteryPercentage": 42}
		payload.update(body)
		return client.post("/practice/generate", json=payload, headers=headers)

	return _post


def test_generate_retries_malformed_output(practice):
	fake = FakeClient("not json at all", GOOD)
	r = practice(fake, questionCount=2)
	assert r.status_code == 200, r.text
	assert len(r.json()["questions"]) == 2
	assert len(fake.prompts) == 2
	assert "beginner-level" in fake.prompts[0]


def test_generate_gives_up_after_repeated_malformed_output(practice):
	r = practice(FakeClient("nope", "still nope"))
	assert r.status_code == 502


@pytest.mark.parametrize(
	"error, status, message",
	[
		(RateLimitExceeded(), 429, "Rate limit exceeded. Please try again in a moment."),
		(CreditsExhausted(), 402, "AI credits exhausted. Please add credits to continue."),
	],
)
def test_generate_maps_upstream_errors(practice, error, status, message):
	r = practice(FakeClient(error))
	assert r.status_code == status
	assert r.json()["detail"] == message


def test_generate_validates_request(practice):
	assert practice(FakeClient(GOOD), masteryPercentage=140).status_code == 422


def _gemini(handler, monkeypatch):
	monkeypatch.setattr(settings, "openrouter_api_key", None)
	monkeypatch.setattr(settings, "gemini_provider", "ai_studio")
	return GeminiClient("test-key", transport=httpx.MockTransport(handler))


def _run(client, prompt="hi"):
	async def go():
		try:
			return await client.generate(prompt, system="be brief")
		finally:
			await client.aclose()

	return asyncio.run(go())


def test_gemini_returns_candidate_text(monkeypatch):
	seen = {}

	def handler(request):
		seen["key"] = request.url.params.get("key")
		seen["body"] = json.loads(request.content)
		return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "hello"}]}}]})

	assert _run(_gemini(handler, monkeypatch)) == "hello"
	assert seen["key"] == "test-key"
	assert seen["body"]["systemInstruction"] == {"parts": [{"text": "be brief"}]}


@pytest.mark.parametrize(
	"status, error",
	[(429, RateLimitExceeded), (402, CreditsExhausted), (500, UpstreamServiceError)],
)
def test_gemini_classifies_http_errors(monkeypatch, status, error):
	client = _gemini(lambda request: httpx.Response(status, json={"error": "x"}), monkeypatch)
	with pytest.raises(error):
		_run(client)


def test_gemini_unexpected_body_is_malformed(monkeypatch):
	client = _gemini(lambda request: httpx.Response(200, json={"candidates": []}), monkeypatch)
	with pytest.raises(MalformedModelOutput):
		_run(client)


def test_openrouter_fallback_recovers(monkeypatch):
	def handler(request):
		if "openrouter" in request.url.host:
			return httpx.Response(200, json={"choices": [{"message": {"content": "from fallback"}}]})
		return httpx.Response(429)

	monkeypatch.setattr(settings, "openrouter_api_key", "or-key")
	monkeypatch.setattr(settings, "gemini_provider", "ai_studio")
	client = GeminiClient("test-key", transport=httpx.MockTransport(handler))
	assert _run(client) == "from fallback"


def test_missing_api_key_is_rejected(monkeypatch):
	monkeypatch.setattr(settings, "gemini_api_key", None)
	with pytest.raises(ValueError):
		GeminiClient()
