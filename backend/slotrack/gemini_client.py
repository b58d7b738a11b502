from __future__ import annotations
import logging
import httpx
from typing import Any, Dict, Optional
from .errors import CreditsExhausted, MalformedModelOutput, RateLimitExceeded, UpstreamServiceError
from .settings import settings

logger = logging.getLogger(__name__)


def classify_http_error(err: httpx.HTTPStatusError) -> UpstreamServiceError:
	status = err.response.status_code
	if status == 429:
		return RateLimitExceeded()
	if status == 402:
		return CreditsExhausted()
	return UpstreamServiceError(f"AI gateway error: {status}")


class GeminiClient:
	def __init__(
		self,
		api_key: Optional[str] = None,
		*,
		base_url: Optional[str] = None,
		model: Optional[str] = None,
		transport: Optional[httpx.AsyncBaseTransport] = None,
	) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise ValueError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		timeout = settings.gemini_timeout_seconds
		self._client = httpx.AsyncClient(timeout=timeout, transport=transport)
		self._fallback_client: Optional[httpx.AsyncClient] = None
		self._fallback_enabled = bool(settings.openrouter_api_key)
		self._openrouter_api_key = settings.openrouter_api_key
		self._openrouter_model = settings.openrouter_model
		self._openrouter_base_url = settings.openrouter_base_url
		self._openrouter_headers = {
			"Authorization": f"Bearer {self._openrouter_api_key}" if self._openrouter_api_key else "",
			"Content-Type": "application/json",
			"HTTP-Referer": settings.openrouter_referer,
			"X-Title": settings.openrouter_title,
		}
		if self._fallback_enabled:
			self._fallback_client = httpx.AsyncClient(timeout=timeout, transport=transport)

	async def generate(self, prompt: str, *, system: Optional[str] = None) -> str:
		"""Return the model's text for ``prompt``.

		Rate-limit (429) and credit exhaustion (402) surface as
		:class:`RateLimitExceeded` / :class:`CreditsExhausted` when no fallback
		recovers the call; any other failure is an :class:`UpstreamServiceError`.
		"""
		payload: Dict[str, Any] = {"contents": [{"role": "user", "parts": [{"text": prompt}]}]}
		if system:
			payload["systemInstruction"] = {"parts": [{"text": system}]}
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		last_error: Optional[UpstreamServiceError] = None
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			logger.warning("Gemini call failed with status %s", http_err.response.status_code)
			last_error = classify_http_error(http_err)
		except httpx.RequestError as net_err:
			last_error = UpstreamServiceError(f"AI gateway unreachable: {net_err}")
		if last_error is None:
			try:
				data = r.json()
				return data["candidates"][0]["content"]["parts"][0]["text"]
			except Exception:
				last_error = MalformedModelOutput(f"Unexpected Gemini response: {r.text[:500]}")
		if not self._fallback_enabled:
			raise last_error
		return await self._fallback_generate(prompt, system, last_error)

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_generate(self, prompt: str, system: Optional[str], primary_error: UpstreamServiceError) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		messages = []
		if system:
			messages.append({"role": "system", "content": system})
		messages.append({"role": "user", "content": prompt})
		payload: Dict[str, Any] = {"model": self._openrouter_model, "messages": messages}
		try:
			r = await self._fallback_client.post(self._openrouter_base_url, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			logger.warning("OpenRouter fallback failed with status %s", http_err.response.status_code)
			# Report the primary classification; the fallback is best effort
			raise primary_error from http_err
		except httpx.RequestError as net_err:
			raise primary_error from net_err
		try:
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as err:
			raise MalformedModelOutput(f"Unexpected OpenRouter response: {r.text[:500]}") from err
