from __future__ import annotations
import json
import logging
import re
import httpx
from typing import Any, Dict, List, Literal, Optional, Protocol
from .errors import UpstreamOracleError
from .settings import settings


logger = logging.getLogger(__name__)

ResponseFormat = Literal["json", "text"]


class CompletionOracle(Protocol):
	async def complete(
		self,
		messages: List[Dict[str, str]],
		*,
		response_format: ResponseFormat = "json",
		temperature: float = 0.3,
		max_tokens: Optional[int] = None,
	) -> Any: ...


def extract_json_object(text: str) -> Dict[str, Any]:
	try:
		return json.loads(text)
	except ValueError:
		pass
	code_block = re.search(r"```json\s*([\s\S]*?)\s*```", text)
	if code_block:
		candidate = code_block.group(1)
		try:
			return json.loads(candidate)
		except ValueError:
			pass
	first = text.find("{")
	last = text.rfind("}")
	if first != -1 and last != -1 and last > first:
		candidate = text[first : last + 1]
		try:
			return json.loads(candidate)
		except ValueError:
			pass
	raise UpstreamOracleError("LLM did not return valid JSON.")


class GeminiClient:
	def __init__(self, api_key: Optional[str] = None, *, base_url: Optional[str] = None, model: Optional[str] = None) -> None:
		self.api_key = api_key or settings.gemini_api_key
		if not self.api_key:
			raise UpstreamOracleError("GEMINI_API_KEY is not configured")
		self.model = model or settings.gemini_model
		self.provider = settings.gemini_provider
		if self.provider == "vertex":
			region = settings.vertex_region
			project = settings.vertex_project or "placeholder-project"
			# Vertex AI Generative REST endpoint (API key via header)
			self.base_url = base_url or (
				f"https://{region}-aiplatform.googleapis.com/v1/projects/{project}/locations/{region}/publishers/google/models/{self.model}:generateContent"
			)
			self._auth_in_query = False
		else:
			# Google AI Studio (Generative Language API)
			self.base_url = base_url or f"https://generativelanguage.googleapis.com/v1beta/models/{self.model}:generateContent"
			self._auth_in_query = True
		timeout = settings.oracle_timeout_seconds
		self._client = httpx.AsyncClient(timeout=timeout)
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
			self._fallback_client = httpx.AsyncClient(timeout=timeout)

	async def complete(
		self,
		messages: List[Dict[str, str]],
		*,
		response_format: ResponseFormat = "json",
		temperature: float = 0.3,
		max_tokens: Optional[int] = None,
	) -> Any:
		"""Run one chat completion; JSON mode returns the parsed object."""
		payload = self._build_payload(messages, response_format=response_format, temperature=temperature, max_tokens=max_tokens)
		try:
			text = await self._post_payload(payload)
		except UpstreamOracleError as primary_error:
			if not self._fallback_enabled:
				raise
			logger.warning("[oracle.fallback] Gemini failed (%s); retrying via OpenRouter", primary_error.detail)
			text = await self._fallback_complete(
				messages,
				primary_error,
				response_format=response_format,
				temperature=temperature,
				max_tokens=max_tokens,
			)
		if response_format == "json":
			return extract_json_object(text)
		return text

	def _build_payload(
		self,
		messages: List[Dict[str, str]],
		*,
		response_format: ResponseFormat,
		temperature: float,
		max_tokens: Optional[int],
	) -> Dict[str, Any]:
		system_parts: List[Dict[str, str]] = []
		contents: List[Dict[str, Any]] = []
		for message in messages:
			role = message.get("role", "user")
			text = message.get("content", "")
			if role == "system":
				system_parts.append({"text": text})
				continue
			contents.append({"role": "model" if role == "assistant" else "user", "parts": [{"text": text}]})
		generation_config: Dict[str, Any] = {"temperature": temperature}
		if max_tokens is not None:
			generation_config["maxOutputTokens"] = int(max_tokens)
		if response_format == "json":
			generation_config["responseMimeType"] = "application/json"
		payload: Dict[str, Any] = {"contents": contents, "generationConfig": generation_config}
		if system_parts:
			payload["systemInstruction"] = {"parts": system_parts}
		return payload

	async def _post_payload(self, payload: Dict[str, Any]) -> str:
		params: Dict[str, Any] = {}
		headers: Dict[str, str] = {}
		if self._auth_in_query:
			params["key"] = self.api_key
		else:
			headers["x-goog-api-key"] = self.api_key
		try:
			r = await self._client.post(self.base_url, params=params, headers=headers, json=payload)
			r.raise_for_status()
		except httpx.HTTPStatusError as http_err:
			raise UpstreamOracleError(f"Gemini returned HTTP {http_err.response.status_code}") from http_err
		except httpx.RequestError as net_err:
			raise UpstreamOracleError(f"Gemini request failed: {net_err}") from net_err
		try:
			data = r.json()
			return data["candidates"][0]["content"]["parts"][0]["text"]
		except Exception as err:
			raise UpstreamOracleError("Unexpected Gemini response") from err

	async def aclose(self) -> None:
		await self._client.aclose()
		if self._fallback_client is not None:
			await self._fallback_client.aclose()

	async def _fallback_complete(
		self,
		messages: List[Dict[str, str]],
		primary_error: UpstreamOracleError,
		*,
		response_format: ResponseFormat,
		temperature: float,
		max_tokens: Optional[int],
	) -> str:
		if not self._fallback_client or not self._openrouter_api_key:
			raise primary_error
		headers = {k: v for k, v in self._openrouter_headers.items() if v}
		payload: Dict[str, Any] = {
			"model": self._openrouter_model,
			"messages": messages,
			"temperature": temperature,
		}
		if max_tokens is not None:
			payload["max_tokens"] = int(max_tokens)
		if response_format == "json":
			payload["response_format"] = {"type": "json_object"}
		try:
			r = await self._fallback_client.post(
				self._openrouter_base_url,
				headers=headers,
				json=payload,
			)
			r.raise_for_status()
			data = r.json()
			return data["choices"][0]["message"]["content"]
		except Exception as fallback_err:
			raise UpstreamOracleError(
				f"Gemini primary call failed ({primary_error.detail}); fallback via OpenRouter also failed"
			) from fallback_err


async def get_oracle():
	client = GeminiClient()
	try:
		yield client
	finally:
		await client.aclose()
