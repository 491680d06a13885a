from __future__ import annotations

import json
import re
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx

from sitecatalog.core.config import get_settings
from sitecatalog.schemas.results import UrlSource


GUESS_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "urls": {"type": "array", "items": {"type": "string"}},
        "confidence": {"type": "number"},
    },
    "required": ["urls", "confidence"],
}

_CODE_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


class GuesserError(Exception):
    """Raised when a guesser cannot produce a usable answer."""


@dataclass(frozen=True, slots=True)
class GuessResult:
    urls: tuple[str, ...] = ()
    confidence: float = 0.0


EMPTY_GUESS = GuessResult()


def build_sitemap_prompt(target_url: str) -> str:
    return f"""You are an expert in website structure analysis.
List every page URL you believe exists on the website below, as exhaustively as you can.

Target URL: {target_url}

## Approach
1. Identify the domain and infer the typical structure of this kind of site.
2. Consider paths that robots.txt or sitemap.xml would likely expose.
3. Consider common sections (home, about, services, blog, contact, and so on).
4. Include child pages and subsections of each section.

## Output format
Respond with JSON only:
{{
  "urls": ["https://example.com/page1", "https://example.com/page2"],
  "confidence": 0.8
}}

## Rules
- Only output URLs on the same domain as the target.
- Every URL must be absolute and start with https://.
- Do not repeat URLs.
- Only include URLs that are likely to exist."""


def coerce_guess_payload(raw: Any) -> GuessResult:
    """Coerce an arbitrary guesser payload into a ``GuessResult``.

    Accepts decoded JSON or JSON text. Anything missing or mistyped degrades
    to an empty URL list or a zero confidence instead of raising.
    """
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if isinstance(raw, str):
        try:
            raw = json.loads(_CODE_FENCE_RE.sub("", raw.strip()))
        except ValueError:
            return EMPTY_GUESS
    if not isinstance(raw, dict):
        return EMPTY_GUESS

    raw_urls = raw.get("urls")
    urls: tuple[str, ...] = ()
    if isinstance(raw_urls, list):
        urls = tuple(item.strip() for item in raw_urls if isinstance(item, str) and item.strip())

    raw_confidence = raw.get("confidence")
    confidence = 0.0
    if isinstance(raw_confidence, (int, float)) and not isinstance(raw_confidence, bool):
        confidence = float(raw_confidence)
    return GuessResult(urls=urls, confidence=confidence)


class LLMGuesser(ABC):
    name: UrlSource

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str,
        api_url: str,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.api_url = api_url
        self.timeout_seconds = timeout_seconds
        self._client = client

    async def analyze(self, target_url: str) -> GuessResult:
        if not self.api_key:
            raise GuesserError(f"{self.name} api key is not configured")

        url, headers, payload = self._build_request(target_url)
        try:
            if self._client is not None:
                response = await self._client.post(url, headers=headers, json=payload)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds) as client:
                    response = await client.post(url, headers=headers, json=payload)
        except httpx.HTTPError as exc:
            raise GuesserError(f"{self.name} request failed: {exc}") from exc

        if response.status_code != 200:
            raise GuesserError(f"{self.name} API error: {response.status_code} - {response.text[:200]}")

        try:
            data = response.json()
        except ValueError as exc:
            raise GuesserError(f"{self.name} returned a non-JSON body") from exc

        text = self._extract_text(data)
        if not text:
            raise GuesserError(f"no response from {self.name}")
        return coerce_guess_payload(text)

    @abstractmethod
    def _build_request(self, target_url: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        """Return the request URL, headers and JSON body for one guess."""

    @abstractmethod
    def _extract_text(self, data: Any) -> str | None:
        """Pull the model's JSON answer text out of a decoded response."""


class GeminiGuesser(LLMGuesser):
    name: UrlSource = "gemini"

    def _build_request(self, target_url: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {"Content-Type": "application/json", "x-goog-api-key": self.api_key or ""}
        payload = {
            "contents": [{"parts": [{"text": build_sitemap_prompt(target_url)}]}],
            "generationConfig": {
                "responseMimeType": "application/json",
                "responseSchema": GUESS_RESPONSE_SCHEMA,
            },
        }
        return self.api_url.format(model=self.model), headers, payload

    def _extract_text(self, data: Any) -> str | None:
        candidates = data.get("candidates") if isinstance(data, dict) else None
        if not isinstance(candidates, list) or not candidates:
            return None
        content = candidates[0].get("content") if isinstance(candidates[0], dict) else None
        parts = content.get("parts") if isinstance(content, dict) else None
        if not isinstance(parts, list) or not parts or not isinstance(parts[0], dict):
            return None
        text = parts[0].get("text")
        return text if isinstance(text, str) else None


class OpenAIGuesser(LLMGuesser):
    name: UrlSource = "gpt"

    def _build_request(self, target_url: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {self.api_key}"}
        payload = {
            "model": self.model,
            "input": build_sitemap_prompt(target_url),
            "text": {
                "format": {
                    "type": "json_schema",
                    "name": "sitemap_response",
                    "schema": GUESS_RESPONSE_SCHEMA,
                }
            },
        }
        return self.api_url, headers, payload

    def _extract_text(self, data: Any) -> str | None:
        if not isinstance(data, dict):
            return None
        output_text = data.get("output_text")
        if isinstance(output_text, str) and output_text:
            return output_text

        output = data.get("output")
        if not isinstance(output, list):
            return None
        for item in output:
            content = item.get("content") if isinstance(item, dict) else None
            if not isinstance(content, list):
                continue
            for part in content:
                if isinstance(part, dict) and isinstance(part.get("text"), str):
                    return part["text"]
        return None


@lru_cache
def get_guessers() -> Mapping[UrlSource, LLMGuesser]:
    settings = get_settings()
    return {
        "gemini": GeminiGuesser(
            api_key=settings.gemini_api_key,
            model=settings.gemini_model,
            api_url=settings.gemini_api_url,
            timeout_seconds=settings.guesser_timeout_seconds,
        ),
        "gpt": OpenAIGuesser(
            api_key=settings.openai_api_key,
            model=settings.openai_model,
            api_url=settings.openai_api_url,
            timeout_seconds=settings.guesser_timeout_seconds,
        ),
    }
