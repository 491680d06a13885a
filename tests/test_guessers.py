from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from sitecatalog.services.guessers import (
    EMPTY_GUESS,
    GeminiGuesser,
    GuesserError,
    GuessResult,
    LLMGuesser,
    OpenAIGuesser,
    coerce_guess_payload,
)

GUESS_TEXT = json.dumps({"urls": ["https://example.com/", "https://example.com/about"], "confidence": 0.8})


def test_coerce_guess_payload_accepts_json_text_and_fences() -> None:
    expected = GuessResult(urls=("https://example.com/", "https://example.com/about"), confidence=0.8)
    assert coerce_guess_payload(GUESS_TEXT) == expected
    assert coerce_guess_payload(f"```json\n{GUESS_TEXT}\n```") == expected
    assert coerce_guess_payload(GUESS_TEXT.encode()) == expected


def test_coerce_guess_payload_degrades_malformed_fields() -> None:
    assert coerce_guess_payload("not json") == EMPTY_GUESS
    assert coerce_guess_payload(["https://example.com/"]) == EMPTY_GUESS
    assert coerce_guess_payload({"urls": "https://example.com/", "confidence": "high"}) == EMPTY_GUESS
    assert coerce_guess_payload({"urls": ["https://example.com/a", 7, "  "], "confidence": True}) == GuessResult(
        urls=("https://example.com/a",), confidence=0.0
    )
    assert coerce_guess_payload({"confidence": 1}) == GuessResult(urls=(), confidence=1.0)


def _run_guesser(guesser_cls, handler, *, api_key: str | None = "secret", api_url: str) -> GuessResult:
    async def run() -> GuessResult:
        transport = httpx.MockTransport(handler)
        async with httpx.AsyncClient(transport=transport) as client:
            guesser = guesser_cls(
                api_key=api_key,
                model="test-model",
                api_url=api_url,
                timeout_seconds=5,
                client=client,
            )
            return await guesser.analyze("https://example.com")

    return asyncio.run(run())


def test_gemini_guesser_sends_key_header_and_reads_first_candidate() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers.get("x-goog-api-key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": GUESS_TEXT}]}}]})

    result = _run_guesser(GeminiGuesser, handler, api_url="https://gemini.test/models/{model}:generateContent")

    assert result.urls == ("https://example.com/", "https://example.com/about")
    assert result.confidence == 0.8
    assert seen["url"] == "https://gemini.test/models/test-model:generateContent"
    assert seen["key"] == "secret"
    body = seen["body"]
    assert isinstance(body, dict)
    assert "https://example.com" in body["contents"][0]["parts"][0]["text"]
    assert body["generationConfig"]["responseMimeType"] == "application/json"


def test_openai_guesser_uses_bearer_token_and_output_fallback() -> None:
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"output": [{"type": "reasoning"}, {"content": [{"type": "output_text", "text": GUESS_TEXT}]}]},
        )

    result = _run_guesser(OpenAIGuesser, handler, api_url="https://openai.test/v1/responses")

    assert result.confidence == 0.8
    assert seen["auth"] == "Bearer secret"
    body = seen["body"]
    assert isinstance(body, dict)
    assert body["model"] == "test-model"
    assert body["text"]["format"]["type"] == "json_schema"


def test_openai_guesser_prefers_output_text() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"output_text": json.dumps({"urls": ["https://example.com/x"], "confidence": 0.5})})

    result = _run_guesser(OpenAIGuesser, handler, api_url="https://openai.test/v1/responses")
    assert result == GuessResult(urls=("https://example.com/x",), confidence=0.5)


@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(429, text="rate limited"),
        httpx.Response(200, text="<html>gateway</html>"),
        httpx.Response(200, json={"candidates": []}),
    ],
)
def test_gemini_guesser_raises_on_unusable_responses(response: httpx.Response) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return response

    with pytest.raises(GuesserError):
        _run_guesser(GeminiGuesser, handler, api_url="https://gemini.test/{model}")


def test_guesser_wraps_transport_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route", request=request)

    with pytest.raises(GuesserError, match="request failed"):
        _run_guesser(OpenAIGuesser, handler, api_url="https://openai.test/v1/responses")


def test_guesser_without_api_key_fails_before_any_request() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    with pytest.raises(GuesserError, match="api key is not configured"):
        _run_guesser(GeminiGuesser, handler, api_key=None, api_url="https://gemini.test/{model}")


def test_guesser_base_cannot_be_instantiated() -> None:
    with pytest.raises(TypeError):
        LLMGuesser(api_key="secret", model="m", api_url="https://llm.test", timeout_seconds=1)
