"""
Minimal Gemini `generateContent` client over httpx.

Shared by the Gemini vision OCR provider and the Gemini analysis provider.
HTTP failures are mapped onto ProviderError kinds so both fallback chains
can treat them like any other provider failure.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from casedocs.core.errors import ProviderError, ProviderErrorKind, classify_http_status

logger = logging.getLogger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"


class GeminiClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        timeout: float = 120.0,
        base_url: str = GEMINI_BASE_URL,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("GeminiClient requires an API key")
        self._api_key   = api_key
        self._model     = model
        self._timeout   = timeout
        self._base_url  = base_url.rstrip("/")
        self._transport = transport

    async def generate(
        self,
        parts: list[dict[str, Any]],
        *,
        provider: str,
        temperature: float,
        max_output_tokens: int,
    ) -> str:
        """Send one user turn and return the concatenated text parts."""
        url = f"{self._base_url}/models/{self._model}:generateContent"
        payload = {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "temperature": temperature,
                "maxOutputTokens": max_output_tokens,
            },
        }

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(url, params={"key": self._api_key}, json=payload)

        if resp.status_code >= 400:
            raise ProviderError(
                provider,
                classify_http_status(resp.status_code),
                f"HTTP {resp.status_code}: {resp.text[:200]}",
            )

        try:
            data = resp.json()
        except ValueError as exc:
            raise ProviderError(provider, ProviderErrorKind.SERVER, "malformed JSON body") from exc

        return extract_text(data, provider)


def extract_text(data: Any, provider: str) -> str:
    if not isinstance(data, dict):
        raise ProviderError(provider, ProviderErrorKind.SERVER, "unexpected response shape")

    block_reason = (data.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise ProviderError(provider, ProviderErrorKind.REJECTED, f"blocked: {block_reason}")

    candidates = data.get("candidates") or []
    if not candidates or not isinstance(candidates[0], dict):
        raise ProviderError(provider, ProviderErrorKind.EMPTY_RESULT, "no candidates")

    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts if isinstance(p, dict))
    if not text.strip():
        raise ProviderError(provider, ProviderErrorKind.EMPTY_RESULT, "empty text")
    return text
