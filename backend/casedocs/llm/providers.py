"""
AI Analysis Providers

Every analysis backend sits behind one interface, AnalysisProvider, so the
analysis chain can iterate them with first_success():

  Provider           Backend                                  Transport
  ────────────────── ──────────────────────────────────────── ─────────────
  openai             langchain_openai.ChatOpenAI (JSON mode)  openai SDK
  azure-openai       langchain_openai.AzureChatOpenAI         openai SDK
  gemini             generateContent REST                     httpx

Exceptions from the SDKs are translated into ProviderError kinds. The SDK's
own retry loop is disabled (max_retries=0): falling through to the next
provider is faster than backing off on the current one.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import BaseMessage

from casedocs.core.errors import ProviderError, ProviderErrorKind, classify_http_status
from casedocs.llm.gemini import GeminiClient

if TYPE_CHECKING:
    from casedocs.core.config import Settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SDK exception → ProviderErrorKind
# ---------------------------------------------------------------------------

_RATE_LIMIT_TYPES = ("RateLimitError",)
_TIMEOUT_TYPES    = ("APITimeoutError", "ConnectTimeout", "ReadTimeout", "TimeoutError")
_SERVER_TYPES     = (
    "ServiceUnavailableError",
    "APIConnectionError",
    "InternalServerError",
    "RemoteProtocolError",
)
_AUTH_TYPES       = ("AuthenticationError", "PermissionDeniedError")


def classify_sdk_exception(exc: Exception) -> ProviderErrorKind:
    """Classify an SDK exception by HTTP status if present, else class name."""
    status_code = getattr(exc, "status_code", None)
    if isinstance(status_code, int):
        return classify_http_status(status_code)

    name = type(exc).__name__
    if name.endswith(_RATE_LIMIT_TYPES):
        return ProviderErrorKind.RATE_LIMIT
    if name.endswith(_TIMEOUT_TYPES):
        return ProviderErrorKind.TIMEOUT
    if name.endswith(_AUTH_TYPES):
        return ProviderErrorKind.AUTH
    if name.endswith(_SERVER_TYPES):
        return ProviderErrorKind.SERVER
    return ProviderErrorKind.REJECTED


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class AnalysisProvider(ABC):
    """One AI backend that turns analysis messages into raw response text."""

    @property
    @abstractmethod
    def name(self) -> str: ...

    @abstractmethod
    async def complete(self, messages: list[BaseMessage]) -> str:
        """Return the model's raw text; raise ProviderError on failure."""


class ChatModelProvider(AnalysisProvider):
    """Adapter over any LangChain chat model."""

    def __init__(self, name: str, llm: BaseChatModel) -> None:
        self._name = name
        self._llm  = llm

    @property
    def name(self) -> str:
        return self._name

    async def complete(self, messages: list[BaseMessage]) -> str:
        try:
            result = await self._llm.ainvoke(messages)
        except ProviderError:
            raise
        except Exception as exc:
            raise ProviderError(
                self._name, classify_sdk_exception(exc), f"{type(exc).__name__}: {exc}",
            ) from exc

        content = result.content
        if isinstance(content, list):
            content = "".join(
                part.get("text", "") if isinstance(part, dict) else str(part)
                for part in content
            )
        if not content or not str(content).strip():
            raise ProviderError(self._name, ProviderErrorKind.EMPTY_RESULT, "empty completion")
        return str(content)


class GeminiAnalysisProvider(AnalysisProvider):
    name = "gemini"

    def __init__(self, client: GeminiClient, temperature: float = 0.2, max_output_tokens: int = 4096) -> None:
        self._client            = client
        self._temperature       = temperature
        self._max_output_tokens = max_output_tokens

    async def complete(self, messages: list[BaseMessage]) -> str:
        prompt = "\n\n".join(str(m.content) for m in messages)
        return await self._client.generate(
            [{"text": prompt}],
            provider=self.name,
            temperature=self._temperature,
            max_output_tokens=self._max_output_tokens,
        )


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def build_analysis_providers(settings: "Settings") -> list[AnalysisProvider]:
    """Configured providers in priority order; unconfigured ones are skipped."""
    providers: list[AnalysisProvider] = []

    if settings.openai_api_key:
        from langchain_openai import ChatOpenAI
        providers.append(ChatModelProvider("openai", ChatOpenAI(
            model=settings.openai_model,
            api_key=settings.openai_api_key,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            max_retries=0,
            timeout=settings.llm_timeout_seconds,
            model_kwargs={"response_format": {"type": "json_object"}},
        )))

    if settings.azure_openai_configured:
        from langchain_openai import AzureChatOpenAI
        providers.append(ChatModelProvider("azure-openai", AzureChatOpenAI(
            azure_deployment=settings.azure_openai_deployment,
            azure_endpoint=settings.azure_openai_endpoint,
            api_key=settings.azure_openai_api_key,
            api_version=settings.azure_openai_api_version,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            max_retries=0,
            timeout=settings.llm_timeout_seconds,
            model_kwargs={"response_format": {"type": "json_object"}},
        )))

    if settings.google_ai_api_key and settings.gemini_analysis_enabled:
        providers.append(GeminiAnalysisProvider(
            GeminiClient(
                settings.google_ai_api_key,
                settings.gemini_model,
                timeout=settings.llm_timeout_seconds,
            ),
            temperature=settings.llm_temperature,
            max_output_tokens=settings.llm_max_tokens,
        ))

    logger.info("Analysis providers | configured=%s", [p.name for p in providers])
    return providers
